"""
Payment Service

Owns the persisted Payment state machine on top of the Stripe gateway:
- capture (PROCESSING row first, then confirm-on-create intent)
- client-side intents and saved card listing
- refunds with cumulative, capped ``refunded_amount``
- idempotent webhook transitions

Every transition re-reads the payment row and is a no-op when the target
state is already reached. A captured payment is never moved backwards.
"""

import uuid
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..errors import ConcurrencyError, NotFoundError, PaymentError, SignatureError, ValidationError
from ..models.payment import Payment, PaymentStatus, PaymentMethod, PAYMENT_TRANSITIONS
from ..schemas.webhook import (
    StripeEvent,
    PaymentIntentSucceededEvent,
    PaymentIntentFailedEvent,
    parse_stripe_event,
)
from ..utils.clock import utcnow
from ..utils.db_helpers import acquire_row_lock
from ..utils.logging_config import get_logger
from .payment_gateway import (
    CardSummary,
    GatewayConnectionError,
    GatewayError,
    GatewayIntent,
    GatewaySignatureError,
)
from .policy_engine import to_minor_units, from_minor_units

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

REFUNDABLE_STATUSES = {PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED}


@dataclass
class PaymentWebhookResult:
    action: str
    payment: Optional[Payment] = None


def _is_empty(value) -> bool:
    return value is None or value == "" or value == {}


class PaymentService:

    def __init__(self, db: Session, gateway):
        self.db = db
        self.gateway = gateway

    # ================================
    # Lookups
    # ================================

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.id == payment_id).populate_existing().first()

    def find_by_intent(self, intent_id: str, metadata: Optional[Dict[str, str]] = None) -> Optional[Payment]:
        """By intent id, falling back to the paymentId we put in the intent metadata."""
        payment = (
            self.db.query(Payment)
            .filter(Payment.stripe_payment_intent_id == intent_id)
            .populate_existing()
            .first()
        )
        if payment is None and metadata and metadata.get("paymentId"):
            payment = self.get_payment(metadata["paymentId"])
        return payment

    def latest_payment_for_booking(self, booking_id: str) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.booking_id == booking_id)
            .order_by(Payment.created_at.desc())
            .populate_existing()
            .first()
        )

    # ================================
    # Transitions
    # ================================

    def transition(
        self,
        payment_id: str,
        new_status: PaymentStatus,
        updates: Optional[dict] = None
    ) -> Tuple[Payment, bool]:
        """
        Converge a payment towards ``new_status``.

        Returns (payment, changed). Reaching an already-held status only fills
        identifiers that are still empty; a transition the state machine does
        not allow (e.g. COMPLETED -> FAILED) is ignored.
        """
        new_status = PaymentStatus(new_status)
        updates = updates or {}
        attempts = max(1, settings.transition_max_attempts)

        for attempt in range(attempts):
            payment = acquire_row_lock(self.db, Payment, Payment.id == payment_id)
            if payment is None:
                self.db.rollback()
                raise NotFoundError(f"Payment {payment_id} not found")

            current = PaymentStatus(payment.status)
            changed = False
            if current == new_status:
                for field_name, value in updates.items():
                    if value is not None and _is_empty(getattr(payment, field_name)):
                        setattr(payment, field_name, value)
            elif new_status in PAYMENT_TRANSITIONS[current]:
                for field_name, value in updates.items():
                    setattr(payment, field_name, value)
                payment.status = new_status.value
                payment.updated_at = utcnow()
                changed = True
            else:
                logger.info(
                    f"Ignoring payment {payment_id} transition {current.value} -> {new_status.value}"
                )

            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.warning(f"Concurrent update on payment {payment_id} (attempt {attempt + 1}/{attempts})")
                continue

            if changed:
                structured_logger.payment_status_changed(payment.id, current.value, new_status.value)
            return payment, changed

        raise ConcurrencyError(f"Payment {payment_id} kept changing, transition to {new_status.value} abandoned")

    # ================================
    # Capture
    # ================================

    def process_payment(
        self,
        booking_id: str,
        amount: Decimal,
        currency: str,
        payment_method_id: str,
        description: str,
        user_id: Optional[str] = None
    ) -> Payment:
        """
        Capture ``amount`` for a booking.

        The Payment row is persisted in every outcome: COMPLETED, PENDING
        (customer action required) or FAILED. A gateway rejection marks the
        booking's latest payment FAILED and raises PaymentError. When the
        outcome stays unknown after re-querying, the payment is left
        PROCESSING for the reconciliation worker and PaymentError is raised.
        """
        payment = Payment(
            booking_id=booking_id,
            user_id=user_id,
            status=PaymentStatus.PROCESSING.value,
            method=PaymentMethod.CREDIT_CARD.value,
            amount=Decimal(str(amount)),
            currency=currency.upper(),
            refunded_amount=Decimal("0"),
            description=description,
            payment_metadata={"payment_method_id": payment_method_id},
        )
        self.db.add(payment)
        self.db.commit()

        try:
            intent = self._capture(payment, payment_method_id, description)
        except GatewayConnectionError as e:
            logger.error(f"Payment {payment.id} outcome unknown, left PROCESSING for reconciliation: {e}")
            raise PaymentError(
                "Payment outcome could not be confirmed; it will be reconciled",
                "payment_outcome_unknown"
            ) from e
        except GatewayError as e:
            self._fail_latest_payment(booking_id, e.message)
            raise PaymentError(e.message, e.code or "payment_failed") from e

        return self.apply_intent(payment.id, intent)

    def _capture(self, payment: Payment, payment_method_id: str, description: str) -> GatewayIntent:
        metadata = {"bookingId": payment.booking_id, "paymentId": payment.id}
        kwargs = dict(
            amount_minor=to_minor_units(payment.amount),
            currency=payment.currency,
            payment_method_id=payment_method_id,
            description=description,
            metadata=metadata,
            idempotency_key=f"payment-{payment.id}",
        )
        try:
            return self.gateway.create_and_confirm_intent(**kwargs)
        except GatewayConnectionError:
            logger.warning(f"Capture for payment {payment.id} timed out, replaying with the same idempotency key")

        try:
            return self.gateway.create_and_confirm_intent(**kwargs)
        except GatewayConnectionError:
            intent = self.gateway.find_intent_for_payment(payment.id)
            if intent is None:
                raise
            return intent

    def _fail_latest_payment(self, booking_id: str, message: str) -> Optional[Payment]:
        latest = self.latest_payment_for_booking(booking_id)
        if latest is None:
            return None
        payment, _ = self.transition(latest.id, PaymentStatus.FAILED, {"failure_reason": message})
        return payment

    def apply_intent(self, payment_id: str, intent: GatewayIntent) -> Payment:
        """Map a gateway intent snapshot onto the persisted payment."""
        updates = {"stripe_payment_intent_id": intent.id}

        if intent.succeeded:
            card = self._card_summary(intent.payment_method)
            updates.update({
                "stripe_charge_id": intent.latest_charge,
                "transaction_id": intent.id,
                "payment_details": card.to_dict() if card else None,
            })
            payment, _ = self.transition(payment_id, PaymentStatus.COMPLETED, updates)
        elif intent.requires_action:
            payment, _ = self.transition(payment_id, PaymentStatus.PENDING, updates)
        else:
            updates["failure_reason"] = intent.last_error_message or f"Payment {intent.status}"
            payment, _ = self.transition(payment_id, PaymentStatus.FAILED, updates)

        return payment

    def _card_summary(self, payment_method_id: Optional[str]) -> Optional[CardSummary]:
        if not payment_method_id:
            return None
        try:
            return self.gateway.retrieve_card(payment_method_id)
        except GatewayError as e:
            logger.warning(f"Could not load card details for {payment_method_id}: {e}")
            return None

    def reconcile_with_gateway(self, payment_id: str) -> Payment:
        """Re-query the gateway for a payment whose outcome is not final."""
        payment = self.get_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")

        if payment.stripe_payment_intent_id:
            intent = self.gateway.retrieve_intent(payment.stripe_payment_intent_id)
        else:
            intent = self.gateway.find_intent_for_payment(payment.id)

        if intent is None:
            logger.info(f"No gateway intent exists for payment {payment.id}, marking FAILED")
            payment, _ = self.transition(payment.id, PaymentStatus.FAILED, {
                "failure_reason": "Payment was never created at the gateway"
            })
            return payment

        return self.apply_intent(payment.id, intent)

    # ================================
    # Client-side intents and cards
    # ================================

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_id: Optional[str] = None,
        description: Optional[str] = None
    ) -> GatewayIntent:
        """Unconfirmed intent for client-side confirmation. No Payment row is created."""
        try:
            return self.gateway.create_intent(to_minor_units(amount), currency, customer_id, description)
        except GatewayError as e:
            raise PaymentError(e.message, e.code or "intent_failed") from e

    def get_payment_methods(self, customer_id: str) -> List[CardSummary]:
        try:
            return self.gateway.list_card_methods(customer_id)
        except GatewayError as e:
            raise PaymentError(e.message, e.code or "payment_methods_failed") from e

    # ================================
    # Refunds
    # ================================

    def process_refund(
        self,
        payment_id: str,
        amount: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Payment:
        """
        Refund ``amount`` (default: everything still refundable).

        Amounts above the remaining refundable balance are rejected before
        the gateway is called. The same gateway refund is never counted twice.
        """
        payment = self.get_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if not payment.stripe_charge_id:
            raise NotFoundError(f"Payment {payment_id} has no captured charge to refund")
        if PaymentStatus(payment.status) not in REFUNDABLE_STATUSES:
            raise ValidationError(f"Payment {payment_id} is {payment.status} and cannot be refunded")

        remaining = Decimal(str(payment.amount)) - Decimal(str(payment.refunded_amount or 0))
        refund_amount = Decimal(str(amount)) if amount is not None else remaining
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be positive")
        if refund_amount > remaining:
            raise ValidationError(
                f"Refund of {refund_amount} exceeds remaining refundable amount {remaining}",
                "refund_exceeds_remaining"
            )

        charge_id = payment.stripe_charge_id
        booking_id = payment.booking_id
        # Release the read transaction before calling out
        self.db.commit()

        try:
            refund = self.gateway.refund(
                charge_id,
                to_minor_units(refund_amount),
                idempotency_key or f"refund-{payment_id}-{uuid.uuid4().hex}",
                {"paymentId": payment_id, "bookingId": booking_id, "reason": reason or "requested_by_customer"},
            )
        except GatewayError as e:
            logger.error(f"Refund of {refund_amount} for payment {payment_id} failed: {e.message}")
            raise PaymentError(f"Refund failed: {e.message}", "refund_failed") from e

        return self._record_refund(payment_id, refund.id, from_minor_units(refund.amount))

    def _record_refund(self, payment_id: str, refund_id: str, refunded: Decimal) -> Payment:
        attempts = max(1, settings.transition_max_attempts)
        for attempt in range(attempts):
            payment = acquire_row_lock(self.db, Payment, Payment.id == payment_id)
            metadata = dict(payment.payment_metadata or {})
            refund_ids = list(metadata.get("refund_ids", []))
            if refund_id in refund_ids:
                self.db.commit()
                logger.info(f"Refund {refund_id} already recorded on payment {payment_id}")
                return payment

            previous = payment.status
            total_refunded = min(
                Decimal(str(payment.refunded_amount or 0)) + refunded,
                Decimal(str(payment.amount)),
            )
            metadata["refund_ids"] = refund_ids + [refund_id]
            payment.payment_metadata = metadata
            payment.refunded_amount = total_refunded
            payment.status = (
                PaymentStatus.REFUNDED.value
                if total_refunded >= Decimal(str(payment.amount))
                else PaymentStatus.PARTIALLY_REFUNDED.value
            )
            payment.updated_at = utcnow()
            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                continue

            structured_logger.payment_status_changed(payment.id, previous, payment.status)
            return payment

        raise ConcurrencyError(f"Could not record refund {refund_id} on payment {payment_id}")

    # ================================
    # Webhooks
    # ================================

    def verify_webhook(self, signature: Optional[str], raw_body: bytes) -> StripeEvent:
        """Verify the Stripe signature and decode the event. Nothing is read or written."""
        try:
            payload = self.gateway.verify_webhook(raw_body, signature)
        except GatewaySignatureError as e:
            logger.warning(f"Rejected Stripe webhook: {e.message}")
            raise SignatureError(e.message) from e
        try:
            return parse_stripe_event(payload)
        except ValueError as e:
            raise ValidationError(f"Malformed Stripe event: {e}") from e

    def apply_webhook_event(self, event: StripeEvent) -> PaymentWebhookResult:
        if isinstance(event, PaymentIntentSucceededEvent):
            intent = event.data.object
            payment = self.find_by_intent(intent.id, intent.metadata)
            if payment is None:
                logger.warning(f"No payment found for succeeded intent {intent.id}")
                return PaymentWebhookResult("payment_not_found")
            payment, changed = self.transition(payment.id, PaymentStatus.COMPLETED, {
                "stripe_payment_intent_id": intent.id,
                "stripe_charge_id": intent.latest_charge,
                "transaction_id": intent.id,
            })
            if changed:
                return PaymentWebhookResult("completed", payment)
            return PaymentWebhookResult("noop", payment)

        if isinstance(event, PaymentIntentFailedEvent):
            intent = event.data.object
            payment = self.find_by_intent(intent.id, intent.metadata)
            if payment is None:
                logger.warning(f"No payment found for failed intent {intent.id}")
                return PaymentWebhookResult("payment_not_found")
            message = (intent.last_payment_error.message if intent.last_payment_error else None) or "Payment failed"
            payment, changed = self.transition(payment.id, PaymentStatus.FAILED, {
                "stripe_payment_intent_id": intent.id,
                "failure_reason": message,
            })
            return PaymentWebhookResult("failed" if changed else "noop", payment)

        logger.info(f"Ignoring Stripe event type {event.type}")
        return PaymentWebhookResult("ignored")

    def handle_webhook(self, signature: Optional[str], raw_body: bytes) -> PaymentWebhookResult:
        event = self.verify_webhook(signature, raw_body)
        return self.apply_webhook_event(event)
