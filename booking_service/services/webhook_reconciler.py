"""
Webhook Reconciler

Second entry point into bookings and payments, next to the synchronous
booking flow:
1. Verifies the delivery (Stripe signature, supplier HMAC) before any lookup
2. Records it in webhook_event_logs, deduplicated by provider + event id
3. Applies idempotent transitions through the payment service / orchestrator
4. Refunds payments that succeed after their booking already failed

Failed deliveries stay in the log and are retried by the background worker,
as are deliveries left PROCESSING past their lease by a crashed process.
"""

import hmac
import json
import time
import hashlib
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import BookingError, SignatureError, ValidationError
from ..models.booking import BookingStatus
from ..models.payment import Payment, PaymentStatus
from ..models.webhook_event import WebhookEventLog, WebhookEventStatus
from ..schemas.webhook import StripeEvent, UnhandledStripeEvent, parse_stripe_event
from ..utils.clock import utcnow
from ..utils.db_helpers import get_pending_with_skip_locked
from .booking_orchestrator import BookingOrchestrator
from .booking_store import BookingStore
from .payment_service import PaymentService

logger = logging.getLogger(__name__)

STRIPE = "stripe"

FINAL_STATUSES = {
    WebhookEventStatus.PROCESSED.value,
    WebhookEventStatus.SKIPPED.value,
    WebhookEventStatus.IGNORED.value,
}


@dataclass
class WebhookOutcome:
    status: str
    action: Optional[str] = None
    event_log_id: Optional[str] = None
    booking_id: Optional[str] = None


def compute_payload_hash(payload: dict) -> str:
    """SHA256 of the key-sorted JSON payload."""
    normalized = json.dumps(payload, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(normalized.encode()).hexdigest()


def sign_supplier_payload(secret: str, raw_body: bytes, timestamp: Optional[str] = None) -> str:
    """Hex HMAC-SHA256 over the raw body, or over "<timestamp>.<body>" when timestamped."""
    message = raw_body if timestamp is None else timestamp.encode() + b"." + raw_body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class WebhookReconciler:

    def __init__(
        self,
        db: Session,
        payments: PaymentService,
        orchestrator: BookingOrchestrator,
        supplier_secrets: Optional[Dict[str, str]] = None,
        replay_window_seconds: Optional[int] = None,
        max_attempts: Optional[int] = None,
        processing_lease_seconds: Optional[int] = None
    ):
        self.db = db
        self.payments = payments
        self.orchestrator = orchestrator
        self.store = BookingStore(db)
        self.supplier_secrets = supplier_secrets if supplier_secrets is not None else settings.supplier_secret_map
        self.replay_window_seconds = replay_window_seconds or settings.supplier_webhook_replay_window_seconds
        self.max_attempts = max_attempts or settings.webhook_max_attempts
        self.processing_lease = timedelta(
            seconds=processing_lease_seconds or settings.webhook_processing_lease_seconds
        )

    # ================================
    # Stripe
    # ================================

    def handle_stripe(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        """
        Verify and apply a Stripe delivery.

        Raises SignatureError (nothing read or written) when the signature
        does not verify.
        """
        event = self.payments.verify_webhook(signature, raw_body)
        payload = json.loads(raw_body)
        external_id = None if isinstance(event, UnhandledStripeEvent) else event.data.object.id

        event_log, duplicate = self._record(STRIPE, event.id, event.type, external_id, payload)
        if duplicate:
            return WebhookOutcome(WebhookEventStatus.SKIPPED.value, "duplicate", event_log.id)

        return self._process(event_log.id, lambda: self._apply_stripe(event))

    def _apply_stripe(self, event: StripeEvent) -> Tuple[str, Optional[str]]:
        result = self.payments.apply_webhook_event(event)
        payment = result.payment
        if payment is None:
            return result.action, None

        if payment.status == PaymentStatus.COMPLETED.value:
            refunded = self._refund_late_payment(payment, newly_completed=result.action == "completed")
            if refunded:
                return "late_payment_refunded", payment.booking_id

        return result.action, payment.booking_id

    def _refund_late_payment(self, payment: Payment, newly_completed: bool) -> bool:
        """
        Money captured for a booking that will never be fulfilled goes back.

        Any captured payment on a FAILED booking is refunded. On a CANCELLED
        booking only a capture first learned from this webhook is refunded;
        one captured through the booking flow was settled by the cancellation.
        """
        booking = self.store.find_by_id(payment.booking_id)
        if booking is None:
            return False

        status = BookingStatus(booking.status)
        if status == BookingStatus.FAILED or (status == BookingStatus.CANCELLED and newly_completed):
            logger.warning(
                f"Payment {payment.id} succeeded for {status.value} booking "
                f"{booking.booking_reference}, refunding"
            )
            self.payments.process_refund(
                payment.id,
                idempotency_key=f"late-{payment.id}",
                reason="booking_not_fulfilled",
            )
            return True
        return False

    # ================================
    # Suppliers
    # ================================

    def verify_supplier_signature(
        self,
        provider: str,
        raw_body: bytes,
        signature: Optional[str],
        timestamp: Optional[str] = None
    ):
        secret = self.supplier_secrets.get(provider)
        if not secret:
            logger.warning(f"Rejected {provider} webhook: no signing secret configured")
            raise SignatureError(f"No webhook secret configured for {provider}")
        if not signature:
            logger.warning(f"Rejected {provider} webhook: missing signature")
            raise SignatureError("Missing X-Supplier-Signature header")

        if timestamp is not None:
            try:
                sent_at = int(timestamp)
            except ValueError:
                raise SignatureError("Invalid X-Supplier-Timestamp header")
            age = abs(int(time.time()) - sent_at)
            if age > self.replay_window_seconds:
                logger.warning(f"Rejected {provider} webhook: timestamp outside replay window ({age}s)")
                raise SignatureError("Webhook timestamp outside the allowed window")

        expected = sign_supplier_payload(secret, raw_body, timestamp)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning(f"Rejected {provider} webhook: invalid signature")
            raise SignatureError("Invalid webhook signature")

    def handle_supplier(
        self,
        provider: str,
        raw_body: bytes,
        signature: Optional[str],
        timestamp: Optional[str] = None
    ) -> WebhookOutcome:
        provider = (provider or "").lower()
        if provider not in self.orchestrator.supplier_names:
            logger.warning(f"Unknown webhook provider: {provider}")
            return WebhookOutcome(WebhookEventStatus.IGNORED.value, "unknown_supplier")

        self.verify_supplier_signature(provider, raw_body, signature, timestamp)

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Webhook body is not valid JSON: {e}")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        payload_hash = compute_payload_hash(payload)
        event_id = payload.get("event_id") or payload.get("eventId") or f"sha256:{payload_hash}"
        external_id = payload.get("booking_id") or payload.get("itineraryId") or payload.get("itinerary_id")
        event_type = f"status.{payload.get('status')}" if payload.get("status") else None

        event_log, duplicate = self._record(provider, str(event_id), event_type, external_id, payload, payload_hash)
        if duplicate:
            return WebhookOutcome(WebhookEventStatus.SKIPPED.value, "duplicate", event_log.id)

        return self._process(event_log.id, lambda: self._apply_supplier(provider, payload))

    def _apply_supplier(self, provider: str, payload: dict) -> Tuple[str, Optional[str]]:
        result = self.orchestrator.process_supplier_webhook(provider, payload)
        if not result.success:
            raise result.error
        return result.action, result.booking.id if result.booking else None

    # ================================
    # Event log
    # ================================

    def _record(
        self,
        provider: str,
        event_id: str,
        event_type: Optional[str],
        external_id: Optional[str],
        payload: dict,
        payload_hash: Optional[str] = None
    ) -> Tuple[WebhookEventLog, bool]:
        """Store the delivery. Returns (log, is_duplicate)."""
        existing = self._find_event(provider, event_id)
        if existing is not None:
            if existing.status in FINAL_STATUSES:
                logger.info(f"Duplicate {provider} webhook {event_id} ({existing.status})")
                return existing, True
            if existing.status == WebhookEventStatus.PROCESSING.value and not self._lease_expired(existing):
                logger.info(f"Duplicate {provider} webhook {event_id} still being processed")
                return existing, True
            return existing, False

        event_log = WebhookEventLog(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            external_id=external_id,
            payload_json=json.dumps(payload),
            payload_hash=payload_hash or compute_payload_hash(payload),
            status=WebhookEventStatus.RECEIVED.value,
            received_at=utcnow(),
        )
        self.db.add(event_log)
        try:
            self.db.commit()
        except IntegrityError:
            # Same event inserted concurrently
            self.db.rollback()
            return self._find_event(provider, event_id), True

        logger.info(f"Received {provider} webhook: type={event_type}, event_id={event_id}")
        return event_log, False

    def _lease_expired(self, event_log: WebhookEventLog) -> bool:
        """A PROCESSING row untouched for longer than the lease was abandoned mid-flight."""
        stamp = event_log.updated_at or event_log.received_at
        return stamp is None or stamp < utcnow() - self.processing_lease

    def _find_event(self, provider: str, event_id: str) -> Optional[WebhookEventLog]:
        return (
            self.db.query(WebhookEventLog)
            .filter(WebhookEventLog.provider == provider, WebhookEventLog.event_id == event_id)
            .populate_existing()
            .first()
        )

    def _process(self, event_log_id: str, apply: Callable[[], Tuple[str, Optional[str]]]) -> WebhookOutcome:
        event_log = self.db.query(WebhookEventLog).filter(WebhookEventLog.id == event_log_id).first()
        event_log.status = WebhookEventStatus.PROCESSING.value
        event_log.attempts = (event_log.attempts or 0) + 1
        event_log.updated_at = utcnow()
        label = f"{event_log.provider}/{event_log.event_id}"
        self.db.commit()

        try:
            action, booking_id = apply()
        except ValidationError as e:
            # Malformed payloads will not improve on retry
            return self._finish(event_log_id, WebhookEventStatus.IGNORED, error=e.message)
        except BookingError as e:
            logger.error(f"Webhook {label} failed: [{e.code}] {e.message}")
            return self._finish(event_log_id, WebhookEventStatus.FAILED, error=e.message)
        except Exception as e:
            logger.exception(f"Unexpected error applying webhook {label}")
            return self._finish(event_log_id, WebhookEventStatus.FAILED, error=str(e))

        status = WebhookEventStatus.PROCESSED
        if action in ("ignored", "unknown_supplier", "ignored_status"):
            status = WebhookEventStatus.IGNORED
        return self._finish(event_log_id, status, action=action, booking_id=booking_id)

    def _finish(
        self,
        event_log_id: str,
        status: WebhookEventStatus,
        action: Optional[str] = None,
        booking_id: Optional[str] = None,
        error: Optional[str] = None
    ) -> WebhookOutcome:
        self.db.rollback()
        event_log = self.db.query(WebhookEventLog).filter(WebhookEventLog.id == event_log_id).first()
        event_log.status = status.value
        event_log.result_action = action
        event_log.result_booking_id = booking_id
        event_log.error_message = error
        event_log.processed_at = utcnow()
        self.db.commit()
        return WebhookOutcome(status.value, action, event_log_id, booking_id)

    # ================================
    # Retry
    # ================================

    def retry_failed(self, limit: int = 50) -> int:
        """
        Re-apply FAILED deliveries, and PROCESSING ones whose lease expired,
        that have attempts left. Returns how many now succeeded.
        """
        abandoned = and_(
            WebhookEventLog.status == WebhookEventStatus.PROCESSING.value,
            WebhookEventLog.updated_at < utcnow() - self.processing_lease,
        )
        events = get_pending_with_skip_locked(
            self.db,
            WebhookEventLog,
            and_(
                or_(WebhookEventLog.status == WebhookEventStatus.FAILED.value, abandoned),
                WebhookEventLog.attempts < self.max_attempts,
            ),
            order_by=WebhookEventLog.received_at,
            limit=limit,
        )
        pending = [(e.id, e.provider, e.payload_json) for e in events]
        self.db.commit()

        recovered = 0
        for event_log_id, provider, payload_json in pending:
            payload = json.loads(payload_json)
            if provider == STRIPE:
                event = parse_stripe_event(payload)
                outcome = self._process(event_log_id, lambda: self._apply_stripe(event))
            else:
                outcome = self._process(event_log_id, lambda: self._apply_supplier(provider, payload))
            if outcome.status != WebhookEventStatus.FAILED.value:
                recovered += 1

        if pending:
            logger.info(f"Retried {len(pending)} failed or abandoned webhooks, {recovered} recovered")
        return recovered
