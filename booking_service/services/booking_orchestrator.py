"""
Booking Orchestrator

Runs the booking lifecycle across the supplier, the payment gateway and the
local store:

    quote -> persist_pending -> capture_payment -> commit_supplier -> confirm

Creation is a saga: when a later step fails, earlier side effects are
compensated in reverse (captured money refunded, PENDING booking marked
FAILED). Every public operation returns a ``BookingResult``; errors are
reported on the result, not raised.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import (
    AvailabilityError,
    BookingError,
    OrchestrationError,
    PaymentError,
    PolicyError,
    SupplierCommitError,
    ValidationError,
)
from ..models.booking import Booking, BookingItem, BookingStatus, BookingType
from ..models.payment import Payment, PaymentStatus
from ..schemas.booking import (
    CancellationPolicy,
    FlightBookingRequest,
    HotelBookingRequest,
    ModificationPolicy,
    ModifyBookingRequest,
)
from ..schemas.webhook import BookingComWebhookPayload, SkyscannerWebhookPayload
from ..utils.clock import utcnow
from .booking_store import BookingStore
from .payment_service import PaymentService
from .policy_engine import CENTS, calculate_refund_amount, check_cancellation, check_modification
from .providers import (
    AvailabilityQuery,
    InventoryProvider,
    ProviderError,
    ReservationRequest,
)
from .saga import Saga, SagaStep

logger = logging.getLogger(__name__)

SUPPLIER_STATUS_MAP = {
    "confirmed": BookingStatus.CONFIRMED,
    "cancelled": BookingStatus.CANCELLED,
    "canceled": BookingStatus.CANCELLED,
    "completed": BookingStatus.COMPLETED,
}


@dataclass
class BookingResult:
    success: bool
    booking: Optional[Booking] = None
    error: Optional[BookingError] = None
    refund_amount: Optional[Decimal] = None
    refund_pending: bool = False
    payment: Optional[Payment] = None
    compensated: bool = False
    compensation_failed: bool = False
    action: Optional[str] = None


def _start_of_day(value: Optional[date]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


class BookingOrchestrator:

    def __init__(
        self,
        db: Session,
        payments: PaymentService,
        hotel_provider: InventoryProvider,
        flight_provider: InventoryProvider,
        notifier,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.store = BookingStore(db)
        self.payments = payments
        self.hotel_provider = hotel_provider
        self.flight_provider = flight_provider
        self.notifier = notifier
        self.clock = clock
        self._supplier_handlers = {
            "booking.com": self._handle_booking_com_webhook,
            "skyscanner": self._handle_skyscanner_webhook,
        }

    def _guard(self, operation: str, func, *args) -> BookingResult:
        try:
            return func(*args)
        except BookingError as e:
            self.db.rollback()
            logger.warning(f"{operation} failed: [{e.code}] {e.message}")
            return BookingResult(success=False, error=e)
        except Exception:
            self.db.rollback()
            logger.exception(f"Unexpected error during {operation}")
            return BookingResult(success=False, error=OrchestrationError(f"Unexpected error during {operation}"))

    # ================================
    # Creation
    # ================================

    def create_hotel_booking(self, user_id: str, data: HotelBookingRequest) -> BookingResult:
        return self._guard("hotel booking", self._create_hotel_booking, user_id, data)

    def create_flight_booking(self, user_id: str, data: FlightBookingRequest) -> BookingResult:
        return self._guard("flight booking", self._create_flight_booking, user_id, data)

    def _create_hotel_booking(self, user_id: str, data: HotelBookingRequest) -> BookingResult:
        provider = self.hotel_provider

        def quote(ctx):
            try:
                result = provider.check_availability(AvailabilityQuery(
                    item_id=data.hotel_id,
                    sub_item_id=data.room_id,
                    start_date=data.start_date,
                    end_date=data.end_date,
                    adults=data.guest_details.adults,
                    children=data.guest_details.children,
                    quantity=data.room_count,
                ))
            except ProviderError as e:
                raise AvailabilityError(f"Could not check hotel availability: {e.message}") from e
            if not result.available or result.price <= 0:
                raise AvailabilityError("Selected room is not available for these dates")
            return result

        def build(ctx):
            result = ctx["quote"]
            currency = (result.currency or settings.default_currency).upper()
            unit_price = Decimal(str(result.price)).quantize(CENTS)
            total = (unit_price * data.room_count).quantize(CENTS)

            booking = self._new_booking(user_id, BookingType.ACCOMMODATION, data, provider.name, total, currency)
            booking.cancellation_policy = self._cancellation_policy(result)
            item = BookingItem(
                item_type="room",
                item_name="Hotel Room",
                description=result.details.get("room_name"),
                room_type=result.details.get("room_type"),
                room_count=data.room_count,
                unit_price=unit_price,
                quantity=data.room_count,
                total_price=total,
                currency=currency,
                vendor_details={"hotel_id": data.hotel_id, "room_id": data.room_id},
            )
            return booking, [item]

        def reservation(booking: Booking, ctx) -> ReservationRequest:
            return ReservationRequest(
                item_id=data.hotel_id,
                sub_item_id=data.room_id,
                start_date=data.start_date,
                end_date=data.end_date,
                quantity=data.room_count,
                guests=[g.model_dump(mode="json") for g in data.guest_details.guests],
                contact_email=data.contact_email,
                contact_phone=data.contact_phone,
                special_requests=data.special_requests,
                booking_reference=booking.booking_reference,
            )

        return self._run_creation("hotel-booking", provider, user_id, data, quote, build, reservation, "Hotel booking")

    def _create_flight_booking(self, user_id: str, data: FlightBookingRequest) -> BookingResult:
        provider = self.flight_provider
        legs = [("Outbound Flight", data.outbound_flight_id)]
        if data.return_flight_id:
            legs.append(("Return Flight", data.return_flight_id))

        def quote(ctx):
            quotes = []
            for name, flight_id in legs:
                try:
                    result = provider.check_availability(AvailabilityQuery(
                        item_id=flight_id,
                        start_date=data.start_date,
                        end_date=data.end_date,
                        adults=data.guest_details.adults,
                        children=data.guest_details.children,
                    ))
                except ProviderError as e:
                    raise AvailabilityError(f"Could not check flight {flight_id}: {e.message}") from e
                if not result.available:
                    raise AvailabilityError(f"Flight {flight_id} is no longer available")
                quotes.append((name, flight_id, result))
            return quotes

        def build(ctx):
            quotes = ctx["quote"]
            currency = (quotes[0][2].currency or settings.default_currency).upper()
            items = []
            for name, flight_id, result in quotes:
                summary = result.details.get("summary") or {}
                price = Decimal(str(result.price)).quantize(CENTS)
                items.append(BookingItem(
                    item_type="flight",
                    item_name=name,
                    flight_number=summary.get("flight_number"),
                    airline=summary.get("airline"),
                    departure_airport=summary.get("departure_airport") or (
                        data.origin_airport if name == "Outbound Flight" else data.destination_airport
                    ),
                    arrival_airport=summary.get("arrival_airport") or (
                        data.destination_airport if name == "Outbound Flight" else data.origin_airport
                    ),
                    departure_time=summary.get("departure_time"),
                    arrival_time=summary.get("arrival_time"),
                    seat_class="economy",
                    unit_price=price,
                    quantity=1,
                    total_price=price,
                    currency=currency,
                    vendor_details={"flight_id": flight_id},
                ))
            total = sum((item.total_price for item in items), Decimal("0")).quantize(CENTS)

            booking = self._new_booking(user_id, BookingType.FLIGHT, data, provider.name, total, currency)
            booking.cancellation_policy = self._cancellation_policy(quotes[0][2])
            return booking, items

        def reservation(booking: Booking, ctx) -> ReservationRequest:
            return ReservationRequest(
                item_id=data.outbound_flight_id,
                related_item_ids=[data.return_flight_id] if data.return_flight_id else [],
                start_date=data.start_date,
                end_date=data.end_date,
                guests=[g.model_dump(mode="json") for g in data.guest_details.guests],
                contact_email=data.contact_email,
                contact_phone=data.contact_phone,
                special_requests=data.special_requests,
                booking_reference=booking.booking_reference,
            )

        return self._run_creation("flight-booking", provider, user_id, data, quote, build, reservation, "Flight booking")

    def _new_booking(self, user_id, booking_type: BookingType, data, provider_name: str, total: Decimal, currency: str) -> Booking:
        start = _start_of_day(data.start_date)
        deadline = start - timedelta(hours=settings.modification_deadline_hours)
        return Booking(
            user_id=user_id,
            trip_id=data.trip_id,
            type=booking_type.value,
            provider_name=provider_name,
            start_date=start,
            end_date=_start_of_day(data.end_date),
            guest_count=data.guest_details.total,
            guest_details=data.guest_details.model_dump(mode="json"),
            total_amount=total,
            taxes=Decimal("0"),
            fees=Decimal("0"),
            currency=currency,
            contact_email=data.contact_email,
            contact_phone=data.contact_phone,
            special_requests=data.special_requests,
            modification_policy=ModificationPolicy(
                allow_modifications=True,
                modification_deadline=deadline,
            ).model_dump(mode="json"),
        )

    @staticmethod
    def _cancellation_policy(quote) -> Optional[dict]:
        """Policy document from what the supplier quoted, if it said anything."""
        details = quote.details or {}
        if not (quote.cancellation_deadline or details.get("non_refundable") or details.get("cancellation_fees")):
            return None
        try:
            policy = CancellationPolicy(
                free_cancellation_until=quote.cancellation_deadline,
                non_refundable=bool(details.get("non_refundable")),
                cancellation_fees=details.get("cancellation_fees") or [],
            )
        except PydanticValidationError:
            logger.warning(f"Ignoring malformed supplier cancellation terms: {details.get('cancellation_fees')!r}")
            policy = CancellationPolicy(free_cancellation_until=quote.cancellation_deadline)
        return policy.model_dump(mode="json")

    def _run_creation(self, saga_name, provider, user_id, data, quote, build, reservation, description) -> BookingResult:

        def persist_pending(ctx):
            booking, items = build(ctx)
            booking = self.store.create_booking(booking, items)
            ctx["booking_id"] = booking.id
            ctx["booking_reference"] = booking.booking_reference
            return booking

        def fail_pending(ctx, error):
            self.db.rollback()
            reason = error.message if isinstance(error, BookingError) else f"Unexpected error: {error}"
            if "refund_error" in ctx:
                reason += f"; refund failed, manual review required ({ctx['refund_error']})"
            elif "refund" in ctx:
                reason += "; payment refunded"
            if "open_reservation" in ctx:
                reason += f"; supplier reservation {ctx['open_reservation']} left open, manual cancellation required"
            self.store.apply_transition(
                ctx["booking_id"], BookingStatus.FAILED, reason,
                allowed_from={BookingStatus.PENDING},
            )

        def capture_payment(ctx):
            booking = ctx["persist_pending"]
            payment = self.payments.process_payment(
                booking.id,
                booking.total_amount,
                booking.currency,
                data.payment_method_id,
                f"{description} - {booking.booking_reference}",
                user_id=user_id,
            )
            ctx["payment"] = payment
            if payment.status == PaymentStatus.PENDING.value:
                raise PaymentError("Payment requires additional customer action", "payment_requires_action")
            if payment.status != PaymentStatus.COMPLETED.value:
                raise PaymentError(payment.failure_reason or "Payment was not completed")
            return payment

        def refund_capture(ctx, error):
            self.db.rollback()
            payment = ctx["capture_payment"]
            try:
                ctx["refund"] = self.payments.process_refund(
                    payment.id,
                    idempotency_key=f"compensate-{ctx['booking_id']}",
                    reason="supplier_commit_failed",
                )
            except BookingError as e:
                ctx["refund_error"] = e.message
                logger.error(f"Refund of payment {payment.id} after failed booking {ctx['booking_reference']} failed: {e.message}")
                raise

        def commit_supplier(ctx):
            booking = ctx["persist_pending"]
            try:
                return provider.commit_reservation(reservation(booking, ctx))
            except ProviderError as e:
                raise SupplierCommitError(f"Supplier could not confirm the reservation: {e.message}") from e

        def flag_open_reservation(ctx, error):
            # Suppliers expose no cancel call; the reservation id goes into the FAILED history
            supplier_booking_id = ctx["commit_supplier"].supplier_booking_id
            ctx["open_reservation"] = supplier_booking_id
            logger.error(
                f"Supplier reservation {supplier_booking_id} for booking {ctx['booking_reference']} "
                f"was not confirmed locally and needs manual cancellation"
            )

        def confirm(ctx):
            confirmation = ctx["commit_supplier"]
            return self.store.apply_transition(
                ctx["booking_id"],
                BookingStatus.CONFIRMED,
                "Booking confirmed with supplier",
                allowed_from={BookingStatus.PENDING},
                updates={
                    "provider_booking_id": confirmation.supplier_booking_id,
                    "external_reference": confirmation.confirmation_code,
                },
            )

        saga = Saga(saga_name, [
            SagaStep("quote", quote),
            SagaStep("persist_pending", persist_pending, fail_pending),
            SagaStep("capture_payment", capture_payment, refund_capture),
            SagaStep("commit_supplier", commit_supplier, flag_open_reservation),
            SagaStep("confirm", confirm),
        ])
        outcome = saga.execute({})
        ctx = outcome.context

        if outcome.success:
            booking = self.store.get(ctx["booking_id"], with_items=True, with_payments=True)
            self.notifier.send_booking_confirmation(booking)
            return BookingResult(success=True, booking=booking, payment=ctx.get("payment"))

        self.db.rollback()
        error = outcome.error
        if not isinstance(error, BookingError):
            logger.error(f"Saga {saga_name} crashed at {outcome.failed_step}", exc_info=error)
            error = OrchestrationError(f"Unexpected error during {outcome.failed_step}")
        if outcome.compensation_errors:
            logger.error(
                f"Booking {ctx.get('booking_reference')} left needing manual review: "
                f"compensation failed for {sorted(outcome.compensation_errors)}"
            )

        booking = None
        if "booking_id" in ctx:
            booking = self.store.find_by_id(ctx["booking_id"], with_items=True, with_payments=True)
        return BookingResult(
            success=False,
            booking=booking,
            error=error,
            payment=ctx.get("payment"),
            compensated=bool(outcome.compensated),
            compensation_failed=bool(outcome.compensation_errors),
        )

    # ================================
    # Cancellation and modification
    # ================================

    def cancel_booking(self, booking_id: str, user_id: str, reason: Optional[str] = None) -> BookingResult:
        return self._guard("cancellation", self._cancel_booking, booking_id, user_id, reason)

    def _cancel_booking(self, booking_id: str, user_id: str, reason: Optional[str]) -> BookingResult:
        booking = self.store.get(booking_id, user_id=user_id)
        if booking.status != BookingStatus.CONFIRMED.value:
            raise PolicyError("Only confirmed bookings can be cancelled", "invalid_state")

        decision = check_cancellation(booking, self.clock())
        if not decision.allowed:
            raise PolicyError(decision.reason or "Cancellation not allowed")

        refund_amount = calculate_refund_amount(booking.total_amount, decision.fee_percentage)
        payment = self.store.latest_completed_payment(booking.id)
        owed = refund_amount if refund_amount > 0 and payment is not None else None

        # Claim the cancellation before any money moves; a concurrent writer makes this raise
        self.store.apply_transition(
            booking.id,
            BookingStatus.CANCELLED,
            reason or "User cancellation",
            actor=user_id,
            allowed_from={BookingStatus.CONFIRMED},
            updates={"pending_refund_amount": owed},
            idempotent=False,
        )

        refund_pending = False
        if owed is not None:
            refund_pending = not self._issue_cancellation_refund(booking.id, payment.id, owed)

        booking = self.store.get(booking.id, with_items=True, with_payments=True)
        refunded = owed if owed is not None else Decimal("0.00")
        self.notifier.send_cancellation_confirmation(booking, refunded)
        return BookingResult(success=True, booking=booking, refund_amount=refunded, refund_pending=refund_pending)

    def _issue_cancellation_refund(self, booking_id: str, payment_id: str, amount: Decimal) -> bool:
        """
        Refund a cancelled booking. On failure the amount stays in
        ``pending_refund_amount`` for the reconciliation worker.
        """
        try:
            self.payments.process_refund(
                payment_id,
                amount,
                idempotency_key=f"cancel-{booking_id}",
                reason="requested_by_customer",
            )
        except BookingError as e:
            self.db.rollback()
            logger.error(f"Cancellation refund of {amount} for booking {booking_id} failed: {e.message}")
            self.store.update_booking(
                booking_id, reason=f"Refund of {amount} failed, manual review required: {e.message}"
            )
            return False

        self.store.update_booking(booking_id, {"pending_refund_amount": None})
        return True

    def modify_booking(self, booking_id: str, user_id: str, modifications: ModifyBookingRequest) -> BookingResult:
        return self._guard("modification", self._modify_booking, booking_id, user_id, modifications)

    def _modify_booking(self, booking_id: str, user_id: str, modifications: ModifyBookingRequest) -> BookingResult:
        booking = self.store.get(booking_id, user_id=user_id)
        if booking.status != BookingStatus.CONFIRMED.value:
            raise PolicyError("Only confirmed bookings can be modified", "invalid_state")

        decision = check_modification(booking, self.clock())
        if not decision.allowed:
            raise PolicyError(decision.reason or "Modification not allowed")

        updates = {}
        if modifications.new_start_date is not None:
            updates["start_date"] = _start_of_day(modifications.new_start_date)
        if modifications.new_end_date is not None:
            updates["end_date"] = _start_of_day(modifications.new_end_date)
        if modifications.special_requests is not None:
            updates["special_requests"] = modifications.special_requests

        start = updates.get("start_date", booking.start_date)
        end = updates.get("end_date", booking.end_date)
        if end is not None and end < start:
            raise ValidationError("End date must not be before start date")

        self.store.apply_transition(
            booking.id,
            BookingStatus.CONFIRMED,
            "Booking modified",
            actor=user_id,
            allowed_from={BookingStatus.CONFIRMED},
            updates=updates,
            idempotent=False,
        )
        booking = self.store.get(booking.id, with_items=True, with_payments=True)
        self.notifier.send_modification_confirmation(booking)
        return BookingResult(success=True, booking=booking)

    # ================================
    # Reads
    # ================================

    def get_booking(self, booking_id: str, user_id: str) -> BookingResult:
        return self._guard("booking lookup", self._get_booking, booking_id, user_id)

    def _get_booking(self, booking_id: str, user_id: str) -> BookingResult:
        booking = self.store.get(booking_id, user_id=user_id, with_items=True, with_payments=True)
        return BookingResult(success=True, booking=booking)

    def list_user_bookings(self, user_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Booking], int]:
        return self.store.list_by_user(user_id, limit, offset)

    # ================================
    # Supplier webhooks
    # ================================

    @property
    def supplier_names(self) -> List[str]:
        return list(self._supplier_handlers)

    def process_supplier_webhook(self, supplier_name: str, payload: dict) -> BookingResult:
        handler = self._supplier_handlers.get((supplier_name or "").lower())
        if handler is None:
            logger.warning(f"Unknown webhook provider: {supplier_name}")
            return BookingResult(success=True, action="unknown_supplier")
        return self._guard(f"{supplier_name} webhook", handler, payload)

    def _handle_booking_com_webhook(self, payload: dict) -> BookingResult:
        try:
            data = BookingComWebhookPayload.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed Booking.com webhook: {e.errors()[0]['msg']}") from e
        return self._apply_supplier_status(self.hotel_provider.name, data.booking_id, data.status)

    def _handle_skyscanner_webhook(self, payload: dict) -> BookingResult:
        try:
            data = SkyscannerWebhookPayload.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed Skyscanner webhook: {e.errors()[0]['msg']}") from e
        return self._apply_supplier_status(self.flight_provider.name, data.itinerary_id, data.status)

    def _apply_supplier_status(self, provider_name: str, supplier_booking_id: str, status: str) -> BookingResult:
        booking = self.store.find_by_external_reference(supplier_booking_id, provider_name)
        if booking is None:
            logger.warning(f"Booking not found for {provider_name} webhook: {supplier_booking_id}")
            return BookingResult(success=True, action="booking_not_found")

        status = status.lower()
        target = SUPPLIER_STATUS_MAP.get(status)
        if target is None:
            logger.info(f"Ignoring {provider_name} status '{status}' for booking {booking.booking_reference}")
            return BookingResult(success=True, booking=booking, action="ignored_status")

        try:
            outcome = self.store.apply_transition(booking.id, target, f"Webhook update: {status}", actor="system")
        except PolicyError as e:
            logger.warning(
                f"Rejected {provider_name} update '{status}' for booking {booking.booking_reference}: {e.message}"
            )
            return BookingResult(success=True, booking=booking, action="rejected_transition")

        if not outcome.changed:
            return BookingResult(success=True, booking=outcome.booking, action="noop")

        self.notifier.send_status_update(outcome.booking)
        return BookingResult(success=True, booking=outcome.booking, action="status_updated")
