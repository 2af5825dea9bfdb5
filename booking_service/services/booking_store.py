"""
Booking Store

Persistence for bookings, their items and payments. Relation loading is
explicit per call (``with_items`` / ``with_payments``). Every status change
goes through ``apply_transition``, which re-reads the persisted row,
validates against its *current* status and commits under the optimistic
version check, retrying when a concurrent writer wins.
"""

import uuid
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..errors import ConcurrencyError, NotFoundError, PolicyError
from ..models.booking import Booking, BookingItem, BookingStatus, BOOKING_TRANSITIONS
from ..models.payment import Payment, PaymentStatus
from ..utils.clock import utcnow, isoformat
from ..utils.db_helpers import acquire_row_lock
from ..utils.logging_config import get_logger

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

REFERENCE_ATTEMPTS = 5


@dataclass
class TransitionOutcome:
    booking: Booking
    changed: bool
    previous_status: str


def history_entry(status: str, reason: Optional[str], actor: str) -> dict:
    return {
        "status": status,
        "timestamp": isoformat(utcnow()),
        "reason": reason,
        "updated_by": actor,
    }


class BookingStore:

    def __init__(self, db: Session):
        self.db = db

    # ================================
    # Creation
    # ================================

    def generate_reference(self) -> str:
        return f"{settings.booking_reference_prefix}-{uuid.uuid4().hex[:8].upper()}"

    def create_booking(self, booking: Booking, items: Iterable[BookingItem]) -> Booking:
        """Persist a PENDING booking and its items in one transaction."""
        items = list(items)
        booking.status = BookingStatus.PENDING.value
        booking.status_history = [history_entry(BookingStatus.PENDING.value, "Booking created", "system")]

        for attempt in range(REFERENCE_ATTEMPTS):
            booking.booking_reference = self.generate_reference()
            booking.items = items
            self.db.add(booking)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.warning(f"Booking reference collision on {booking.booking_reference}, regenerating")
                continue

            structured_logger.booking_created(
                booking.id, booking.booking_reference, booking.total_amount, booking.currency
            )
            return booking

        raise ConcurrencyError("Could not allocate a unique booking reference")

    # ================================
    # Reads
    # ================================

    def _query(self, with_items: bool = False, with_payments: bool = False):
        query = self.db.query(Booking)
        if with_items:
            query = query.options(selectinload(Booking.items))
        if with_payments:
            query = query.options(selectinload(Booking.payments))
        return query

    def find_by_id(
        self,
        booking_id: str,
        user_id: Optional[str] = None,
        with_items: bool = False,
        with_payments: bool = False
    ) -> Optional[Booking]:
        query = self._query(with_items, with_payments).filter(Booking.id == booking_id)
        if user_id is not None:
            query = query.filter(Booking.user_id == user_id)
        return query.populate_existing().first()

    def get(
        self,
        booking_id: str,
        user_id: Optional[str] = None,
        with_items: bool = False,
        with_payments: bool = False
    ) -> Booking:
        booking = self.find_by_id(booking_id, user_id, with_items, with_payments)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    def find_by_reference(self, booking_reference: str) -> Optional[Booking]:
        return self.db.query(Booking).filter(Booking.booking_reference == booking_reference).first()

    def find_by_external_reference(self, provider_booking_id: str, provider_name: Optional[str] = None) -> Optional[Booking]:
        """Look up a booking by the supplier's own booking id."""
        query = self.db.query(Booking).filter(Booking.provider_booking_id == provider_booking_id)
        if provider_name:
            query = query.filter(Booking.provider_name == provider_name)
        return query.populate_existing().first()

    def list_by_user(self, user_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Booking], int]:
        """Newest first, with items loaded."""
        base = self.db.query(Booking).filter(Booking.user_id == user_id)
        total = base.count()
        bookings = (
            base.options(selectinload(Booking.items))
            .order_by(Booking.created_at.desc(), Booking.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return bookings, total

    def find_stale_pending(self, older_than, limit: int = 50) -> List[Booking]:
        return (
            self.db.query(Booking)
            .filter(Booking.status == BookingStatus.PENDING.value, Booking.created_at < older_than)
            .order_by(Booking.created_at)
            .limit(limit)
            .all()
        )

    def find_finished_confirmed(self, now, limit: int = 50) -> List[Booking]:
        """CONFIRMED bookings whose end (or, with no end, start) lies in the past."""
        finished_at = func.coalesce(Booking.end_date, Booking.start_date)
        return (
            self.db.query(Booking)
            .filter(Booking.status == BookingStatus.CONFIRMED.value, finished_at < now)
            .order_by(finished_at)
            .limit(limit)
            .all()
        )

    def find_pending_cancellation_refunds(self, older_than, limit: int = 50) -> List[Booking]:
        """CANCELLED bookings whose cancellation refund has not gone through yet."""
        return (
            self.db.query(Booking)
            .filter(
                Booking.status == BookingStatus.CANCELLED.value,
                Booking.pending_refund_amount.isnot(None),
                Booking.updated_at < older_than,
            )
            .order_by(Booking.updated_at)
            .limit(limit)
            .all()
        )

    # ================================
    # Payments
    # ================================

    def has_completed_payment(self, booking_id: str) -> bool:
        return self.db.query(Payment.id).filter(
            Payment.booking_id == booking_id,
            Payment.status == PaymentStatus.COMPLETED.value
        ).first() is not None

    def latest_completed_payment(self, booking_id: str) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.booking_id == booking_id, Payment.status == PaymentStatus.COMPLETED.value)
            .order_by(Payment.created_at.desc())
            .populate_existing()
            .first()
        )

    def find_stuck_payments(self, older_than, limit: int = 50) -> List[Payment]:
        """PROCESSING payments whose capture outcome was never learned."""
        return (
            self.db.query(Payment)
            .filter(Payment.status == PaymentStatus.PROCESSING.value, Payment.created_at < older_than)
            .order_by(Payment.created_at)
            .limit(limit)
            .all()
        )

    def find_unfulfilled_captures(self, limit: int = 50) -> List[Payment]:
        """COMPLETED payments on bookings that ended FAILED."""
        return (
            self.db.query(Payment)
            .join(Booking, Booking.id == Payment.booking_id)
            .filter(
                Payment.status == PaymentStatus.COMPLETED.value,
                Booking.status == BookingStatus.FAILED.value,
            )
            .order_by(Payment.created_at)
            .limit(limit)
            .all()
        )

    # ================================
    # State transitions
    # ================================

    def apply_transition(
        self,
        booking_id: str,
        new_status: BookingStatus,
        reason: Optional[str],
        actor: str = "system",
        allowed_from: Optional[Iterable[BookingStatus]] = None,
        updates: Optional[dict] = None,
        idempotent: bool = True
    ) -> TransitionOutcome:
        """
        Move a booking to ``new_status`` based on its current persisted state.

        - Already at ``new_status`` and ``idempotent``: no-op, no history entry.
        - Transition not in the state machine (or not in ``allowed_from``): PolicyError.
        - PENDING -> CONFIRMED requires a COMPLETED payment.
        - Exactly one history entry is appended per applied transition.
        """
        new_status = BookingStatus(new_status)
        allowed = {BookingStatus(s) for s in allowed_from} if allowed_from else None
        attempts = max(1, settings.transition_max_attempts)

        for attempt in range(attempts):
            booking = acquire_row_lock(self.db, Booking, Booking.id == booking_id)
            if booking is None:
                self.db.rollback()
                raise NotFoundError(f"Booking {booking_id} not found")

            current = BookingStatus(booking.status)
            if current == new_status and idempotent:
                self.db.commit()
                return TransitionOutcome(booking, False, current.value)

            if new_status not in BOOKING_TRANSITIONS[current] or (allowed is not None and current not in allowed):
                self.db.rollback()
                raise PolicyError(
                    f"Cannot move booking {booking.booking_reference} from {current.value} to {new_status.value}",
                    "invalid_transition"
                )

            if (current == BookingStatus.PENDING and new_status == BookingStatus.CONFIRMED
                    and not self.has_completed_payment(booking_id)):
                self.db.rollback()
                raise PolicyError(
                    f"Booking {booking.booking_reference} has no completed payment",
                    "payment_required"
                )

            for field_name, value in (updates or {}).items():
                setattr(booking, field_name, value)
            booking.status = new_status.value
            # Reassign so the JSON column is flagged dirty
            booking.status_history = list(booking.status_history or []) + [
                history_entry(new_status.value, reason, actor)
            ]
            booking.updated_at = utcnow()

            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.warning(
                    f"Concurrent update on booking {booking_id} "
                    f"(attempt {attempt + 1}/{attempts}), re-reading"
                )
                continue

            structured_logger.booking_status_changed(booking.id, current.value, new_status.value, reason or "")
            return TransitionOutcome(booking, True, current.value)

        raise ConcurrencyError(f"Booking {booking_id} kept changing, transition to {new_status.value} abandoned")

    def update_booking(
        self,
        booking_id: str,
        updates: Optional[dict] = None,
        reason: Optional[str] = None,
        actor: str = "system"
    ) -> Booking:
        """
        Update fields without a status change. With a ``reason``, a history
        entry is appended at the current status.
        """
        attempts = max(1, settings.transition_max_attempts)

        for attempt in range(attempts):
            booking = acquire_row_lock(self.db, Booking, Booking.id == booking_id)
            if booking is None:
                self.db.rollback()
                raise NotFoundError(f"Booking {booking_id} not found")

            for field_name, value in (updates or {}).items():
                setattr(booking, field_name, value)
            if reason:
                booking.status_history = list(booking.status_history or []) + [
                    history_entry(booking.status, reason, actor)
                ]
            booking.updated_at = utcnow()

            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.warning(
                    f"Concurrent update on booking {booking_id} "
                    f"(attempt {attempt + 1}/{attempts}), re-reading"
                )
                continue
            return booking

        raise ConcurrencyError(f"Booking {booking_id} kept changing, update abandoned")
