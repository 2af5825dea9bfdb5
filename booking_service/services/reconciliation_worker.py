"""
Reconciliation Worker

Periodic clean-up run from the application lifespan:
- CONFIRMED bookings whose dates have passed become COMPLETED
- PENDING bookings stuck longer than the timeout become FAILED
- PROCESSING payments with an unknown capture outcome are re-queried
- Captured money on FAILED bookings is refunded
- Cancellation refunds that failed are re-issued
- FAILED webhook deliveries are retried
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import settings
from ..errors import BookingError
from ..models.booking import BookingStatus
from ..utils.clock import utcnow
from .booking_store import BookingStore
from .payment_gateway import GatewayError
from .payment_service import PaymentService
from .webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


class ReconciliationWorker:

    def __init__(
        self,
        db: Session,
        payments: PaymentService,
        reconciler: WebhookReconciler,
        clock: Callable[[], datetime] = utcnow,
        batch_size: Optional[int] = None,
        pending_timeout_minutes: Optional[int] = None
    ):
        self.db = db
        self.store = BookingStore(db)
        self.payments = payments
        self.reconciler = reconciler
        self.clock = clock
        self.batch_size = batch_size or settings.worker_batch_size
        self.pending_timeout = timedelta(minutes=pending_timeout_minutes or settings.pending_booking_timeout_minutes)

    def auto_complete_finished(self) -> Tuple[int, List[str]]:
        """CONFIRMED bookings whose end date (or start date) has passed become COMPLETED."""
        completed = []
        for booking in self.store.find_finished_confirmed(self.clock(), self.batch_size):
            try:
                outcome = self.store.apply_transition(
                    booking.id, BookingStatus.COMPLETED, "Booking period ended",
                    allowed_from={BookingStatus.CONFIRMED},
                )
            except BookingError as e:
                logger.error(f"Error auto-completing booking {booking.id}: {e.message}")
                continue
            if outcome.changed:
                completed.append(booking.id)

        if completed:
            logger.info(f"Auto-completed {len(completed)} finished bookings")
        return len(completed), completed

    def resolve_stale_pending(self) -> Tuple[int, List[str]]:
        """PENDING bookings older than the timeout never reached the supplier and are FAILED."""
        cutoff = self.clock() - self.pending_timeout
        failed = []
        for booking in self.store.find_stale_pending(cutoff, self.batch_size):
            try:
                outcome = self.store.apply_transition(
                    booking.id, BookingStatus.FAILED, "Booking abandoned before supplier confirmation",
                    allowed_from={BookingStatus.PENDING},
                )
            except BookingError as e:
                logger.error(f"Error failing stale booking {booking.id}: {e.message}")
                continue
            if outcome.changed:
                failed.append(booking.id)

        if failed:
            logger.warning(f"Marked {len(failed)} stale pending bookings as failed")
        return len(failed), failed

    def resolve_unknown_payments(self) -> Tuple[int, List[str]]:
        """Re-query the gateway for payments left PROCESSING after a lost capture response."""
        cutoff = self.clock() - self.pending_timeout
        resolved = []
        for payment in self.store.find_stuck_payments(cutoff, self.batch_size):
            try:
                payment = self.payments.reconcile_with_gateway(payment.id)
            except (BookingError, GatewayError) as e:
                logger.error(f"Could not reconcile payment {payment.id}: {e.message}")
                continue
            logger.info(f"Payment {payment.id} reconciled as {payment.status}")
            resolved.append(payment.id)
        return len(resolved), resolved

    def refund_unfulfilled_captures(self) -> Tuple[int, List[str]]:
        """Refund COMPLETED payments whose booking ended FAILED."""
        refunded = []
        for payment in self.store.find_unfulfilled_captures(self.batch_size):
            try:
                self.payments.process_refund(
                    payment.id,
                    idempotency_key=f"late-{payment.id}",
                    reason="booking_not_fulfilled",
                )
            except BookingError as e:
                logger.error(f"Refund of unfulfilled payment {payment.id} failed: {e.message}")
                continue
            refunded.append(payment.id)

        if refunded:
            logger.warning(f"Refunded {len(refunded)} payments captured for failed bookings")
        return len(refunded), refunded

    def retry_cancellation_refunds(self) -> Tuple[int, List[str]]:
        """Re-issue cancellation refunds that failed, under the original idempotency key."""
        cutoff = self.clock() - self.pending_timeout
        settled = []
        for booking in self.store.find_pending_cancellation_refunds(cutoff, self.batch_size):
            amount = booking.pending_refund_amount
            payment = self.store.latest_completed_payment(booking.id)
            if payment is None:
                # Refund was recorded but the booking was never cleared
                self.store.update_booking(booking.id, {"pending_refund_amount": None})
                settled.append(booking.id)
                continue
            try:
                self.payments.process_refund(
                    payment.id,
                    amount,
                    idempotency_key=f"cancel-{booking.id}",
                    reason="requested_by_customer",
                )
            except BookingError as e:
                self.db.rollback()
                logger.error(f"Cancellation refund retry for booking {booking.id} failed: {e.message}")
                continue
            self.store.update_booking(
                booking.id, {"pending_refund_amount": None}, reason=f"Cancellation refund of {amount} issued"
            )
            settled.append(booking.id)

        if settled:
            logger.info(f"Settled {len(settled)} pending cancellation refunds")
        return len(settled), settled

    def retry_failed_webhooks(self) -> int:
        return self.reconciler.retry_failed(self.batch_size)

    def run_cycle(self) -> dict:
        """Run every reconciliation step once."""
        completed_count, completed_ids = self.auto_complete_finished()
        stale_count, stale_ids = self.resolve_stale_pending()
        resolved_count, _ = self.resolve_unknown_payments()
        refunded_count, refunded_ids = self.refund_unfulfilled_captures()
        cancellation_refunds, _ = self.retry_cancellation_refunds()
        webhooks_recovered = self.retry_failed_webhooks()

        return {
            "completed_count": completed_count,
            "completed_ids": completed_ids,
            "stale_count": stale_count,
            "stale_ids": stale_ids,
            "payments_resolved": resolved_count,
            "refunded_count": refunded_count,
            "refunded_ids": refunded_ids,
            "cancellation_refunds": cancellation_refunds,
            "webhooks_recovered": webhooks_recovered,
        }
