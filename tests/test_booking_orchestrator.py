"""
Booking Orchestrator Tests

Tests cover:
- Hotel and flight creation end to end (supplier, payment, store, notifier)
- Saga compensation when payment or the supplier fails
- Cancellation refunds per policy
- Modification rules
- Supplier status callbacks
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from tests.conftest import NOW, flight_request, hotel_request


def history_reasons(booking):
    return [entry["reason"] for entry in booking.status_history]


class TestHotelBookingCreation:

    def test_successful_booking_is_confirmed(self, orchestrator, user, gateway, hotel_provider, notifier):
        from booking_service.models.booking import BookingStatus
        from booking_service.models.payment import PaymentStatus

        result = orchestrator.create_hotel_booking(user.id, hotel_request())

        assert result.success is True
        booking = result.booking
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.provider_name == "booking.com"
        assert booking.provider_booking_id == "BC-12345"
        assert booking.external_reference == "CONF-777"
        assert booking.total_amount == Decimal("300.00")
        assert booking.booking_reference.startswith("DESTI-")

        assert len(booking.payments) == 1
        payment = booking.payments[0]
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.amount == Decimal("300.00")
        assert payment.stripe_charge_id == "ch_1"
        assert payment.payment_details["last4"] == "4242"

        assert notifier.confirmations == [booking.id]
        assert [h["status"] for h in booking.status_history] == ["pending", "confirmed"]

    def test_items_and_reservation_request(self, orchestrator, user, gateway, hotel_provider):
        result = orchestrator.create_hotel_booking(user.id, hotel_request(special_requests="Late arrival"))

        item = result.booking.items[0]
        assert item.item_type == "room"
        assert item.item_name == "Hotel Room"
        assert item.room_count == 2
        assert item.unit_price == Decimal("150.00")
        assert item.total_price == Decimal("300.00")
        assert item.vendor_details == {"hotel_id": "HTL-1", "room_id": "RM-7"}

        commit = hotel_provider.commits[0]
        assert commit.item_id == "HTL-1"
        assert commit.sub_item_id == "RM-7"
        assert commit.quantity == 2
        assert commit.special_requests == "Late arrival"
        assert commit.booking_reference == result.booking.booking_reference

        capture = gateway.captures[0]
        assert capture["amount_minor"] == 30000
        assert capture["description"] == f"Hotel booking - {result.booking.booking_reference}"
        assert capture["idempotency_key"] == f"payment-{result.payment.id}"
        assert capture["metadata"] == {"bookingId": result.booking.id, "paymentId": result.payment.id}

    def test_default_modification_policy(self, orchestrator, user):
        result = orchestrator.create_hotel_booking(user.id, hotel_request())

        policy = result.booking.modification_policy
        assert policy["allow_modifications"] is True
        assert policy["modification_deadline"].startswith("2030-02-28T00:00:00")

    def test_unavailable_room_persists_nothing(self, orchestrator, user, db, gateway, hotel_provider):
        from booking_service.errors import AvailabilityError
        from booking_service.models.booking import Booking

        hotel_provider.available = False

        result = orchestrator.create_hotel_booking(user.id, hotel_request())

        assert result.success is False
        assert isinstance(result.error, AvailabilityError)
        assert db.query(Booking).count() == 0
        assert gateway.captures == []

    def test_availability_provider_error_is_availability_error(self, orchestrator, user, db, hotel_provider):
        from booking_service.errors import AvailabilityError
        from booking_service.models.booking import Booking
        from booking_service.services.providers import ProviderError

        hotel_provider.availability_error = ProviderError("Supplier unavailable", "service_unavailable", 503)

        result = orchestrator.create_hotel_booking(user.id, hotel_request())

        assert isinstance(result.error, AvailabilityError)
        assert db.query(Booking).count() == 0

    def test_declined_payment_fails_booking(self, orchestrator, user, gateway, hotel_provider, notifier):
        from booking_service.errors import PaymentError
        from booking_service.models.booking import BookingStatus
        from booking_service.models.payment import PaymentStatus

        gateway.intent_status = "requires_payment_method"
        gateway.error_message = "Your card was declined."

        result = orchestrator.create_hotel_booking(user.id, hotel_request())

        assert result.success is False
        assert isinstance(result.error, PaymentError)
        assert result.compensated is True
        assert result.booking.status == BookingStatus.FAILED.value
        assert history_reasons(result.booking)[-1] == "Your card was declined."
        assert result.payment.status == PaymentStatus.FAILED.value
        assert result.payment.failure_reason == "Your card was declined."
        assert hotel_provider.commits == []
        assert gateway.refunds == []
        assert notifier.confirmations == []

    def test_gateway_rejection_fails_payment(self, orchestrator, user, gateway):
        from booking_service.errors import PaymentError
        from booking_service.models.booking import BookingStatus
        from booking_service.models.payment import PaymentStatus
        from booking_service.services.payment_gateway import GatewayError

        gateway.capture_errors = [GatewayError("Your card has insufficient funds.", "card_declined")]

        result = orchestrator.create_hotel_booking(user.id, hotel_request())

        assert isinstance(result.error, PaymentError)
        assert result.error.code == "card_declined"
        assert result.booking.status == BookingStatus.FAILED.value
        assert result.booking.payments[0].status == PaymentStatus.FAILED.value

    def test_payment_requiring_action_fails_booking(self, orchestrator, user, gateway, hotel_provider):
        from booking_service.models.booking import BookingStatus
        from booking_service.models.payment import PaymentStatus

        gateway.intent_status = "requires_action"

        result = orchestrator.create_hotel_booking(user.id, hotel_request())

        assert result.error.code == "payment_requires_action"
        assert result.booking.status == BookingStatus.FAILED.value
        assert result.payment.status == PaymentStatus.PENDING.value
        assert hotel_provider.commits == []

    def test_unknown_payment_outcome_leaves_payment_processing(self, orchestrator, user, gateway):
        from booking_service.models.booking import BookingStatus
        from booking_service.models.payment import PaymentStatus
        from booking_service.services.payment_gateway import GatewayConnectionError

        gateway.capture_errors = [GatewayConnectionError("timeout"), GatewayConnectionError("timeout")]

        result = orchestrator.create_hotel_booking(user.id, hotel_request())

        assert result.error.code == "payment_outcome_unknown"
        assert result.booking.status == BookingStatus.FAILED.value
        assert result.booking.payments[0].status == PaymentStatus.PROCESSING.value
        assert len({c["idempotency_key"] for c in gateway.captures}) == 1

    def test_supplier_failure_refunds_payment(self, orchestrator, user, gateway, hotel_provider, notifier):
        from booking_service.errors import SupplierCommitError
        from booking_service.models.booking import BookingStatus
        from booking_service.models.payment import PaymentStatus
        from booking_service.services.providers import ProviderError

        hotel_provider.commit_error = ProviderError("Room sold out", "conflict", 409)

        result = orchestrator.create_hotel_booking(user.id, hotel_request())

        assert result.success is False
        assert isinstance(result.error, SupplierCommitError)
        assert result.compensated is True
        assert result.compensation_failed is False

        booking = result.booking
        assert booking.status == BookingStatus.FAILED.value
        assert history_reasons(booking)[-1].endswith("; payment refunded")

        payment = booking.payments[0]
        assert payment.status == PaymentStatus.REFUNDED.value
        assert payment.refunded_amount == Decimal("300.00")
        assert gateway.refunds == [{
            "charge_id": "ch_1",
            "amount_minor": 30000,
            "idempotency_key": f"compensate-{booking.id}",
        }]
        assert notifier.confirmations == []

    def test_failed_refund_is_flagged_for_review(self, orchestrator, user, gateway, hotel_provider):
        from booking_service.models.booking import BookingStatus
        from booking_service.models.payment import PaymentStatus
        from booking_service.services.payment_gateway import GatewayError
        from booking_service.services.providers import ProviderError

        hotel_provider.commit_error = ProviderError("Room sold out", "conflict", 409)
        gateway.refund_error = GatewayError("Stripe is unavailable")

        result = orchestrator.create_hotel_booking(user.id, hotel_request())

        assert result.compensation_failed is True
        assert result.booking.status == BookingStatus.FAILED.value
        assert "refund failed, manual review required" in history_reasons(result.booking)[-1]
        assert result.booking.payments[0].status == PaymentStatus.COMPLETED.value

    def test_confirm_failure_flags_open_supplier_reservation(self, orchestrator, user, gateway, hotel_provider):
        from unittest.mock import patch

        from booking_service.errors import ConcurrencyError
        from booking_service.models.booking import BookingStatus

        transition = orchestrator.store.apply_transition

        def refuse_confirmation(booking_id, new_status, *args, **kwargs):
            if new_status == BookingStatus.CONFIRMED:
                raise ConcurrencyError("Booking kept changing")
            return transition(booking_id, new_status, *args, **kwargs)

        with patch.object(orchestrator.store, "apply_transition", side_effect=refuse_confirmation):
            result = orchestrator.create_hotel_booking(user.id, hotel_request())

        assert isinstance(result.error, ConcurrencyError)
        assert len(hotel_provider.commits) == 1
        booking = result.booking
        assert booking.status == BookingStatus.FAILED.value
        reason = history_reasons(booking)[-1]
        assert "supplier reservation BC-12345 left open, manual cancellation required" in reason
        assert "payment refunded" in reason
        assert gateway.refunds[0]["idempotency_key"] == f"compensate-{booking.id}"

    def test_cancellation_terms_are_taken_from_quote(self, orchestrator, user, hotel_provider):
        hotel_provider.cancellation_deadline = datetime(2030, 2, 20, 12, 0)
        hotel_provider.details = {"cancellation_fees": [{"days_before_start": 7, "fee_percentage": 50}]}

        result = orchestrator.create_hotel_booking(user.id, hotel_request())

        policy = result.booking.cancellation_policy
        assert policy["free_cancellation_until"].startswith("2030-02-20T12:00:00")
        assert policy["non_refundable"] is False
        assert policy["cancellation_fees"][0]["days_before_start"] == 7


class TestFlightBookingCreation:

    def test_round_trip(self, orchestrator, user, gateway, flight_provider):
        from booking_service.models.booking import BookingStatus, BookingType

        result = orchestrator.create_flight_booking(user.id, flight_request())

        booking = result.booking
        assert result.success is True
        assert booking.type == BookingType.FLIGHT.value
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.total_amount == Decimal("600.50")
        assert booking.provider_booking_id == "FL-OUT+FL-RET"

        items = {item.item_name: item for item in booking.items}
        assert set(items) == {"Outbound Flight", "Return Flight"}
        outbound, inbound = items["Outbound Flight"], items["Return Flight"]
        assert outbound.departure_airport == "ZRH"
        assert outbound.arrival_airport == "LHR"
        assert inbound.departure_airport == "LHR"
        assert outbound.seat_class == "economy"
        assert outbound.airline == "Swiss"

        assert flight_provider.commits[0].related_item_ids == ["FL-RET"]
        assert gateway.captures[0]["description"] == f"Flight booking - {booking.booking_reference}"

    def test_one_way(self, orchestrator, user):
        result = orchestrator.create_flight_booking(user.id, flight_request(return_flight_id=None, end_date=None))

        assert result.success is True
        assert len(result.booking.items) == 1
        assert result.booking.total_amount == Decimal("320.00")

    def test_unavailable_return_leg(self, orchestrator, user, db, flight_provider):
        from booking_service.errors import AvailabilityError
        from booking_service.models.booking import Booking

        flight_provider.unavailable.add("FL-RET")

        result = orchestrator.create_flight_booking(user.id, flight_request())

        assert isinstance(result.error, AvailabilityError)
        assert db.query(Booking).count() == 0


class TestCancellation:

    def test_cancel_before_free_deadline_refunds_everything(self, orchestrator, user, gateway, hotel_provider, notifier):
        from booking_service.models.booking import BookingStatus
        from booking_service.models.payment import PaymentStatus

        hotel_provider.cancellation_deadline = datetime(2030, 2, 1)
        booking = orchestrator.create_hotel_booking(user.id, hotel_request()).booking
        history_before = len(booking.status_history)

        result = orchestrator.cancel_booking(booking.id, user.id, "Change of plans")

        assert result.success is True
        assert result.refund_amount == Decimal("300.00")
        assert result.booking.status == BookingStatus.CANCELLED.value
        assert len(result.booking.status_history) == history_before + 1
        last = result.booking.status_history[-1]
        assert last["reason"] == "Change of plans"
        assert last["updated_by"] == user.id

        assert result.booking.payments[0].status == PaymentStatus.REFUNDED.value
        assert gateway.refunds[0]["idempotency_key"] == f"cancel-{booking.id}"
        assert notifier.cancellations == [(booking.id, Decimal("300.00"))]

    def test_cancel_inside_last_tier_refunds_nothing(self, db, payments, user, gateway, hotel_provider,
                                                     flight_provider, notifier):
        from booking_service.models.booking import BookingStatus
        from booking_service.services.booking_orchestrator import BookingOrchestrator

        hotel_provider.details = {"cancellation_fees": [{"days_before_start": 7, "fee_percentage": 50}]}
        creator = BookingOrchestrator(db, payments, hotel_provider, flight_provider, notifier, clock=lambda: NOW)
        booking = creator.create_hotel_booking(user.id, hotel_request()).booking

        # Five days before a 2030-03-01 start
        late = BookingOrchestrator(db, payments, hotel_provider, flight_provider, notifier,
                                   clock=lambda: datetime(2030, 2, 24, 12, 0))
        result = late.cancel_booking(booking.id, user.id)

        assert result.success is True
        assert result.refund_amount == Decimal("0.00")
        assert result.booking.status == BookingStatus.CANCELLED.value
        assert result.booking.status_history[-1]["reason"] == "User cancellation"
        assert gateway.refunds == []

    def test_partial_refund_from_fee_tier(self, orchestrator, user, hotel_provider):
        from booking_service.models.payment import PaymentStatus

        hotel_provider.details = {"cancellation_fees": [
            {"days_before_start": 30, "fee_percentage": 25},
            {"days_before_start": 7, "fee_percentage": 50},
        ]}
        booking = orchestrator.create_hotel_booking(user.id, hotel_request()).booking

        result = orchestrator.cancel_booking(booking.id, user.id)

        assert result.refund_amount == Decimal("225.00")
        payment = result.booking.payments[0]
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED.value
        assert payment.refunded_amount == Decimal("225.00")

    def test_non_refundable_booking_cannot_be_cancelled(self, orchestrator, user, hotel_provider):
        from booking_service.errors import PolicyError
        from booking_service.models.booking import BookingStatus

        hotel_provider.details = {"non_refundable": True}
        booking = orchestrator.create_hotel_booking(user.id, hotel_request()).booking

        result = orchestrator.cancel_booking(booking.id, user.id)

        assert isinstance(result.error, PolicyError)
        assert orchestrator.get_booking(booking.id, user.id).booking.status == BookingStatus.CONFIRMED.value

    def test_cancel_twice_is_rejected(self, orchestrator, user, confirmed_booking, gateway):
        from booking_service.errors import PolicyError

        assert orchestrator.cancel_booking(confirmed_booking.id, user.id).success is True
        second = orchestrator.cancel_booking(confirmed_booking.id, user.id)

        assert isinstance(second.error, PolicyError)
        assert second.error.code == "invalid_state"
        assert len(gateway.refunds) == 1

    def test_other_users_booking_is_not_found(self, orchestrator, confirmed_booking):
        from booking_service.errors import NotFoundError

        result = orchestrator.cancel_booking(confirmed_booking.id, "someone-else")

        assert isinstance(result.error, NotFoundError)

    def test_refund_failure_leaves_refund_owed(self, orchestrator, user, confirmed_booking, gateway, notifier):
        from booking_service.models.booking import BookingStatus
        from booking_service.models.payment import PaymentStatus
        from booking_service.services.payment_gateway import GatewayError

        gateway.refund_error = GatewayError("Charge already disputed")

        result = orchestrator.cancel_booking(confirmed_booking.id, user.id)

        assert result.success is True
        assert result.refund_pending is True
        booking = orchestrator.get_booking(confirmed_booking.id, user.id).booking
        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.pending_refund_amount == Decimal("300.00")
        last = booking.status_history[-1]
        assert last["status"] == BookingStatus.CANCELLED.value
        assert "failed, manual review required" in last["reason"]
        assert booking.payments[0].status == PaymentStatus.COMPLETED.value
        assert notifier.cancellations == [(booking.id, Decimal("300.00"))]

    def test_successful_refund_clears_amount_owed(self, orchestrator, user, confirmed_booking):
        result = orchestrator.cancel_booking(confirmed_booking.id, user.id)

        assert result.refund_pending is False
        assert result.booking.pending_refund_amount is None

    def test_concurrent_completion_before_claim_moves_no_money(self, orchestrator, user, confirmed_booking,
                                                               gateway, notifier, session_factory):
        from unittest.mock import patch

        from booking_service.errors import PolicyError
        from booking_service.models.booking import BookingStatus
        from booking_service.services.booking_store import BookingStore

        lookup = orchestrator.store.latest_completed_payment

        def complete_elsewhere_then_lookup(booking_id):
            other = BookingStore(session_factory())
            other.apply_transition(booking_id, BookingStatus.COMPLETED, "Booking period ended",
                                   allowed_from={BookingStatus.CONFIRMED})
            other.db.close()
            return lookup(booking_id)

        with patch.object(orchestrator.store, "latest_completed_payment", side_effect=complete_elsewhere_then_lookup):
            result = orchestrator.cancel_booking(confirmed_booking.id, user.id)

        assert isinstance(result.error, PolicyError)
        assert result.error.code == "invalid_transition"
        assert gateway.refunds == []
        assert notifier.cancellations == []
        booking = orchestrator.get_booking(confirmed_booking.id, user.id).booking
        assert booking.status == BookingStatus.COMPLETED.value
        assert booking.pending_refund_amount is None

    def test_concurrent_completion_during_refund_is_rejected(self, orchestrator, user, confirmed_booking,
                                                             gateway, session_factory):
        from unittest.mock import patch

        from booking_service.errors import PolicyError
        from booking_service.models.booking import BookingStatus
        from booking_service.models.payment import PaymentStatus
        from booking_service.services.booking_store import BookingStore

        refund = orchestrator.payments.process_refund

        def complete_elsewhere_then_refund(*args, **kwargs):
            other = BookingStore(session_factory())
            with pytest.raises(PolicyError):
                other.apply_transition(confirmed_booking.id, BookingStatus.COMPLETED, "Booking period ended",
                                       allowed_from={BookingStatus.CONFIRMED})
            other.db.close()
            return refund(*args, **kwargs)

        with patch.object(orchestrator.payments, "process_refund", side_effect=complete_elsewhere_then_refund):
            result = orchestrator.cancel_booking(confirmed_booking.id, user.id)

        assert result.success is True
        booking = orchestrator.get_booking(confirmed_booking.id, user.id).booking
        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.payments[0].status == PaymentStatus.REFUNDED.value
        assert [r["idempotency_key"] for r in gateway.refunds] == [f"cancel-{booking.id}"]


class TestModification:

    def test_dates_are_updated(self, orchestrator, user, confirmed_booking, notifier):
        from booking_service.models.booking import BookingStatus
        from booking_service.schemas.booking import ModifyBookingRequest

        result = orchestrator.modify_booking(
            confirmed_booking.id, user.id,
            ModifyBookingRequest(new_start_date=date(2030, 3, 2), new_end_date=date(2030, 3, 5)),
        )

        booking = result.booking
        assert result.success is True
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.start_date == datetime(2030, 3, 2)
        assert booking.end_date == datetime(2030, 3, 5)
        assert booking.status_history[-1]["reason"] == "Booking modified"
        assert booking.status_history[-1]["status"] == "confirmed"
        assert notifier.modifications == [booking.id]

    def test_only_supplied_fields_change(self, orchestrator, user, confirmed_booking):
        from booking_service.schemas.booking import ModifyBookingRequest

        result = orchestrator.modify_booking(
            confirmed_booking.id, user.id, ModifyBookingRequest(special_requests="Crib please")
        )

        assert result.booking.special_requests == "Crib please"
        assert result.booking.start_date == datetime(2030, 3, 1)
        assert result.booking.end_date == datetime(2030, 3, 4)

    def test_end_before_start_is_rejected(self, orchestrator, user, confirmed_booking):
        from booking_service.errors import ValidationError
        from booking_service.schemas.booking import ModifyBookingRequest

        result = orchestrator.modify_booking(
            confirmed_booking.id, user.id, ModifyBookingRequest(new_end_date=date(2030, 2, 20))
        )

        assert isinstance(result.error, ValidationError)

    def test_past_deadline_is_rejected(self, db, payments, user, confirmed_booking, hotel_provider,
                                       flight_provider, notifier):
        from booking_service.errors import PolicyError
        from booking_service.schemas.booking import ModifyBookingRequest
        from booking_service.services.booking_orchestrator import BookingOrchestrator

        late = BookingOrchestrator(db, payments, hotel_provider, flight_provider, notifier,
                                   clock=lambda: datetime(2030, 2, 28, 6, 0))
        result = late.modify_booking(
            confirmed_booking.id, user.id, ModifyBookingRequest(special_requests="Anything")
        )

        assert isinstance(result.error, PolicyError)
        assert notifier.modifications == []

    def test_cancelled_booking_cannot_be_modified(self, orchestrator, user, confirmed_booking):
        from booking_service.schemas.booking import ModifyBookingRequest

        orchestrator.cancel_booking(confirmed_booking.id, user.id)
        result = orchestrator.modify_booking(
            confirmed_booking.id, user.id, ModifyBookingRequest(special_requests="Anything")
        )

        assert result.error.code == "invalid_state"


class TestReads:

    def test_list_user_bookings_newest_first(self, orchestrator, user):
        first = orchestrator.create_hotel_booking(user.id, hotel_request()).booking
        second = orchestrator.create_flight_booking(user.id, flight_request()).booking

        bookings, total = orchestrator.list_user_bookings(user.id, limit=1)

        assert total == 2
        assert [b.id for b in bookings] == [second.id]
        assert first.id != second.id


    def test_find_by_reference(self, orchestrator, user, db, confirmed_booking):
        from booking_service.services.booking_store import BookingStore

        store = BookingStore(db)

        assert store.find_by_reference(confirmed_booking.booking_reference).id == confirmed_booking.id
        assert store.find_by_reference("DST-MISSING") is None


class TestSupplierStatusCallbacks:

    def test_supplier_cancellation(self, orchestrator, confirmed_booking, notifier, gateway):
        from booking_service.models.booking import BookingStatus

        result = orchestrator.process_supplier_webhook(
            "booking.com", {"booking_id": "BC-12345", "status": "CANCELLED"}
        )

        assert result.action == "status_updated"
        assert result.booking.status == BookingStatus.CANCELLED.value
        entry = result.booking.status_history[-1]
        assert entry["reason"] == "Webhook update: cancelled"
        assert entry["updated_by"] == "system"
        assert notifier.status_updates == [(confirmed_booking.id, "cancelled")]
        assert gateway.refunds == []

    def test_repeated_status_is_noop(self, orchestrator, confirmed_booking, notifier):
        payload = {"booking_id": "BC-12345", "status": "completed"}

        orchestrator.process_supplier_webhook("booking.com", payload)
        again = orchestrator.process_supplier_webhook("booking.com", payload)

        assert again.action == "noop"
        assert len(notifier.status_updates) == 1
        assert len(again.booking.status_history) == 3

    def test_illegal_transition_is_rejected(self, orchestrator, confirmed_booking):
        from booking_service.models.booking import BookingStatus

        orchestrator.process_supplier_webhook("booking.com", {"booking_id": "BC-12345", "status": "cancelled"})
        result = orchestrator.process_supplier_webhook("booking.com", {"booking_id": "BC-12345", "status": "confirmed"})

        assert result.success is True
        assert result.action == "rejected_transition"
        assert result.booking.status == BookingStatus.CANCELLED.value

    def test_unknown_status_and_booking(self, orchestrator, confirmed_booking):
        ignored = orchestrator.process_supplier_webhook("booking.com", {"booking_id": "BC-12345", "status": "on_hold"})
        missing = orchestrator.process_supplier_webhook("booking.com", {"booking_id": "BC-00000", "status": "cancelled"})

        assert ignored.action == "ignored_status"
        assert missing.action == "booking_not_found"

    def test_skyscanner_payload_uses_itinerary_id(self, orchestrator, user):
        from booking_service.models.booking import BookingStatus

        booking = orchestrator.create_flight_booking(user.id, flight_request()).booking

        result = orchestrator.process_supplier_webhook(
            "skyscanner", {"itineraryId": "FL-OUT+FL-RET", "status": "canceled"}
        )

        assert result.booking.id == booking.id
        assert result.booking.status == BookingStatus.CANCELLED.value

    def test_malformed_payload_is_validation_error(self, orchestrator):
        from booking_service.errors import ValidationError

        result = orchestrator.process_supplier_webhook("booking.com", {"status": "cancelled"})

        assert result.success is False
        assert isinstance(result.error, ValidationError)

    def test_unknown_supplier(self, orchestrator):
        result = orchestrator.process_supplier_webhook("expedia", {"booking_id": "X", "status": "cancelled"})

        assert result.success is True
        assert result.action == "unknown_supplier"
