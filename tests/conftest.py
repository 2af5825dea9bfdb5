"""
Shared fixtures.

Environment is configured before ``booking_service`` is imported, since
settings, the engine and the rate limiter are built at import time.
"""

import os
import tempfile

os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'desti_bookings_test.db')}")
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-definitely-longer-than-32-chars")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("SUPPLIER_WEBHOOK_SECRETS", "booking.com:bc-secret,skyscanner:sky-secret")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("WORKER_ENABLED", "false")
os.environ.setdefault("NOTIFICATION_WORKERS", "0")

import hashlib
import hmac
import json
import time
from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from booking_service.database import Base
from booking_service import models  # noqa: F401
from booking_service.models.user import User
from booking_service.schemas.booking import FlightBookingRequest, HotelBookingRequest
from booking_service.services.booking_orchestrator import BookingOrchestrator
from booking_service.services.payment_gateway import (
    CardSummary,
    GatewayIntent,
    GatewayRefund,
    StripeGateway,
)
from booking_service.services.payment_service import PaymentService
from booking_service.services.providers import (
    AvailabilityQuote,
    InventoryProvider,
    ReservationConfirmation,
)
from booking_service.services.webhook_reconciler import WebhookReconciler
from booking_service.utils.security import create_access_token

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
SUPPLIER_SECRETS = {"booking.com": "bc-secret", "skyscanner": "sky-secret"}

# Fixed "now" used by the orchestrator's policy checks
NOW = datetime(2030, 1, 1, 12, 0, 0)


# ================================
# Fakes
# ================================

class FakeGateway:
    """In-memory stand-in for StripeGateway. Replays by idempotency key like Stripe does."""

    def __init__(self):
        self.intent_status = "succeeded"
        self.error_message = None
        self.capture_errors = []
        self.refund_error = None
        self.search_result = None
        self.captures = []
        self.refunds = []
        self.intents = {}
        self._intents_by_key = {}
        self._refunds_by_key = {}
        self._signer = StripeGateway(api_key="sk_test_123", webhook_secret=STRIPE_WEBHOOK_SECRET)

    def create_and_confirm_intent(self, amount_minor, currency, payment_method_id, description, metadata, idempotency_key):
        self.captures.append({
            "amount_minor": amount_minor,
            "currency": currency,
            "payment_method_id": payment_method_id,
            "description": description,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        if self.capture_errors:
            raise self.capture_errors.pop(0)
        if idempotency_key in self._intents_by_key:
            return self._intents_by_key[idempotency_key]

        intent_id = f"pi_{len(self._intents_by_key) + 1}"
        intent = GatewayIntent(
            id=intent_id,
            status=self.intent_status,
            latest_charge=f"ch_{len(self._intents_by_key) + 1}" if self.intent_status == "succeeded" else None,
            payment_method=payment_method_id,
            amount=amount_minor,
            currency=currency.lower(),
            last_error_message=self.error_message,
            metadata=dict(metadata),
        )
        self._intents_by_key[idempotency_key] = intent
        self.intents[intent_id] = intent
        return intent

    def create_intent(self, amount_minor, currency, customer_id=None, description=None):
        return GatewayIntent(id="pi_client", status="requires_payment_method", client_secret="pi_client_secret_abc",
                             amount=amount_minor, currency=currency.lower())

    def retrieve_intent(self, intent_id):
        return self.intents[intent_id]

    def find_intent_for_payment(self, payment_id):
        return self.search_result

    def retrieve_card(self, payment_method_id):
        return CardSummary(id=payment_method_id, last4="4242", brand="visa", exp_month=12, exp_year=2034)

    def list_card_methods(self, customer_id):
        return [CardSummary(id="pm_saved", last4="4242", brand="visa", exp_month=12, exp_year=2034)]

    def refund(self, charge_id, amount_minor, idempotency_key, metadata=None):
        if self.refund_error is not None:
            raise self.refund_error
        if idempotency_key in self._refunds_by_key:
            return self._refunds_by_key[idempotency_key]
        refund = GatewayRefund(id=f"re_{len(self.refunds) + 1}", status="succeeded", amount=amount_minor)
        self.refunds.append({"charge_id": charge_id, "amount_minor": amount_minor, "idempotency_key": idempotency_key})
        self._refunds_by_key[idempotency_key] = refund
        return refund

    def verify_webhook(self, payload, signature_header):
        return self._signer.verify_webhook(payload, signature_header)


class FakeHotelProvider(InventoryProvider):
    name = "booking.com"

    def __init__(self):
        self.available = True
        self.price = Decimal("150.00")
        self.currency = "USD"
        self.cancellation_deadline = None
        self.details = {}
        self.availability_error = None
        self.commit_error = None
        self.queries = []
        self.commits = []

    def check_availability(self, query):
        self.queries.append(query)
        if self.availability_error is not None:
            raise self.availability_error
        return AvailabilityQuote(
            available=self.available,
            price=self.price,
            currency=self.currency,
            cancellation_deadline=self.cancellation_deadline,
            details=dict(self.details),
        )

    def commit_reservation(self, request):
        self.commits.append(request)
        if self.commit_error is not None:
            raise self.commit_error
        return ReservationConfirmation(supplier_booking_id="BC-12345", confirmation_code="CONF-777")


class FakeFlightProvider(InventoryProvider):
    name = "skyscanner"

    def __init__(self):
        self.prices = {"FL-OUT": Decimal("320.00"), "FL-RET": Decimal("280.50")}
        self.unavailable = set()
        self.commit_error = None
        self.commits = []

    def check_availability(self, query):
        price = self.prices.get(query.item_id, Decimal("0"))
        return AvailabilityQuote(
            available=query.item_id not in self.unavailable and price > 0,
            price=price,
            currency="USD",
            details={"summary": {
                "flight_number": f"{query.item_id}-1",
                "airline": "Swiss",
                "departure_airport": None,
                "arrival_airport": None,
                "departure_time": datetime(2030, 3, 1, 8, 30),
                "arrival_time": datetime(2030, 3, 1, 10, 0),
            }},
        )

    def commit_reservation(self, request):
        self.commits.append(request)
        if self.commit_error is not None:
            raise self.commit_error
        ids = [request.item_id, *request.related_item_ids]
        return ReservationConfirmation(supplier_booking_id="+".join(ids))


class RecordingNotifier:
    def __init__(self):
        self.confirmations = []
        self.cancellations = []
        self.modifications = []
        self.status_updates = []

    def send_booking_confirmation(self, booking):
        self.confirmations.append(booking.id)

    def send_cancellation_confirmation(self, booking, refund_amount):
        self.cancellations.append((booking.id, refund_amount))

    def send_modification_confirmation(self, booking):
        self.modifications.append(booking.id)

    def send_status_update(self, booking):
        self.status_updates.append((booking.id, booking.status))

    def shutdown(self):
        pass


# ================================
# Helpers
# ================================

def stripe_signature(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signed}"


def stripe_event(event_id: str, event_type: str, intent: dict) -> str:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": intent}})


def supplier_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def hotel_request(**overrides) -> HotelBookingRequest:
    data = {
        "hotel_id": "HTL-1",
        "room_id": "RM-7",
        "room_count": 2,
        "start_date": date(2030, 3, 1),
        "end_date": date(2030, 3, 4),
        "guest_details": {"adults": 2, "guests": [{"first_name": "Ada", "last_name": "Lovelace"}]},
        "contact_email": "traveler@desti.app",
        "contact_phone": "+41791234567",
        "payment_method_id": "pm_card_visa",
    }
    data.update(overrides)
    return HotelBookingRequest(**data)


def flight_request(**overrides) -> FlightBookingRequest:
    data = {
        "origin_airport": "zrh",
        "destination_airport": "lhr",
        "outbound_flight_id": "FL-OUT",
        "return_flight_id": "FL-RET",
        "start_date": date(2030, 3, 1),
        "end_date": date(2030, 3, 8),
        "guest_details": {"adults": 1, "guests": [{"first_name": "Grace", "last_name": "Hopper"}]},
        "contact_email": "traveler@desti.app",
        "contact_phone": "+41791234567",
        "payment_method_id": "pm_card_visa",
    }
    data.update(overrides)
    return FlightBookingRequest(**data)


# ================================
# Fixtures
# ================================

@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'bookings.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def user(db):
    user = User(email="traveler@desti.app", hashed_password="not-used", first_name="Ada",
                stripe_customer_id="cus_123")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def hotel_provider():
    return FakeHotelProvider()


@pytest.fixture
def flight_provider():
    return FakeFlightProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def payments(db, gateway):
    return PaymentService(db, gateway)


@pytest.fixture
def orchestrator(db, payments, hotel_provider, flight_provider, notifier):
    return BookingOrchestrator(db, payments, hotel_provider, flight_provider, notifier, clock=lambda: NOW)


@pytest.fixture
def reconciler(db, payments, orchestrator):
    return WebhookReconciler(db, payments, orchestrator, SUPPLIER_SECRETS)


@pytest.fixture
def confirmed_booking(orchestrator, user):
    result = orchestrator.create_hotel_booking(user.id, hotel_request())
    assert result.success, result.error
    return result.booking


@pytest.fixture
def client(session_factory, gateway, hotel_provider, flight_provider, notifier):
    from fastapi.testclient import TestClient

    from booking_service.database import get_db
    from booking_service.main import app
    from booking_service.utils import dependencies

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[dependencies.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[dependencies.get_hotel_provider] = lambda: hotel_provider
    app.dependency_overrides[dependencies.get_flight_provider] = lambda: flight_provider
    app.dependency_overrides[dependencies.get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user):
    token = create_access_token({"sub": user.id, "email": user.email})
    return {"Authorization": f"Bearer {token}"}
