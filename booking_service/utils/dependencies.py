"""
FastAPI dependencies: the authenticated user and the service graph.

Every collaborator is built per request from these functions, so tests
replace any of them through ``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..models.user import User
from ..services.booking_orchestrator import BookingOrchestrator
from ..services.notification_service import NotificationService
from ..services.payment_gateway import StripeGateway
from ..services.payment_service import PaymentService
from ..services.providers import BookingComProvider, SkyscannerProvider
from ..services.webhook_reconciler import WebhookReconciler
from .security import verify_access_token

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception

    payload = verify_access_token(credentials.credentials)
    if payload is None or not payload.get("sub"):
        raise credentials_exception

    user = db.query(User).filter(User.id == payload["sub"]).first()
    if user is None or not user.is_active:
        raise credentials_exception
    return user


# Process-wide clients: connection settings only, no per-request state

@lru_cache()
def get_payment_gateway() -> StripeGateway:
    return StripeGateway()


@lru_cache()
def get_hotel_provider() -> BookingComProvider:
    return BookingComProvider()


@lru_cache()
def get_flight_provider() -> SkyscannerProvider:
    return SkyscannerProvider()


@lru_cache()
def get_notifier() -> NotificationService:
    return NotificationService()


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway)
) -> PaymentService:
    return PaymentService(db, gateway)


def get_orchestrator(
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
    hotel_provider=Depends(get_hotel_provider),
    flight_provider=Depends(get_flight_provider),
    notifier=Depends(get_notifier)
) -> BookingOrchestrator:
    return BookingOrchestrator(db, payments, hotel_provider, flight_provider, notifier)


def get_reconciler(
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator)
) -> WebhookReconciler:
    return WebhookReconciler(db, payments, orchestrator, settings.supplier_secret_map)


def build_reconciliation_services(db: Session):
    """Service graph for code running outside a request (the background worker)."""
    payments = PaymentService(db, get_payment_gateway())
    orchestrator = BookingOrchestrator(db, payments, get_hotel_provider(), get_flight_provider(), get_notifier())
    reconciler = WebhookReconciler(db, payments, orchestrator, settings.supplier_secret_map)
    return payments, reconciler
