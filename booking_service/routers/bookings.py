import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from ..errors import NotFoundError, ValidationError
from ..models.user import User
from ..schemas.booking import (
    BookingResponse,
    BookingSummaryResponse,
    CancelBookingRequest,
    CancellationResponse,
    FlightBookingRequest,
    HotelBookingRequest,
    ModifyBookingRequest,
)
from ..schemas.pagination import PaginatedResponse
from ..schemas.payment import PaymentIntentRequest, PaymentIntentResponse, PaymentMethodResponse
from ..services.booking_orchestrator import BookingOrchestrator, BookingResult
from ..services.payment_service import PaymentService
from ..utils.dependencies import get_current_user, get_orchestrator, get_payment_service
from ..utils.rate_limiter import get_rate_limit, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


def _unwrap(result: BookingResult):
    """Raise the result's error, handled by the app-wide BookingError handler."""
    if not result.success:
        raise result.error
    return result.booking


@router.post("/hotels", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_rate_limit("booking_create"))
def create_hotel_booking(
    request: Request,
    data: HotelBookingRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator)
):
    """Reserve a hotel room and charge the given payment method"""
    booking = _unwrap(orchestrator.create_hotel_booking(current_user.id, data))
    return BookingResponse.model_validate(booking)


@router.post("/flights", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_rate_limit("booking_create"))
def create_flight_booking(
    request: Request,
    data: FlightBookingRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator)
):
    """Book an outbound (and optional return) flight and charge the given payment method"""
    booking = _unwrap(orchestrator.create_flight_booking(current_user.id, data))
    return BookingResponse.model_validate(booking)


@router.get("/user", response_model=PaginatedResponse[BookingSummaryResponse])
@limiter.limit(get_rate_limit("booking_list"))
def list_user_bookings(
    request: Request,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator)
):
    bookings, total = orchestrator.list_user_bookings(current_user.id, limit, offset)
    return PaginatedResponse.create(
        items=[BookingSummaryResponse.model_validate(b) for b in bookings],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/payment-intent", response_model=PaymentIntentResponse)
@limiter.limit(get_rate_limit("booking_create"))
def create_payment_intent(
    request: Request,
    data: PaymentIntentRequest,
    current_user: User = Depends(get_current_user),
    payments: PaymentService = Depends(get_payment_service)
):
    """Unconfirmed intent for client-side confirmation"""
    customer_id = data.customer_id or current_user.stripe_customer_id
    if customer_id and customer_id != current_user.stripe_customer_id:
        raise ValidationError("Customer does not belong to the current user", "invalid_customer")

    intent = payments.create_payment_intent(data.amount, data.currency, customer_id, data.description)
    return PaymentIntentResponse(client_secret=intent.client_secret, payment_intent_id=intent.id)


@router.get("/payment-methods/{customer_id}", response_model=List[PaymentMethodResponse])
def get_payment_methods(
    customer_id: str,
    current_user: User = Depends(get_current_user),
    payments: PaymentService = Depends(get_payment_service)
):
    if customer_id != current_user.stripe_customer_id:
        raise NotFoundError("Customer not found")
    return [
        PaymentMethodResponse(
            id=card.id, type=card.type, last4=card.last4, brand=card.brand,
            exp_month=card.exp_month, exp_year=card.exp_year,
        )
        for card in payments.get_payment_methods(customer_id)
    ]


@router.get("/{booking_id}", response_model=BookingResponse)
@limiter.limit(get_rate_limit("booking_get"))
def get_booking(
    request: Request,
    booking_id: str,
    current_user: User = Depends(get_current_user),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator)
):
    booking = _unwrap(orchestrator.get_booking(booking_id, current_user.id))
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/cancel", response_model=CancellationResponse)
@limiter.limit(get_rate_limit("booking_update"))
def cancel_booking(
    request: Request,
    booking_id: str,
    data: Optional[CancelBookingRequest] = None,
    current_user: User = Depends(get_current_user),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator)
):
    """Cancel a confirmed booking; the refund follows its cancellation policy"""
    result = orchestrator.cancel_booking(booking_id, current_user.id, data.reason if data else None)
    booking = _unwrap(result)
    return CancellationResponse(
        booking=BookingResponse.model_validate(booking),
        refund_amount=result.refund_amount,
        refund_pending=result.refund_pending,
    )


@router.put("/{booking_id}/modify", response_model=BookingResponse)
@limiter.limit(get_rate_limit("booking_update"))
def modify_booking(
    request: Request,
    booking_id: str,
    data: ModifyBookingRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator)
):
    booking = _unwrap(orchestrator.modify_booking(booking_id, current_user.id, data))
    return BookingResponse.model_validate(booking)
