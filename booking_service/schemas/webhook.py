"""
Typed webhook payloads.

Stripe events and supplier callbacks are decoded into explicit models before
anything touches the database. Unknown Stripe event types decode to
``UnhandledStripeEvent`` and are acknowledged without side effects.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, Literal, Union


# ======== Stripe ========

class StripePaymentError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: Optional[str] = None
    message: Optional[str] = None


class StripePaymentIntentObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    latest_charge: Optional[str] = None
    payment_method: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    last_payment_error: Optional[StripePaymentError] = None


class StripePaymentIntentData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: StripePaymentIntentObject


class PaymentIntentSucceededEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: Literal["payment_intent.succeeded"]
    data: StripePaymentIntentData


class PaymentIntentFailedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: Literal["payment_intent.payment_failed"]
    data: StripePaymentIntentData


class UnhandledStripeEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str


StripeEvent = Union[PaymentIntentSucceededEvent, PaymentIntentFailedEvent, UnhandledStripeEvent]

STRIPE_EVENT_MODELS = {
    "payment_intent.succeeded": PaymentIntentSucceededEvent,
    "payment_intent.payment_failed": PaymentIntentFailedEvent,
}


def parse_stripe_event(payload: Dict[str, Any]) -> StripeEvent:
    """Decode a verified Stripe event payload into its typed variant."""
    model = STRIPE_EVENT_MODELS.get(payload.get("type"), UnhandledStripeEvent)
    return model.model_validate(payload)


# ======== Suppliers ========

class BookingComWebhookPayload(BaseModel):
    """Booking.com reservation status callback."""
    model_config = ConfigDict(extra="ignore")

    booking_id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    event_id: Optional[str] = None
    reservation_id: Optional[str] = None


class SkyscannerWebhookPayload(BaseModel):
    """Skyscanner itinerary status callback."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    itinerary_id: str = Field(..., min_length=1, alias="itineraryId")
    status: str = Field(..., min_length=1)
    event_id: Optional[str] = Field(None, alias="eventId")


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    action: Optional[str] = None
