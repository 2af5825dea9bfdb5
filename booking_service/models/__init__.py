# Models package
from .user import User
from .booking import Booking, BookingItem, BookingStatus, BookingType, BOOKING_TRANSITIONS
from .payment import Payment, PaymentStatus, PaymentMethod, PAYMENT_TRANSITIONS
from .webhook_event import WebhookEventLog, WebhookEventStatus

__all__ = [
    "User",
    "Booking", "BookingItem", "BookingStatus", "BookingType", "BOOKING_TRANSITIONS",
    "Payment", "PaymentStatus", "PaymentMethod", "PAYMENT_TRANSITIONS",
    "WebhookEventLog", "WebhookEventStatus",
]
