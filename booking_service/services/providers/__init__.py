from .base import (
    InventoryProvider,
    ProviderClient,
    ProviderError,
    AvailabilityQuery,
    AvailabilityQuote,
    ReservationRequest,
    ReservationConfirmation,
)
from .hotel_provider import BookingComProvider
from .flight_provider import SkyscannerProvider

__all__ = [
    "InventoryProvider", "ProviderClient", "ProviderError",
    "AvailabilityQuery", "AvailabilityQuote", "ReservationRequest", "ReservationConfirmation",
    "BookingComProvider", "SkyscannerProvider",
]
