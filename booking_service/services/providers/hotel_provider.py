"""
Booking.com hotel inventory adapter.

Availability comes from ``/getBlockAvailability.json`` (first block in the
response), reservations are committed with ``/makeReservation.json``.
Credentials travel as request parameters, as the distribution API expects.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from ...config import settings
from ...utils.clock import parse_datetime
from .base import (
    InventoryProvider,
    ProviderClient,
    ProviderError,
    AvailabilityQuery,
    AvailabilityQuote,
    ReservationRequest,
    ReservationConfirmation,
)

logger = logging.getLogger(__name__)

FAILED_RESERVATION_STATUSES = {"failed", "rejected", "cancelled", "error"}


class BookingComProvider(InventoryProvider):
    name = "booking.com"

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        client: Optional[ProviderClient] = None
    ):
        self.username = username if username is not None else settings.booking_com_username
        self.password = password if password is not None else settings.booking_com_password
        self.client = client or ProviderClient(
            base_url or settings.booking_com_base_url,
            transport=transport,
        )

    def _credentials(self) -> dict:
        return {"username": self.username, "password": self.password}

    def check_availability(self, query: AvailabilityQuery) -> AvailabilityQuote:
        params = {
            **self._credentials(),
            "hotel_ids": query.item_id,
            "room_ids": query.sub_item_id,
            "checkin": query.start_date.isoformat(),
            "checkout": query.end_date.isoformat() if query.end_date else None,
            "adults": query.adults,
            "children": query.children,
            "rooms": query.quantity,
        }
        params = {k: v for k, v in params.items() if v is not None}

        response = self.client.request("GET", "/getBlockAvailability.json", params=params)
        if not response.success:
            raise ProviderError(
                f"Availability check failed for hotel {query.item_id}: {response.error}",
                response.error_code or "availability_failed",
                response.status_code,
            )

        data = response.data
        block = data[0] if isinstance(data, list) and data else None
        if not isinstance(block, dict):
            logger.info(f"No availability block returned for hotel {query.item_id} room {query.sub_item_id}")
            return AvailabilityQuote(available=False)

        try:
            price = Decimal(str(block.get("price") or 0))
        except InvalidOperation:
            raise ProviderError(f"Unparseable price from Booking.com: {block.get('price')!r}", "invalid_response")

        deadline = block.get("cancellation_deadline")
        return AvailabilityQuote(
            available=block.get("available") == 1,
            price=price,
            currency=block.get("currency"),
            cancellation_deadline=parse_datetime(deadline) if deadline else None,
            details=block,
        )

    def commit_reservation(self, request: ReservationRequest) -> ReservationConfirmation:
        payload = {
            **self._credentials(),
            "hotelId": request.item_id,
            "roomId": request.sub_item_id,
            "roomCount": request.quantity,
            "checkIn": request.start_date.isoformat(),
            "checkOut": request.end_date.isoformat() if request.end_date else None,
            "guests": request.guests,
            "contactEmail": request.contact_email,
            "contactPhone": request.contact_phone,
            "specialRequests": request.special_requests,
            "affiliateReference": request.booking_reference,
        }

        response = self.client.request("POST", "/makeReservation.json", payload=payload, retry=False)
        if not response.success:
            raise ProviderError(
                f"Reservation failed for hotel {request.item_id}: {response.error}",
                response.error_code or "reservation_failed",
                response.status_code,
            )

        data = response.data if isinstance(response.data, dict) else {}
        status = str(data.get("status") or "confirmed").lower()
        if not data.get("booking_id") or status in FAILED_RESERVATION_STATUSES:
            raise ProviderError(
                f"Booking.com did not confirm reservation (status={status})",
                "reservation_rejected",
                response.status_code,
            )

        return ReservationConfirmation(
            supplier_booking_id=str(data["booking_id"]),
            confirmation_code=data.get("confirmation_code"),
            status=status,
            raw=data,
        )
