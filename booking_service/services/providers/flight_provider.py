"""
Skyscanner flight inventory adapter.

Skyscanner prices itineraries but does not ticket them, so "committing" a
flight reservation re-fetches every leg and confirms the quoted fare is still
offered. The itinerary ids become the supplier booking id.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, Optional

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


class SkyscannerProvider(InventoryProvider):
    name = "skyscanner"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        client: Optional[ProviderClient] = None
    ):
        key = api_key if api_key is not None else settings.skyscanner_api_key
        self.client = client or ProviderClient(
            base_url or settings.skyscanner_base_url,
            headers={"X-RapidAPI-Key": key},
            transport=transport,
        )

    def get_flight_details(self, flight_id: str) -> Dict[str, Any]:
        response = self.client.request("GET", f"/apiservices/v3/flights/{flight_id}")
        if not response.success:
            raise ProviderError(
                f"Flight lookup failed for {flight_id}: {response.error}",
                response.error_code or "flight_lookup_failed",
                response.status_code,
            )
        if not isinstance(response.data, dict):
            raise ProviderError(f"Empty flight details for {flight_id}", "invalid_response")
        return response.data

    @staticmethod
    def leg_summary(flight: Dict[str, Any]) -> Dict[str, Any]:
        """First leg of an itinerary flattened into booking item fields."""
        legs = flight.get("legs") or [{}]
        leg = legs[0] or {}
        segments = leg.get("segments") or [{}]
        carriers = leg.get("carriers") or [{}]
        departure = leg.get("departure")
        arrival = leg.get("arrival")
        return {
            "flight_number": (segments[0] or {}).get("flightNumber"),
            "airline": (carriers[0] or {}).get("name"),
            "departure_airport": (leg.get("origin") or {}).get("displayCode"),
            "arrival_airport": (leg.get("destination") or {}).get("displayCode"),
            "departure_time": parse_datetime(departure) if departure else None,
            "arrival_time": parse_datetime(arrival) if arrival else None,
        }

    @staticmethod
    def _price(flight: Dict[str, Any]) -> Decimal:
        try:
            return Decimal(str(flight.get("price") or 0))
        except InvalidOperation:
            raise ProviderError(f"Unparseable flight price: {flight.get('price')!r}", "invalid_response")

    def check_availability(self, query: AvailabilityQuery) -> AvailabilityQuote:
        flight = self.get_flight_details(query.item_id)
        price = self._price(flight)
        return AvailabilityQuote(
            available=flight.get("available", True) is not False and price > 0,
            price=price,
            currency=flight.get("currency"),
            details={**flight, "summary": self.leg_summary(flight)},
        )

    def commit_reservation(self, request: ReservationRequest) -> ReservationConfirmation:
        flight_ids = [request.item_id, *request.related_item_ids]
        for flight_id in flight_ids:
            flight = self.get_flight_details(flight_id)
            if flight.get("available") is False:
                raise ProviderError(f"Flight {flight_id} is no longer offered", "fare_unavailable")

        logger.info(f"Skyscanner itinerary {'+'.join(flight_ids)} re-validated for {request.booking_reference}")
        return ReservationConfirmation(
            supplier_booking_id="+".join(flight_ids),
            confirmation_code=None,
            status="confirmed",
            raw={"flight_ids": flight_ids},
        )
