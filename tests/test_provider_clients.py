"""
Supplier Adapter Tests

HTTP traffic is served by httpx.MockTransport; retries run without delay.
"""

import json
from datetime import date, datetime
from decimal import Decimal

import httpx
import pytest


def make_client(handler, max_retries=3):
    from booking_service.services.providers import ProviderClient

    return ProviderClient("https://supplier.test", transport=httpx.MockTransport(handler),
                          max_retries=max_retries, base_delay=0)


def availability_query(**overrides):
    from booking_service.services.providers import AvailabilityQuery

    data = dict(item_id="HTL-1", sub_item_id="RM-7", start_date=date(2030, 3, 1),
                end_date=date(2030, 3, 4), adults=2, quantity=1)
    data.update(overrides)
    return AvailabilityQuery(**data)


def reservation_request(**overrides):
    from booking_service.services.providers import ReservationRequest

    data = dict(item_id="HTL-1", sub_item_id="RM-7", start_date=date(2030, 3, 1), end_date=date(2030, 3, 4),
                guests=[{"first_name": "Ada", "last_name": "Lovelace"}], contact_email="traveler@desti.app",
                booking_reference="DESTI-ABCD1234")
    data.update(overrides)
    return ReservationRequest(**data)


class TestProviderClient:

    def test_retries_server_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, json={"message": "busy"})
            return httpx.Response(200, json={"ok": True})

        response = make_client(handler).request("GET", "/ping")

        assert response.success is True
        assert response.data == {"ok": True}
        assert len(calls) == 3

    def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(422, json={"message": "Room id unknown"})

        response = make_client(handler).request("GET", "/rooms")

        assert response.success is False
        assert response.error_code == "validation_error"
        assert response.error == "Room id unknown"
        assert len(calls) == 1

    def test_commits_are_sent_once(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        response = make_client(handler).request("POST", "/reserve", payload={"a": 1}, retry=False)

        assert response.success is False
        assert response.should_retry is True
        assert len(calls) == 1

    def test_transport_errors_exhaust_retries(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        response = make_client(handler, max_retries=2).request("GET", "/ping")

        assert response.success is False
        assert response.error_code == "unreachable"

    def test_sensitive_keys_are_redacted(self):
        client = make_client(lambda request: httpx.Response(200))

        sanitized = client._sanitize_payload({
            "username": "desti", "password": "hunter2",
            "nested": {"api_key": "k", "guests": [{"token": "t", "name": "Ada"}]},
        })

        assert sanitized["password"] == "[REDACTED]"
        assert sanitized["nested"]["api_key"] == "[REDACTED]"
        assert sanitized["nested"]["guests"][0] == {"token": "[REDACTED]", "name": "Ada"}
        assert sanitized["username"] == "desti"


class TestBookingComProvider:

    def test_availability(self):
        from booking_service.services.providers import BookingComProvider

        seen = {}

        def handler(request):
            seen.update(dict(request.url.params))
            return httpx.Response(200, json=[{
                "available": 1, "price": "149.90", "currency": "EUR",
                "cancellation_deadline": "2030-02-20T12:00:00Z",
            }])

        provider = BookingComProvider(username="desti", password="pw", client=make_client(handler))
        quote = provider.check_availability(availability_query())

        assert quote.available is True
        assert quote.price == Decimal("149.90")
        assert quote.currency == "EUR"
        assert quote.cancellation_deadline == datetime(2030, 2, 20, 12, 0)
        assert seen["hotel_ids"] == "HTL-1"
        assert seen["checkin"] == "2030-03-01"
        assert seen["username"] == "desti"

    def test_empty_availability(self):
        from booking_service.services.providers import BookingComProvider

        provider = BookingComProvider(username="u", password="p",
                                      client=make_client(lambda request: httpx.Response(200, json=[])))

        assert provider.check_availability(availability_query()).available is False

    def test_availability_failure_raises(self):
        from booking_service.services.providers import BookingComProvider, ProviderError

        provider = BookingComProvider(username="u", password="p",
                                      client=make_client(lambda request: httpx.Response(401, json={})))

        with pytest.raises(ProviderError) as exc_info:
            provider.check_availability(availability_query())
        assert exc_info.value.code == "unauthorized"

    def test_reservation(self):
        from booking_service.services.providers import BookingComProvider

        sent = {}

        def handler(request):
            sent.update(json.loads(request.content))
            return httpx.Response(200, json={"booking_id": 98765, "confirmation_code": "BC-CONF", "status": "ok"})

        provider = BookingComProvider(username="u", password="p", client=make_client(handler))
        confirmation = provider.commit_reservation(reservation_request(quantity=2))

        assert confirmation.supplier_booking_id == "98765"
        assert confirmation.confirmation_code == "BC-CONF"
        assert sent["roomCount"] == 2
        assert sent["affiliateReference"] == "DESTI-ABCD1234"
        assert sent["checkOut"] == "2030-03-04"

    def test_rejected_reservation(self):
        from booking_service.services.providers import BookingComProvider, ProviderError

        provider = BookingComProvider(username="u", password="p", client=make_client(
            lambda request: httpx.Response(200, json={"booking_id": "1", "status": "rejected"})
        ))

        with pytest.raises(ProviderError) as exc_info:
            provider.commit_reservation(reservation_request())
        assert exc_info.value.code == "reservation_rejected"


class TestSkyscannerProvider:

    FLIGHT = {
        "price": 320.0,
        "currency": "USD",
        "legs": [{
            "origin": {"displayCode": "ZRH"},
            "destination": {"displayCode": "LHR"},
            "departure": "2030-03-01T08:30:00",
            "arrival": "2030-03-01T09:15:00",
            "segments": [{"flightNumber": "LX318"}],
            "carriers": [{"name": "Swiss"}],
        }],
    }

    def test_availability_and_leg_summary(self):
        from booking_service.services.providers import SkyscannerProvider

        provider = SkyscannerProvider(api_key="key", client=make_client(
            lambda request: httpx.Response(200, json=self.FLIGHT)
        ))
        quote = provider.check_availability(availability_query(item_id="FL-1", sub_item_id=None))

        assert quote.available is True
        assert quote.price == Decimal("320.0")
        summary = quote.details["summary"]
        assert summary["flight_number"] == "LX318"
        assert summary["departure_airport"] == "ZRH"
        assert summary["departure_time"] == datetime(2030, 3, 1, 8, 30)

    def test_commit_revalidates_every_leg(self):
        from booking_service.services.providers import SkyscannerProvider

        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json=self.FLIGHT)

        provider = SkyscannerProvider(api_key="key", client=make_client(handler))
        confirmation = provider.commit_reservation(
            reservation_request(item_id="FL-1", sub_item_id=None, related_item_ids=["FL-2"])
        )

        assert confirmation.supplier_booking_id == "FL-1+FL-2"
        assert paths == ["/apiservices/v3/flights/FL-1", "/apiservices/v3/flights/FL-2"]

    def test_commit_fails_when_fare_is_gone(self):
        from booking_service.services.providers import ProviderError, SkyscannerProvider

        provider = SkyscannerProvider(api_key="key", client=make_client(
            lambda request: httpx.Response(200, json={**self.FLIGHT, "available": False})
        ))

        with pytest.raises(ProviderError) as exc_info:
            provider.commit_reservation(reservation_request(item_id="FL-1"))
        assert exc_info.value.code == "fare_unavailable"

    def test_api_key_header(self):
        from booking_service.services.providers import SkyscannerProvider

        headers = {}

        def handler(request):
            headers.update(request.headers)
            return httpx.Response(200, json=self.FLIGHT)

        provider = SkyscannerProvider(api_key="key", base_url="https://supplier.test",
                                      transport=httpx.MockTransport(handler))
        provider.get_flight_details("FL-1")

        assert headers["x-rapidapi-key"] == "key"
