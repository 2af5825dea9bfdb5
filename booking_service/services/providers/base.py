"""
Inventory Provider Base Client

Shared HTTP plumbing for supplier adapters:
- httpx client with a hard timeout per request
- Structured error mapping per HTTP status
- Exponential backoff on 429/5xx and transport errors for safe (read) calls
- Payload sanitizing so credentials never reach the logs

Reservation commits are not replayed automatically: a retried POST could
create a second reservation at the supplier.
"""

import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Any

import httpx

from ...config import settings

logger = logging.getLogger(__name__)


@dataclass
class ProviderResponse:
    """Wrapper for supplier API responses with structured error info"""
    success: bool
    status_code: int
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    should_retry: bool = False


@dataclass
class ProviderErrorInfo:
    code: str
    message: str
    status_code: int
    retryable: bool = False


ERROR_MAP = {
    400: ProviderErrorInfo("bad_request", "Supplier rejected the request", 400, False),
    401: ProviderErrorInfo("unauthorized", "Invalid supplier credentials", 401, False),
    403: ProviderErrorInfo("forbidden", "Access denied by supplier", 403, False),
    404: ProviderErrorInfo("not_found", "Supplier resource not found", 404, False),
    409: ProviderErrorInfo("conflict", "Supplier reported a conflict", 409, False),
    422: ProviderErrorInfo("validation_error", "Supplier could not process the request", 422, False),
    429: ProviderErrorInfo("rate_limited", "Too many requests to supplier", 429, True),
    500: ProviderErrorInfo("server_error", "Supplier server error", 500, True),
    502: ProviderErrorInfo("bad_gateway", "Supplier gateway error", 502, True),
    503: ProviderErrorInfo("service_unavailable", "Supplier unavailable", 503, True),
    504: ProviderErrorInfo("gateway_timeout", "Supplier timed out", 504, True),
}


class ProviderError(Exception):
    """A supplier call failed after retries (or was not retryable)."""

    def __init__(self, message: str, code: str = "provider_error", status_code: int = 0):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


# ================================
# Supplier-neutral contract
# ================================

@dataclass
class AvailabilityQuery:
    item_id: str
    start_date: date
    end_date: Optional[date] = None
    sub_item_id: Optional[str] = None
    adults: int = 1
    children: int = 0
    quantity: int = 1


@dataclass
class AvailabilityQuote:
    available: bool
    price: Decimal = Decimal("0")
    currency: Optional[str] = None
    cancellation_deadline: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReservationRequest:
    item_id: str
    start_date: date
    end_date: Optional[date]
    guests: List[Dict[str, str]]
    contact_email: str
    contact_phone: Optional[str] = None
    sub_item_id: Optional[str] = None
    quantity: int = 1
    special_requests: Optional[str] = None
    booking_reference: Optional[str] = None
    related_item_ids: List[str] = field(default_factory=list)


@dataclass
class ReservationConfirmation:
    supplier_booking_id: str
    confirmation_code: Optional[str] = None
    status: str = "confirmed"
    raw: Dict[str, Any] = field(default_factory=dict)


class InventoryProvider(ABC):
    """Contract every supplier adapter implements."""

    name: str = "unknown"

    @abstractmethod
    def check_availability(self, query: AvailabilityQuery) -> AvailabilityQuote:
        pass

    @abstractmethod
    def commit_reservation(self, request: ReservationRequest) -> ReservationConfirmation:
        pass


# ================================
# HTTP client
# ================================

class ProviderClient:
    """Retrying JSON-over-HTTP client used by the supplier adapters."""

    SENSITIVE_KEYS = ("password", "secret", "token", "api_key", "apikey", "authorization", "x-rapidapi-key")

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Content-Type": "application/json",
            "User-Agent": "Desti-Booking/1.0",
            **(headers or {}),
        }
        self.timeout = timeout or settings.provider_timeout_seconds
        self.max_retries = max(1, max_retries or settings.provider_max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.transport = transport

    def _sanitize_payload(self, payload: Optional[Dict]) -> Optional[Dict]:
        """Remove sensitive data from payload before logging"""
        if not payload:
            return None

        def sanitize_dict(d: Dict) -> Dict:
            result = {}
            for k, v in d.items():
                if any(sk in k.lower() for sk in self.SENSITIVE_KEYS):
                    result[k] = "[REDACTED]"
                elif isinstance(v, dict):
                    result[k] = sanitize_dict(v)
                elif isinstance(v, list):
                    result[k] = [sanitize_dict(i) if isinstance(i, dict) else i for i in v]
                else:
                    result[k] = v
            return result

        return sanitize_dict(payload)

    def _map_error(self, status_code: int, data: Any) -> ProviderErrorInfo:
        """Map HTTP status code to structured error"""
        if status_code in ERROR_MAP:
            error = ERROR_MAP[status_code]
            if isinstance(data, dict):
                msg = data.get("message") or data.get("error")
                if isinstance(msg, str) and msg:
                    return ProviderErrorInfo(error.code, msg, status_code, error.retryable)
            return error

        if status_code >= 500:
            return ProviderErrorInfo("server_error", f"Server error: {status_code}", status_code, True)

        return ProviderErrorInfo("unknown", f"Unknown error: {status_code}", status_code, False)

    def _delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        payload: Optional[Dict] = None,
        retry: bool = True
    ) -> ProviderResponse:
        """
        Make an HTTP request with retry logic.

        ``retry=False`` performs exactly one attempt; used for calls that are
        not safe to replay.
        """
        url = f"{self.base_url}{endpoint}"
        attempts = self.max_retries if retry else 1
        last_error = None
        last_status = 0
        start_time = time.time()

        for attempt in range(attempts):
            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.request(method.upper(), url, headers=self.headers, params=params, json=payload)
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
                if attempt + 1 < attempts:
                    delay = self._delay(attempt)
                    logger.warning(f"{method} {endpoint} failed: {last_error}, retrying in {delay}s")
                    time.sleep(delay)
                continue

            status_code = response.status_code
            last_status = status_code
            try:
                data = response.json()
            except ValueError:
                data = None

            duration_ms = int((time.time() - start_time) * 1000)

            if 200 <= status_code < 300:
                logger.debug(f"{method} {endpoint} -> {status_code} in {duration_ms}ms")
                return ProviderResponse(success=True, status_code=status_code, data=data)

            error = self._map_error(status_code, data)
            if error.retryable and attempt + 1 < attempts:
                delay = self._delay(attempt)
                logger.warning(f"{method} {endpoint} -> {status_code}, retrying in {delay}s")
                time.sleep(delay)
                last_error = error.message
                continue

            logger.error(
                f"{method} {endpoint} -> {status_code} ({error.code}): {error.message} "
                f"payload={self._sanitize_payload(payload)}"
            )
            return ProviderResponse(
                success=False,
                status_code=status_code,
                data=data,
                error=error.message,
                error_code=error.code,
                should_retry=error.retryable
            )

        logger.error(f"{method} {endpoint} failed after {attempts} attempt(s): {last_error}")
        return ProviderResponse(
            success=False,
            status_code=last_status,
            error=f"All retries failed: {last_error}",
            error_code="unreachable",
            should_retry=True
        )
