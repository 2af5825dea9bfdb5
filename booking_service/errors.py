"""
Error taxonomy for booking and payment operations.

Every error carries an HTTP status and a machine-readable code so routers can
turn it into a consistent ``{"detail", "code"}`` response body.
"""

from typing import Optional


class BookingError(Exception):
    """Base class for all booking service failures."""

    status_code = 500
    code = "booking_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(BookingError):
    """Malformed or missing input. No side effects."""
    status_code = 400
    code = "validation_error"


class AvailabilityError(BookingError):
    """Supplier has no inventory for the request. No side effects."""
    status_code = 409
    code = "not_available"


class PolicyError(BookingError):
    """Cancellation, modification or state transition not allowed."""
    status_code = 409
    code = "policy_violation"


class PaymentError(BookingError):
    """Capture or refund failed at the gateway."""
    status_code = 402
    code = "payment_failed"


class SupplierCommitError(BookingError):
    """Payment captured but the supplier reservation failed."""
    status_code = 502
    code = "supplier_commit_failed"


class SignatureError(BookingError):
    """Webhook authenticity check failed."""
    status_code = 400
    code = "invalid_signature"


class NotFoundError(BookingError):
    """Booking or payment absent, or not owned by the caller."""
    status_code = 404
    code = "not_found"


class ConcurrencyError(BookingError):
    """A state transition kept losing optimistic version checks."""
    status_code = 409
    code = "concurrent_update"


class OrchestrationError(BookingError):
    """Unexpected failure while running a booking saga."""
    status_code = 500
    code = "orchestration_failed"
