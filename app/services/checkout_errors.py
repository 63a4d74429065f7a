"""
Checkout Error Taxonomy

Every failure the checkout can surface to a client is a CheckoutError subclass
carrying its HTTP status, a machine-readable category and an optional retry hint.
"""

from typing import Dict, List, Optional


class CheckoutError(Exception):
    """Base class for client-visible checkout failures."""

    status_code = 500
    category = "internal_error"

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        details: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "category": self.category}
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        if self.details:
            body["details"] = self.details
        return body

    def headers(self) -> Dict[str, str]:
        """Response headers for this error (Retry-After when a hint exists)."""
        if self.retry_after is None:
            return {}
        return {"Retry-After": str(self.retry_after)}


class InvalidRequest(CheckoutError):
    """Malformed or missing request fields."""
    status_code = 400
    category = "invalid_request"


class RoutineNotFound(CheckoutError):
    status_code = 404
    category = "not_found"


class InvalidConfiguration(CheckoutError):
    """Routine tier configuration has the wrong cardinality or bad ids."""
    status_code = 422
    category = "invalid_configuration"


class RateLimited(CheckoutError):
    """Client exceeded its request window. Carries the window state for X-RateLimit-* headers."""
    status_code = 429
    category = "rate_limited"

    def __init__(self, message: str, retry_after: int, limit: int, remaining: int, reset: int):
        super().__init__(message, retry_after=retry_after)
        self.limit = limit
        self.remaining = remaining
        self.reset = reset

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        headers.update({
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        })
        return headers


class ReservationInProgress(CheckoutError):
    """Another attempt currently owns the idempotency key (transient)."""
    status_code = 409
    category = "reservation_in_progress"


class IdempotencyConflict(CheckoutError):
    """Idempotency key reused with a different payload (permanent)."""
    status_code = 409
    category = "idempotency_conflict"


# Upstream gateway failures

class UpstreamError(CheckoutError):
    """Base class for Shopify gateway failures."""
    status_code = 502
    category = "upstream_error"

    # Short reason stored as the reservation's last_error prefix
    reason = "upstream_error"


class CircuitOpenError(UpstreamError):
    """Circuit breaker is open; no network attempt was made."""
    status_code = 503
    category = "upstream_unavailable"
    reason = "circuit_open"


class UpstreamTimeout(UpstreamError):
    status_code = 504
    category = "upstream_timeout"
    reason = "upstream_timeout"


class UpstreamUserError(UpstreamError):
    """Shopify validated and rejected specific inputs."""
    status_code = 422
    category = "upstream_rejected"
    reason = "upstream_user_error"


class UpstreamUnknownError(UpstreamError):
    pass


class ServiceUnavailable(CheckoutError):
    """A required backing service (database) is not configured."""
    status_code = 503
    category = "service_unavailable"


class InternalCheckoutError(CheckoutError):
    """
    Unexpected failure. Only the step label is exposed, never the
    underlying exception text.
    """
    status_code = 500
    category = "internal_error"

    def __init__(self, step: str):
        super().__init__("Internal server error")
        self.step = step

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["step"] = self.step
        return body
