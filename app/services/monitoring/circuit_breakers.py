"""
Circuit Breaker Implementation for External Service Dependencies

Protects against cascading failures by opening circuits after consecutive failures
and automatically attempting recovery after a timeout period.

Services protected:
- Shopify Storefront API (cart creation, variant validation)
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, Optional
import logging
import math

import pybreaker

from app.config import settings

logger = logging.getLogger(__name__)


class CircuitBreakerLogListener(pybreaker.CircuitBreakerListener):
    """
    Logs circuit breaker state changes and failures.

    An opened circuit means the upstream service is isolated and checkout
    requests will fail fast until the reset timeout elapses.
    """

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state: pybreaker.CircuitBreakerState, new_state: pybreaker.CircuitBreakerState):
        """
        Handle circuit breaker state changes.

        Args:
            cb: The circuit breaker instance
            old_state: Previous state
            new_state: New state
        """
        old_name = old_state.name if old_state is not None else "none"
        level = logging.ERROR if new_state.name == pybreaker.STATE_OPEN else logging.WARNING
        logger.log(
            level,
            f"Circuit breaker state change: {cb.name} transitioned from {old_name} to {new_state.name}",
            extra={
                "circuit_breaker": cb.name,
                "old_state": old_name,
                "new_state": new_state.name,
                "fail_count": cb.fail_counter,
                "reset_timeout": cb.reset_timeout,
            }
        )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException):
        logger.warning(
            f"Circuit breaker {cb.name} recorded failure: {type(exc).__name__}",
            extra={"circuit_breaker": cb.name, "fail_count": cb.fail_counter}
        )


def create_breaker(
    name: str,
    fail_max: Optional[int] = None,
    reset_timeout: Optional[int] = None,
    exclude: Iterable[type] = (),
) -> pybreaker.CircuitBreaker:
    """
    Create a circuit breaker with configured thresholds.

    Args:
        name: Service name for the circuit breaker
        fail_max: Consecutive failures before opening (defaults to settings)
        reset_timeout: Seconds before a trial call (defaults to settings)
        exclude: Exception types that do not count as failures

    Returns:
        Configured CircuitBreaker instance
    """
    return pybreaker.CircuitBreaker(
        name=name,
        fail_max=fail_max or settings.circuit_breaker_fail_max,
        reset_timeout=reset_timeout or settings.circuit_breaker_reset_timeout,
        exclude=list(exclude),
        throw_new_error_on_trip=False,  # the tripping call re-raises its own error
        listeners=[CircuitBreakerLogListener()]
    )


# Module-level instances (lazy initialization)
_breakers: Dict[str, pybreaker.CircuitBreaker] = {}

_BREAKER_NAMES = {
    "shopify": "shopify_storefront",
}


def get_breaker(service_name: str) -> pybreaker.CircuitBreaker:
    """
    Get circuit breaker for a specific service.

    Lazy initializes breakers on first access to avoid import-time side effects.

    Args:
        service_name: Service name ("shopify")

    Returns:
        Circuit breaker instance for the service

    Raises:
        ValueError: If service_name is not recognized
    """
    if service_name not in _BREAKER_NAMES:
        raise ValueError(f"Unknown service name: {service_name}. Must be one of {sorted(_BREAKER_NAMES)}")

    if service_name not in _breakers:
        # User errors are a valid upstream answer, not an outage
        from app.services.checkout_errors import UpstreamUserError

        _breakers[service_name] = create_breaker(_BREAKER_NAMES[service_name], exclude=[UpstreamUserError])
        logger.info(f"Initialized {service_name} circuit breaker")
    return _breakers[service_name]


def get_shopify_breaker() -> pybreaker.CircuitBreaker:
    """
    Get circuit breaker for the Shopify Storefront API.

    Returns:
        Circuit breaker instance for Shopify
    """
    return get_breaker("shopify")


def seconds_until_half_open(breaker: pybreaker.CircuitBreaker, now: Optional[datetime] = None) -> int:
    """
    Seconds left before an open breaker lets a trial call through (at least 1).

    Falls back to the full reset_timeout when the open time is unknown.
    """
    reset_timeout = float(breaker.reset_timeout)
    opened_at = getattr(breaker._state_storage, "opened_at", None)
    if opened_at is None:
        return max(1, int(math.ceil(reset_timeout)))

    if now is None:
        now = datetime.now(timezone.utc)
        if opened_at.tzinfo is None:
            now = now.replace(tzinfo=None)
    elapsed = (now - opened_at).total_seconds()
    return max(1, int(math.ceil(reset_timeout - elapsed)))


def breaker_stats(breaker: pybreaker.CircuitBreaker) -> dict:
    """Snapshot of breaker state for health reporting."""
    return {
        "name": breaker.name,
        "state": breaker.current_state,
        "fail_counter": breaker.fail_counter,
        "fail_max": breaker.fail_max,
        "reset_timeout": breaker.reset_timeout,
    }


# Re-export exception for caller handling
from pybreaker import CircuitBreakerError

__all__ = [
    "CircuitBreakerLogListener",
    "create_breaker",
    "get_breaker",
    "get_shopify_breaker",
    "breaker_stats",
    "seconds_until_half_open",
    "CircuitBreakerError",
]
