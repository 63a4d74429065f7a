"""
Monitoring Module
Exports for structured logging, circuit breakers and error tracking
"""

from app.services.monitoring.logging import setup_logging, CorrelationJsonFormatter
from app.services.monitoring.circuit_breakers import (
    get_shopify_breaker,
    breaker_stats,
    CircuitBreakerError,
    CircuitBreakerLogListener,
)
from app.services.monitoring.error_tracking import init_sentry, add_breadcrumb, set_checkout_context

__all__ = [
    "setup_logging",
    "CorrelationJsonFormatter",
    "get_shopify_breaker",
    "breaker_stats",
    "CircuitBreakerError",
    "CircuitBreakerLogListener",
    "init_sentry",
    "add_breadcrumb",
    "set_checkout_context",
]
