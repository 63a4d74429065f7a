"""
Middleware Module
Correlation ids for every request (X-Request-ID)
"""

from app.middleware.correlation_id import CorrelationIdMiddleware, get_correlation_id

__all__ = ["CorrelationIdMiddleware", "get_correlation_id"]
