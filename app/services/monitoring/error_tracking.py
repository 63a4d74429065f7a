"""
Sentry Error Tracking
Provides error tracking with checkout context for production debugging
"""

import logging
from typing import Optional

import sentry_sdk

logger = logging.getLogger(__name__)


def init_sentry() -> None:
    """
    Initialize Sentry SDK with FastAPI integration.

    If SENTRY_DSN is not configured, logs warning and returns (disabled).
    Until init runs, the sentry_sdk helpers below are no-ops.
    """
    from app.config import settings

    if settings.sentry_dsn is None:
        logger.warning("Sentry DSN not configured - error tracking disabled")
        return

    from sentry_sdk.integrations.fastapi import FastApiIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment or settings.environment,
        traces_sample_rate=0.1,  # 10% of requests traced
        integrations=[
            FastApiIntegration(),
        ],
    )

    logger.info(
        "Sentry initialized",
        extra={
            "environment": settings.sentry_environment or settings.environment,
            "traces_sample_rate": 0.1,
        }
    )


def set_checkout_context(
    idempotency_key: Optional[str],
    routine_id: Optional[str],
    creator_id: Optional[str],
    tier: str,
) -> None:
    """
    Tag the current scope with the checkout being processed.

    Args:
        idempotency_key: Reservation key (None for organic traffic)
        routine_id: Resolved routine id
        creator_id: Attributed creator id
        tier: Requested tier
    """
    sentry_sdk.set_context("checkout", {
        "idempotency_key": idempotency_key or "none",
        "routine_id": routine_id,
        "creator_id": creator_id or "organic",
        "tier": tier,
    })
    sentry_sdk.set_tag("routine_tier", tier)
    sentry_sdk.set_tag("attributed", str(creator_id is not None).lower())


def add_breadcrumb(
    category: str,
    message: str,
    level: str = "info",
    data: Optional[dict] = None
) -> None:
    """
    Add breadcrumb to Sentry for the checkout step trail.

    Args:
        category: Breadcrumb category (e.g., "checkout")
        message: Step label
        level: Severity level ("debug", "info", "warning", "error")
        data: Additional structured data
    """
    sentry_sdk.add_breadcrumb(
        category=category,
        message=message,
        level=level,
        data=data or {}
    )


def capture_exception(error: BaseException) -> None:
    """Report an unexpected exception."""
    sentry_sdk.capture_exception(error)
