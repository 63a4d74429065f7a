"""
Routine Checkout Router
Creates (or replays) a Shopify checkout for a creator routine
"""

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from typing import Optional
import structlog

from app import database
from app.models.checkout_schemas import CheckoutRequest, CheckoutResponse, CheckoutErrorResponse
from app.services.checkout_errors import CheckoutError, ServiceUnavailable
from app.services.checkout_orchestrator import CheckoutCommand, CheckoutOrchestrator
from app.services.rate_limiter import create_checkout_rate_limiter, get_client_ip
from app.services.shopify_client import ShopifyStorefrontClient

logger = structlog.get_logger()

router = APIRouter(prefix="/api/routines", tags=["checkout"])

_orchestrator: Optional[CheckoutOrchestrator] = None


def get_checkout_orchestrator() -> CheckoutOrchestrator:
    """
    Process-wide orchestrator, built on first use from the configured
    session factory, Shopify client and rate limiter.
    """
    global _orchestrator

    session_factory = database.get_session_factory()
    if session_factory is None:
        raise ServiceUnavailable("Database not configured")

    if _orchestrator is None:
        _orchestrator = CheckoutOrchestrator(
            session_factory=session_factory,
            gateway=ShopifyStorefrontClient(),
            rate_limiter=create_checkout_rate_limiter(),
        )
        logger.info("checkout_orchestrator_initialized")
    return _orchestrator


def checkout_error_response(error: CheckoutError) -> JSONResponse:
    """Render a CheckoutError with its status and headers (Retry-After, X-RateLimit-*)."""
    return JSONResponse(status_code=error.status_code, content=error.to_dict(), headers=error.headers())


@router.get("/checkout")
def checkout_status():
    """Liveness stub for the checkout endpoint"""
    return {"status": "ok", "endpoint": "/api/routines/checkout"}


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    responses={
        400: {"model": CheckoutErrorResponse},
        404: {"model": CheckoutErrorResponse},
        409: {"model": CheckoutErrorResponse},
        422: {"model": CheckoutErrorResponse},
        429: {"model": CheckoutErrorResponse},
        502: {"model": CheckoutErrorResponse},
        503: {"model": CheckoutErrorResponse},
        504: {"model": CheckoutErrorResponse},
    },
)
def create_checkout(
    body: CheckoutRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    """
    Create a checkout for a routine tier

    Retrying with the same Idempotency-Key (or the same body, which derives
    the same key) returns the original checkout URL with cached=true.

    Args:
        body: creator_slug / routine_id, variant, optional idempotency_key
        request: Used for the client address (rate limiting)
        idempotency_key: Idempotency-Key header (takes priority over the body field)
        orchestrator: Checkout orchestrator

    Returns:
        checkout_url, idempotency_key, cached, attributed
    """
    peer = request.client.host if request.client else None
    command = CheckoutCommand(
        tier=body.variant,
        creator_slug=body.creator_slug,
        routine_id=body.routine_id,
        idempotency_key=idempotency_key or body.idempotency_key,
        client_key=get_client_ip(request.headers, peer),
    )

    try:
        result = orchestrator.checkout(command)
    except CheckoutError as e:
        logger.info("checkout_rejected", category=e.category, status=e.status_code)
        return checkout_error_response(e)

    return result.to_dict()
