"""
Pydantic schemas for the routine checkout endpoint
"""

from pydantic import BaseModel, Field
from typing import Optional, List


class CheckoutRequest(BaseModel):
    """
    Checkout request body.
    At least one of creator_slug / routine_id must be present.
    """
    creator_slug: Optional[str] = Field(None, description="Creator (affiliate) slug for attribution")
    routine_id: Optional[str] = Field(None, description="Routine id or slug, used when no creator routine resolves")
    variant: Optional[str] = Field(None, description="Tier: base, upsell_1 or upsell_2")
    idempotency_key: Optional[str] = Field(None, description="Client idempotency key (Idempotency-Key header wins)")

    class Config:
        extra = "ignore"


class CheckoutResponse(BaseModel):
    """
    Successful checkout
    """
    checkout_url: str
    idempotency_key: Optional[str] = None
    cached: bool = False
    attributed: bool = True


class CheckoutErrorResponse(BaseModel):
    """
    Structured checkout error
    """
    error: str
    category: str
    retry_after: Optional[int] = None
    details: Optional[List[str]] = None
    step: Optional[str] = None
