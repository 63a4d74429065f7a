"""
Routine Models
Pre-configured product bundles and their assignment to creators
"""

import uuid

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class Routine(Base):
    """
    Product bundle with one Shopify variant list per up-sell tier.

    Variant lists are stored as JSON arrays of numeric Shopify variant ids.
    """
    __tablename__ = "routines"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Variant ids per tier (base: 3, upsell_1: 4, upsell_2: 5)
    base_shopify_variant_ids = Column(JSON, nullable=True)
    upsell_1_shopify_variant_ids = Column(JSON, nullable=True)
    upsell_2_shopify_variant_ids = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def variant_ids_for(self, tier: str):
        """Raw configured variant id list for a tier (may be None)."""
        return getattr(self, f"{tier}_shopify_variant_ids", None)

    def __repr__(self):
        return f"<Routine(id={self.id}, slug='{self.slug}', active={self.is_active})>"


class CreatorRoutine(Base):
    """
    Assignment of a routine to a creator. At most one is active per creator.
    """
    __tablename__ = "creator_routines"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    creator_id = Column(String(36), ForeignKey("creators.id"), nullable=False)
    routine_id = Column(String(36), ForeignKey("routines.id"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    routine = relationship("Routine", lazy="joined")

    __table_args__ = (
        Index('ix_creator_routines_creator_active', 'creator_id', 'is_active'),
    )

    def __repr__(self):
        return f"<CreatorRoutine(creator_id={self.creator_id}, routine_id={self.routine_id}, active={self.is_active})>"
