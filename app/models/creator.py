"""
Creator Model
Affiliates that share routines and earn commission on attributed carts
"""

import uuid

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from app.database import Base


class Creator(Base):
    """
    Creator (affiliate) record.

    Only the fields the checkout needs are mapped: slug for lookup, status,
    and an optional discount code passed to the cart.
    """
    __tablename__ = "creators"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    slug = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True)

    status = Column(String(50), nullable=False, default="active")
    # 'active', 'pending', 'suspended'

    discount_code = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Creator(id={self.id}, slug='{self.slug}', status='{self.status}')>"
