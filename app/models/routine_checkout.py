"""
RoutineCheckout Model
One reservation row per checkout idempotency key
"""

import uuid

from sqlalchemy import Column, Integer, String, DateTime, Text, Index
from sqlalchemy.sql import func
from app.database import Base


class ReservationStatus:
    """Reservation lifecycle states."""
    CREATING = "creating"
    COMPLETED = "completed"
    FAILED = "failed"


class RoutineCheckout(Base):
    """
    Reservation for one logical checkout attempt.

    The unique idempotency_key is the single point of mutual exclusion between
    concurrent requests: whoever inserts the row (or flips it back from failed)
    owns the upstream cart call. lock_token identifies the owning attempt and
    guards every later update of the row.

    Rows are never deleted.
    """
    __tablename__ = "routine_checkouts"

    # Primary Key
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Idempotency
    idempotency_key = Column(String(255), unique=True, nullable=False, index=True)
    payload_hash = Column(String(64), nullable=False)

    # Attribution context
    routine_id = Column(String(36), nullable=False)
    creator_id = Column(String(36), nullable=True)
    variant = Column(String(20), nullable=False)

    # Lifecycle
    status = Column(String(20), nullable=False, default=ReservationStatus.CREATING)
    # 'creating', 'completed', 'failed'
    lock_token = Column(String(36), nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=1)

    # Result (populated once completed)
    cart_id = Column(String(255), nullable=True)
    checkout_url = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_routine_checkouts_status_locked_at', 'status', 'locked_at'),
        Index('ix_routine_checkouts_cart_id', 'cart_id'),
    )

    def __repr__(self):
        return f"<RoutineCheckout(id={self.id}, key='{self.idempotency_key}', status='{self.status}')>"
