"""
RoutineCartStats Model
Carts created per routine, creator and tier
"""

from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from app.database import Base


class RoutineCartStats(Base):
    """Counter row incremented by the cart statistics actor."""
    __tablename__ = "routine_cart_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    routine_id = Column(String(36), nullable=False)
    creator_id = Column(String(36), nullable=False, default="organic")
    variant = Column(String(20), nullable=False)

    carts_created = Column(Integer, nullable=False, default=0)
    last_cart_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('routine_id', 'creator_id', 'variant', name='uq_routine_cart_stats_scope'),
    )

    def __repr__(self):
        return f"<RoutineCartStats(routine_id={self.routine_id}, creator_id={self.creator_id}, variant='{self.variant}', carts={self.carts_created})>"
