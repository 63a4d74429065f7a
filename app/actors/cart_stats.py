"""
Cart Statistics Actor
Dramatiq actor counting carts created per routine, creator and tier
"""

from datetime import datetime, timezone
from typing import Optional

import dramatiq
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.routine_cart_stats import RoutineCartStats

logger = structlog.get_logger()

ORGANIC_CREATOR = "organic"


def increment_cart_stats(db: Session, routine_id: str, creator_id: Optional[str], variant: str) -> None:
    """
    Increment the carts_created counter, creating the row on first use.

    Commits. A concurrent first insert is resolved by retrying the update.
    """
    creator_key = creator_id or ORGANIC_CREATOR
    now = datetime.now(timezone.utc)

    def _bump() -> int:
        return db.query(RoutineCartStats).filter(
            RoutineCartStats.routine_id == routine_id,
            RoutineCartStats.creator_id == creator_key,
            RoutineCartStats.variant == variant
        ).update({
            RoutineCartStats.carts_created: RoutineCartStats.carts_created + 1,
            RoutineCartStats.last_cart_at: now,
        }, synchronize_session=False)

    if _bump():
        db.commit()
        return

    try:
        db.add(RoutineCartStats(
            routine_id=routine_id,
            creator_id=creator_key,
            variant=variant,
            carts_created=1,
            last_cart_at=now
        ))
        db.commit()
    except IntegrityError:
        db.rollback()
        _bump()
        db.commit()


@dramatiq.actor(max_retries=3, min_backoff=1000, max_backoff=30000, queue_name="stats")
def increment_routine_cart(routine_id: str, creator_id: Optional[str], variant: str) -> None:
    """
    Count a created cart. Dispatched fire-and-forget after a successful checkout;
    its outcome is never observed by the checkout request.

    Args:
        routine_id: Routine the cart was created for
        creator_id: Attributed creator (None for organic traffic)
        variant: Tier name
    """
    from app import database

    session_factory = database.get_session_factory()
    if session_factory is None:
        logger.warning("cart_stats_skipped", reason="database_not_configured")
        return

    db = session_factory()
    try:
        increment_cart_stats(db, routine_id, creator_id, variant)
        logger.info("cart_stats_incremented", routine_id=routine_id, creator_id=creator_id, variant=variant)
    except Exception as e:
        db.rollback()
        logger.error("cart_stats_failed", routine_id=routine_id, error=str(e))
        raise
    finally:
        db.close()
