"""
Variant Resolver
Maps a creator / routine identifier and a tier to a validated variant id list
"""

from dataclasses import dataclass
from typing import List, Optional
import re

import structlog
from sqlalchemy.orm import Session

from app.models.creator import Creator
from app.models.routine import Routine, CreatorRoutine
from app.services.checkout_errors import InvalidConfiguration, RoutineNotFound

logger = structlog.get_logger(__name__)

# Expected product counts per tier
TIER_ITEM_COUNTS = {
    "base": 3,
    "upsell_1": 4,
    "upsell_2": 5,
}
VALID_TIERS = tuple(TIER_ITEM_COUNTS)

_GID_PATTERN = re.compile(r"^gid://shopify/ProductVariant/(\d+)$")


@dataclass
class RoutineVariantSelection:
    """Resolved routine, tier and concrete variant ids (not persisted)."""
    routine: Routine
    tier: str
    item_ids: List[int]
    creator: Optional[Creator] = None

    @property
    def attributed(self) -> bool:
        return self.creator is not None

    @property
    def creator_id(self) -> Optional[str]:
        return self.creator.id if self.creator else None


def normalize_item_id(raw) -> Optional[int]:
    """
    Normalize one configured variant id to a positive int.

    Accepts ints, numeric strings and Shopify variant gids.
    Returns None for anything else (booleans, floats, zero, negatives, junk).
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None
    if isinstance(raw, str):
        value = raw.strip()
        match = _GID_PATTERN.match(value)
        if match:
            value = match.group(1)
        if value.isdigit():
            number = int(value)
            return number if number > 0 else None
    return None


def select_variant_ids(routine: Routine, tier: str) -> List[int]:
    """
    Pull and validate the tier's variant list from a routine.

    Raises:
        InvalidConfiguration: missing list, wrong cardinality or invalid ids
    """
    expected = TIER_ITEM_COUNTS[tier]
    raw_ids = routine.variant_ids_for(tier)

    if not isinstance(raw_ids, list) or len(raw_ids) != expected:
        got = len(raw_ids) if isinstance(raw_ids, list) else 0
        raise InvalidConfiguration(
            f"Invalid variant configuration: expected {expected} products, got {got}"
        )

    item_ids = [normalize_item_id(raw) for raw in raw_ids]
    if any(item_id is None for item_id in item_ids):
        raise InvalidConfiguration("Invalid variant IDs: all IDs must be positive integers")

    return item_ids


class VariantResolver:
    """
    Read-only resolution of (creator?, routine?, tier) to a RoutineVariantSelection.

    Resolution order:
    1. Creator slug -> creator -> currently active routine assignment
    2. Otherwise routine id or slug, which must be active
    """

    def __init__(self, db: Session):
        """
        Args:
            db: Database session (caller-managed, never written to)
        """
        self.db = db

    def find_creator(self, creator_slug: Optional[str]) -> Optional[Creator]:
        if not creator_slug:
            return None
        return self.db.query(Creator).filter(Creator.slug == creator_slug).first()

    def find_active_assignment(self, creator: Creator) -> Optional[Routine]:
        assignment = self.db.query(CreatorRoutine).filter(
            CreatorRoutine.creator_id == creator.id,
            CreatorRoutine.is_active.is_(True)
        ).first()
        if assignment is None or assignment.routine is None:
            return None
        return assignment.routine

    def find_active_routine(self, routine_identifier: Optional[str]) -> Optional[Routine]:
        if not routine_identifier:
            return None
        return self.db.query(Routine).filter(
            (Routine.id == routine_identifier) | (Routine.slug == routine_identifier),
            Routine.is_active.is_(True)
        ).first()

    def resolve(
        self,
        creator_identifier: Optional[str],
        routine_identifier: Optional[str],
        tier: str,
    ) -> RoutineVariantSelection:
        """
        Resolve the routine and its variant ids for a tier.

        Args:
            creator_identifier: Creator slug (optional)
            routine_identifier: Routine id or slug (optional)
            tier: One of VALID_TIERS

        Returns:
            RoutineVariantSelection, with creator set when attribution resolved

        Raises:
            RoutineNotFound: neither path yields a routine
            InvalidConfiguration: tier list fails validation
        """
        creator = self.find_creator(creator_identifier)
        routine = None

        if creator is not None:
            routine = self.find_active_assignment(creator)
            if routine is None:
                logger.info("creator_without_active_routine", creator_id=creator.id)
        elif creator_identifier:
            logger.warning("creator_not_found", creator_slug=creator_identifier)

        if routine is None:
            routine = self.find_active_routine(routine_identifier)

        if routine is None:
            raise RoutineNotFound("No active routine found")

        item_ids = select_variant_ids(routine, tier)

        return RoutineVariantSelection(
            routine=routine,
            tier=tier,
            item_ids=item_ids,
            creator=creator,
        )
