"""
Shared fixtures: SQLite-backed sessions, seeded catalog, fake Shopify gateway.
"""

import threading
import time
from typing import List, Optional
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.database import Base
from app.models import Creator, Routine, CreatorRoutine
from app.services.checkout_orchestrator import CheckoutOrchestrator
from app.services.shopify_client import CartCreateResult

BASE_IDS = [111, 222, 333]
UPSELL_1_IDS = [111, 222, 333, 444]
UPSELL_2_IDS = [111, 222, 333, 444, 555]


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so several threads can share the database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'checkout.db'}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def catalog(db):
    """
    Seed:
    - creator 'emma' with an active assignment to 'glow-routine' and a discount code
    - creator 'noah' with no active assignment
    - active 'hydration-routine' (no creator), inactive 'old-routine'
    """
    glow = Routine(
        id="routine-glow",
        title="Glow",
        slug="glow-routine",
        is_active=True,
        base_shopify_variant_ids=BASE_IDS,
        upsell_1_shopify_variant_ids=UPSELL_1_IDS,
        upsell_2_shopify_variant_ids=UPSELL_2_IDS,
    )
    hydration = Routine(
        id="routine-hydration",
        title="Hydration",
        slug="hydration-routine",
        is_active=True,
        base_shopify_variant_ids=["701", "702", "703"],
        upsell_1_shopify_variant_ids=[701, 702, 703],  # misconfigured: 3 instead of 4
        upsell_2_shopify_variant_ids=None,
    )
    old = Routine(
        id="routine-old",
        title="Old",
        slug="old-routine",
        is_active=False,
        base_shopify_variant_ids=BASE_IDS,
    )
    emma = Creator(id="creator-emma", slug="emma", email="emma@example.com", discount_code="EMMA10")
    noah = Creator(id="creator-noah", slug="noah", email="noah@example.com")

    db.add_all([glow, hydration, old, emma, noah])
    db.flush()
    db.add_all([
        CreatorRoutine(creator_id=emma.id, routine_id=glow.id, is_active=True),
        CreatorRoutine(creator_id=noah.id, routine_id=old.id, is_active=False),
    ])
    db.commit()
    return {"glow": glow.id, "hydration": hydration.id, "old": old.id}


class FakeShopifyGateway:
    """
    In-memory stand-in for ShopifyStorefrontClient.

    Records calls; each create_cart returns a distinct cart unless an error is set.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.create_calls: List[dict] = []
        self.validate_calls: List[list] = []
        self.create_error: Optional[Exception] = None
        self.validate_error: Optional[Exception] = None
        self._lock = threading.Lock()

    def validate_variant_ids(self, variant_ids, request_id):
        with self._lock:
            self.validate_calls.append(list(variant_ids))
        if self.validate_error is not None:
            raise self.validate_error

    def create_cart(self, variant_ids, attributes, note, request_id, discount_codes=None):
        with self._lock:
            self.create_calls.append({
                "variant_ids": list(variant_ids),
                "attributes": attributes,
                "note": note,
                "discount_codes": discount_codes,
            })
            number = len(self.create_calls)
        if self.delay:
            time.sleep(self.delay)
        if self.create_error is not None:
            raise self.create_error
        return CartCreateResult(
            cart_id=f"gid://shopify/Cart/{number}",
            checkout_url=f"https://shop.example.com/cart/c/{number}",
        )


@pytest.fixture
def gateway():
    return FakeShopifyGateway()


@pytest.fixture
def stats_dispatcher():
    return Mock()


@pytest.fixture
def orchestrator(session_factory, gateway, stats_dispatcher, catalog):
    return CheckoutOrchestrator(
        session_factory=session_factory,
        gateway=gateway,
        rate_limiter=None,
        stats_dispatcher=stats_dispatcher,
    )
