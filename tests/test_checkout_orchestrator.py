"""
Tests for CheckoutOrchestrator

Tests cover:
- Idempotent replay (cached result, one upstream call)
- Concurrent dedup across threads
- Key reuse with a different payload
- Stale lock recovery and failed-row retry
- Cardinality gate before any side effect
- Organic bypass
- Upstream failure classification and reconciliation to failed
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import httpx
import pytest

from app.models import RoutineCheckout, ReservationStatus
from app.services.checkout_errors import (
    CircuitOpenError,
    IdempotencyConflict,
    InternalCheckoutError,
    InvalidConfiguration,
    InvalidRequest,
    RateLimited,
    ReservationInProgress,
    RoutineNotFound,
    UpstreamTimeout,
    UpstreamUnknownError,
    UpstreamUserError,
)
from app.services.checkout_orchestrator import CheckoutCommand, CheckoutOrchestrator
from app.services.idempotency import compute_payload_hash, generate_idempotency_key
from app.services.monitoring.circuit_breakers import create_breaker
from app.services.rate_limiter import InMemoryRateLimiter
from app.services.shopify_client import ShopifyStorefrontClient
from tests.conftest import BASE_IDS, FakeShopifyGateway


def _rows(session_factory):
    session = session_factory()
    try:
        return session.query(RoutineCheckout).all()
    finally:
        session.close()


def _row(session_factory, key):
    session = session_factory()
    try:
        return session.query(RoutineCheckout).filter(RoutineCheckout.idempotency_key == key).one()
    finally:
        session.close()


def emma(tier="base", key=None):
    return CheckoutCommand(tier=tier, creator_slug="emma", idempotency_key=key)


def _seed_creating(orchestrator, key, payload_hash, minutes_old=0):
    """Insert a creating row as if another request owned it, optionally aged."""
    reservation = orchestrator.store.insert_creating(key, payload_hash, "routine-glow", "creator-emma", "base")
    if minutes_old:
        session = orchestrator.session_factory()
        try:
            old = datetime.now(timezone.utc) - timedelta(minutes=minutes_old)
            session.query(RoutineCheckout).filter(RoutineCheckout.id == reservation.id).update(
                {"locked_at": old}, synchronize_session=False
            )
            session.commit()
        finally:
            session.close()
    return reservation


def _seed_emma_base(orchestrator, minutes_old=0):
    """Seed the reservation an emma/base request would derive."""
    key = generate_idempotency_key("creator-emma", "base", "routine-glow", BASE_IDS)
    payload_hash = compute_payload_hash("creator-emma", "routine-glow", "base", BASE_IDS)
    _seed_creating(orchestrator, key, payload_hash, minutes_old)
    return key


class TestIdempotentReplay:

    def test_first_request_creates_cart(self, orchestrator, gateway, session_factory, stats_dispatcher):
        result = orchestrator.checkout(emma())

        assert result.checkout_url == "https://shop.example.com/cart/c/1"
        assert result.cached is False
        assert result.attributed is True
        assert len(result.idempotency_key) == 32

        row = _row(session_factory, result.idempotency_key)
        assert row.status == ReservationStatus.COMPLETED
        assert row.checkout_url == result.checkout_url
        assert row.cart_id == "gid://shopify/Cart/1"
        assert row.creator_id == "creator-emma"
        assert row.variant == "base"

        stats_dispatcher.assert_called_once_with("routine-glow", "creator-emma", "base")

    def test_replay_returns_cached_url(self, orchestrator, gateway):
        first = orchestrator.checkout(emma())
        second = orchestrator.checkout(emma())

        assert second.checkout_url == first.checkout_url
        assert second.idempotency_key == first.idempotency_key
        assert second.cached is True
        assert len(gateway.create_calls) == 1

    def test_replay_with_client_key(self, orchestrator, gateway):
        first = orchestrator.checkout(emma(key="client-key-1"))
        second = orchestrator.checkout(emma(key="client-key-1"))

        assert first.idempotency_key == "client-key-1"
        assert second.cached is True
        assert len(gateway.create_calls) == 1

    def test_cart_payload(self, orchestrator, gateway):
        result = orchestrator.checkout(emma(tier="upsell_1"))

        call = gateway.create_calls[0]
        assert call["variant_ids"] == [111, 222, 333, 444]
        assert call["note"] == "Routine Glow via emma"
        assert call["discount_codes"] == ["EMMA10"]
        attributes = {a["key"]: a["value"] for a in call["attributes"]}
        assert attributes["creator_id"] == "creator-emma"
        assert attributes["creator_slug"] == "emma"
        assert attributes["routine_id"] == "routine-glow"
        assert attributes["routine_variant"] == "upsell_1"
        assert attributes["idempotency_key"] == result.idempotency_key
        assert gateway.validate_calls == [[111, 222, 333, 444]]

    def test_different_tiers_are_different_checkouts(self, orchestrator, gateway):
        base = orchestrator.checkout(emma(tier="base"))
        upsell = orchestrator.checkout(emma(tier="upsell_2"))
        assert base.idempotency_key != upsell.idempotency_key
        assert len(gateway.create_calls) == 2


class TestKeyReuse:

    def test_completed_key_with_different_payload(self, orchestrator, session_factory):
        first = orchestrator.checkout(emma(tier="base", key="shared"))

        with pytest.raises(IdempotencyConflict) as exc_info:
            orchestrator.checkout(emma(tier="upsell_1", key="shared"))
        assert exc_info.value.status_code == 409

        row = _row(session_factory, "shared")
        assert row.variant == "base"
        assert row.checkout_url == first.checkout_url

    def test_failed_key_with_different_payload(self, orchestrator, gateway, session_factory):
        gateway.create_error = UpstreamUnknownError("boom")
        with pytest.raises(UpstreamUnknownError):
            orchestrator.checkout(emma(key="shared"))

        gateway.create_error = None
        with pytest.raises(IdempotencyConflict):
            orchestrator.checkout(emma(tier="upsell_2", key="shared"))

        assert _row(session_factory, "shared").status == ReservationStatus.FAILED

    def test_organic_request_ignores_client_key(self, orchestrator, gateway):
        orchestrator.checkout(emma(key="shared"))
        # Organic traffic bypasses reservations entirely
        result = orchestrator.checkout(CheckoutCommand(tier="base", routine_id="hydration-routine", idempotency_key="shared"))
        assert result.attributed is False
        assert len(gateway.create_calls) == 2


class TestInProgressAndStale:

    def test_fresh_creating_row_rejects_with_retry_hint(self, orchestrator, gateway):
        _seed_emma_base(orchestrator, minutes_old=0)

        with pytest.raises(ReservationInProgress) as exc_info:
            orchestrator.checkout(emma())

        assert exc_info.value.retry_after == 2
        assert exc_info.value.status_code == 409
        assert gateway.create_calls == []

    def test_stale_creating_row_is_superseded(self, orchestrator, gateway, session_factory):
        key = _seed_emma_base(orchestrator, minutes_old=5)

        result = orchestrator.checkout(emma())

        assert result.idempotency_key == key
        assert result.cached is False
        assert len(gateway.create_calls) == 1
        row = _row(session_factory, key)
        assert row.status == ReservationStatus.COMPLETED
        assert row.attempts == 2

    def test_stale_row_with_other_payload_is_conflict(self, orchestrator, gateway, session_factory):
        _seed_creating(orchestrator, "shared", "0" * 64, minutes_old=5)

        with pytest.raises(IdempotencyConflict):
            orchestrator.checkout(emma(key="shared"))

        row = _row(session_factory, "shared")
        assert row.status == ReservationStatus.FAILED
        assert row.last_error == "stale_lock_timeout"
        assert gateway.create_calls == []

    def test_failed_row_retried_with_same_payload(self, orchestrator, gateway, session_factory):
        gateway.create_error = UpstreamTimeout("Shopify request timeout")
        with pytest.raises(UpstreamTimeout):
            orchestrator.checkout(emma(key="retry-me"))
        assert _row(session_factory, "retry-me").status == ReservationStatus.FAILED

        gateway.create_error = None
        result = orchestrator.checkout(emma(key="retry-me"))

        assert result.cached is False
        row = _row(session_factory, "retry-me")
        assert row.status == ReservationStatus.COMPLETED
        assert row.last_error is None
        assert row.attempts == 2
        assert len(gateway.create_calls) == 2


class TestInsertRace:

    def test_loser_sees_in_progress(self, orchestrator, gateway):
        key = _seed_emma_base(orchestrator)
        real_find = orchestrator.store.find
        calls = []

        def find_missing_first(lookup_key):
            calls.append(lookup_key)
            # First lookup runs before the winner's insert is visible
            if len(calls) == 1:
                return None
            return real_find(lookup_key)

        with patch.object(orchestrator.store, "find", side_effect=find_missing_first):
            with pytest.raises(ReservationInProgress) as exc_info:
                orchestrator.checkout(emma())

        assert calls == [key, key]
        assert "Concurrent" in exc_info.value.message
        assert gateway.create_calls == []

    def test_loser_returns_winner_result_when_completed(self, orchestrator, gateway):
        winner = orchestrator.checkout(emma())
        real_find = orchestrator.store.find
        calls = []

        def find_missing_first(lookup_key):
            calls.append(lookup_key)
            if len(calls) == 1:
                return None
            return real_find(lookup_key)

        with patch.object(orchestrator.store, "find", side_effect=find_missing_first):
            result = orchestrator.checkout(emma())

        assert result.cached is True
        assert result.checkout_url == winner.checkout_url
        assert len(gateway.create_calls) == 1


class TestConcurrentDedup:

    def test_parallel_identical_requests_create_one_cart(self, session_factory, catalog, stats_dispatcher):
        gateway = FakeShopifyGateway(delay=0.3)
        orchestrator = CheckoutOrchestrator(
            session_factory=session_factory,
            gateway=gateway,
            stats_dispatcher=stats_dispatcher,
        )
        workers = 6
        barrier = threading.Barrier(workers)
        outcomes = []
        lock = threading.Lock()

        def run():
            barrier.wait()
            try:
                outcome = orchestrator.checkout(emma())
            except ReservationInProgress as e:
                outcome = e
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=run) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(outcomes) == workers
        assert len(gateway.create_calls) == 1

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        assert successes
        assert {o.checkout_url for o in successes} == {"https://shop.example.com/cart/c/1"}
        assert len(_rows(session_factory)) == 1


class TestValidationGate:

    @pytest.mark.parametrize("tier", [None, "", "premium", "BASE"])
    def test_invalid_tier(self, orchestrator, gateway, session_factory, tier):
        with pytest.raises(InvalidRequest):
            orchestrator.checkout(CheckoutCommand(tier=tier, creator_slug="emma"))
        assert gateway.validate_calls == []
        assert _rows(session_factory) == []

    def test_missing_identifiers(self, orchestrator):
        with pytest.raises(InvalidRequest):
            orchestrator.checkout(CheckoutCommand(tier="base", creator_slug="  ", routine_id=None))

    def test_oversized_client_key(self, orchestrator):
        with pytest.raises(InvalidRequest):
            orchestrator.checkout(emma(key="k" * 300))

    def test_client_key_is_not_trimmed(self, orchestrator, gateway):
        padded = orchestrator.checkout(emma(tier="base", key="  abc  "))
        bare = orchestrator.checkout(emma(tier="upsell_1", key="abc"))

        assert padded.idempotency_key == "  abc  "
        assert bare.idempotency_key == "abc"
        assert bare.cached is False
        assert len(gateway.create_calls) == 2

    def test_cardinality_checked_before_side_effects(self, orchestrator, gateway, session_factory):
        with pytest.raises(InvalidConfiguration) as exc_info:
            orchestrator.checkout(CheckoutCommand(tier="upsell_1", creator_slug="noah", routine_id="hydration-routine"))

        assert exc_info.value.status_code == 422
        assert gateway.validate_calls == []
        assert gateway.create_calls == []
        assert _rows(session_factory) == []

    def test_not_found(self, orchestrator, session_factory):
        with pytest.raises(RoutineNotFound):
            orchestrator.checkout(CheckoutCommand(tier="base", creator_slug="nobody", routine_id="missing"))
        assert _rows(session_factory) == []


class TestOrganicBypass:

    def test_two_identical_organic_requests_hit_upstream_twice(self, orchestrator, gateway, session_factory):
        command = CheckoutCommand(tier="base", routine_id="hydration-routine")

        first = orchestrator.checkout(command)
        second = orchestrator.checkout(command)

        assert first.attributed is False
        assert first.idempotency_key is None
        assert first.checkout_url != second.checkout_url
        assert len(gateway.create_calls) == 2
        assert _rows(session_factory) == []

    def test_organic_cart_has_no_creator_attributes(self, orchestrator, gateway):
        orchestrator.checkout(CheckoutCommand(tier="base", creator_slug="ghost", routine_id="hydration-routine"))

        call = gateway.create_calls[0]
        keys = {a["key"] for a in call["attributes"]}
        assert "creator_id" not in keys
        assert "idempotency_key" not in keys
        assert call["note"] == "Routine Hydration via organic"
        assert call["variant_ids"] == [701, 702, 703]


class TestUpstreamFailures:

    @pytest.mark.parametrize("error,reason", [
        (UpstreamTimeout("Shopify request timeout"), "upstream_timeout"),
        (UpstreamUnknownError("Shopify API error: 500"), "upstream_error"),
        (UpstreamUserError("Variant is sold out", details=["Variant is sold out"]), "upstream_user_error"),
        (CircuitOpenError("Shopify temporarily unavailable", retry_after=30), "circuit_open"),
    ])
    def test_failure_marks_reservation_failed(self, orchestrator, gateway, session_factory, stats_dispatcher, error, reason):
        gateway.create_error = error

        with pytest.raises(type(error)):
            orchestrator.checkout(emma(key="k1"))

        row = _row(session_factory, "k1")
        assert row.status == ReservationStatus.FAILED
        assert row.last_error.startswith(reason)
        stats_dispatcher.assert_not_called()

    def test_item_validation_failure_skips_cart_creation(self, orchestrator, gateway, session_factory):
        gateway.validate_error = UpstreamUserError("Invalid products in routine", details=["Variant 222 does not exist"])

        with pytest.raises(UpstreamUserError) as exc_info:
            orchestrator.checkout(emma(key="k1"))

        assert exc_info.value.details == ["Variant 222 does not exist"]
        assert gateway.create_calls == []
        assert _row(session_factory, "k1").status == ReservationStatus.FAILED

    def test_unexpected_error_reports_step_only(self, orchestrator, gateway, session_factory):
        gateway.create_error = KeyError("secret internals")

        with pytest.raises(InternalCheckoutError) as exc_info:
            orchestrator.checkout(emma(key="k1"))

        body = exc_info.value.to_dict()
        assert body["step"] == "create_cart"
        assert "secret" not in body["error"]
        assert _row(session_factory, "k1").status == ReservationStatus.FAILED

    def test_breaker_open_fails_fast_without_network(self, session_factory, catalog, stats_dispatcher):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"data": {}})

        breaker = create_breaker("test_shopify_open", fail_max=1, reset_timeout=60)
        breaker.open()
        client = ShopifyStorefrontClient(
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
            breaker=breaker,
            storefront_token="test-token",
            domain="test.myshopify.com",
        )
        orchestrator = CheckoutOrchestrator(
            session_factory=session_factory,
            gateway=client,
            stats_dispatcher=stats_dispatcher,
        )

        with pytest.raises(CircuitOpenError) as exc_info:
            orchestrator.checkout(emma(key="k1"))

        assert exc_info.value.status_code == 503
        assert exc_info.value.retry_after == 60
        assert requests == []
        row = _row(session_factory, "k1")
        assert row.status == ReservationStatus.FAILED
        assert row.last_error.startswith("circuit_open")

    def test_finalize_failure_still_returns_cart(self, orchestrator, gateway):
        with patch.object(orchestrator.store, "complete", side_effect=RuntimeError("db down")):
            result = orchestrator.checkout(emma(key="k1"))

        assert result.checkout_url == "https://shop.example.com/cart/c/1"
        assert orchestrator.store.find("k1").status == ReservationStatus.FAILED
        assert orchestrator.store.find("k1").cart_id == "gid://shopify/Cart/1"
        assert orchestrator.store.find("k1").checkout_url == result.checkout_url

    def test_retry_after_finalize_failure_reuses_created_cart(self, orchestrator, gateway, session_factory):
        with patch.object(orchestrator.store, "complete", side_effect=RuntimeError("db down")):
            first = orchestrator.checkout(emma(key="k1"))

        second = orchestrator.checkout(emma(key="k1"))

        assert len(gateway.create_calls) == 1
        assert second.cached is True
        assert second.checkout_url == first.checkout_url
        row = _row(session_factory, "k1")
        assert row.status == ReservationStatus.COMPLETED
        assert row.last_error is None
        assert row.attempts == 1

    def test_finalize_failure_with_other_payload_is_conflict(self, orchestrator, gateway):
        with patch.object(orchestrator.store, "complete", side_effect=RuntimeError("db down")):
            orchestrator.checkout(emma(key="k1"))

        with pytest.raises(IdempotencyConflict):
            orchestrator.checkout(emma(tier="upsell_1", key="k1"))
        assert len(gateway.create_calls) == 1


class TestAmbient:

    def test_stats_failure_does_not_affect_response(self, session_factory, catalog, gateway):
        orchestrator = CheckoutOrchestrator(
            session_factory=session_factory,
            gateway=gateway,
            stats_dispatcher=Mock(side_effect=ConnectionError("redis down")),
        )

        result = orchestrator.checkout(emma())
        assert result.checkout_url

    def test_rate_limited_before_anything_else(self, session_factory, catalog, gateway, stats_dispatcher):
        orchestrator = CheckoutOrchestrator(
            session_factory=session_factory,
            gateway=gateway,
            rate_limiter=InMemoryRateLimiter(max_requests=1, window_seconds=60),
            stats_dispatcher=stats_dispatcher,
        )
        command = CheckoutCommand(tier="base", creator_slug="emma", client_key="10.0.0.1")

        orchestrator.checkout(command)
        with pytest.raises(RateLimited) as exc_info:
            orchestrator.checkout(command)

        assert exc_info.value.status_code == 429
        assert 1 <= exc_info.value.retry_after <= 60
        assert exc_info.value.limit == 1
        assert exc_info.value.remaining == 0
        assert exc_info.value.headers()["X-RateLimit-Limit"] == "1"
        assert len(gateway.create_calls) == 1
