"""
Checkout Orchestrator
Idempotent routine checkout: reservation state machine around Shopify cart creation
"""

from dataclasses import dataclass
from datetime import timedelta
import math
from typing import Callable, Dict, List, Optional, Union

import structlog
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.middleware.correlation_id import get_correlation_id
from app.models.routine_checkout import ReservationStatus
from app.services.checkout_errors import (
    CheckoutError,
    IdempotencyConflict,
    InternalCheckoutError,
    InvalidRequest,
    RateLimited,
    ReservationInProgress,
    UpstreamError,
)
from app.services.idempotency import (
    compute_payload_hash,
    generate_idempotency_key,
    normalize_client_key,
)
from app.services.monitoring.error_tracking import add_breadcrumb, capture_exception, set_checkout_context
from app.services.reservation_store import Reservation, ReservationExists, ReservationStore
from app.services.variant_resolver import VALID_TIERS, RoutineVariantSelection, VariantResolver

logger = structlog.get_logger(__name__)


@dataclass
class CheckoutCommand:
    """Inbound checkout request, already parsed from HTTP."""
    tier: Optional[str]
    creator_slug: Optional[str] = None
    routine_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    client_key: str = "unknown"


@dataclass
class CheckoutResult:
    checkout_url: str
    idempotency_key: Optional[str]
    cached: bool = False
    attributed: bool = True

    def to_dict(self) -> dict:
        return {
            "checkout_url": self.checkout_url,
            "idempotency_key": self.idempotency_key,
            "cached": self.cached,
            "attributed": self.attributed,
        }


def _default_stats_dispatcher(routine_id: str, creator_id: Optional[str], variant: str) -> None:
    from app.actors import increment_routine_cart

    increment_routine_cart.send(routine_id, creator_id, variant)


class CheckoutOrchestrator:
    """
    Turns a checkout request into at most one Shopify cart per idempotency key.

    Attributed flow:
    1. Admission control (rate limiter)
    2. Input validation
    3. Variant resolution (cardinality gate, no side effects)
    4. Idempotency key + payload hash
    5. Reservation lookup / transition (only the owner proceeds)
    6. Proactive variant validation + cart creation
    7. Reconcile reservation to completed / failed

    Organic (unattributed) requests skip steps 4, 5 and 7 and always call Shopify.

    Holds no per-request state, so one instance serves every request in a process.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway,
        rate_limiter=None,
        stats_dispatcher: Optional[Callable[[str, Optional[str], str], None]] = None,
        stale_after: Optional[timedelta] = None,
        retry_after_seconds: Optional[int] = None,
        max_error_length: Optional[int] = None,
    ):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker, constructed once per process
            gateway: ShopifyStorefrontClient (or anything with the same two methods)
            rate_limiter: Object with limit(client_key) -> RateLimitResult, or None
            stats_dispatcher: Fire-and-forget cart counter (defaults to the Dramatiq actor)
            stale_after: Age after which a 'creating' reservation is abandoned
            retry_after_seconds: Retry hint for transient reservation conflicts
            max_error_length: last_error truncation length
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.rate_limiter = rate_limiter
        self.stats_dispatcher = stats_dispatcher or _default_stats_dispatcher
        self.stale_after = stale_after or timedelta(seconds=settings.reservation_stale_seconds)
        self.retry_after_seconds = retry_after_seconds or settings.reservation_retry_after_seconds
        self.store = ReservationStore(
            session_factory,
            max_error_length=max_error_length or settings.last_error_max_length
        )

    # Entry point

    def checkout(self, command: CheckoutCommand) -> CheckoutResult:
        """
        Run one checkout request.

        Returns:
            CheckoutResult (cached=True when an earlier attempt's cart is reused)

        Raises:
            CheckoutError: every client-visible failure, including
                InternalCheckoutError carrying the failing step label
        """
        step = "admission"
        try:
            self._admit(command.client_key)

            step = "validate_input"
            client_key = self._validate(command)

            step = "resolve_variant"
            selection = self._resolve(command)
            add_breadcrumb("checkout", "variant_resolved", data={
                "routine_id": selection.routine.id,
                "tier": selection.tier,
                "attributed": selection.attributed,
            })

            if not selection.attributed:
                step = "organic_checkout"
                return self._checkout_organic(selection)

            step = "derive_key"
            idempotency_key = client_key or generate_idempotency_key(
                selection.creator_id, selection.tier, selection.routine.id, selection.item_ids
            )
            payload_hash = compute_payload_hash(
                selection.creator_id, selection.routine.id, selection.tier, selection.item_ids
            )
            set_checkout_context(idempotency_key, selection.routine.id, selection.creator_id, selection.tier)

            step = "reserve"
            outcome = self._reserve(idempotency_key, payload_hash, selection)
            if isinstance(outcome, CheckoutResult):
                return outcome

            step = "execute"
            return self._execute(outcome, selection)

        except CheckoutError:
            raise
        except Exception as e:
            logger.error("checkout_unexpected_error", step=step, error_type=type(e).__name__, exc_info=True)
            capture_exception(e)
            raise InternalCheckoutError(step) from e

    # Steps

    def _admit(self, client_key: str) -> None:
        if self.rate_limiter is None:
            return
        result = self.rate_limiter.limit(client_key)
        if not result.success:
            raise RateLimited(
                "Too many requests",
                retry_after=result.retry_after(),
                limit=result.limit,
                remaining=result.remaining,
                reset=int(math.ceil(result.reset)),
            )

    def _validate(self, command: CheckoutCommand) -> Optional[str]:
        """Validate request fields. Returns the normalized client idempotency key."""
        if not command.tier or command.tier not in VALID_TIERS:
            raise InvalidRequest(f"variant must be one of: {', '.join(VALID_TIERS)}")

        for name in ("creator_slug", "routine_id"):
            value = getattr(command, name)
            if value is not None and not isinstance(value, str):
                raise InvalidRequest(f"{name} must be a string")

        if not (command.creator_slug or "").strip() and not (command.routine_id or "").strip():
            raise InvalidRequest("creator_slug or routine_id is required")

        try:
            return normalize_client_key(command.idempotency_key)
        except ValueError as e:
            raise InvalidRequest(str(e))

    def _resolve(self, command: CheckoutCommand) -> RoutineVariantSelection:
        db = self.session_factory()
        try:
            return VariantResolver(db).resolve(
                (command.creator_slug or "").strip() or None,
                (command.routine_id or "").strip() or None,
                command.tier,
            )
        finally:
            db.close()

    def _reserve(
        self,
        idempotency_key: str,
        payload_hash: str,
        selection: RoutineVariantSelection,
    ) -> Union[Reservation, CheckoutResult]:
        """
        Apply the reservation state machine.

        Returns:
            A Reservation in 'creating' owned by this call, or a cached CheckoutResult

        Raises:
            ReservationInProgress: another attempt owns the key (transient)
            IdempotencyConflict: key already used for a different payload
        """
        existing = self.store.find(idempotency_key)

        if existing is None:
            return self._insert_reservation(idempotency_key, payload_hash, selection)

        if existing.status == ReservationStatus.CREATING:
            if not existing.is_stale(self.stale_after):
                logger.info("reservation_in_progress", key=idempotency_key)
                raise ReservationInProgress(
                    "Checkout creation in progress, retry in a moment",
                    retry_after=self.retry_after_seconds
                )
            expired = self.store.expire_stale_lock(existing)
            if expired is None:
                raise ReservationInProgress(
                    "Checkout creation in progress, retry in a moment",
                    retry_after=self.retry_after_seconds
                )
            existing = expired

        if existing.payload_hash != payload_hash:
            logger.warning("idempotency_key_conflict", key=idempotency_key, status=existing.status)
            raise IdempotencyConflict("Idempotency key conflict: different payload")

        if existing.status == ReservationStatus.COMPLETED:
            return self._cached_result(existing)

        if existing.cart_id and existing.checkout_url:
            # Cart was created but never recorded as completed: hand it back
            self.store.recover_created_cart(existing)
            return self._cached_result(existing)

        claimed = self.store.claim_failed(existing)
        if claimed is None:
            raise ReservationInProgress(
                "Concurrent checkout creation, retry in a moment",
                retry_after=self.retry_after_seconds
            )
        return claimed

    def _insert_reservation(
        self,
        idempotency_key: str,
        payload_hash: str,
        selection: RoutineVariantSelection,
    ) -> Union[Reservation, CheckoutResult]:
        try:
            return self.store.insert_creating(
                idempotency_key,
                payload_hash,
                routine_id=selection.routine.id,
                creator_id=selection.creator_id,
                variant=selection.tier,
            )
        except ReservationExists:
            # Lost the race between lookup and insert: re-read the winner's row
            winner = self.store.find(idempotency_key)
            if winner is not None and winner.status == ReservationStatus.COMPLETED:
                if winner.payload_hash != payload_hash:
                    raise IdempotencyConflict("Idempotency key conflict: different payload")
                return self._cached_result(winner)

            raise ReservationInProgress(
                "Concurrent checkout creation, retry in a moment",
                retry_after=self.retry_after_seconds
            )

    def _cached_result(self, reservation: Reservation) -> CheckoutResult:
        logger.info("checkout_cached", key=reservation.idempotency_key)
        return CheckoutResult(
            checkout_url=reservation.checkout_url,
            idempotency_key=reservation.idempotency_key,
            cached=True,
            attributed=True,
        )

    def _execute(self, reservation: Reservation, selection: RoutineVariantSelection) -> CheckoutResult:
        """
        Call Shopify for an owned reservation and reconcile the row.

        Every failure marks the reservation failed before propagating.
        """
        request_id = get_correlation_id()
        key = reservation.idempotency_key
        step = "validate_items"
        try:
            add_breadcrumb("checkout", step, data={"key": key})
            self.gateway.validate_variant_ids(selection.item_ids, request_id)

            step = "create_cart"
            add_breadcrumb("checkout", step, data={"key": key})
            cart = self.gateway.create_cart(
                selection.item_ids,
                self._cart_attributes(selection, key),
                self._cart_note(selection),
                request_id,
                discount_codes=self._discount_codes(selection),
            )
        except Exception as e:
            self._fail_reservation(reservation, self._error_text(e))
            logger.warning(
                "checkout_upstream_failed",
                key=key,
                step=step,
                routine_id=selection.routine.id,
                error_type=type(e).__name__
            )
            if isinstance(e, CheckoutError):
                raise
            capture_exception(e)
            raise InternalCheckoutError(step) from e

        try:
            self.store.complete(reservation, cart.cart_id, cart.checkout_url)
        except Exception as e:
            # The cart exists; the caller still gets it
            logger.error("reservation_finalize_failed", key=key, cart_id=cart.cart_id, error=str(e))
            self._fail_reservation(
                reservation,
                f"finalize_failed: {type(e).__name__}",
                cart_id=cart.cart_id,
                checkout_url=cart.checkout_url,
            )

        self._dispatch_stats(selection)

        logger.info("checkout_created", key=key, routine_id=selection.routine.id, tier=selection.tier)
        return CheckoutResult(
            checkout_url=cart.checkout_url,
            idempotency_key=key,
            cached=False,
            attributed=True,
        )

    def _checkout_organic(self, selection: RoutineVariantSelection) -> CheckoutResult:
        """No reservation: every organic request creates its own cart."""
        request_id = get_correlation_id()
        logger.info("checkout_organic", routine_id=selection.routine.id, tier=selection.tier)

        self.gateway.validate_variant_ids(selection.item_ids, request_id)
        cart = self.gateway.create_cart(
            selection.item_ids,
            self._cart_attributes(selection, None),
            self._cart_note(selection),
            request_id,
        )
        self._dispatch_stats(selection)

        return CheckoutResult(
            checkout_url=cart.checkout_url,
            idempotency_key=None,
            cached=False,
            attributed=False,
        )

    # Helpers

    def _cart_attributes(self, selection: RoutineVariantSelection, idempotency_key: Optional[str]) -> List[Dict[str, str]]:
        attributes = []
        if selection.creator is not None:
            attributes.append({"key": "creator_id", "value": selection.creator.id})
            attributes.append({"key": "creator_slug", "value": selection.creator.slug})
        attributes.extend([
            {"key": "routine_id", "value": selection.routine.id},
            {"key": "routine_variant", "value": selection.tier},
            {"key": "source", "value": settings.cart_source_attribute},
        ])
        if idempotency_key:
            attributes.append({"key": "idempotency_key", "value": idempotency_key})
        return attributes

    def _cart_note(self, selection: RoutineVariantSelection) -> str:
        via = selection.creator.slug if selection.creator is not None else "organic"
        return f"Routine {selection.routine.title} via {via}"

    def _discount_codes(self, selection: RoutineVariantSelection) -> Optional[List[str]]:
        if selection.creator is not None and selection.creator.discount_code:
            return [selection.creator.discount_code]
        return None

    def _error_text(self, error: Exception) -> str:
        if isinstance(error, UpstreamError):
            return f"{error.reason}: {error.message}"
        return f"internal_error: {type(error).__name__}"

    def _fail_reservation(
        self,
        reservation: Reservation,
        error: str,
        cart_id: Optional[str] = None,
        checkout_url: Optional[str] = None,
    ) -> None:
        # Must not mask the error being propagated
        try:
            self.store.fail(reservation, error, cart_id=cart_id, checkout_url=checkout_url)
        except Exception as e:
            logger.error("reservation_fail_update_failed", key=reservation.idempotency_key, error=str(e))

    def _dispatch_stats(self, selection: RoutineVariantSelection) -> None:
        try:
            self.stats_dispatcher(selection.routine.id, selection.creator_id, selection.tier)
        except Exception as e:
            logger.warning("cart_stats_dispatch_failed", routine_id=selection.routine.id, error=str(e))
