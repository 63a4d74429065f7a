"""
Reservation Store
SQLAlchemy-backed checkout reservations with optimistic concurrency
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.models.routine_checkout import RoutineCheckout, ReservationStatus

logger = structlog.get_logger(__name__)

STALE_LOCK_REASON = "stale_lock_timeout"


class ReservationExists(Exception):
    """Insert lost the race: a row with this idempotency key already exists."""

    def __init__(self, idempotency_key: str):
        super().__init__(f"reservation already exists for key {idempotency_key}")
        self.idempotency_key = idempotency_key


@dataclass(frozen=True)
class Reservation:
    """Detached snapshot of a routine_checkouts row."""
    id: str
    idempotency_key: str
    payload_hash: str
    status: str
    lock_token: Optional[str]
    locked_at: Optional[datetime]
    attempts: int
    cart_id: Optional[str]
    checkout_url: Optional[str]
    last_error: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: RoutineCheckout) -> "Reservation":
        return cls(
            id=row.id,
            idempotency_key=row.idempotency_key,
            payload_hash=row.payload_hash,
            status=row.status,
            lock_token=row.lock_token,
            locked_at=_as_utc(row.locked_at),
            attempts=row.attempts,
            cart_id=row.cart_id,
            checkout_url=row.checkout_url,
            last_error=row.last_error,
            created_at=_as_utc(row.created_at),
        )

    def is_stale(self, stale_after: timedelta, now: Optional[datetime] = None) -> bool:
        """True when a creating row has been locked for longer than stale_after."""
        if self.status != ReservationStatus.CREATING:
            return False
        started = self.locked_at or self.created_at
        if started is None:
            return True
        now = now or _utcnow()
        return now - started > stale_after


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Some drivers (SQLite) hand back naive datetimes; everything is written as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def truncate_error(message: str, max_length: int = 500) -> str:
    if not message:
        return "unknown error"
    return message[:max_length]


class ReservationStore:
    """
    Persistent reservations keyed by a unique idempotency key.

    Every method runs in its own short session/transaction. Mutual exclusion
    comes only from the unique constraint on idempotency_key and from updates
    conditional on (id, status, lock_token): a method that mutates a row
    reports whether it actually won, and callers act on that.
    """

    def __init__(self, session_factory: sessionmaker, max_error_length: int = 500):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker (independent transactions per call)
            max_error_length: last_error truncation length
        """
        self.session_factory = session_factory
        self.max_error_length = max_error_length
        self.logger = logger.bind(service="reservation_store")

    def find(self, idempotency_key: str) -> Optional[Reservation]:
        """Point lookup by idempotency key."""
        session: Session = self.session_factory()
        try:
            row = session.query(RoutineCheckout).filter(
                RoutineCheckout.idempotency_key == idempotency_key
            ).first()
            return Reservation.from_row(row) if row else None
        finally:
            session.close()

    def insert_creating(
        self,
        idempotency_key: str,
        payload_hash: str,
        routine_id: str,
        creator_id: Optional[str],
        variant: str,
    ) -> Reservation:
        """
        Insert a fresh reservation in 'creating', owned by the caller.

        Raises:
            ReservationExists: a row with this key already exists (race lost)
        """
        session: Session = self.session_factory()
        try:
            now = _utcnow()
            row = RoutineCheckout(
                id=str(uuid.uuid4()),
                idempotency_key=idempotency_key,
                payload_hash=payload_hash,
                routine_id=routine_id,
                creator_id=creator_id,
                variant=variant,
                status=ReservationStatus.CREATING,
                lock_token=str(uuid.uuid4()),
                locked_at=now,
                attempts=1,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)

            self.logger.info("reservation_created", key=idempotency_key, reservation_id=row.id)
            return Reservation.from_row(row)

        except IntegrityError:
            session.rollback()
            self.logger.info("reservation_insert_conflict", key=idempotency_key)
            raise ReservationExists(idempotency_key)
        finally:
            session.close()

    def _conditional_update(self, reservation: Reservation, expected_status: str, values: dict) -> bool:
        session: Session = self.session_factory()
        try:
            query = session.query(RoutineCheckout).filter(
                RoutineCheckout.id == reservation.id,
                RoutineCheckout.status == expected_status,
            )
            if reservation.lock_token is None:
                query = query.filter(RoutineCheckout.lock_token.is_(None))
            else:
                query = query.filter(RoutineCheckout.lock_token == reservation.lock_token)

            values = dict(values, updated_at=_utcnow())
            updated = query.update(values, synchronize_session=False)
            session.commit()
            return updated == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def claim_failed(self, reservation: Reservation) -> Optional[Reservation]:
        """
        Transition a failed row back to 'creating' for a fresh attempt.

        Returns:
            The claimed reservation (new lock_token), or None if another
            attempt changed the row first.
        """
        now = _utcnow()
        new_token = str(uuid.uuid4())
        won = self._conditional_update(reservation, ReservationStatus.FAILED, {
            "status": ReservationStatus.CREATING,
            "lock_token": new_token,
            "locked_at": now,
            "attempts": reservation.attempts + 1,
            "cart_id": None,
            "checkout_url": None,
            "last_error": None,
        })
        if not won:
            self.logger.info("reservation_claim_lost", key=reservation.idempotency_key)
            return None

        self.logger.info(
            "reservation_reclaimed",
            key=reservation.idempotency_key,
            attempt=reservation.attempts + 1
        )
        return Reservation(
            id=reservation.id,
            idempotency_key=reservation.idempotency_key,
            payload_hash=reservation.payload_hash,
            status=ReservationStatus.CREATING,
            lock_token=new_token,
            locked_at=now,
            attempts=reservation.attempts + 1,
            cart_id=None,
            checkout_url=None,
            last_error=None,
            created_at=reservation.created_at,
        )

    def expire_stale_lock(self, reservation: Reservation) -> Optional[Reservation]:
        """
        Mark an abandoned 'creating' row as failed (stale_lock_timeout).

        Returns:
            The row as failed, or None if its owner finished or another
            request expired it first.
        """
        won = self._conditional_update(reservation, ReservationStatus.CREATING, {
            "status": ReservationStatus.FAILED,
            "last_error": STALE_LOCK_REASON,
        })
        if not won:
            return None

        self.logger.warning(
            "reservation_stale_lock_expired",
            key=reservation.idempotency_key,
            locked_at=reservation.locked_at
        )
        return Reservation(
            id=reservation.id,
            idempotency_key=reservation.idempotency_key,
            payload_hash=reservation.payload_hash,
            status=ReservationStatus.FAILED,
            lock_token=reservation.lock_token,
            locked_at=reservation.locked_at,
            attempts=reservation.attempts,
            cart_id=None,
            checkout_url=None,
            last_error=STALE_LOCK_REASON,
            created_at=reservation.created_at,
        )

    def complete(self, reservation: Reservation, cart_id: str, checkout_url: str) -> bool:
        """Reconcile an owned row to 'completed'. Returns False if ownership was lost."""
        won = self._conditional_update(reservation, ReservationStatus.CREATING, {
            "status": ReservationStatus.COMPLETED,
            "cart_id": cart_id,
            "checkout_url": checkout_url,
            "last_error": None,
        })
        if won:
            self.logger.info("reservation_completed", key=reservation.idempotency_key, cart_id=cart_id)
        else:
            self.logger.warning("reservation_complete_lost_ownership", key=reservation.idempotency_key)
        return won

    def recover_created_cart(self, reservation: Reservation) -> bool:
        """
        Promote a failed row that already holds a created cart to 'completed'.

        Covers a completion write that failed after Shopify created the cart.
        Returns False if another request changed the row first.
        """
        if not (reservation.cart_id and reservation.checkout_url):
            return False

        won = self._conditional_update(reservation, ReservationStatus.FAILED, {
            "status": ReservationStatus.COMPLETED,
            "last_error": None,
        })
        if won:
            self.logger.info(
                "reservation_cart_recovered",
                key=reservation.idempotency_key,
                cart_id=reservation.cart_id
            )
        return won

    def fail(
        self,
        reservation: Reservation,
        error: str,
        cart_id: Optional[str] = None,
        checkout_url: Optional[str] = None,
    ) -> bool:
        """
        Reconcile an owned row to 'failed' with a truncated error.

        cart_id / checkout_url are kept when the cart was created but the
        completion write failed, so a retry can recover that cart.
        """
        values = {
            "status": ReservationStatus.FAILED,
            "last_error": truncate_error(error, self.max_error_length),
        }
        if cart_id:
            values["cart_id"] = cart_id
        if checkout_url:
            values["checkout_url"] = checkout_url

        won = self._conditional_update(reservation, ReservationStatus.CREATING, values)
        if won:
            self.logger.info("reservation_failed", key=reservation.idempotency_key, error=values["last_error"])
        else:
            self.logger.warning("reservation_fail_lost_ownership", key=reservation.idempotency_key)
        return won

    def expire_stale(self, stale_after: timedelta) -> int:
        """
        Bulk-expire every 'creating' row locked longer than stale_after.

        Called by the scheduled sweep.

        Returns:
            Number of rows expired
        """
        session: Session = self.session_factory()
        try:
            now = _utcnow()
            cutoff = now - stale_after
            expired = session.query(RoutineCheckout).filter(
                RoutineCheckout.status == ReservationStatus.CREATING,
                RoutineCheckout.locked_at < cutoff
            ).update({
                "status": ReservationStatus.FAILED,
                "last_error": STALE_LOCK_REASON,
                "updated_at": now,
            }, synchronize_session=False)
            session.commit()

            if expired:
                self.logger.warning("stale_reservations_expired", count=expired)
            return expired

        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
