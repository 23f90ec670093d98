"""Persisted, TTL-bound mutual exclusion.

Every job that touches an entity first takes the entity's lease. The store is
the only arbiter: acquisition is one conditional upsert, never a read followed
by a write, so two processes racing on the same key cannot both win.

Expiry rule: a lease is live while `now < locked_until`; a row with
`locked_until <= now` is free and may be taken over by the next caller.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.models.lease import Lease
from ingestion.core.errors import InvalidIdentifierError
from ingestion.core.time_common import ensure_utc, resolve_now

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 256


@dataclass(frozen=True, slots=True)
class LeaseRecord:
    key: str
    created_at: Optional[datetime]
    locked_until: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.locked_until

    def seconds_remaining(self, now: datetime) -> float:
        return max(0.0, (self.locked_until - now).total_seconds())


def _validate_key(key: str) -> str:
    if not isinstance(key, str) or not key.strip():
        raise InvalidIdentifierError("lease key must be a non-empty string")
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidIdentifierError(f"lease key longer than {MAX_KEY_LENGTH} chars: {key[:40]}...")
    return key


def dialect_insert(session: Session):
    """Return the dialect's INSERT construct (both support ON CONFLICT)."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert
    if name == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Unsupported database dialect for conditional upsert: {name}")


class LeaseRepository:
    """Acquire, release and inspect leases. Each call is its own transaction."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def try_acquire(self, key: str, ttl: timedelta, *, now: Optional[datetime] = None) -> bool:
        """Take the lease for `ttl` if it is free. Returns False on contention."""
        _validate_key(key)
        if ttl <= timedelta(0):
            raise ValueError(f"lease ttl must be positive, got {ttl}")
        now = resolve_now(now)
        until = now + ttl

        with self._session_factory() as session:
            insert = dialect_insert(session)
            stmt = insert(Lease).values(key=key, created_at=now, locked_until=until)
            stmt = stmt.on_conflict_do_update(
                index_elements=[Lease.key],
                set_={"locked_until": stmt.excluded.locked_until},
                where=Lease.locked_until <= now,
            )
            result = session.execute(stmt)
            session.commit()
            acquired = result.rowcount > 0

        if acquired:
            logger.debug("lease acquired key=%s until=%s", key, until.isoformat())
        else:
            logger.debug("lease busy key=%s", key)
        return acquired

    def release(self, key: str, *, now: Optional[datetime] = None) -> None:
        """Expire a live lease immediately. Releasing a free or unknown key is a no-op."""
        _validate_key(key)
        now = resolve_now(now)
        with self._session_factory() as session:
            session.execute(
                update(Lease)
                .where(Lease.key == key, Lease.locked_until > now)
                .values(locked_until=now)
            )
            session.commit()

    def get(self, key: str) -> Optional[LeaseRecord]:
        """Read-only lookup for diagnostics; never use it to decide ownership."""
        _validate_key(key)
        with self._session_factory() as session:
            row = session.execute(select(Lease).where(Lease.key == key)).scalar_one_or_none()
            if row is None:
                return None
            return LeaseRecord(
                key=row.key,
                created_at=ensure_utc(row.created_at),
                locked_until=ensure_utc(row.locked_until),
            )

    def any_active_with_prefix(self, prefix: str, *, now: Optional[datetime] = None) -> bool:
        _validate_key(prefix)
        now = resolve_now(now)
        with self._session_factory() as session:
            found = session.execute(
                select(Lease.key)
                .where(Lease.key.startswith(prefix, autoescape=True), Lease.locked_until > now)
                .limit(1)
            ).first()
        return found is not None

    def seconds_remaining(self, key: str, *, now: Optional[datetime] = None) -> float:
        record = self.get(key)
        if record is None:
            return 0.0
        return record.seconds_remaining(resolve_now(now))

    def release_quietly(self, key: str) -> None:
        """Release from cleanup paths; a failure here must not mask the original outcome."""
        try:
            self.release(key)
        except Exception:  # noqa: BLE001
            logger.warning("lease release failed key=%s", key, exc_info=True)


@contextmanager
def held_lease(repo: LeaseRepository, key: str, ttl: timedelta) -> Iterator[bool]:
    """Yield whether the lease was acquired; release it on exit if it was."""
    acquired = repo.try_acquire(key, ttl)
    try:
        yield acquired
    finally:
        if acquired:
            repo.release_quietly(key)
