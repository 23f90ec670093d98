"""Resumable per-entity ingestion cursor.

One cursor per (entity, scope). Backfill scopes walk backwards through the
entity's history; `backfill_before_epoch` only ever moves to older values.
The head scope always starts from "now" and keeps no epoch.

Writes are version-checked: a writer whose lease expired mid-run and was
superseded finds its expected version gone and discards its update.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.models.ingestion_cursor import IngestionCursor
from ingestion.core.lease import dialect_insert
from ingestion.core.identifiers import normalize_entity_id
from ingestion.core.time_common import ensure_utc

logger = logging.getLogger(__name__)


class IngestionScope(str, Enum):
    RANKED = "ranked"        # ranked-queue backfill
    ALL_HEAD = "all_head"    # all-queue head scan, always from now
    NONRANKED = "nonranked"  # non-ranked backfill

    @property
    def is_backfill(self) -> bool:
        return self is not IngestionScope.ALL_HEAD

    @property
    def queue_family(self) -> Optional[str]:
        if self is IngestionScope.RANKED:
            return "ranked"
        if self is IngestionScope.NONRANKED:
            return "nonranked"
        return None


@dataclass(frozen=True, slots=True)
class Cursor:
    entity_id: str
    scope: IngestionScope
    backfill_before_epoch: Optional[int] = None
    last_run_at: Optional[datetime] = None
    consecutive_noop_runs: int = 0
    # 0 means "never persisted"; the first write creates version 1.
    version: int = 0
    updated_at: Optional[datetime] = None

    @property
    def persisted(self) -> bool:
        return self.version > 0


def initial_cursor(entity_id: str, scope: IngestionScope) -> Cursor:
    return Cursor(entity_id=entity_id, scope=scope)


def advance_cursor(
    cursor: Cursor,
    *,
    new_artifacts: int,
    oldest_epoch: Optional[int],
    now: datetime,
) -> Cursor:
    """Compute the cursor after one completed run.

    - >=1 new artifact: noop counter resets and, for backfill scopes, the epoch
      moves to the oldest observed value if that is older than the current one.
    - no new artifacts: epoch unchanged, noop counter +1.
    """
    if new_artifacts < 0:
        raise ValueError("new_artifacts must be >= 0")

    before = cursor.backfill_before_epoch
    if new_artifacts > 0:
        noop = 0
        if cursor.scope.is_backfill and oldest_epoch is not None:
            before = oldest_epoch if before is None else min(before, oldest_epoch)
    else:
        noop = cursor.consecutive_noop_runs + 1

    return replace(
        cursor,
        backfill_before_epoch=before,
        last_run_at=now,
        consecutive_noop_runs=noop,
        version=cursor.version + 1,
        updated_at=now,
    )


def _from_row(row: IngestionCursor) -> Cursor:
    return Cursor(
        entity_id=row.entity_id,
        scope=IngestionScope(row.scope),
        backfill_before_epoch=row.backfill_before_epoch,
        last_run_at=ensure_utc(row.last_run_at),
        consecutive_noop_runs=row.consecutive_noop_runs,
        version=row.version,
        updated_at=ensure_utc(row.updated_at),
    )


class CursorStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def load(self, entity_id: str, scope: IngestionScope) -> Cursor:
        entity_id = normalize_entity_id(entity_id)
        with self._session_factory() as session:
            row = session.get(IngestionCursor, (entity_id, scope.value))
            if row is None:
                return initial_cursor(entity_id, scope)
            return _from_row(row)

    def load_all(self, entity_id: str) -> dict[IngestionScope, Cursor]:
        entity_id = normalize_entity_id(entity_id)
        out = {scope: initial_cursor(entity_id, scope) for scope in IngestionScope}
        with self._session_factory() as session:
            rows = session.execute(
                select(IngestionCursor).where(IngestionCursor.entity_id == entity_id)
            ).scalars()
            for row in rows:
                cursor = _from_row(row)
                out[cursor.scope] = cursor
        return out

    def save(self, previous: Cursor, updated: Cursor) -> bool:
        """Persist `updated` if the stored version still equals `previous.version`.

        Returns False (and writes nothing) when another writer got there first.
        """
        if updated.version != previous.version + 1:
            raise ValueError("cursor update must bump version by exactly one")

        values = dict(
            backfill_before_epoch=updated.backfill_before_epoch,
            last_run_at=updated.last_run_at,
            consecutive_noop_runs=updated.consecutive_noop_runs,
            version=updated.version,
            updated_at=updated.updated_at,
        )
        with self._session_factory() as session:
            if not previous.persisted:
                insert = dialect_insert(session)
                stmt = insert(IngestionCursor).values(
                    entity_id=updated.entity_id, scope=updated.scope.value, **values
                ).on_conflict_do_nothing(index_elements=[IngestionCursor.entity_id, IngestionCursor.scope])
            else:
                stmt = (
                    update(IngestionCursor)
                    .where(
                        IngestionCursor.entity_id == updated.entity_id,
                        IngestionCursor.scope == updated.scope.value,
                        IngestionCursor.version == previous.version,
                    )
                    .values(**values)
                )
            result = session.execute(stmt)
            session.commit()
            written = result.rowcount > 0

        if not written:
            logger.warning(
                "stale cursor write discarded entity=%s scope=%s expected_version=%s",
                updated.entity_id,
                updated.scope.value,
                previous.version,
            )
        return written
