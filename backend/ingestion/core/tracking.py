"""Tracked entities and live-game snapshots.

Batch jobs pick their candidates from `tracked_entities`; the live poller
appends to `live_snapshots` and reads the latest row back to decide whether an
entity is due again.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.models.live_snapshot import LiveSnapshot
from app.models.tracked_entity import TrackedEntity
from ingestion.core.identifiers import normalize_entity_id, normalize_platform
from ingestion.core.lease import dialect_insert
from ingestion.core.provider import LiveGameState
from ingestion.core.time_common import ensure_utc, resolve_now

_POLL_INTERVALS = {
    LiveGameState.LOBBY: timedelta(seconds=30),
    LiveGameState.IN_GAME: timedelta(seconds=60),
    LiveGameState.ENDED: timedelta(seconds=30),
}
IDLE_POLL_INTERVAL = timedelta(minutes=5)


def next_poll_interval(state: LiveGameState) -> timedelta:
    return _POLL_INTERVALS.get(state, IDLE_POLL_INTERVAL)


@dataclass(frozen=True, slots=True)
class EntityCandidate:
    entity_id: str
    platform: str
    is_favorite: bool
    last_refreshed_at: Optional[datetime]


class TrackedEntityStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def track(
        self,
        platform: str,
        entity_id: str,
        *,
        display_name: Optional[str] = None,
        is_favorite: bool = False,
        live_polling_enabled: bool = False,
        now: Optional[datetime] = None,
    ) -> None:
        now = resolve_now(now)
        with self._session_factory() as session:
            insert = dialect_insert(session)
            stmt = insert(TrackedEntity).values(
                entity_id=normalize_entity_id(entity_id),
                platform=normalize_platform(platform),
                display_name=display_name,
                is_favorite=is_favorite,
                live_polling_enabled=live_polling_enabled,
                created_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[TrackedEntity.entity_id],
                set_={
                    "is_favorite": stmt.excluded.is_favorite,
                    "live_polling_enabled": stmt.excluded.live_polling_enabled,
                },
            )
            session.execute(stmt)
            session.commit()

    def ensure_tracked(self, platform: str, entity_id: str, *, now: Optional[datetime] = None) -> None:
        """Register with default flags; an existing row is left untouched."""
        now = resolve_now(now)
        with self._session_factory() as session:
            insert = dialect_insert(session)
            session.execute(
                insert(TrackedEntity)
                .values(
                    entity_id=normalize_entity_id(entity_id),
                    platform=normalize_platform(platform),
                    is_favorite=False,
                    live_polling_enabled=False,
                    created_at=now,
                )
                .on_conflict_do_nothing(index_elements=[TrackedEntity.entity_id])
            )
            session.commit()

    def record_profile(self, entity_id: str, profile: dict[str, Any], *, now: Optional[datetime] = None) -> None:
        now = resolve_now(now)
        with self._session_factory() as session:
            session.execute(
                update(TrackedEntity)
                .where(TrackedEntity.entity_id == normalize_entity_id(entity_id))
                .values(profile=profile, last_refreshed_at=now)
            )
            session.commit()

    def mark_refreshed(self, entity_id: str, *, now: Optional[datetime] = None) -> None:
        now = resolve_now(now)
        with self._session_factory() as session:
            session.execute(
                update(TrackedEntity)
                .where(TrackedEntity.entity_id == normalize_entity_id(entity_id))
                .values(last_refreshed_at=now)
            )
            session.commit()

    def get(self, entity_id: str) -> Optional[TrackedEntity]:
        with self._session_factory() as session:
            return session.get(TrackedEntity, normalize_entity_id(entity_id))

    def stale_candidates(
        self,
        *,
        stale_after: timedelta,
        limit: int,
        prioritize_favorites: bool,
        now: Optional[datetime] = None,
    ) -> list[EntityCandidate]:
        """Never-refreshed first, then least recently refreshed; favorites ahead if asked."""
        if limit <= 0:
            return []
        now = resolve_now(now)
        cutoff = now - stale_after
        never = case((TrackedEntity.last_refreshed_at.is_(None), 0), else_=1)
        order = [never, TrackedEntity.last_refreshed_at.asc(), TrackedEntity.entity_id.asc()]
        if prioritize_favorites:
            order.insert(0, TrackedEntity.is_favorite.desc())
        stmt = (
            select(TrackedEntity)
            .where((TrackedEntity.last_refreshed_at.is_(None)) | (TrackedEntity.last_refreshed_at < cutoff))
            .order_by(*order)
            .limit(limit)
        )
        with self._session_factory() as session:
            return [self._candidate(row) for row in session.execute(stmt).scalars()]

    def live_poll_candidates(self, *, limit: int, favorites_only: bool) -> list[EntityCandidate]:
        if limit <= 0:
            return []
        stmt = select(TrackedEntity).where(TrackedEntity.live_polling_enabled.is_(True))
        if favorites_only:
            stmt = stmt.where(TrackedEntity.is_favorite.is_(True))
        stmt = stmt.order_by(TrackedEntity.is_favorite.desc(), TrackedEntity.entity_id.asc()).limit(limit)
        with self._session_factory() as session:
            return [self._candidate(row) for row in session.execute(stmt).scalars()]

    @staticmethod
    def _candidate(row: TrackedEntity) -> EntityCandidate:
        return EntityCandidate(
            entity_id=row.entity_id,
            platform=row.platform,
            is_favorite=row.is_favorite,
            last_refreshed_at=ensure_utc(row.last_refreshed_at),
        )


@dataclass(frozen=True, slots=True)
class SnapshotView:
    entity_id: str
    state: LiveGameState
    game_id: Optional[int]
    observed_at: datetime
    next_poll_at: datetime


class LiveSnapshotStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def latest(self, entity_id: str) -> Optional[SnapshotView]:
        with self._session_factory() as session:
            row = session.execute(
                select(LiveSnapshot)
                .where(LiveSnapshot.entity_id == entity_id)
                .order_by(LiveSnapshot.observed_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            return SnapshotView(
                entity_id=row.entity_id,
                state=LiveGameState(row.state),
                game_id=row.game_id,
                observed_at=ensure_utc(row.observed_at),
                next_poll_at=ensure_utc(row.next_poll_at),
            )

    def append(
        self,
        entity_id: str,
        state: LiveGameState,
        game_id: Optional[int],
        *,
        now: Optional[datetime] = None,
    ) -> SnapshotView:
        now = resolve_now(now)
        view = SnapshotView(
            entity_id=entity_id,
            state=state,
            game_id=game_id,
            observed_at=now,
            next_poll_at=now + next_poll_interval(state),
        )
        with self._session_factory() as session:
            session.add(
                LiveSnapshot(
                    entity_id=view.entity_id,
                    state=view.state.value,
                    game_id=view.game_id,
                    observed_at=view.observed_at,
                    next_poll_at=view.next_poll_at,
                )
            )
            session.commit()
        return view
