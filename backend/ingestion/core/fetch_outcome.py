"""Fetch outcome state machines for matches and match timelines.

Every fetchable artifact has one persisted outcome row. Rows start `unfetched`
and move only along these edges:

    match:    unfetched|temporary_failure -> success | temporary_failure
              | permanently_unfetchable | outside_retention_window
    timeline: unfetched|temporary_failure -> success | temporary_failure
              | permanently_failed | not_applicable

Terminal states never transition again and their retry_count is frozen.
Transitions are computed by pure functions and applied with a guarded UPDATE,
one artifact per transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.models.fetch_outcome import FetchOutcomeColumns, MatchFetchOutcome, TimelineFetchOutcome
from ingestion.core.identifiers import normalize_artifact_id
from ingestion.core.lease import dialect_insert
from ingestion.core.provider import ArtifactRef
from ingestion.core.time_common import ensure_utc, resolve_now

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1024


class ArtifactKind(str, Enum):
    MATCH = "match"
    TIMELINE = "timeline"


class MatchFetchStatus(str, Enum):
    UNFETCHED = "unfetched"
    SUCCESS = "success"
    TEMPORARY_FAILURE = "temporary_failure"
    PERMANENTLY_UNFETCHABLE = "permanently_unfetchable"
    OUTSIDE_RETENTION_WINDOW = "outside_retention_window"


class TimelineFetchStatus(str, Enum):
    UNFETCHED = "unfetched"
    SUCCESS = "success"
    TEMPORARY_FAILURE = "temporary_failure"
    PERMANENTLY_FAILED = "permanently_failed"
    NOT_APPLICABLE = "not_applicable"


FetchStatus = Union[MatchFetchStatus, TimelineFetchStatus]

_MODEL: dict[ArtifactKind, type[FetchOutcomeColumns]] = {
    ArtifactKind.MATCH: MatchFetchOutcome,
    ArtifactKind.TIMELINE: TimelineFetchOutcome,
}

_TERMINAL_FAILURE: dict[ArtifactKind, FetchStatus] = {
    ArtifactKind.MATCH: MatchFetchStatus.PERMANENTLY_UNFETCHABLE,
    ArtifactKind.TIMELINE: TimelineFetchStatus.PERMANENTLY_FAILED,
}

_OUT_OF_WINDOW: dict[ArtifactKind, FetchStatus] = {
    ArtifactKind.MATCH: MatchFetchStatus.OUTSIDE_RETENTION_WINDOW,
    ArtifactKind.TIMELINE: TimelineFetchStatus.NOT_APPLICABLE,
}

_SUCCESS: dict[ArtifactKind, FetchStatus] = {
    ArtifactKind.MATCH: MatchFetchStatus.SUCCESS,
    ArtifactKind.TIMELINE: TimelineFetchStatus.SUCCESS,
}

_TEMPORARY: dict[ArtifactKind, FetchStatus] = {
    ArtifactKind.MATCH: MatchFetchStatus.TEMPORARY_FAILURE,
    ArtifactKind.TIMELINE: TimelineFetchStatus.TEMPORARY_FAILURE,
}

_OPEN_STATUSES = frozenset({"unfetched", "temporary_failure"})


def model_for(kind: ArtifactKind) -> type[FetchOutcomeColumns]:
    return _MODEL[kind]


def is_terminal(status: str) -> bool:
    return status not in _OPEN_STATUSES


class AttemptResult(str, Enum):
    """Classification of one provider call for one artifact."""

    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    NOT_FOUND = "not_found"
    # Match older than retention, or a timeline that cannot exist for its match.
    OUT_OF_WINDOW = "out_of_window"


@dataclass(frozen=True, slots=True)
class Attempt:
    result: AttemptResult
    error_message: Optional[str] = None
    payload: Optional[dict[str, Any]] = None


@dataclass(frozen=True, slots=True)
class OutcomeSnapshot:
    kind: ArtifactKind
    artifact_id: str
    status: str
    retry_count: int
    last_attempt_at: Optional[datetime] = None
    last_error_message: Optional[str] = None
    occurred_at_epoch: Optional[int] = None
    queue_family: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return is_terminal(self.status)


@dataclass(frozen=True, slots=True)
class OutcomeTransition:
    kind: ArtifactKind
    artifact_id: str
    from_status: str
    from_retry_count: int
    to_status: str
    retry_count: int
    last_attempt_at: datetime
    last_error_message: Optional[str]
    payload: Optional[dict[str, Any]] = None
    # Match rows only: queue family learned from the fetched payload.
    queue_family: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return is_terminal(self.to_status)


def _truncate(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return message[:MAX_ERROR_MESSAGE_LENGTH]


def ceiling_reached(snapshot: OutcomeSnapshot, *, max_retries: int) -> bool:
    return not snapshot.terminal and snapshot.retry_count >= max_retries


def next_state(
    snapshot: OutcomeSnapshot,
    attempt: Optional[Attempt],
    *,
    max_retries: int,
    now: datetime,
) -> Optional[OutcomeTransition]:
    """Compute the transition for one evaluation of an artifact.

    Returns None when nothing may change: the row is terminal, or no attempt
    was made and the retry ceiling has not been reached. Once retry_count has
    reached `max_retries` the artifact fails terminally on evaluation without
    consulting `attempt`, regardless of how transient the last error was.
    """
    if snapshot.terminal:
        return None

    kind = snapshot.kind

    def _to(status: FetchStatus, retry_count: int, message: Optional[str], payload=None) -> OutcomeTransition:
        return OutcomeTransition(
            kind=kind,
            artifact_id=snapshot.artifact_id,
            from_status=snapshot.status,
            from_retry_count=snapshot.retry_count,
            to_status=status.value,
            retry_count=retry_count,
            last_attempt_at=now,
            last_error_message=_truncate(message),
            payload=payload,
        )

    if ceiling_reached(snapshot, max_retries=max_retries):
        return _to(
            _TERMINAL_FAILURE[kind],
            snapshot.retry_count,
            f"retry ceiling reached after {snapshot.retry_count} attempts; last error: {snapshot.last_error_message}",
        )

    if attempt is None:
        return None

    failed = snapshot.retry_count + 1
    if attempt.result is AttemptResult.SUCCESS:
        return _to(_SUCCESS[kind], snapshot.retry_count, None, attempt.payload)
    if attempt.result is AttemptResult.TRANSIENT:
        return _to(_TEMPORARY[kind], failed, attempt.error_message)
    if attempt.result is AttemptResult.OUT_OF_WINDOW:
        return _to(_OUT_OF_WINDOW[kind], snapshot.retry_count, attempt.error_message)
    # NOT_FOUND and PERMANENT
    return _to(_TERMINAL_FAILURE[kind], failed, attempt.error_message)


def _snapshot(kind: ArtifactKind, row: FetchOutcomeColumns) -> OutcomeSnapshot:
    return OutcomeSnapshot(
        kind=kind,
        artifact_id=row.artifact_id,
        status=row.status,
        retry_count=row.retry_count,
        last_attempt_at=ensure_utc(row.last_attempt_at),
        last_error_message=row.last_error_message,
        occurred_at_epoch=getattr(row, "occurred_at_epoch", None),
        queue_family=getattr(row, "queue_family", None),
    )


class OutcomeStore:
    """Persistence for fetch outcomes. Every write is its own transaction."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def register_unfetched(
        self,
        kind: ArtifactKind,
        refs: Iterable[ArtifactRef],
        *,
        entity_id: Optional[str] = None,
        queue_family: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Insert `unfetched` rows for unseen ids. Returns the ids actually inserted."""
        now = resolve_now(now)
        model = model_for(kind)
        rows: dict[str, dict[str, Any]] = {}
        for ref in refs:
            artifact_id = normalize_artifact_id(ref.artifact_id)
            row: dict[str, Any] = dict(
                artifact_id=artifact_id,
                status="unfetched",
                retry_count=0,
                created_at=now,
            )
            if kind is ArtifactKind.MATCH:
                row.update(entity_id=entity_id, occurred_at_epoch=ref.occurred_at_epoch, queue_family=queue_family)
            rows.setdefault(artifact_id, row)
        if not rows:
            return []

        with self._session_factory() as session:
            insert = dialect_insert(session)
            stmt = (
                insert(model)
                .values(list(rows.values()))
                .on_conflict_do_nothing(index_elements=[model.artifact_id])
                .returning(model.artifact_id)
            )
            inserted = set(session.execute(stmt).scalars().all())
            session.commit()
        # Keep provider order (newest first).
        return [artifact_id for artifact_id in rows if artifact_id in inserted]

    def load(self, kind: ArtifactKind, artifact_id: str) -> Optional[OutcomeSnapshot]:
        artifact_id = normalize_artifact_id(artifact_id)
        with self._session_factory() as session:
            row = session.get(model_for(kind), artifact_id)
            return None if row is None else _snapshot(kind, row)

    def ensure(self, kind: ArtifactKind, artifact_id: str, *, now: Optional[datetime] = None) -> OutcomeSnapshot:
        """Load the row, registering it as `unfetched` first if it does not exist."""
        snapshot = self.load(kind, artifact_id)
        if snapshot is not None:
            return snapshot
        self.register_unfetched(kind, [ArtifactRef(artifact_id)], now=now)
        snapshot = self.load(kind, artifact_id)
        if snapshot is None:
            raise RuntimeError(f"{kind.value} outcome {artifact_id} missing after registration")
        return snapshot

    def apply(self, transition: OutcomeTransition) -> bool:
        """Write a transition if the row still matches what it was computed from."""
        model = model_for(transition.kind)
        values: dict[str, Any] = dict(
            status=transition.to_status,
            retry_count=transition.retry_count,
            last_attempt_at=transition.last_attempt_at,
            last_error_message=transition.last_error_message,
        )
        if transition.payload is not None:
            values["payload"] = transition.payload
        if transition.queue_family is not None and transition.kind is ArtifactKind.MATCH:
            values["queue_family"] = transition.queue_family
        if transition.kind is ArtifactKind.TIMELINE and transition.to_status == TimelineFetchStatus.SUCCESS.value:
            values["last_success_at"] = transition.last_attempt_at

        with self._session_factory() as session:
            result = session.execute(
                update(model)
                .where(
                    model.artifact_id == transition.artifact_id,
                    model.status == transition.from_status,
                    model.retry_count == transition.from_retry_count,
                )
                .values(**values)
            )
            session.commit()
            applied = result.rowcount > 0

        if not applied:
            logger.info(
                "outcome transition lost to concurrent writer kind=%s artifact=%s %s->%s",
                transition.kind.value,
                transition.artifact_id,
                transition.from_status,
                transition.to_status,
            )
        return applied

    def select_retry_candidates(
        self,
        kind: ArtifactKind,
        *,
        attempted_before: datetime,
        limit: int,
    ) -> list[OutcomeSnapshot]:
        model = model_for(kind)
        with self._session_factory() as session:
            rows = session.execute(
                select(model)
                .where(
                    model.status == "temporary_failure",
                    model.last_attempt_at < attempted_before,
                )
                .order_by(model.last_attempt_at.asc(), model.artifact_id.asc())
                .limit(limit)
            ).scalars()
            return [_snapshot(kind, row) for row in rows]

    def select_unfetched(
        self,
        kind: ArtifactKind,
        *,
        limit: int,
        entity_id: Optional[str] = None,
    ) -> list[OutcomeSnapshot]:
        model = model_for(kind)
        stmt = select(model).where(model.status == "unfetched")
        if kind is ArtifactKind.MATCH:
            if entity_id is not None:
                stmt = stmt.where(MatchFetchOutcome.entity_id == entity_id)
            stmt = stmt.order_by(MatchFetchOutcome.occurred_at_epoch.desc().nulls_last(), model.artifact_id.asc())
        else:
            stmt = stmt.order_by(model.created_at.asc(), model.artifact_id.asc())
        with self._session_factory() as session:
            rows = session.execute(stmt.limit(limit)).scalars()
            return [_snapshot(kind, row) for row in rows]

    def load_payload(self, kind: ArtifactKind, artifact_id: str) -> Optional[dict[str, Any]]:
        with self._session_factory() as session:
            return session.execute(
                select(model_for(kind).payload).where(model_for(kind).artifact_id == artifact_id)
            ).scalar_one_or_none()

    def count_successful_matches(self, entity_id: str, *, since_epoch: int) -> int:
        with self._session_factory() as session:
            return int(
                session.execute(
                    select(func.count())
                    .select_from(MatchFetchOutcome)
                    .where(
                        MatchFetchOutcome.entity_id == entity_id,
                        MatchFetchOutcome.status == MatchFetchStatus.SUCCESS.value,
                        MatchFetchOutcome.occurred_at_epoch >= since_epoch,
                    )
                ).scalar_one()
            )

    def successful_ranked_without_timeline(self, *, limit: int) -> list[str]:
        """Ranked matches fetched successfully that have no timeline row yet."""
        with self._session_factory() as session:
            rows = session.execute(
                select(MatchFetchOutcome.artifact_id)
                .outerjoin(TimelineFetchOutcome, TimelineFetchOutcome.artifact_id == MatchFetchOutcome.artifact_id)
                .where(
                    MatchFetchOutcome.status == MatchFetchStatus.SUCCESS.value,
                    MatchFetchOutcome.queue_family == "ranked",
                    TimelineFetchOutcome.artifact_id.is_(None),
                )
                .order_by(MatchFetchOutcome.occurred_at_epoch.desc().nulls_last())
                .limit(limit)
            ).scalars()
            return list(rows)
