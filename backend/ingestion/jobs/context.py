from __future__ import annotations

"""Everything a job needs, built once per process and passed in explicitly."""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from sqlalchemy.orm import Session

from ingestion.core.cursor import CursorStore
from ingestion.core.fetch_outcome import OutcomeStore
from ingestion.core.fetcher import ArtifactFetcher
from ingestion.core.lease import LeaseRepository
from ingestion.core.priority_gate import PriorityGate
from ingestion.core.provider import ProviderClient
from ingestion.core.settings import JobSettings
from ingestion.core.tracking import LiveSnapshotStore, TrackedEntityStore


class JobEnqueuer(Protocol):
    """Hands work to the external job scheduler."""

    def enqueue(self, entry_point: str, **params: Any) -> None:
        ...


@dataclass
class JobContext:
    session_factory: Callable[[], Session]
    provider: ProviderClient
    settings: JobSettings
    enqueuer: JobEnqueuer
    cancel: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self) -> None:
        self.leases = LeaseRepository(self.session_factory)
        self.cursors = CursorStore(self.session_factory)
        self.outcomes = OutcomeStore(self.session_factory)
        self.entities = TrackedEntityStore(self.session_factory)
        self.snapshots = LiveSnapshotStore(self.session_factory)
        self.gate = PriorityGate(self.leases)
        match = self.settings.match_ingestion
        self.fetcher = ArtifactFetcher(
            self.provider,
            self.outcomes,
            match_max_retries=match.max_retry_attempts,
            timeline_max_retries=self.settings.timeline_ingestion.max_retry_attempts,
            retention_days=match.retention_days,
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()
