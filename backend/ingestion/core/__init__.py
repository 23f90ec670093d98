"""Ingestion coordination primitives.

- Lease: persisted TTL mutual exclusion per entity
- Cursor: resumable backward pointer per (entity, scope)
- Fetch outcomes: per-artifact retry state machines
- Priority gate, backfill planner, retry sweeper built on the above
"""

from ingestion.core.backfill_planner import BackfillPlanner, PlanResult, PriorityTier, StopReason, TierBudgets
from ingestion.core.cursor import Cursor, CursorStore, IngestionScope, advance_cursor
from ingestion.core.fetch_outcome import (
    ArtifactKind,
    Attempt,
    AttemptResult,
    MatchFetchStatus,
    OutcomeStore,
    TimelineFetchStatus,
    next_state,
)
from ingestion.core.fetcher import ArtifactFetcher, Evaluation
from ingestion.core.lease import LeaseRepository, held_lease
from ingestion.core.network_client import HttpProviderClient
from ingestion.core.priority_gate import PriorityGate, request_priority_refresh
from ingestion.core.retry_sweeper import RetrySweeper, SweepResult

__all__ = [
    "ArtifactFetcher",
    "ArtifactKind",
    "Attempt",
    "AttemptResult",
    "BackfillPlanner",
    "Cursor",
    "CursorStore",
    "Evaluation",
    "HttpProviderClient",
    "IngestionScope",
    "LeaseRepository",
    "MatchFetchStatus",
    "OutcomeStore",
    "PlanResult",
    "PriorityGate",
    "PriorityTier",
    "RetrySweeper",
    "StopReason",
    "SweepResult",
    "TierBudgets",
    "TimelineFetchStatus",
    "advance_cursor",
    "held_lease",
    "next_state",
    "request_priority_refresh",
]
