from __future__ import annotations

"""Entry point registry and the in-process enqueuer."""

from datetime import datetime
from typing import Any, Callable, Optional

from ingestion.jobs.analytics_prewarm import run_prewarm
from ingestion.jobs.context import JobContext
from ingestion.jobs.invocation import JobInvocation, JobReport
from ingestion.jobs.live_poll import run_live_poll
from ingestion.jobs.match_backfill import run_maintenance
from ingestion.jobs.profile_refresh import refresh_entity
from ingestion.jobs.retry_failed import run_retry_sweep
from ingestion.jobs.timeline_backfill import ingest_timeline, run_timeline_backfill

EntryPoint = Callable[..., JobReport]

ENTRY_POINTS: dict[str, EntryPoint] = {
    "refresh_entity": refresh_entity,
    "run_maintenance": run_maintenance,
    "run_timeline_backfill": run_timeline_backfill,
    "ingest_timeline": ingest_timeline,
    "run_prewarm": run_prewarm,
    "run_live_poll": run_live_poll,
    "run_retry_sweep": run_retry_sweep,
}


def run_entry_point(name: str, ctx: JobContext, *, at: Optional[datetime] = None, **params: Any) -> JobReport:
    try:
        fn = ENTRY_POINTS[name]
    except KeyError:
        raise ValueError(f"Unknown job entry point: {name}") from None
    invocation = JobInvocation.now(name, at=at, **params)
    return fn(invocation, ctx, **params)


class InlineEnqueuer:
    """Runs enqueued entry points immediately, in-process.

    For local runs and tests; production hands work to the external scheduler.
    """

    def __init__(self) -> None:
        self._ctx: Optional[JobContext] = None
        self.reports: list[JobReport] = []

    def bind(self, ctx: JobContext) -> None:
        self._ctx = ctx

    def enqueue(self, entry_point: str, **params: Any) -> None:
        if self._ctx is None:
            raise RuntimeError("InlineEnqueuer used before bind()")
        self.reports.append(run_entry_point(entry_point, self._ctx, **params))
