from __future__ import annotations

"""Retry sweep over artifacts in `temporary_failure`, matches first."""

import logging

from ingestion.core.fetch_outcome import ArtifactKind
from ingestion.core.retry_sweeper import RetrySweeper
from ingestion.jobs.context import JobContext
from ingestion.jobs.invocation import JobInvocation, JobOutcome, JobReport, log_event

logger = logging.getLogger("rift.jobs.retry_failed")

ENTRY_POINT = "run_retry_sweep"


def run_retry_sweep(invocation: JobInvocation, ctx: JobContext) -> JobReport:
    opts = ctx.settings.retry_failed
    report = JobReport(invocation)
    sweeper = RetrySweeper(ctx.fetcher)

    kinds = [ArtifactKind.MATCH]
    if opts.include_timelines and ctx.settings.timeline_ingestion.enabled:
        kinds.append(ArtifactKind.TIMELINE)

    for kind in kinds:
        result = sweeper.sweep(
            kind,
            max_per_run=opts.max_per_run,
            min_interval=opts.min_interval,
            cancel=ctx.cancel,
            now=invocation.triggered_at,
        )
        log_event(logger, {"event": "retry_sweep_summary", "job_id": str(invocation.job_id), **result.as_dict()})
        for name in ("selected", "succeeded", "still_failing", "terminal", "skipped", "errors"):
            report.bump(f"{kind.value}_{name}" if name != "errors" else "errors", getattr(result, name))
        if result.cancelled:
            report.outcome = JobOutcome.CANCELLED
            break

    report.finish()
    log_event(logger, report.as_event())
    return report
