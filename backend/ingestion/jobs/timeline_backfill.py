from __future__ import annotations

"""Match-timeline backfill and single-timeline ingestion.

The backfill run only finds work: ranked matches fetched successfully without a
timeline row yet, plus timeline rows still `unfetched`. Each one is handed to
`ingest_timeline` through the enqueuer, which evaluates one artifact under its
own lease.
"""

import logging
from datetime import timedelta

from ingestion.core.errors import InvalidIdentifierError
from ingestion.core.fetch_outcome import ArtifactKind
from ingestion.core.identifiers import timeline_ingest_key
from ingestion.core.provider import ArtifactRef
from ingestion.jobs.context import JobContext
from ingestion.jobs.invocation import JobInvocation, JobOutcome, JobReport, log_event

logger = logging.getLogger("rift.jobs.timeline_backfill")

ENTRY_POINT = "run_timeline_backfill"
INGEST_ENTRY_POINT = "ingest_timeline"

TIMELINE_LOCK_TTL = timedelta(minutes=2)


def run_timeline_backfill(invocation: JobInvocation, ctx: JobContext) -> JobReport:
    opts = ctx.settings.timeline_ingestion
    report = JobReport(invocation)

    if not opts.enabled:
        report.outcome = JobOutcome.SKIPPED
        report.detail = "timeline ingestion disabled"
    elif ctx.gate.should_pause(opts.pause_when_api_priority_refresh_active, invocation.triggered_at):
        report.outcome = JobOutcome.PAUSED
        report.detail = "priority refresh active"
    else:
        missing = ctx.outcomes.successful_ranked_without_timeline(limit=opts.backfill_batch_size)
        registered = ctx.outcomes.register_unfetched(
            ArtifactKind.TIMELINE,
            [ArtifactRef(artifact_id) for artifact_id in missing],
            now=invocation.triggered_at,
        )
        report.bump("registered", len(registered))

        pending = ctx.outcomes.select_unfetched(ArtifactKind.TIMELINE, limit=opts.backfill_max_enqueues_per_run)
        for snapshot in pending:
            if ctx.cancelled:
                report.outcome = JobOutcome.CANCELLED
                break
            try:
                ctx.enqueuer.enqueue(INGEST_ENTRY_POINT, artifact_id=snapshot.artifact_id)
                report.bump("enqueued")
            except Exception:  # noqa: BLE001
                report.bump("errors")
                logger.warning("timeline enqueue failed artifact=%s", snapshot.artifact_id, exc_info=True)
        report.finish()

    log_event(logger, report.as_event())
    return report


def ingest_timeline(invocation: JobInvocation, ctx: JobContext, *, artifact_id: str) -> JobReport:
    opts = ctx.settings.timeline_ingestion
    report = JobReport(invocation)

    try:
        key = timeline_ingest_key(artifact_id)
    except InvalidIdentifierError as exc:
        logger.warning("timeline ingest rejected: %s", exc)
        report.outcome = JobOutcome.FAILED
        report.detail = str(exc)
        return report

    if not opts.enabled:
        report.outcome = JobOutcome.SKIPPED
        report.detail = "timeline ingestion disabled"
        return report
    if ctx.gate.should_pause(opts.pause_when_api_priority_refresh_active, invocation.triggered_at):
        # The row stays unfetched; the next backfill run enqueues it again.
        report.outcome = JobOutcome.PAUSED
        report.detail = "priority refresh active"
        return report
    if not ctx.leases.try_acquire(key, TIMELINE_LOCK_TTL):
        report.outcome = JobOutcome.SKIPPED
        report.detail = "lease busy"
        return report

    try:
        evaluation = ctx.fetcher.evaluate(ArtifactKind.TIMELINE, artifact_id, now=invocation.triggered_at)
        report.bump("evaluated")
        if evaluation.provider_called:
            report.bump("provider_calls")
        report.detail = evaluation.status
    except Exception:  # noqa: BLE001
        report.bump("errors")
        logger.warning("timeline ingest failed artifact=%s", artifact_id, exc_info=True)
    finally:
        ctx.leases.release_quietly(key)

    report.finish()
    log_event(logger, {**report.as_event(), "artifact_id": artifact_id})
    return report
