from __future__ import annotations

"""Analytics pre-warm: make sure popular entities have enough recent matches.

Coverage is the number of successfully fetched matches inside the coverage
window. Entities below the minimum get a refresh job; the entity lease is taken
here and handed to the job, and given back if the enqueue fails.
"""

import logging
from datetime import timedelta

from ingestion.core.errors import InvalidIdentifierError
from ingestion.core.identifiers import entity_refresh_key
from ingestion.core.time_common import to_epoch
from ingestion.jobs.context import JobContext
from ingestion.jobs.invocation import JobInvocation, JobOutcome, JobReport, log_event

logger = logging.getLogger("rift.jobs.analytics_prewarm")

ENTRY_POINT = "run_prewarm"


def run_prewarm(invocation: JobInvocation, ctx: JobContext) -> JobReport:
    opts = ctx.settings.analytics_prewarm
    report = JobReport(invocation)
    now = invocation.triggered_at

    if ctx.gate.should_pause(opts.pause_when_api_priority_refresh_active, now):
        report.outcome = JobOutcome.PAUSED
        report.detail = "priority refresh active"
        log_event(logger, report.as_event())
        return report

    since_epoch = to_epoch(now - timedelta(hours=opts.coverage_window_hours))
    candidates = ctx.entities.stale_candidates(
        stale_after=opts.stale_after,
        limit=opts.max_candidate_entities_per_run,
        prioritize_favorites=opts.prioritize_favorites,
        now=now,
    )
    report.bump("candidates", len(candidates))

    for candidate in candidates:
        if report.counters.get("enqueued", 0) >= opts.max_jobs_per_run:
            break
        if ctx.cancelled:
            report.outcome = JobOutcome.CANCELLED
            break

        coverage = ctx.outcomes.count_successful_matches(candidate.entity_id, since_epoch=since_epoch)
        if coverage >= opts.minimum_successful_matches:
            report.bump("covered")
            continue

        try:
            key = entity_refresh_key(candidate.platform, candidate.entity_id)
        except InvalidIdentifierError as exc:
            report.bump("errors")
            logger.warning("skipping malformed candidate: %s", exc)
            continue

        if not ctx.leases.try_acquire(key, opts.lock_ttl, now=now):
            report.bump("lease_busy")
            continue

        try:
            ctx.enqueuer.enqueue(
                "refresh_entity",
                platform=candidate.platform,
                entity_id=candidate.entity_id,
                lease_held=True,
            )
            report.bump("enqueued")
        except Exception:  # noqa: BLE001
            ctx.leases.release_quietly(key)
            report.bump("errors")
            logger.warning("refresh enqueue failed entity=%s", candidate.entity_id, exc_info=True)

    report.finish()
    log_event(logger, report.as_event())
    return report
