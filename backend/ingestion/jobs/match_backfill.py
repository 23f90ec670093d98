from __future__ import annotations

"""Low-priority match backfill (maintenance).

Picks stale tracked entities, favorites first, and refreshes a few of them at
the low budget tier. Yields to interactive refreshes: the gate is checked before
the run, before each entity, and between pages and fetches inside each entity.
"""

import logging

from ingestion.core.backfill_planner import PriorityTier
from ingestion.core.errors import InvalidIdentifierError
from ingestion.core.identifiers import entity_refresh_key
from ingestion.jobs.context import JobContext
from ingestion.jobs.invocation import JobInvocation, JobOutcome, JobReport, log_event
from ingestion.jobs.profile_refresh import refresh_entity

logger = logging.getLogger("rift.jobs.match_backfill")

ENTRY_POINT = "run_maintenance"


def run_maintenance(invocation: JobInvocation, ctx: JobContext) -> JobReport:
    opts = ctx.settings.maintenance
    report = JobReport(invocation)

    if ctx.gate.should_pause(opts.pause_when_api_priority_refresh_active, invocation.triggered_at):
        report.outcome = JobOutcome.PAUSED
        report.detail = "priority refresh active"
        log_event(logger, report.as_event())
        return report

    candidates = ctx.entities.stale_candidates(
        stale_after=opts.stale_after,
        limit=opts.max_candidate_entities_per_run,
        prioritize_favorites=opts.prioritize_favorites,
        now=invocation.triggered_at,
    )
    report.bump("candidates", len(candidates))

    for candidate in candidates:
        if report.counters.get("refreshed", 0) >= opts.max_jobs_per_run:
            break
        if ctx.cancelled:
            report.outcome = JobOutcome.CANCELLED
            break

        try:
            key = entity_refresh_key(candidate.platform, candidate.entity_id)
        except InvalidIdentifierError as exc:
            report.bump("errors")
            logger.warning("skipping malformed candidate: %s", exc)
            continue

        if not ctx.leases.try_acquire(key, opts.lock_ttl):
            report.bump("lease_busy")
            continue

        # Lease is handed to the refresh, which releases it.
        child = JobInvocation.now(
            "refresh_entity",
            at=invocation.triggered_at,
            platform=candidate.platform,
            entity_id=candidate.entity_id,
        )
        try:
            result = refresh_entity(
                child,
                ctx,
                platform=candidate.platform,
                entity_id=candidate.entity_id,
                lease_held=True,
                tier=PriorityTier.LOW,
            )
        except Exception:  # noqa: BLE001
            report.bump("errors")
            logger.warning("maintenance refresh failed entity=%s", candidate.entity_id, exc_info=True)
            continue

        report.bump("refreshed")
        for name, value in result.counters.items():
            report.bump(name, value)
        if result.outcome is JobOutcome.PAUSED:
            report.outcome = JobOutcome.PAUSED
            report.detail = "priority refresh became active"
            break
        if result.outcome is JobOutcome.CANCELLED:
            report.outcome = JobOutcome.CANCELLED
            break

    report.finish()
    log_event(logger, report.as_event())
    return report
