from __future__ import annotations

"""Live-game polling.

Each tracked entity is polled only once its last snapshot's `next_poll_at` has
passed; the interval depends on the observed state. Provider requests per run
are capped, and the whole run yields to interactive refreshes.
"""

import logging
from datetime import timedelta

from ingestion.core.errors import InvalidIdentifierError, ProviderError
from ingestion.core.identifiers import live_poll_key
from ingestion.jobs.context import JobContext
from ingestion.jobs.invocation import JobInvocation, JobOutcome, JobReport, log_event

logger = logging.getLogger("rift.jobs.live_poll")

ENTRY_POINT = "run_live_poll"

POLL_LOCK_TTL = timedelta(seconds=30)


def run_live_poll(invocation: JobInvocation, ctx: JobContext) -> JobReport:
    opts = ctx.settings.live_poll
    report = JobReport(invocation)
    now = invocation.triggered_at

    if ctx.gate.should_pause(opts.pause_when_api_priority_refresh_active, now):
        report.outcome = JobOutcome.PAUSED
        report.detail = "priority refresh active"
        log_event(logger, report.as_event())
        return report

    candidates = ctx.entities.live_poll_candidates(
        limit=opts.max_tracked_entities_per_run,
        favorites_only=opts.poll_only_favorites,
    )
    report.bump("candidates", len(candidates))

    for candidate in candidates:
        if ctx.cancelled:
            report.outcome = JobOutcome.CANCELLED
            break
        if report.counters.get("requests", 0) >= opts.max_requests_per_run:
            report.detail = "request budget exhausted"
            break

        latest = ctx.snapshots.latest(candidate.entity_id)
        if latest is not None and latest.next_poll_at > now:
            report.bump("not_due")
            continue

        try:
            key = live_poll_key(candidate.platform, candidate.entity_id)
        except InvalidIdentifierError as exc:
            report.bump("errors")
            logger.warning("skipping malformed candidate: %s", exc)
            continue
        if not ctx.leases.try_acquire(key, POLL_LOCK_TTL, now=now):
            report.bump("lease_busy")
            continue

        try:
            report.bump("requests")
            state = ctx.provider.fetch_live_state(candidate.entity_id)
            ctx.snapshots.append(candidate.entity_id, state.state, state.game_id, now=now)
            report.bump("polled")
        except ProviderError as exc:
            report.bump("errors")
            logger.warning("live poll failed entity=%s: %s", candidate.entity_id, exc)
        except Exception:  # noqa: BLE001
            report.bump("errors")
            logger.warning("live poll crashed entity=%s", candidate.entity_id, exc_info=True)
        finally:
            ctx.leases.release_quietly(key)

    report.finish()
    log_event(logger, report.as_event())
    return report
