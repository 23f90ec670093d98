from __future__ import annotations

"""Entity refresh: profile, match discovery, match fetch, timeline hand-off.

Runs at high priority for interactive requests and is reused at low priority
by the maintenance job. The entity lease is either taken here or handed over
by whoever enqueued the job; either way it is released in `finally`.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from ingestion.core.backfill_planner import BackfillPlanner, PriorityTier, StopReason
from ingestion.core.errors import InvalidIdentifierError, ProviderError
from ingestion.core.fetch_outcome import ArtifactKind
from ingestion.core.identifiers import entity_refresh_key
from ingestion.jobs.context import JobContext
from ingestion.jobs.invocation import JobInvocation, JobOutcome, JobReport, log_event

logger = logging.getLogger("rift.jobs.profile_refresh")

ENTRY_POINT = "refresh_entity"


@dataclass
class MatchIngestSummary:
    interrupted: Optional[StopReason] = None
    ranked_successes: list[str] = field(default_factory=list)


def ingest_entity_matches(
    ctx: JobContext,
    entity_id: str,
    tier: PriorityTier,
    report: JobReport,
    *,
    now: datetime,
    should_stop: Optional[Callable[[], bool]] = None,
) -> MatchIngestSummary:
    """Discover new match ids for the entity, then fetch what is still unfetched."""
    opts = ctx.settings.match_ingestion
    should_stop = should_stop or (lambda: False)
    summary = MatchIngestSummary()

    planner = BackfillPlanner(
        ctx.provider,
        ctx.cursors,
        ctx.outcomes,
        page_size=opts.page_size,
        should_stop=should_stop,
        cancel=ctx.cancel,
    )
    # Interactive refreshes always scan; maintenance skips scopes that keep coming back empty.
    threshold = opts.noop_runs_before_skip if tier is PriorityTier.LOW else None
    for result in planner.plan_entity(entity_id, opts.budgets(tier), noop_skip_threshold=threshold, now=now):
        report.bump("pages", result.pages_fetched)
        report.bump("discovered", len(result.new_artifact_ids))
        if result.stop_reason is StopReason.PROVIDER_ERROR:
            report.bump("errors")
        if result.interrupted:
            summary.interrupted = result.stop_reason
            return summary

    for snapshot in ctx.outcomes.select_unfetched(
        ArtifactKind.MATCH, limit=opts.max_unfetched_per_run, entity_id=entity_id
    ):
        if ctx.cancelled:
            summary.interrupted = StopReason.CANCELLED
            break
        if should_stop():
            summary.interrupted = StopReason.PRIORITY_PAUSE
            break
        try:
            evaluation = ctx.fetcher.evaluate(ArtifactKind.MATCH, snapshot.artifact_id, now=now)
        except Exception:  # noqa: BLE001
            report.bump("errors")
            logger.warning("match fetch failed artifact=%s", snapshot.artifact_id, exc_info=True)
            continue

        report.bump("matches_evaluated")
        if evaluation.succeeded and evaluation.changed:
            report.bump("matches_fetched")
            fetched = ctx.outcomes.load(ArtifactKind.MATCH, evaluation.artifact_id)
            if fetched is not None and fetched.queue_family == "ranked":
                summary.ranked_successes.append(evaluation.artifact_id)
        elif evaluation.status == "temporary_failure":
            report.bump("matches_failed")

    return summary


def enqueue_timelines(ctx: JobContext, artifact_ids: list[str], report: JobReport) -> None:
    if not ctx.settings.timeline_ingestion.enabled:
        return
    for artifact_id in artifact_ids:
        try:
            ctx.enqueuer.enqueue("ingest_timeline", artifact_id=artifact_id)
            report.bump("timelines_enqueued")
        except Exception:  # noqa: BLE001
            report.bump("errors")
            logger.warning("timeline enqueue failed artifact=%s", artifact_id, exc_info=True)


def refresh_entity(
    invocation: JobInvocation,
    ctx: JobContext,
    *,
    platform: str,
    entity_id: str,
    lease_held: bool = False,
    priority_key: Optional[str] = None,
    tier: PriorityTier = PriorityTier.HIGH,
) -> JobReport:
    report = JobReport(invocation)
    now = invocation.triggered_at
    tier = PriorityTier(tier)
    entity_key: Optional[str] = None
    acquired = lease_held
    try:
        try:
            entity_key = entity_refresh_key(platform, entity_id)
        except InvalidIdentifierError as exc:
            logger.warning("refresh rejected: %s", exc)
            report.outcome = JobOutcome.FAILED
            report.detail = str(exc)
            return report

        if not acquired:
            acquired = ctx.leases.try_acquire(entity_key, ctx.settings.profile_refresh.lock_ttl)
            if not acquired:
                logger.info("refresh skipped, lease busy key=%s", entity_key)
                report.outcome = JobOutcome.SKIPPED
                report.detail = "lease busy"
                return report

        pausable = tier is PriorityTier.LOW and ctx.settings.maintenance.pause_when_api_priority_refresh_active
        if ctx.gate.should_pause(pausable, now):
            report.outcome = JobOutcome.PAUSED
            report.detail = "priority refresh active"
            return report

        ctx.entities.ensure_tracked(platform, entity_id, now=now)
        try:
            profile = ctx.provider.fetch_profile(entity_id)
            ctx.entities.record_profile(entity_id, profile, now=now)
            report.bump("profiles_refreshed")
        except ProviderError as exc:
            report.bump("errors")
            logger.warning("profile fetch failed entity=%s: %s", entity_id, exc)

        summary = ingest_entity_matches(
            ctx,
            entity_id,
            tier,
            report,
            now=now,
            should_stop=(lambda: ctx.gate.should_pause(True, now)) if pausable else None,
        )
        enqueue_timelines(ctx, summary.ranked_successes, report)
        if summary.interrupted is None:
            # Stamped whether or not the profile fetch succeeded.
            ctx.entities.mark_refreshed(entity_id, now=now)

        if summary.interrupted is StopReason.CANCELLED:
            report.outcome = JobOutcome.CANCELLED
        elif summary.interrupted is StopReason.PRIORITY_PAUSE:
            report.outcome = JobOutcome.PAUSED
        return report.finish()
    finally:
        if acquired and entity_key is not None:
            ctx.leases.release_quietly(entity_key)
        if priority_key:
            ctx.leases.release_quietly(priority_key)
        log_event(logger, {**report.as_event(), "entity_id": entity_id})
