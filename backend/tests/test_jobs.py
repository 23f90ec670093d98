from __future__ import annotations

from datetime import timedelta

from ingestion.core.cursor import IngestionScope
from ingestion.core.fetch_outcome import ArtifactKind, Attempt, AttemptResult, next_state
from ingestion.core.identifiers import entity_refresh_key, priority_refresh_key
from ingestion.core.lease import LeaseRepository
from ingestion.core.priority_gate import request_priority_refresh
from ingestion.core.provider import ArtifactRef, LiveGameState, LiveState
from ingestion.core.settings import JobSettings, MaintenanceOptions, TimelineIngestionOptions
from ingestion.core.time_common import ensure_utc, utcnow
from ingestion.jobs.analytics_prewarm import run_prewarm
from ingestion.jobs.invocation import JobInvocation, JobOutcome
from ingestion.jobs.live_poll import run_live_poll
from ingestion.jobs.match_backfill import run_maintenance
from ingestion.jobs.profile_refresh import refresh_entity
from ingestion.jobs.registry import InlineEnqueuer, run_entry_point
from ingestion.jobs.retry_failed import run_retry_sweep
from ingestion.jobs.timeline_backfill import ingest_timeline, run_timeline_backfill

from fakes import ARAM_QUEUE, T0, T0_EPOCH, FakeProvider, RecordingEnqueuer, history, make_context


def _recent_history(provider: FakeProvider, entity_id: str, count: int = 3) -> list[ArtifactRef]:
    refs = history("EUW1", count, newest_epoch=T0_EPOCH - 3600)
    provider.histories[entity_id] = refs
    provider.profiles[entity_id] = {"name": entity_id}
    return refs


def _lease_live(leases: LeaseRepository, key: str) -> bool:
    record = leases.get(key)
    return record is not None and record.is_live(utcnow())


def test_refresh_entity_fetches_matches_and_hands_off_ranked_timelines(session_factory) -> None:
    provider = FakeProvider()
    _recent_history(provider, "E1")
    provider.queues["EUW1_999"] = ARAM_QUEUE
    enqueuer = RecordingEnqueuer()
    ctx = make_context(session_factory, provider, enqueuer=enqueuer)

    report = refresh_entity(JobInvocation.now("refresh_entity", at=T0), ctx, platform="EUW1", entity_id="E1")

    assert report.outcome is JobOutcome.COMPLETED
    assert report.counters["matches_fetched"] == 3
    for artifact_id in ("EUW1_1000", "EUW1_999", "EUW1_998"):
        assert ctx.outcomes.load(ArtifactKind.MATCH, artifact_id).status == "success"
    assert enqueuer.calls == [
        ("ingest_timeline", {"artifact_id": "EUW1_1000"}),
        ("ingest_timeline", {"artifact_id": "EUW1_998"}),
    ]
    assert ctx.entities.get("E1").profile == {"name": "E1"}
    assert not _lease_live(ctx.leases, entity_refresh_key("EUW1", "E1"))


def test_refresh_entity_skips_when_lease_is_busy(session_factory) -> None:
    provider = FakeProvider()
    _recent_history(provider, "E1")
    ctx = make_context(session_factory, provider)
    key = entity_refresh_key("EUW1", "E1")
    assert ctx.leases.try_acquire(key, timedelta(minutes=10))

    report = refresh_entity(JobInvocation.now("refresh_entity", at=T0), ctx, platform="EUW1", entity_id="E1")

    assert report.outcome is JobOutcome.SKIPPED
    assert provider.calls == []
    # Someone else's lease is left alone.
    assert _lease_live(ctx.leases, key)


def test_refresh_entity_runs_on_the_invocation_clock(session_factory) -> None:
    provider = FakeProvider()
    _recent_history(provider, "E1", count=1)
    ctx = make_context(session_factory, provider)

    refresh_entity(JobInvocation.now("refresh_entity", at=T0), ctx, platform="EUW1", entity_id="E1")

    assert ctx.cursors.load("E1", IngestionScope.RANKED).last_run_at == T0
    assert ensure_utc(ctx.entities.get("E1").last_refreshed_at) == T0
    assert ctx.outcomes.load(ArtifactKind.MATCH, "EUW1_1000").last_attempt_at == T0


def test_refresh_entity_rejects_malformed_ids(session_factory) -> None:
    provider = FakeProvider()
    ctx = make_context(session_factory, provider)
    report = refresh_entity(JobInvocation.now("refresh_entity"), ctx, platform="EUW1", entity_id="bad id")
    assert report.outcome is JobOutcome.FAILED
    assert provider.calls == []


def test_priority_refresh_releases_both_leases(session_factory) -> None:
    provider = FakeProvider()
    _recent_history(provider, "E1")
    ctx = make_context(session_factory, provider)
    ticket = request_priority_refresh(
        ctx.leases, "EUW1", "E1", entity_ttl=timedelta(minutes=10), priority_ttl=timedelta(minutes=5)
    )
    assert ctx.gate.is_active()

    report = refresh_entity(
        JobInvocation.now("refresh_entity", at=T0),
        ctx,
        platform="EUW1",
        entity_id="E1",
        lease_held=True,
        priority_key=ticket.priority_key,
    )

    assert report.outcome is JobOutcome.COMPLETED
    assert not ctx.gate.is_active()
    assert not _lease_live(ctx.leases, ticket.entity_key)


def test_maintenance_pauses_while_priority_refresh_is_active(session_factory) -> None:
    provider = FakeProvider()
    ctx = make_context(session_factory, provider)
    ctx.entities.track("EUW1", "E1")
    ctx.leases.try_acquire(priority_refresh_key("EUW1", "E9"), timedelta(minutes=5))

    report = run_maintenance(JobInvocation.now("run_maintenance"), ctx)

    assert report.outcome is JobOutcome.PAUSED
    assert provider.calls == []


def test_maintenance_refreshes_favorites_first_up_to_the_job_cap(session_factory) -> None:
    provider = FakeProvider()
    for entity_id in ("E1", "E2", "E3"):
        provider.profiles[entity_id] = {"name": entity_id}
    settings = JobSettings(maintenance=MaintenanceOptions(max_jobs_per_run=2))
    ctx = make_context(session_factory, provider, settings=settings)
    ctx.entities.track("EUW1", "E1")
    ctx.entities.track("EUW1", "E2")
    ctx.entities.track("EUW1", "E3", is_favorite=True)

    report = run_maintenance(JobInvocation.now("run_maintenance"), ctx)

    assert report.outcome is JobOutcome.COMPLETED
    assert report.counters["refreshed"] == 2
    assert provider.calls_to("profile") == ["E3", "E1"]
    for entity_id in ("E1", "E3"):
        assert not _lease_live(ctx.leases, entity_refresh_key("EUW1", entity_id))


def test_maintenance_rotates_past_an_entity_whose_profile_fails(session_factory) -> None:
    provider = FakeProvider()
    provider.profiles["E_OK"] = {"name": "E_OK"}
    settings = JobSettings(maintenance=MaintenanceOptions(max_jobs_per_run=1))
    ctx = make_context(session_factory, provider, settings=settings)
    ctx.entities.track("EUW1", "E_BAD")
    ctx.entities.track("EUW1", "E_OK")

    per_run = []
    for hour in range(3):
        before = len(provider.calls_to("profile"))
        run_maintenance(JobInvocation.now("run_maintenance", at=T0 + timedelta(hours=hour)), ctx)
        per_run.append(provider.calls_to("profile")[before:])

    assert per_run == [["E_BAD"], ["E_OK"], ["E_BAD"]]
    assert ensure_utc(ctx.entities.get("E_BAD").last_refreshed_at) == T0 + timedelta(hours=2)


def test_maintenance_skips_entities_whose_lease_is_busy(session_factory) -> None:
    provider = FakeProvider()
    provider.profiles["E2"] = {"name": "E2"}
    ctx = make_context(session_factory, provider)
    ctx.entities.track("EUW1", "E1")
    ctx.entities.track("EUW1", "E2")
    ctx.leases.try_acquire(entity_refresh_key("EUW1", "E1"), timedelta(minutes=10))

    report = run_maintenance(JobInvocation.now("run_maintenance"), ctx)

    assert report.counters["lease_busy"] == 1
    assert provider.calls_to("profile") == ["E2"]


def test_prewarm_enqueues_refresh_and_hands_over_the_lease(session_factory) -> None:
    enqueuer = RecordingEnqueuer()
    ctx = make_context(session_factory, enqueuer=enqueuer)
    ctx.entities.track("EUW1", "E1", is_favorite=True)

    report = run_prewarm(JobInvocation.now("run_prewarm"), ctx)

    assert report.counters["enqueued"] == 1
    assert enqueuer.calls == [("refresh_entity", {"platform": "EUW1", "entity_id": "E1", "lease_held": True})]
    assert _lease_live(ctx.leases, entity_refresh_key("EUW1", "E1"))


def test_prewarm_gives_the_lease_back_when_enqueue_fails(session_factory) -> None:
    ctx = make_context(session_factory, enqueuer=RecordingEnqueuer(fail=True))
    ctx.entities.track("EUW1", "E1")

    report = run_prewarm(JobInvocation.now("run_prewarm"), ctx)

    assert report.outcome is JobOutcome.PARTIAL
    assert not _lease_live(ctx.leases, entity_refresh_key("EUW1", "E1"))


def test_live_poll_respects_next_poll_time(session_factory) -> None:
    provider = FakeProvider()
    ctx = make_context(session_factory, provider)
    ctx.entities.track("EUW1", "E1", is_favorite=True, live_polling_enabled=True)

    first = run_live_poll(JobInvocation.now("run_live_poll", at=T0), ctx)
    assert first.counters["polled"] == 1
    assert ctx.snapshots.latest("E1").next_poll_at == T0 + timedelta(minutes=5)

    early = run_live_poll(JobInvocation.now("run_live_poll", at=T0 + timedelta(minutes=1)), ctx)
    assert early.counters["not_due"] == 1
    assert provider.calls_to("live") == ["E1"]

    provider.live["E1"] = LiveState(state=LiveGameState.IN_GAME, game_id=77)
    later = T0 + timedelta(minutes=6)
    run_live_poll(JobInvocation.now("run_live_poll", at=later), ctx)
    latest = ctx.snapshots.latest("E1")
    assert (latest.state, latest.game_id) == (LiveGameState.IN_GAME, 77)
    assert latest.next_poll_at == later + timedelta(seconds=60)


def test_live_poll_ignores_non_favorites_by_default(session_factory) -> None:
    provider = FakeProvider()
    ctx = make_context(session_factory, provider)
    ctx.entities.track("EUW1", "E1", live_polling_enabled=True)

    report = run_live_poll(JobInvocation.now("run_live_poll", at=T0), ctx)

    assert report.counters["candidates"] == 0
    assert provider.calls == []


def test_retry_sweep_job_retries_matches(session_factory) -> None:
    ctx = make_context(session_factory)
    ctx.outcomes.register_unfetched(ArtifactKind.MATCH, [ArtifactRef("EUW1_1", T0_EPOCH)], now=T0)
    snap = ctx.outcomes.load(ArtifactKind.MATCH, "EUW1_1")
    ctx.outcomes.apply(next_state(snap, Attempt(AttemptResult.TRANSIENT, "503"), max_retries=5, now=T0))

    report = run_retry_sweep(JobInvocation.now("run_retry_sweep", at=T0 + timedelta(hours=1)), ctx)

    assert report.outcome is JobOutcome.COMPLETED
    assert report.counters["match_succeeded"] == 1
    assert report.counters["timeline_selected"] == 0
    assert ctx.outcomes.load(ArtifactKind.MATCH, "EUW1_1").status == "success"


def test_timeline_backfill_enqueues_and_ingest_fetches(session_factory) -> None:
    provider = FakeProvider()
    enqueuer = RecordingEnqueuer()
    ctx = make_context(session_factory, provider, enqueuer=enqueuer)
    ctx.outcomes.register_unfetched(ArtifactKind.MATCH, [ArtifactRef("EUW1_5", T0_EPOCH)], now=T0)
    assert ctx.fetcher.evaluate(ArtifactKind.MATCH, "EUW1_5", now=T0).succeeded

    report = run_timeline_backfill(JobInvocation.now("run_timeline_backfill", at=T0), ctx)
    assert report.counters["registered"] == 1
    assert enqueuer.calls == [("ingest_timeline", {"artifact_id": "EUW1_5"})]

    ingest = ingest_timeline(JobInvocation.now("ingest_timeline", at=T0), ctx, artifact_id="EUW1_5")
    assert ingest.detail == "success"
    assert provider.calls_to("timeline") == ["EUW1_5"]

    # Nothing left to find on the next run.
    again = run_timeline_backfill(JobInvocation.now("run_timeline_backfill", at=T0), ctx)
    assert again.counters.get("enqueued", 0) == 0


def test_timeline_jobs_skip_when_disabled(session_factory) -> None:
    settings = JobSettings(timeline_ingestion=TimelineIngestionOptions(enabled=False))
    ctx = make_context(session_factory, settings=settings)
    report = run_timeline_backfill(JobInvocation.now("run_timeline_backfill"), ctx)
    assert report.outcome is JobOutcome.SKIPPED


def test_inline_enqueuer_runs_timeline_ingest_after_refresh(session_factory) -> None:
    provider = FakeProvider()
    _recent_history(provider, "E1", count=1)
    enqueuer = InlineEnqueuer()
    ctx = make_context(session_factory, provider, enqueuer=enqueuer)
    enqueuer.bind(ctx)

    report = run_entry_point("refresh_entity", ctx, at=T0, platform="EUW1", entity_id="E1")

    assert report.outcome is JobOutcome.COMPLETED
    assert [r.invocation.job_name for r in enqueuer.reports] == ["ingest_timeline"]
    assert ctx.outcomes.load(ArtifactKind.TIMELINE, "EUW1_1000").status == "success"
