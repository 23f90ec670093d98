from __future__ import annotations

from datetime import timedelta

import pytest

from ingestion.core.fetch_outcome import (
    ArtifactKind,
    Attempt,
    AttemptResult,
    MatchFetchStatus,
    OutcomeSnapshot,
    OutcomeStore,
    TimelineFetchStatus,
    next_state,
)
from ingestion.core.provider import ArtifactRef

from fakes import T0


def _snap(status: str = "unfetched", retry_count: int = 0, kind: ArtifactKind = ArtifactKind.MATCH) -> OutcomeSnapshot:
    return OutcomeSnapshot(kind=kind, artifact_id="EUW1_1", status=status, retry_count=retry_count)


def test_transient_failure_increments_retry_count() -> None:
    t = next_state(_snap(), Attempt(AttemptResult.TRANSIENT, "503"), max_retries=3, now=T0)
    assert t.to_status == MatchFetchStatus.TEMPORARY_FAILURE.value
    assert t.retry_count == 1
    assert t.last_attempt_at == T0
    assert t.last_error_message == "503"


def test_ceiling_forces_terminal_failure_without_an_attempt() -> None:
    snap = _snap("temporary_failure", retry_count=3)
    t = next_state(snap, None, max_retries=3, now=T0)
    assert t.to_status == MatchFetchStatus.PERMANENTLY_UNFETCHABLE.value
    assert t.retry_count == 3

    # Even a would-be success cannot override the ceiling.
    t = next_state(snap, Attempt(AttemptResult.SUCCESS, payload={}), max_retries=3, now=T0)
    assert t.to_status == MatchFetchStatus.PERMANENTLY_UNFETCHABLE.value


def test_terminal_states_never_transition() -> None:
    for status in ("success", "permanently_unfetchable", "outside_retention_window"):
        assert next_state(_snap(status, 2), Attempt(AttemptResult.TRANSIENT), max_retries=3, now=T0) is None
    assert next_state(
        _snap("not_applicable", kind=ArtifactKind.TIMELINE), Attempt(AttemptResult.SUCCESS), max_retries=3, now=T0
    ) is None


def test_success_clears_error_and_freezes_retry_count() -> None:
    t = next_state(_snap("temporary_failure", 2), Attempt(AttemptResult.SUCCESS, payload={"a": 1}), max_retries=5, now=T0)
    assert t.to_status == "success"
    assert t.retry_count == 2
    assert t.last_error_message is None
    assert t.payload == {"a": 1}


def test_not_found_and_out_of_window_are_terminal() -> None:
    t = next_state(_snap(), Attempt(AttemptResult.NOT_FOUND, "404"), max_retries=5, now=T0)
    assert t.to_status == MatchFetchStatus.PERMANENTLY_UNFETCHABLE.value
    assert t.retry_count == 1

    t = next_state(_snap(kind=ArtifactKind.TIMELINE), Attempt(AttemptResult.OUT_OF_WINDOW), max_retries=5, now=T0)
    assert t.to_status == TimelineFetchStatus.NOT_APPLICABLE.value

    t = next_state(_snap(kind=ArtifactKind.TIMELINE), Attempt(AttemptResult.PERMANENT, "403"), max_retries=5, now=T0)
    assert t.to_status == TimelineFetchStatus.PERMANENTLY_FAILED.value


def test_error_messages_are_truncated() -> None:
    t = next_state(_snap(), Attempt(AttemptResult.TRANSIENT, "x" * 5000), max_retries=5, now=T0)
    assert len(t.last_error_message) == 1024


def test_register_unfetched_is_insert_if_absent(session_factory) -> None:
    store = OutcomeStore(session_factory)
    refs = [ArtifactRef("EUW1_3", 300), ArtifactRef("EUW1_2", 200)]
    assert store.register_unfetched(ArtifactKind.MATCH, refs, entity_id="E1", now=T0) == ["EUW1_3", "EUW1_2"]
    assert store.register_unfetched(
        ArtifactKind.MATCH, refs + [ArtifactRef("EUW1_1", 100)], entity_id="E2", now=T0
    ) == ["EUW1_1"]

    snap = store.load(ArtifactKind.MATCH, "EUW1_3")
    assert snap.status == "unfetched"
    assert snap.retry_count == 0
    assert snap.occurred_at_epoch == 300


def test_apply_is_guarded_by_expected_state(session_factory) -> None:
    store = OutcomeStore(session_factory)
    store.register_unfetched(ArtifactKind.MATCH, [ArtifactRef("EUW1_7", 1)], now=T0)
    snap = store.load(ArtifactKind.MATCH, "EUW1_7")

    first = next_state(snap, Attempt(AttemptResult.TRANSIENT, "503"), max_retries=5, now=T0)
    duplicate = next_state(snap, Attempt(AttemptResult.SUCCESS, payload={}), max_retries=5, now=T0)
    assert store.apply(first) is True
    assert store.apply(duplicate) is False

    snap = store.load(ArtifactKind.MATCH, "EUW1_7")
    assert snap.status == "temporary_failure"
    assert snap.retry_count == 1
    assert snap.last_attempt_at == T0


def test_timeline_success_sets_last_success_at(session_factory, db_session) -> None:
    from app.models.fetch_outcome import TimelineFetchOutcome

    store = OutcomeStore(session_factory)
    store.register_unfetched(ArtifactKind.TIMELINE, [ArtifactRef("EUW1_9")], now=T0)
    snap = store.load(ArtifactKind.TIMELINE, "EUW1_9")
    later = T0 + timedelta(minutes=1)
    assert store.apply(next_state(snap, Attempt(AttemptResult.SUCCESS, payload={"f": 1}), max_retries=4, now=later))

    row = db_session.get(TimelineFetchOutcome, "EUW1_9")
    assert row.status == "success"
    assert row.last_success_at is not None
    assert row.payload == {"f": 1}


def test_ensure_registers_missing_rows(session_factory) -> None:
    store = OutcomeStore(session_factory)
    snap = store.ensure(ArtifactKind.TIMELINE, "euw1_9", now=T0)
    assert (snap.artifact_id, snap.status, snap.retry_count) == ("EUW1_9", "unfetched", 0)


def test_ensure_raises_when_registration_leaves_no_row(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    store = OutcomeStore(session_factory)
    monkeypatch.setattr(store, "register_unfetched", lambda *args, **kwargs: [])
    with pytest.raises(RuntimeError):
        store.ensure(ArtifactKind.MATCH, "EUW1_9", now=T0)
