from __future__ import annotations

from datetime import timedelta

import pytest

from ingestion.core.errors import ArtifactNotFoundError, InvalidIdentifierError, OutsideRetentionError
from ingestion.core.fetch_outcome import ArtifactKind, OutcomeStore
from ingestion.core.fetcher import ArtifactFetcher
from ingestion.core.provider import ArtifactRef

from fakes import ARAM_QUEUE, T0, T0_EPOCH, FakeProvider, transient


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def outcomes(session_factory) -> OutcomeStore:
    return OutcomeStore(session_factory)


def _fetcher(provider, outcomes, *, match_max_retries: int = 5) -> ArtifactFetcher:
    return ArtifactFetcher(
        provider,
        outcomes,
        match_max_retries=match_max_retries,
        timeline_max_retries=4,
        retention_days=730,
    )


def test_transient_errors_until_ceiling_then_permanent(provider, outcomes) -> None:
    outcomes.register_unfetched(ArtifactKind.MATCH, [ArtifactRef("EUW1_1", T0_EPOCH)], now=T0)
    provider.scripts["EUW1_1"] = transient(10)
    fetcher = _fetcher(provider, outcomes, match_max_retries=3)

    for i in range(3):
        ev = fetcher.evaluate(ArtifactKind.MATCH, "EUW1_1", now=T0 + timedelta(minutes=20 * i))
        assert ev.status == "temporary_failure"
        assert ev.retry_count == i + 1

    ev = fetcher.evaluate(ArtifactKind.MATCH, "EUW1_1", now=T0 + timedelta(hours=1))
    assert ev.status == "permanently_unfetchable"
    assert ev.provider_called is False
    assert ev.retry_count == 3
    assert len(provider.calls_to("match")) == 3

    # Terminal: later evaluations do nothing and call nothing.
    ev = fetcher.evaluate(ArtifactKind.MATCH, "EUW1_1", now=T0 + timedelta(hours=2))
    assert ev.changed is False
    assert len(provider.calls_to("match")) == 3


def test_success_stores_payload_and_queue_family(provider, outcomes) -> None:
    provider.queues["EUW1_2"] = ARAM_QUEUE
    ev = _fetcher(provider, outcomes).evaluate(ArtifactKind.MATCH, "EUW1_2", now=T0)
    assert ev.succeeded and ev.changed

    snap = outcomes.load(ArtifactKind.MATCH, "EUW1_2")
    assert snap.queue_family == "nonranked"
    assert outcomes.load_payload(ArtifactKind.MATCH, "EUW1_2")["queueId"] == ARAM_QUEUE


def test_match_outside_retention_skips_provider(provider, outcomes) -> None:
    old = T0_EPOCH - int(timedelta(days=731).total_seconds())
    outcomes.register_unfetched(ArtifactKind.MATCH, [ArtifactRef("EUW1_3", old)], now=T0)

    ev = _fetcher(provider, outcomes).evaluate(ArtifactKind.MATCH, "EUW1_3", now=T0)
    assert ev.status == "outside_retention_window"
    assert ev.provider_called is False
    assert provider.calls_to("match") == []


def test_provider_classifications(provider, outcomes) -> None:
    provider.scripts["EUW1_4"] = [ArtifactNotFoundError("404")]
    provider.scripts["EUW1_5"] = [OutsideRetentionError("410")]
    fetcher = _fetcher(provider, outcomes)

    assert fetcher.evaluate(ArtifactKind.MATCH, "EUW1_4", now=T0).status == "permanently_unfetchable"
    assert fetcher.evaluate(ArtifactKind.MATCH, "EUW1_5", now=T0).status == "outside_retention_window"


def test_timeline_waits_for_its_match(provider, outcomes) -> None:
    fetcher = _fetcher(provider, outcomes)
    ev = fetcher.evaluate(ArtifactKind.TIMELINE, "EUW1_6", now=T0)
    assert ev.changed is False
    assert provider.calls_to("timeline") == []

    fetcher.evaluate(ArtifactKind.MATCH, "EUW1_6", now=T0)
    ev = fetcher.evaluate(ArtifactKind.TIMELINE, "EUW1_6", now=T0)
    assert ev.status == "success"
    assert provider.calls_to("timeline") == ["EUW1_6"]


def test_timeline_of_non_ranked_match_is_not_applicable(provider, outcomes) -> None:
    provider.queues["EUW1_7"] = ARAM_QUEUE
    fetcher = _fetcher(provider, outcomes)
    fetcher.evaluate(ArtifactKind.MATCH, "EUW1_7", now=T0)

    ev = fetcher.evaluate(ArtifactKind.TIMELINE, "EUW1_7", now=T0)
    assert ev.status == "not_applicable"
    assert ev.provider_called is False


def test_malformed_artifact_id_is_rejected(provider, outcomes) -> None:
    with pytest.raises(InvalidIdentifierError):
        _fetcher(provider, outcomes).evaluate(ArtifactKind.MATCH, "not an id")
