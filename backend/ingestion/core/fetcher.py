"""Single-artifact evaluation: pre-checks, one provider call, one persisted transition.

Used by inline fetching after discovery, by the unfetched drain and by the
retry sweeper, so every path applies identical classification rules.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from ingestion.core.errors import (
    ArtifactNotFoundError,
    OutsideRetentionError,
    PermanentProviderError,
    TransientProviderError,
)
from ingestion.core.fetch_outcome import (
    ArtifactKind,
    Attempt,
    AttemptResult,
    MatchFetchStatus,
    OutcomeSnapshot,
    OutcomeStore,
    ceiling_reached,
    next_state,
)
from ingestion.core.identifiers import normalize_artifact_id
from ingestion.core.provider import Artifact, ProviderClient
from ingestion.core.time_common import resolve_now, to_epoch

logger = logging.getLogger(__name__)

# Solo/duo and flex ranked queues.
RANKED_QUEUE_IDS = frozenset({420, 440})


def queue_family_for(queue_id: Optional[int]) -> Optional[str]:
    if queue_id is None:
        return None
    return "ranked" if queue_id in RANKED_QUEUE_IDS else "nonranked"


@dataclass(frozen=True, slots=True)
class Evaluation:
    kind: ArtifactKind
    artifact_id: str
    status: str
    changed: bool
    provider_called: bool
    retry_count: int

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class ArtifactFetcher:
    def __init__(
        self,
        provider: ProviderClient,
        outcomes: OutcomeStore,
        *,
        match_max_retries: int,
        timeline_max_retries: int,
        retention_days: int,
    ):
        self._provider = provider
        self._outcomes = outcomes
        self._max_retries = {
            ArtifactKind.MATCH: match_max_retries,
            ArtifactKind.TIMELINE: timeline_max_retries,
        }
        self._retention = timedelta(days=retention_days)

    @property
    def outcomes(self) -> OutcomeStore:
        return self._outcomes

    def evaluate(self, kind: ArtifactKind, artifact_id: str, *, now: Optional[datetime] = None) -> Evaluation:
        """Evaluate one artifact. Malformed ids raise InvalidIdentifierError."""
        artifact_id = normalize_artifact_id(artifact_id)
        now = resolve_now(now)
        snapshot = self._outcomes.ensure(kind, artifact_id, now=now)
        if snapshot.terminal:
            return self._unchanged(snapshot, provider_called=False)

        max_retries = self._max_retries[kind]
        attempt = self._pre_check(snapshot, now)
        provider_called = False
        if attempt is None and not ceiling_reached(snapshot, max_retries=max_retries):
            if kind is ArtifactKind.TIMELINE and not self._timeline_ready(artifact_id):
                return self._unchanged(snapshot, provider_called=False)
            attempt = self._call_provider(kind, artifact_id)
            provider_called = True

        transition = next_state(snapshot, attempt, max_retries=max_retries, now=now)
        if transition is None:
            return self._unchanged(snapshot, provider_called=provider_called)
        if attempt is not None and attempt.result is AttemptResult.SUCCESS and kind is ArtifactKind.MATCH:
            queue_id = (attempt.payload or {}).get("queueId")
            transition = replace(transition, queue_family=queue_family_for(queue_id))

        applied = self._outcomes.apply(transition)
        if transition.terminal and transition.to_status != "success":
            logger.info(
                "artifact failed terminally kind=%s artifact=%s status=%s retries=%s",
                kind.value,
                artifact_id,
                transition.to_status,
                transition.retry_count,
            )
        return Evaluation(
            kind=kind,
            artifact_id=artifact_id,
            status=transition.to_status if applied else snapshot.status,
            changed=applied,
            provider_called=provider_called,
            retry_count=transition.retry_count if applied else snapshot.retry_count,
        )

    def _pre_check(self, snapshot: OutcomeSnapshot, now: datetime) -> Optional[Attempt]:
        """Decide without the provider when the outcome is already known."""
        if snapshot.kind is ArtifactKind.MATCH:
            if snapshot.occurred_at_epoch is not None and snapshot.occurred_at_epoch < to_epoch(now - self._retention):
                return Attempt(AttemptResult.OUT_OF_WINDOW, "match is older than the provider retention window")
            return None

        match = self._outcomes.load(ArtifactKind.MATCH, snapshot.artifact_id)
        if match is None or not match.terminal:
            return None
        if match.status != MatchFetchStatus.SUCCESS.value:
            return Attempt(AttemptResult.OUT_OF_WINDOW, f"match is {match.status}")
        if match.queue_family != "ranked":
            return Attempt(AttemptResult.OUT_OF_WINDOW, "timelines are kept for ranked matches only")
        return None

    def _timeline_ready(self, artifact_id: str) -> bool:
        # A timeline is only fetched once its match row is a ranked success.
        match = self._outcomes.load(ArtifactKind.MATCH, artifact_id)
        return match is not None and match.status == MatchFetchStatus.SUCCESS.value

    def _call_provider(self, kind: ArtifactKind, artifact_id: str) -> Attempt:
        try:
            if kind is ArtifactKind.MATCH:
                artifact: Artifact = self._provider.fetch_artifact(artifact_id)
            else:
                artifact = self._provider.fetch_timeline(artifact_id)
        except OutsideRetentionError as exc:
            return Attempt(AttemptResult.OUT_OF_WINDOW, str(exc) or "outside retention")
        except ArtifactNotFoundError as exc:
            return Attempt(AttemptResult.NOT_FOUND, str(exc) or "not found")
        except PermanentProviderError as exc:
            return Attempt(AttemptResult.PERMANENT, str(exc) or type(exc).__name__)
        except TransientProviderError as exc:
            return Attempt(AttemptResult.TRANSIENT, str(exc) or type(exc).__name__)

        payload = dict(artifact.payload)
        if artifact.queue_id is not None:
            payload.setdefault("queueId", artifact.queue_id)
        return Attempt(AttemptResult.SUCCESS, payload=payload)

    @staticmethod
    def _unchanged(snapshot: OutcomeSnapshot, *, provider_called: bool) -> Evaluation:
        return Evaluation(
            kind=snapshot.kind,
            artifact_id=snapshot.artifact_id,
            status=snapshot.status,
            changed=False,
            provider_called=provider_called,
            retry_count=snapshot.retry_count,
        )
