"""Provider contract.

The provider is rate-limited and eventually consistent. Implementations signal
failures by raising the `ProviderError` subclasses in `ingestion.core.errors`;
everything else about a call is expressed in these value types.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol


@dataclass(frozen=True, slots=True)
class ArtifactRef:
    artifact_id: str
    occurred_at_epoch: Optional[int] = None


@dataclass(frozen=True, slots=True)
class IdPage:
    """One page of artifact ids, newest first."""

    refs: tuple[ArtifactRef, ...]
    end_of_history: bool = False

    def oldest_epoch(self) -> Optional[int]:
        epochs = [r.occurred_at_epoch for r in self.refs if r.occurred_at_epoch is not None]
        return min(epochs) if epochs else None


@dataclass(frozen=True, slots=True)
class Artifact:
    artifact_id: str
    payload: dict[str, Any]
    occurred_at_epoch: Optional[int] = None
    queue_id: Optional[int] = None


class LiveGameState(str, Enum):
    NONE = "none"
    LOBBY = "lobby"
    IN_GAME = "in_game"
    ENDED = "ended"


@dataclass(frozen=True, slots=True)
class LiveState:
    state: LiveGameState
    game_id: Optional[int] = None
    extra: dict[str, Any] = field(default_factory=dict)


class ProviderClient(Protocol):
    def list_artifact_ids_before(
        self,
        entity_id: str,
        before_epoch: Optional[int],
        page: int,
        *,
        page_size: int,
        queue_family: Optional[str] = None,
    ) -> IdPage:
        ...

    def fetch_artifact(self, artifact_id: str) -> Artifact:
        ...

    def fetch_timeline(self, artifact_id: str) -> Artifact:
        ...

    def fetch_profile(self, entity_id: str) -> dict[str, Any]:
        ...

    def fetch_live_state(self, entity_id: str) -> LiveState:
        ...
