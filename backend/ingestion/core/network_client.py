"""HTTP provider client.

The only gateway for provider requests. It speaks to a provider gateway over
JSON and turns every response into either a value or one of the controlled
`ProviderError` subclasses, so callers never see raw HTTP failures.

Classification:
- 404 -> ArtifactNotFoundError
- 410 -> OutsideRetentionError
- 429, 5xx, timeouts, connection errors, undecodable bodies -> TransientProviderError
- any other 4xx -> PermanentProviderError
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Any, Optional

import httpx

from ingestion.core.errors import (
    ArtifactNotFoundError,
    OutsideRetentionError,
    PermanentProviderError,
    TransientProviderError,
)
from ingestion.core.provider import Artifact, ArtifactRef, IdPage, LiveGameState, LiveState

logger = logging.getLogger(__name__)

BASE_URL_ENV = "RIFT_PROVIDER_BASE_URL"
API_KEY_ENV = "RIFT_PROVIDER_API_KEY"
DEFAULT_TIMEOUT_SECONDS = 15.0


class ResponseClass(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    GONE = "gone"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


def analyze_response(response: httpx.Response) -> ResponseClass:
    status = response.status_code
    if 200 <= status < 300:
        return ResponseClass.SUCCESS
    if status == 404:
        return ResponseClass.NOT_FOUND
    if status == 410:
        return ResponseClass.GONE
    if status == 429:
        # Rate limited: back off and let the sweeper retry later.
        return ResponseClass.TRANSIENT
    if status >= 500:
        return ResponseClass.TRANSIENT
    return ResponseClass.PERMANENT


class HttpProviderClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-Api-Key"] = api_key
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_env(cls) -> "HttpProviderClient":
        base_url = os.environ.get(BASE_URL_ENV)
        if not base_url:
            raise RuntimeError(f"Missing required env var {BASE_URL_ENV}.")
        return cls(base_url, api_key=os.environ.get(API_KEY_ENV))

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpProviderClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            response = self._client.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"timeout GET {path}") from exc
        except httpx.RequestError as exc:
            raise TransientProviderError(f"network error GET {path}: {exc}") from exc

        outcome = analyze_response(response)
        if outcome is ResponseClass.NOT_FOUND:
            raise ArtifactNotFoundError(f"404 GET {path}")
        if outcome is ResponseClass.GONE:
            raise OutsideRetentionError(f"410 GET {path}")
        if outcome is ResponseClass.TRANSIENT:
            logger.info("transient provider response status=%s path=%s", response.status_code, path)
            raise TransientProviderError(f"{response.status_code} GET {path}")
        if outcome is ResponseClass.PERMANENT:
            raise PermanentProviderError(f"{response.status_code} GET {path}")

        try:
            return response.json()
        except ValueError as exc:
            raise TransientProviderError(f"undecodable body GET {path}") from exc

    def list_artifact_ids_before(
        self,
        entity_id: str,
        before_epoch: Optional[int],
        page: int,
        *,
        page_size: int,
        queue_family: Optional[str] = None,
    ) -> IdPage:
        params: dict[str, Any] = {"start": page * page_size, "count": page_size}
        if before_epoch is not None:
            params["before"] = before_epoch
        if queue_family is not None:
            params["queue"] = queue_family
        body = self._get_json(f"/entities/{entity_id}/matches", params)
        if not isinstance(body, dict) or not isinstance(body.get("matches"), list):
            raise TransientProviderError("malformed match id page")

        refs = []
        for item in body["matches"]:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            started = item.get("startedAt")
            refs.append(ArtifactRef(artifact_id=str(item["id"]), occurred_at_epoch=int(started) if started is not None else None))
        end_of_history = bool(body.get("endOfHistory", len(refs) < page_size))
        return IdPage(refs=tuple(refs), end_of_history=end_of_history)

    def fetch_artifact(self, artifact_id: str) -> Artifact:
        body = self._get_json(f"/matches/{artifact_id}")
        if not isinstance(body, dict):
            raise TransientProviderError("malformed match body")
        started = body.get("startedAt")
        return Artifact(
            artifact_id=artifact_id,
            payload=body,
            occurred_at_epoch=int(started) if started is not None else None,
            queue_id=body.get("queueId"),
        )

    def fetch_timeline(self, artifact_id: str) -> Artifact:
        body = self._get_json(f"/matches/{artifact_id}/timeline")
        if not isinstance(body, dict):
            raise TransientProviderError("malformed timeline body")
        return Artifact(artifact_id=artifact_id, payload=body)

    def fetch_profile(self, entity_id: str) -> dict[str, Any]:
        body = self._get_json(f"/entities/{entity_id}/profile")
        if not isinstance(body, dict):
            raise TransientProviderError("malformed profile body")
        return body

    def fetch_live_state(self, entity_id: str) -> LiveState:
        try:
            body = self._get_json(f"/entities/{entity_id}/live")
        except ArtifactNotFoundError:
            # The provider answers 404 when the entity is not in a game.
            return LiveState(state=LiveGameState.NONE)
        if not isinstance(body, dict):
            raise TransientProviderError("malformed live body")
        try:
            state = LiveGameState(str(body.get("state", "none")))
        except ValueError:
            state = LiveGameState.NONE
        game_id = body.get("gameId")
        return LiveState(state=state, game_id=int(game_id) if game_id is not None else None, extra=body)
