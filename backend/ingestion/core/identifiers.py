"""Identifier validation and lease key conventions.

Lease keys are `<prefix><PLATFORM>:<ENTITY_ID>`. The priority prefix is reserved:
any live lease under it means an interactive user is waiting on the provider
and pausable background work should yield.
"""
from __future__ import annotations

import re

from ingestion.core.errors import InvalidIdentifierError

ENTITY_REFRESH_PREFIX = "entity-refresh:"
PRIORITY_REFRESH_PREFIX = "refresh-priority:api:"
TIMELINE_INGEST_PREFIX = "timeline-ingest:"
LIVE_POLL_PREFIX = "live-poll:"

_PLATFORM_RE = re.compile(r"^[A-Z0-9]{2,8}$")
_ENTITY_RE = re.compile(r"^[A-Za-z0-9_\-#.]{1,96}$")


def normalize_platform(platform: str) -> str:
    value = (platform or "").strip().upper()
    if not _PLATFORM_RE.match(value):
        raise InvalidIdentifierError(f"invalid platform: {platform!r}")
    return value


def normalize_entity_id(entity_id: str) -> str:
    value = (entity_id or "").strip()
    if not _ENTITY_RE.match(value):
        raise InvalidIdentifierError(f"invalid entity id: {entity_id!r}")
    return value


def entity_refresh_key(platform: str, entity_id: str) -> str:
    return f"{ENTITY_REFRESH_PREFIX}{normalize_platform(platform)}:{normalize_entity_id(entity_id)}"


def priority_refresh_key(platform: str, entity_id: str) -> str:
    return f"{PRIORITY_REFRESH_PREFIX}{normalize_platform(platform)}:{normalize_entity_id(entity_id)}"


_ARTIFACT_RE = re.compile(r"^[A-Za-z0-9]{2,8}_[0-9]{1,20}$")


def normalize_artifact_id(artifact_id: str) -> str:
    """Artifact ids are `<PLATFORM>_<number>`, e.g. `EUW1_7012345678`."""
    value = (artifact_id or "").strip().upper()
    if not _ARTIFACT_RE.match(value):
        raise InvalidIdentifierError(f"invalid artifact id: {artifact_id!r}")
    return value


def timeline_ingest_key(artifact_id: str) -> str:
    return f"{TIMELINE_INGEST_PREFIX}{normalize_artifact_id(artifact_id)}"


def live_poll_key(platform: str, entity_id: str) -> str:
    return f"{LIVE_POLL_PREFIX}{normalize_platform(platform)}:{normalize_entity_id(entity_id)}"
