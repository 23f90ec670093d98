"""UTC helpers shared by coordination primitives and jobs."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

UTC = timezone.utc


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values read back from backends that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_epoch(value: datetime) -> int:
    return int(ensure_utc(value).timestamp())


def resolve_now(now: Optional[datetime]) -> datetime:
    """Caller-supplied clock (normalized to UTC) or the wall clock."""
    return ensure_utc(now) if now is not None else utcnow()
