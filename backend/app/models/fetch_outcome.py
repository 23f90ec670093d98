from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.base import Base, CreatedAtMixin


class FetchOutcomeColumns(CreatedAtMixin):
    """Retry bookkeeping shared by every fetchable artifact kind."""

    artifact_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="unfetched", index=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Stored once, on the success transition.
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)


class MatchFetchOutcome(FetchOutcomeColumns, Base):
    __tablename__ = "match_fetch_outcomes"

    # Entity whose history page first listed this match.
    entity_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    occurred_at_epoch: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    queue_family: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)


class TimelineFetchOutcome(FetchOutcomeColumns, Base):
    __tablename__ = "timeline_fetch_outcomes"

    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
