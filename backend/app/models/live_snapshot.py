from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.base import Base, UUIDPrimaryKeyMixin


class LiveSnapshot(UUIDPrimaryKeyMixin, Base):
    """Append-only observation of an entity's live-game state."""

    __tablename__ = "live_snapshots"

    entity_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    game_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    next_poll_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
