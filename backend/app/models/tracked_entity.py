from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.base import Base, CreatedAtMixin


class TrackedEntity(CreatedAtMixin, Base):
    """An entity (player) that batch jobs keep fresh.

    Candidate selection for maintenance, pre-warm and live polling reads from
    here; `last_refreshed_at` is the staleness signal.
    """

    __tablename__ = "tracked_entities"

    entity_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    is_favorite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    live_polling_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    profile: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
