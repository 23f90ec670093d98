from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.base import Base, CreatedAtMixin


class Lease(CreatedAtMixin, Base):
    """TTL-bound mutual-exclusion record keyed by string.

    A lease is live while `now < locked_until`. Rows are never deleted: release
    sets `locked_until` to the release time and re-acquire refreshes it in place.
    There is no owner column; holders are trusted to release what they acquired.
    """

    __tablename__ = "leases"

    key: Mapped[str] = mapped_column(String(256), primary_key=True)
    locked_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
