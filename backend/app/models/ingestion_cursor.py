from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.base import Base


class IngestionCursor(Base):
    """Resumable backward-moving pointer into one entity's history, per scope.

    Mutated only by the holder of the entity lease. `version` is bumped on every
    write so a writer holding an expired lease can detect that it lost.
    """

    __tablename__ = "ingestion_cursors"

    entity_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    scope: Mapped[str] = mapped_column(String(32), primary_key=True)

    # Epoch seconds; null until the first backfill run that saw new artifacts.
    backfill_before_epoch: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    last_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consecutive_noop_runs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
