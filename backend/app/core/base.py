"""SQLAlchemy declarative base and shared mixins.

Coordination records (leases, cursors, fetch outcomes) live in the same
relational store every job talks to.

- Portable column types (`Uuid`, `DateTime(timezone=True)`) so the models run on
  PostgreSQL in production and on SQLite in the test suite.
- Timestamps are UTC and timezone-aware. Writers supply them explicitly; the
  server defaults only cover rows created outside the application.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Uuid, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class UUIDPrimaryKeyMixin:
    """UUID primary key mixin (application-generated)."""

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )


class CreatedAtMixin:
    """Created-at timestamp mixin (UTC timestamptz)."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
