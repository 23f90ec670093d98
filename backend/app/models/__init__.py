"""SQLAlchemy models package.

All ORM classes are registered deterministically so `Base.metadata` is complete
for Alembic and for test schema creation regardless of import order.
"""

from app.models import (  # noqa: F401
    fetch_outcome,
    ingestion_cursor,
    lease,
    live_snapshot,
    tracked_entity,
)
