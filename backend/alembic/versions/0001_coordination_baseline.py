"""Coordination baseline: leases, cursors, fetch outcomes, tracked entities, live snapshots."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


# Revision identifiers, used by Alembic.
revision = "0001_coordination_baseline"
down_revision = None
branch_labels = None
depends_on = None


def _outcome_columns() -> list[sa.Column]:
    return [
        sa.Column("artifact_id", sa.String(length=64), primary_key=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="unfetched"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "leases",
        sa.Column("key", sa.String(length=256), primary_key=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_leases_locked_until", "leases", ["locked_until"])

    op.create_table(
        "ingestion_cursors",
        sa.Column("entity_id", sa.String(length=128), primary_key=True),
        sa.Column("scope", sa.String(length=32), primary_key=True),
        sa.Column("backfill_before_epoch", sa.BigInteger(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consecutive_noop_runs", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("version >= 1", name="ck_ingestion_cursors_version_positive"),
        sa.CheckConstraint("consecutive_noop_runs >= 0", name="ck_ingestion_cursors_noop_non_negative"),
    )

    op.create_table(
        "match_fetch_outcomes",
        *_outcome_columns(),
        sa.Column("entity_id", sa.String(length=128), nullable=True),
        sa.Column("occurred_at_epoch", sa.BigInteger(), nullable=True),
        sa.Column("queue_family", sa.String(length=32), nullable=True),
    )
    op.create_index("ix_match_fetch_outcomes_status", "match_fetch_outcomes", ["status"])
    op.create_index("ix_match_fetch_outcomes_last_attempt_at", "match_fetch_outcomes", ["last_attempt_at"])
    op.create_index("ix_match_fetch_outcomes_entity_id", "match_fetch_outcomes", ["entity_id"])

    op.create_table(
        "timeline_fetch_outcomes",
        *_outcome_columns(),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_timeline_fetch_outcomes_status", "timeline_fetch_outcomes", ["status"])
    op.create_index("ix_timeline_fetch_outcomes_last_attempt_at", "timeline_fetch_outcomes", ["last_attempt_at"])

    op.create_table(
        "tracked_entities",
        sa.Column("entity_id", sa.String(length=128), primary_key=True),
        sa.Column("platform", sa.String(length=16), nullable=False),
        sa.Column("display_name", sa.String(length=128), nullable=True),
        sa.Column("is_favorite", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("live_polling_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("profile", sa.JSON(), nullable=True),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_tracked_entities_last_refreshed_at", "tracked_entities", ["last_refreshed_at"])

    op.create_table(
        "live_snapshots",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("game_id", sa.BigInteger(), nullable=True),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_poll_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_live_snapshots_entity_id", "live_snapshots", ["entity_id"])
    op.create_index("ix_live_snapshots_observed_at", "live_snapshots", ["observed_at"])


def downgrade() -> None:
    op.drop_table("live_snapshots")
    op.drop_table("tracked_entities")
    op.drop_table("timeline_fetch_outcomes")
    op.drop_table("match_fetch_outcomes")
    op.drop_table("ingestion_cursors")
    op.drop_table("leases")
