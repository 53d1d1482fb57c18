"""Create blobs, pump_events and alert_entries tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Named JSON artifacts, settings and pump sync state
    op.create_table(
        "blobs",
        sa.Column("key", sa.String(100), nullable=False),
        sa.Column("value_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    # Reconciled pump history
    op.create_table(
        "pump_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("sync_identifier", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(19), nullable=False),
        sa.Column("event_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("units", sa.Float(), nullable=True),
        sa.Column("units_per_hour", sa.Float(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("is_automatic", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", sa.String(50), nullable=False, server_default="pump"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sync_identifier"),
    )
    op.create_index(
        "ix_pump_events_timestamp",
        "pump_events",
        ["event_timestamp"],
    )

    # Device alerts and acknowledgement outcome
    op.create_table(
        "alert_entries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("alert_identifier", sa.String(100), nullable=False),
        sa.Column("manager_identifier", sa.String(100), nullable=False),
        sa.Column("issued_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("interruption_level", sa.String(50), nullable=True),
        sa.Column("trigger_type", sa.String(50), nullable=True),
        sa.Column("trigger_interval", sa.Float(), nullable=True),
        sa.Column("content_title", sa.String(200), nullable=True),
        sa.Column("content_body", sa.Text(), nullable=True),
        sa.Column("acknowledged_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("issued_date"),
    )
    op.create_index(
        "ix_alert_entries_alert_identifier",
        "alert_entries",
        ["alert_identifier"],
    )


def downgrade() -> None:
    op.drop_index("ix_alert_entries_alert_identifier")
    op.drop_table("alert_entries")
    op.drop_index("ix_pump_events_timestamp")
    op.drop_table("pump_events")
    op.drop_table("blobs")
