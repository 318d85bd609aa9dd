"""Create events table

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

One append-only table. Identity is enforced by two partial unique indexes
over (coalesce(org_id,''), coalesce(project_id,''), event_id | event_hash),
which the conditional insert relies on.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import text as sa_text

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("org_id", sa.Text(), nullable=True),
        sa.Column("project_id", sa.Text(), nullable=True),
        sa.Column("event_id", sa.Text(), nullable=True),
        sa.Column("event_name", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("event_hash", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("idx_events_scope", "events", ["org_id", "project_id"])
    op.create_index("idx_events_user_ts", "events", ["user_id", "timestamp"])
    op.create_index("idx_events_name_ts", "events", ["event_name", "timestamp"])
    op.create_index("idx_events_scope_ts", "events", ["org_id", "project_id", "timestamp"])
    op.create_index(
        "idx_events_scope_user_name_ts",
        "events",
        ["org_id", "project_id", "user_id", "event_name", "timestamp"],
    )

    op.execute(sa_text(
        "CREATE UNIQUE INDEX IF NOT EXISTS uniq_events_scope_event_id "
        "ON events (coalesce(org_id, ''), coalesce(project_id, ''), event_id) "
        "WHERE event_id IS NOT NULL"
    ))
    op.execute(sa_text(
        "CREATE UNIQUE INDEX IF NOT EXISTS uniq_events_scope_event_hash "
        "ON events (coalesce(org_id, ''), coalesce(project_id, ''), event_hash) "
        "WHERE event_hash IS NOT NULL"
    ))


def downgrade() -> None:
    op.execute(sa_text("DROP INDEX IF EXISTS uniq_events_scope_event_hash"))
    op.execute(sa_text("DROP INDEX IF EXISTS uniq_events_scope_event_id"))
    op.drop_index("idx_events_scope_user_name_ts", table_name="events")
    op.drop_index("idx_events_scope_ts", table_name="events")
    op.drop_index("idx_events_name_ts", table_name="events")
    op.drop_index("idx_events_user_ts", table_name="events")
    op.drop_index("idx_events_scope", table_name="events")
    op.drop_table("events")
