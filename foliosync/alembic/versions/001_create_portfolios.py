"""create_portfolios

Revision ID: 001_create_portfolios
Revises:
Create Date: 2026-10-19 00:00:00.000000 UTC

Creates the portfolios table:
  - one row per owner (owner_id unique)
  - document JSONB blob written whole under the version CAS
  - stats as separate counters, bumped atomically outside the version
  - at most one published portfolio per non-empty username
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_create_portfolios"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "portfolios",
        sa.Column("id", sa.String(36), nullable=False, comment="Portfolio UUID: also the real-time channel key"),
        sa.Column("owner_id", sa.String(128), nullable=False, comment="Identity of the owning user, supplied by the auth layer"),
        sa.Column("username", sa.String(64), nullable=False, server_default="", comment="Lower-cased public handle"),
        sa.Column("status", sa.String(10), nullable=False, server_default="draft", comment="'draft', 'published' or 'archived'"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1", comment="Optimistic-concurrency token; +1 per accepted mutation"),
        sa.Column("document", postgresql.JSONB(astext_type=sa.Text()), nullable=False, comment="Blocks, layout, theme, seo, publishing"),
        sa.Column("views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("shares", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_viewed", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_portfolios_owner_id", "portfolios", ["owner_id"], unique=True)
    op.create_index("ix_portfolios_username", "portfolios", ["username"])
    op.create_index("ix_portfolios_status", "portfolios", ["status"])
    op.create_index(
        "uq_portfolios_published_username",
        "portfolios",
        ["username"],
        unique=True,
        postgresql_where=sa.text("status = 'published' AND username <> ''"),
    )


def downgrade() -> None:
    op.drop_index("uq_portfolios_published_username", table_name="portfolios")
    op.drop_index("ix_portfolios_status", table_name="portfolios")
    op.drop_index("ix_portfolios_username", table_name="portfolios")
    op.drop_index("ix_portfolios_owner_id", table_name="portfolios")
    op.drop_table("portfolios")
