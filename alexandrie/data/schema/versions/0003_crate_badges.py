"""Crate badges from publish metadata.

Revision ID: 0003
Revises: 0002
Create Date: 2026-10-17 00:00:00.000000

One row per `[badges]` entry; `params` holds the entry's string table.
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0003"
down_revision = "0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "crate_badges",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("crate_id", sa.Integer(), nullable=False),
        sa.Column("badge_type", sa.String(length=64), nullable=False),
        sa.Column("params", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["crate_id"], ["crates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crate_badges_crate_id", "crate_badges", ["crate_id"])


def downgrade() -> None:
    op.drop_index("ix_crate_badges_crate_id", table_name="crate_badges")
    op.drop_table("crate_badges")
