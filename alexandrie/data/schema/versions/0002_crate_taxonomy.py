"""Keywords, categories and authors attached to crates.

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-17 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "keywords",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_keywords_name"),
    )
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_categories_name"),
    )
    op.create_table(
        "authors",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_authors_name"),
    )
    for table, column, target in (
        ("crate_keywords", "keyword_id", "keywords.id"),
        ("crate_categories", "category_id", "categories.id"),
        ("crate_authors", "author_id", "authors.id"),
    ):
        op.create_table(
            table,
            sa.Column("crate_id", sa.Integer(), nullable=False),
            sa.Column(column, sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["crate_id"], ["crates.id"]),
            sa.ForeignKeyConstraint([column], [target]),
            sa.PrimaryKeyConstraint("crate_id", column),
        )


def downgrade() -> None:
    op.drop_table("crate_authors")
    op.drop_table("crate_categories")
    op.drop_table("crate_keywords")
    op.drop_table("authors")
    op.drop_table("categories")
    op.drop_table("keywords")
