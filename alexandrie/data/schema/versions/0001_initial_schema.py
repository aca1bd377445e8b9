"""Accounts, crates, versions, dependencies and owners.

Revision ID: 0001
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("login", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("token_sha256", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("login", name="uq_accounts_login"),
        sa.UniqueConstraint("token_sha256", name="uq_accounts_token_sha256"),
    )
    op.create_table(
        "crates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("canon_name", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("documentation", sa.Text(), nullable=True),
        sa.Column("homepage", sa.Text(), nullable=True),
        sa.Column("repository", sa.Text(), nullable=True),
        sa.Column("downloads", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("canon_name", name="uq_crates_canon_name"),
    )
    op.create_table(
        "versions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("crate_id", sa.Integer(), nullable=False),
        sa.Column("num", sa.String(length=128), nullable=False),
        sa.Column("cksum", sa.String(length=64), nullable=False),
        sa.Column("yanked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("downloads", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("license", sa.Text(), nullable=True),
        sa.Column("links", sa.String(length=255), nullable=True),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["crate_id"], ["crates.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("crate_id", "num", name="uq_versions_crate_num"),
    )
    op.create_table(
        "dependencies",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("req", sa.String(length=255), nullable=False),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("optional", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("default_features", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("target", sa.String(length=255), nullable=True),
        sa.Column("kind", sa.String(length=16), nullable=False, server_default="normal"),
        sa.Column("registry", sa.Text(), nullable=True),
        sa.Column("package", sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(["version_id"], ["versions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dependencies_version_id", "dependencies", ["version_id"])
    op.create_table(
        "crate_owners",
        sa.Column("crate_id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["crate_id"], ["crates.id"]),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("crate_id", "account_id"),
    )
    op.create_index("ix_crate_owners_account", "crate_owners", ["account_id"])


def downgrade() -> None:
    op.drop_index("ix_crate_owners_account", table_name="crate_owners")
    op.drop_table("crate_owners")
    op.drop_index("ix_dependencies_version_id", table_name="dependencies")
    op.drop_table("dependencies")
    op.drop_table("versions")
    op.drop_table("crates")
    op.drop_table("accounts")
