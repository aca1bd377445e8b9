"""SQLAlchemy models of the registry database."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Account(Base):
    """A registry user able to own crates."""
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    login: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255))
    token_sha256: Mapped[str | None] = mapped_column(String(64), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Crate(Base):
    __tablename__ = "crates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    canon_name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    documentation: Mapped[str | None] = mapped_column(Text)
    homepage: Mapped[str | None] = mapped_column(Text)
    repository: Mapped[str | None] = mapped_column(Text)
    downloads: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Version(Base):
    __tablename__ = "versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    crate_id: Mapped[int] = mapped_column(Integer, ForeignKey("crates.id"), nullable=False)
    num: Mapped[str] = mapped_column(String(128), nullable=False)
    cksum: Mapped[str] = mapped_column(String(64), nullable=False)
    yanked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    downloads: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    license: Mapped[str | None] = mapped_column(Text)
    links: Mapped[str | None] = mapped_column(String(255))
    features: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("crate_id", "num", name="uq_versions_crate_num"),
    )


class Dependency(Base):
    __tablename__ = "dependencies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version_id: Mapped[int] = mapped_column(Integer, ForeignKey("versions.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    req: Mapped[str] = mapped_column(String(255), nullable=False)
    features: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    optional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    default_features: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    target: Mapped[str | None] = mapped_column(String(255))
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    registry: Mapped[str | None] = mapped_column(Text)
    package: Mapped[str | None] = mapped_column(String(64))


class Keyword(Base):
    __tablename__ = "keywords"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)


class Author(Base):
    """An author string from publish metadata (not an account)."""
    __tablename__ = "authors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)


class CrateKeyword(Base):
    __tablename__ = "crate_keywords"

    crate_id: Mapped[int] = mapped_column(Integer, ForeignKey("crates.id"), primary_key=True)
    keyword_id: Mapped[int] = mapped_column(Integer, ForeignKey("keywords.id"), primary_key=True)


class CrateCategory(Base):
    __tablename__ = "crate_categories"

    crate_id: Mapped[int] = mapped_column(Integer, ForeignKey("crates.id"), primary_key=True)
    category_id: Mapped[int] = mapped_column(Integer, ForeignKey("categories.id"), primary_key=True)


class CrateAuthor(Base):
    __tablename__ = "crate_authors"

    crate_id: Mapped[int] = mapped_column(Integer, ForeignKey("crates.id"), primary_key=True)
    author_id: Mapped[int] = mapped_column(Integer, ForeignKey("authors.id"), primary_key=True)


class CrateOwner(Base):
    __tablename__ = "crate_owners"

    crate_id: Mapped[int] = mapped_column(Integer, ForeignKey("crates.id"), primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, ForeignKey("accounts.id"), primary_key=True)

    __table_args__ = (
        Index("ix_crate_owners_account", "account_id"),
    )


class CrateBadge(Base):
    """A `[badges]` entry from publish metadata; `params` maps strings to strings."""
    __tablename__ = "crate_badges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    crate_id: Mapped[int] = mapped_column(Integer, ForeignKey("crates.id"), nullable=False, index=True)
    badge_type: Mapped[str] = mapped_column(String(64), nullable=False)
    params: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
