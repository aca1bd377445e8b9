"""
Transactional store of authoritative crate metadata.

Usage::

    async with await store.begin() as tx:
        crate = await tx.find_crate_by_name("serde")
        ...
        await tx.commit()

A transaction left without `commit()` is rolled back on exit.
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from alexandrie.data.migrations import apply_migrations
from alexandrie.data.tables import (
    Account,
    Author,
    Category,
    Crate,
    CrateAuthor,
    CrateBadge,
    CrateCategory,
    CrateKeyword,
    CrateOwner,
    Dependency,
    Keyword,
    Version,
)
from alexandrie.domain.crate_utils import canonical_name, normalize_tag
from alexandrie.domain.errors import MetadataStorageError, MetadataStoreError, VersionAlreadyExists
from alexandrie.domain.models import (
    AccountRecord,
    CategoryEntry,
    CrateRecord,
    IndexDependency,
    SearchDocument,
    VersionRecord,
)
from alexandrie.domain.versions import parse_version

logger = logging.getLogger(__name__)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _storage_errors(fn):
    """Translate driver errors into MetadataStorageError."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except MetadataStoreError:
            raise
        except SQLAlchemyError as e:
            raise MetadataStorageError(f"{fn.__name__} failed: {e}") from e

    return wrapper


def pick_max_version(versions: Sequence[VersionRecord]) -> Optional[VersionRecord]:
    """Newest non-yanked version, or the newest version when all are yanked."""
    if not versions:
        return None
    live = [v for v in versions if not v.yanked] or list(versions)
    return max(live, key=lambda v: parse_version(v.num))


class MetadataStore:
    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        # SQLite allows one writer per file; queue writers here instead of on its busy timeout.
        self._write_lock: Optional[asyncio.Lock] = asyncio.Lock() if engine.dialect.name == "sqlite" else None

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "MetadataStore":
        return cls(create_async_engine(url, echo=echo, pool_pre_ping=True))

    async def migrate(self) -> List[str]:
        return await apply_migrations(self.engine)

    async def begin(self, readonly: bool = False) -> "MetadataTransaction":
        """
        Open a transaction. Unless `readonly`, it holds the write lock until
        it commits or rolls back.
        """
        lock = None if readonly else self._write_lock
        if lock is not None:
            await lock.acquire()
        session = self._sessions()
        opened = False
        try:
            await session.begin()
            opened = True
        except SQLAlchemyError as e:
            raise MetadataStorageError(f"failed to open a transaction: {e}") from e
        finally:
            if not opened:
                await session.close()
                if lock is not None:
                    lock.release()
        return MetadataTransaction(session, lock)

    async def close(self) -> None:
        await self.engine.dispose()


class MetadataTransaction:
    def __init__(self, session: AsyncSession, lock: Optional[asyncio.Lock] = None):
        self.session = session
        self.closed = False
        self._lock = lock

    async def __aenter__(self) -> "MetadataTransaction":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.closed:
            await self.rollback()

    # ------------------------------------------------------------------
    # Transaction control
    # ------------------------------------------------------------------

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except IntegrityError as e:
            raise VersionAlreadyExists(str(e.orig)) from e
        except SQLAlchemyError as e:
            raise MetadataStorageError(f"commit failed: {e}") from e
        finally:
            await self._close()

    async def rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as e:
            raise MetadataStorageError(f"rollback failed: {e}") from e
        finally:
            await self._close()

    async def _close(self) -> None:
        if not self.closed:
            self.closed = True
            try:
                await self.session.close()
            finally:
                if self._lock is not None:
                    self._lock.release()

    # ------------------------------------------------------------------
    # Crates
    # ------------------------------------------------------------------

    @_storage_errors
    async def find_crate_by_name(self, name: str, for_update: bool = False) -> Optional[CrateRecord]:
        stmt = select(Crate).where(Crate.canon_name == canonical_name(name))
        if for_update:
            stmt = stmt.with_for_update()
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return CrateRecord.model_validate(row, from_attributes=True) if row else None

    @_storage_errors
    async def insert_crate(self, record: CrateRecord) -> CrateRecord:
        now = datetime.now(timezone.utc)
        row = Crate(
            name=record.name,
            canon_name=record.canon_name,
            description=record.description,
            documentation=record.documentation,
            homepage=record.homepage,
            repository=record.repository,
            downloads=record.downloads,
            created_at=record.created_at or now,
            updated_at=record.updated_at or now,
        )
        self.session.add(row)
        await self.session.flush()
        return CrateRecord.model_validate(row, from_attributes=True)

    @_storage_errors
    async def update_crate(self, record: CrateRecord) -> None:
        await self.session.execute(
            update(Crate)
            .where(Crate.id == record.id)
            .values(
                name=record.name,
                description=record.description,
                documentation=record.documentation,
                homepage=record.homepage,
                repository=record.repository,
                updated_at=record.updated_at or datetime.now(timezone.utc),
            )
        )

    @_storage_errors
    async def get_crates_by_ids(self, ids: Iterable[int]) -> Dict[int, CrateRecord]:
        ids = list(ids)
        if not ids:
            return {}
        rows = (await self.session.execute(select(Crate).where(Crate.id.in_(ids)))).scalars().all()
        return {row.id: CrateRecord.model_validate(row, from_attributes=True) for row in rows}

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    @_storage_errors
    async def find_version(self, crate_id: int, vers: str) -> Optional[VersionRecord]:
        row = (
            await self.session.execute(
                select(Version).where(Version.crate_id == crate_id, Version.num == vers)
            )
        ).scalar_one_or_none()
        return VersionRecord.model_validate(row, from_attributes=True) if row else None

    async def insert_version(self, record: VersionRecord) -> VersionRecord:
        row = Version(
            crate_id=record.crate_id,
            num=record.num,
            cksum=record.cksum,
            yanked=record.yanked,
            license=record.license,
            links=record.links,
            features=record.features,
            created_at=record.created_at or datetime.now(timezone.utc),
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise VersionAlreadyExists(f"version {record.num} already exists for crate {record.crate_id}") from e
        except SQLAlchemyError as e:
            raise MetadataStorageError(f"insert_version failed: {e}") from e
        return VersionRecord.model_validate(row, from_attributes=True)

    @_storage_errors
    async def set_yanked(self, crate_id: int, vers: str, yanked: bool) -> bool:
        """Returns False when no such version exists."""
        result = await self.session.execute(
            update(Version).where(Version.crate_id == crate_id, Version.num == vers).values(yanked=yanked)
        )
        return result.rowcount > 0

    @_storage_errors
    async def list_versions(self, crate_id: int) -> List[VersionRecord]:
        rows = (
            await self.session.execute(select(Version).where(Version.crate_id == crate_id).order_by(Version.id))
        ).scalars().all()
        return [VersionRecord.model_validate(row, from_attributes=True) for row in rows]

    async def latest_version(self, crate_id: int) -> Optional[VersionRecord]:
        return pick_max_version(await self.list_versions(crate_id))

    @_storage_errors
    async def insert_dependencies(self, version_id: int, deps: Sequence[IndexDependency]) -> None:
        for dep in deps:
            self.session.add(
                Dependency(
                    version_id=version_id,
                    name=dep.name,
                    req=dep.req,
                    features=list(dep.features),
                    optional=dep.optional,
                    default_features=dep.default_features,
                    target=dep.target,
                    kind=dep.kind,
                    registry=dep.registry,
                    package=dep.package,
                )
            )
        await self.session.flush()

    @_storage_errors
    async def list_dependencies(self, version_id: int) -> List[IndexDependency]:
        rows = (
            await self.session.execute(select(Dependency).where(Dependency.version_id == version_id).order_by(Dependency.id))
        ).scalars().all()
        return [IndexDependency.model_validate(row, from_attributes=True) for row in rows]

    @_storage_errors
    async def increment_downloads(self, crate_id: int, version_id: int) -> None:
        await self.session.execute(
            update(Crate).where(Crate.id == crate_id).values(downloads=Crate.downloads + 1)
        )
        await self.session.execute(
            update(Version).where(Version.id == version_id).values(downloads=Version.downloads + 1)
        )

    # ------------------------------------------------------------------
    # Keywords, categories, authors
    # ------------------------------------------------------------------

    async def _upsert_and_attach(self, model, link_model, link_column: str, crate_id: int, names: Iterable[str]) -> List[str]:
        await self.session.execute(delete(link_model).where(link_model.crate_id == crate_id))

        attached: List[str] = []
        for name in names:
            name = normalize_tag(name)
            if not name or name in attached:
                continue
            row = (await self.session.execute(select(model).where(model.name == name))).scalar_one_or_none()
            if row is None:
                row = model(name=name)
                self.session.add(row)
                await self.session.flush()
            self.session.add(link_model(crate_id=crate_id, **{link_column: row.id}))
            attached.append(name)
        await self.session.flush()
        return attached

    @_storage_errors
    async def upsert_keywords_and_attach(self, crate_id: int, names: Iterable[str]) -> List[str]:
        return await self._upsert_and_attach(Keyword, CrateKeyword, "keyword_id", crate_id, names)

    @_storage_errors
    async def upsert_categories_and_attach(self, crate_id: int, names: Iterable[str]) -> List[str]:
        return await self._upsert_and_attach(Category, CrateCategory, "category_id", crate_id, names)

    @_storage_errors
    async def upsert_authors_and_attach(self, crate_id: int, names: Iterable[str]) -> List[str]:
        return await self._upsert_and_attach(Author, CrateAuthor, "author_id", crate_id, names)

    async def _linked_names(self, model, link_model, link_column: str, crate_id: int) -> List[str]:
        rows = await self.session.execute(
            select(model.name)
            .join(link_model, getattr(link_model, link_column) == model.id)
            .where(link_model.crate_id == crate_id)
            .order_by(model.name)
        )
        return list(rows.scalars().all())

    @_storage_errors
    async def crate_keywords(self, crate_id: int) -> List[str]:
        return await self._linked_names(Keyword, CrateKeyword, "keyword_id", crate_id)

    @_storage_errors
    async def crate_categories(self, crate_id: int) -> List[str]:
        return await self._linked_names(Category, CrateCategory, "category_id", crate_id)

    @_storage_errors
    async def crate_authors(self, crate_id: int) -> List[str]:
        return await self._linked_names(Author, CrateAuthor, "author_id", crate_id)

    @_storage_errors
    async def list_categories(self) -> List[CategoryEntry]:
        rows = (await self.session.execute(select(Category).order_by(Category.name))).scalars().all()
        return [CategoryEntry(name=row.name, tag=row.name, description=row.description or "") for row in rows]

    @_storage_errors
    async def replace_badges(self, crate_id: int, badges: Dict[str, Dict[str, str]]) -> None:
        await self.session.execute(delete(CrateBadge).where(CrateBadge.crate_id == crate_id))
        for badge_type, params in badges.items():
            self.session.add(CrateBadge(crate_id=crate_id, badge_type=badge_type, params=dict(params)))
        await self.session.flush()

    @_storage_errors
    async def crate_badges(self, crate_id: int) -> Dict[str, Dict[str, str]]:
        rows = (
            await self.session.execute(
                select(CrateBadge).where(CrateBadge.crate_id == crate_id).order_by(CrateBadge.badge_type)
            )
        ).scalars().all()
        return {row.badge_type: dict(row.params) for row in rows}

    @_storage_errors
    async def search_documents(self) -> List[SearchDocument]:
        crates = (await self.session.execute(select(Crate).order_by(Crate.id))).scalars().all()
        keyword_rows = await self.session.execute(
            select(CrateKeyword.crate_id, Keyword.name).join(Keyword, CrateKeyword.keyword_id == Keyword.id)
        )
        keywords: Dict[int, List[str]] = {}
        for crate_id, name in keyword_rows.all():
            keywords.setdefault(crate_id, []).append(name)
        return [
            SearchDocument(
                crate_id=c.id,
                name=c.name,
                description=c.description,
                keywords=sorted(keywords.get(c.id, [])),
            )
            for c in crates
        ]

    # ------------------------------------------------------------------
    # Accounts and owners
    # ------------------------------------------------------------------

    @_storage_errors
    async def insert_account(self, login: str, name: Optional[str] = None, token: Optional[str] = None) -> AccountRecord:
        row = Account(login=login, name=name, token_sha256=hash_token(token) if token else None)
        self.session.add(row)
        await self.session.flush()
        return AccountRecord.model_validate(row, from_attributes=True)

    @_storage_errors
    async def find_account_by_login(self, login: str) -> Optional[AccountRecord]:
        row = (await self.session.execute(select(Account).where(Account.login == login))).scalar_one_or_none()
        return AccountRecord.model_validate(row, from_attributes=True) if row else None

    @_storage_errors
    async def find_account_by_token(self, token: str) -> Optional[AccountRecord]:
        row = (
            await self.session.execute(select(Account).where(Account.token_sha256 == hash_token(token)))
        ).scalar_one_or_none()
        return AccountRecord.model_validate(row, from_attributes=True) if row else None

    @_storage_errors
    async def list_owners(self, crate_id: int) -> List[AccountRecord]:
        rows = (
            await self.session.execute(
                select(Account)
                .join(CrateOwner, CrateOwner.account_id == Account.id)
                .where(CrateOwner.crate_id == crate_id)
                .order_by(Account.id)
            )
        ).scalars().all()
        return [AccountRecord.model_validate(row, from_attributes=True) for row in rows]

    @_storage_errors
    async def is_owner(self, crate_id: int, account_id: int) -> bool:
        row = await self.session.get(CrateOwner, (crate_id, account_id))
        return row is not None

    @_storage_errors
    async def count_owners(self, crate_id: int) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(CrateOwner).where(CrateOwner.crate_id == crate_id)
        )
        return result.scalar_one()

    @_storage_errors
    async def add_owner(self, crate_id: int, account_id: int) -> bool:
        """Returns False when the account already owns the crate."""
        if await self.session.get(CrateOwner, (crate_id, account_id)) is not None:
            return False
        self.session.add(CrateOwner(crate_id=crate_id, account_id=account_id))
        await self.session.flush()
        return True

    @_storage_errors
    async def remove_owner(self, crate_id: int, account_id: int) -> bool:
        result = await self.session.execute(
            delete(CrateOwner).where(CrateOwner.crate_id == crate_id, CrateOwner.account_id == account_id)
        )
        return result.rowcount > 0
