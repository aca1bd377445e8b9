from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Set

from alexandrie.core.config import RegistrySettings
from alexandrie.data.index_repository import IndexRepository
from alexandrie.data.metadata_store import MetadataStore, MetadataTransaction, pick_max_version
from alexandrie.domain.crate_utils import canonical_name
from alexandrie.domain.errors import (
    BlobNotFound,
    CrateStoreError,
    Inconsistent,
    IndexCrateNotFound,
    IndexRepositoryError,
    InvalidOwnership,
    MetadataStoreError,
    NotAnOwner,
    NotFound,
    StorageFailure,
    Unauthorized,
    Yanked,
)
from alexandrie.domain.models import (
    AccountRecord,
    CategoriesMeta,
    CategoriesResponse,
    CrateInfo,
    CrateRecord,
    RegistryIndexConfig,
    SearchMeta,
    SearchResponse,
    SearchResultCrate,
    Suggestion,
    VersionRecord,
)
from alexandrie.services.locks import KeyedLock
from alexandrie.services.search import SearchEngine
from alexandrie.storage.crate_store import BlobStream, CrateStore

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 100


@dataclass
class DownloadResult:
    name: str
    vers: str
    cksum: str
    stream: BlobStream


class QueryService:
    """
    Read side of the registry, plus yank and ownership changes.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        index: IndexRepository,
        store: CrateStore,
        search: SearchEngine,
        locks: KeyedLock,
        settings: RegistrySettings,
    ):
        self.metadata = metadata
        self.index = index
        self.store = store
        self.search_engine = search
        self.locks = locks
        self.settings = settings
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _crate(self, tx: MetadataTransaction, name: str, for_update: bool = False) -> CrateRecord:
        crate = await tx.find_crate_by_name(name, for_update=for_update)
        if crate is None:
            raise NotFound(f"crate '{name}' does not exist")
        return crate

    async def _version(self, tx: MetadataTransaction, crate: CrateRecord, vers: str) -> VersionRecord:
        version = await tx.find_version(crate.id, vers)
        if version is None:
            raise NotFound(f"crate '{crate.name}' has no version '{vers}'")
        return version

    async def _require_owner(self, tx: MetadataTransaction, crate: CrateRecord, caller: AccountRecord) -> None:
        if not await tx.is_owner(crate.id, caller.id):
            raise NotAnOwner(crate.name)

    async def authenticate(self, token: str) -> AccountRecord:
        try:
            async with await self.metadata.begin(readonly=True) as tx:
                account = await tx.find_account_by_token(token)
        except MetadataStoreError as e:
            raise StorageFailure(e) from e
        if account is None:
            raise Unauthorized("invalid API token")
        return account

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def download(self, name: str, vers: str) -> DownloadResult:
        try:
            async with await self.metadata.begin(readonly=True) as tx:
                crate = await self._crate(tx, name)
                version = await self._version(tx, crate, vers)
        except MetadataStoreError as e:
            raise StorageFailure(e) from e

        if version.yanked and not self.settings.allow_yanked_downloads:
            raise Yanked(crate.name, vers)

        try:
            stream = await self.store.read_crate(crate.name, vers)
        except BlobNotFound:
            logger.error(f"Tarball of {crate.name}#{vers} is missing from the crate store")
            raise NotFound(f"crate '{crate.name}' has no version '{vers}'")
        except CrateStoreError as e:
            raise StorageFailure(e) from e

        task = asyncio.create_task(self._count_download(crate.id, version.id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

        return DownloadResult(name=crate.name, vers=vers, cksum=version.cksum, stream=stream)

    async def _count_download(self, crate_id: int, version_id: int) -> None:
        try:
            async with await self.metadata.begin() as tx:
                await tx.increment_downloads(crate_id, version_id)
                await tx.commit()
        except MetadataStoreError as e:
            logger.warning(f"Failed to count a download of crate {crate_id}: {e}")

    async def flush(self) -> None:
        """Wait for scheduled download counters."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def readme(self, name: str, vers: str) -> str:
        try:
            return await self.store.get_readme(name, vers)
        except BlobNotFound:
            raise NotFound(f"no README for '{name}' version '{vers}'")
        except CrateStoreError as e:
            raise StorageFailure(e) from e

    # ------------------------------------------------------------------
    # Yank / unyank
    # ------------------------------------------------------------------

    async def yank(self, name: str, vers: str, caller: AccountRecord) -> None:
        await self._set_yanked(name, vers, caller, True)

    async def unyank(self, name: str, vers: str, caller: AccountRecord) -> None:
        await self._set_yanked(name, vers, caller, False)

    async def _set_yanked(self, name: str, vers: str, caller: AccountRecord, yanked: bool) -> None:
        key = canonical_name(name)
        await self.locks.acquire(key)
        handed_off = False
        tx: Optional[MetadataTransaction] = None
        try:
            tx = await self.metadata.begin()
            crate = await self._crate(tx, name, for_update=True)
            await self._require_owner(tx, crate, caller)
            version = await self._version(tx, crate, vers)
            if version.yanked == yanked:
                return
            await tx.set_yanked(crate.id, vers, yanked)
            handed_off = True
            await asyncio.shield(self._apply_yank(key, tx, crate, vers, yanked))
        except MetadataStoreError as e:
            raise StorageFailure(e) from e
        finally:
            if not handed_off:
                if tx is not None and not tx.closed:
                    await tx.rollback()
                self.locks.release(key)

    async def _apply_yank(self, key: str, tx: MetadataTransaction, crate: CrateRecord, vers: str, yanked: bool) -> None:
        try:
            try:
                changed = await asyncio.to_thread(self.index.modify_yank, crate.name, vers, yanked)
            except IndexRepositoryError as e:
                logger.error(f"Index yank update failed for {crate.name}#{vers}: {e}")
                await tx.rollback()
                raise StorageFailure(e) from e

            try:
                await tx.commit()
            except MetadataStoreError as e:
                logger.error(f"Metadata commit failed after the index yank of {crate.name}#{vers}: {e}")
                if changed:
                    try:
                        await asyncio.to_thread(self.index.modify_yank, crate.name, vers, not yanked)
                    except IndexRepositoryError as revert_error:
                        repair = (
                            f"yanked flag of {crate.name}#{vers} is {yanked} in the index "
                            f"but {not yanked} in the database: {revert_error}"
                        )
                        logger.critical(repair)
                        raise Inconsistent(repair) from e
                raise StorageFailure(e) from e

            logger.info(f"{'Yanked' if yanked else 'Unyanked'} {crate.name}#{vers}")
        finally:
            self.locks.release(key)

    # ------------------------------------------------------------------
    # Owners
    # ------------------------------------------------------------------

    async def list_owners(self, name: str) -> List[AccountRecord]:
        try:
            async with await self.metadata.begin(readonly=True) as tx:
                crate = await self._crate(tx, name)
                return await tx.list_owners(crate.id)
        except MetadataStoreError as e:
            raise StorageFailure(e) from e

    async def add_owners(self, name: str, logins: List[str], caller: AccountRecord) -> str:
        try:
            async with await self.metadata.begin() as tx:
                crate = await self._crate(tx, name, for_update=True)
                await self._require_owner(tx, crate, caller)
                for login in logins:
                    account = await tx.find_account_by_login(login)
                    if account is None:
                        raise InvalidOwnership(f"user `{login}` does not exist")
                    await tx.add_owner(crate.id, account.id)
                await tx.commit()
        except MetadataStoreError as e:
            raise StorageFailure(e) from e
        logger.info(f"{caller.login} added {', '.join(logins)} as owners of {crate.name}")
        return f"{', '.join(logins)} has been added as owners of crate {crate.name}"

    async def remove_owners(self, name: str, logins: List[str], caller: AccountRecord) -> str:
        try:
            async with await self.metadata.begin() as tx:
                crate = await self._crate(tx, name, for_update=True)
                await self._require_owner(tx, crate, caller)
                for login in logins:
                    account = await tx.find_account_by_login(login)
                    if account is None:
                        raise InvalidOwnership(f"user `{login}` does not exist")
                    await tx.remove_owner(crate.id, account.id)
                if await tx.count_owners(crate.id) == 0:
                    raise InvalidOwnership("cannot leave the crate without any owners")
                await tx.commit()
        except MetadataStoreError as e:
            raise StorageFailure(e) from e
        logger.info(f"{caller.login} removed {', '.join(logins)} from the owners of {crate.name}")
        return f"{', '.join(logins)} has been removed from the owners of crate {crate.name}"

    async def add_owner(self, name: str, login: str, caller: AccountRecord) -> str:
        return await self.add_owners(name, [login], caller)

    async def remove_owner(self, name: str, login: str, caller: AccountRecord) -> str:
        return await self.remove_owners(name, [login], caller)

    # ------------------------------------------------------------------
    # Search and crate information
    # ------------------------------------------------------------------

    async def search(self, query: str, per_page: Optional[int] = None, page: int = 1) -> SearchResponse:
        per_page = max(1, min(per_page or self.settings.search_per_page, MAX_PER_PAGE))
        page = max(page, 1)
        results = self.search_engine.search(query, limit=per_page, offset=(page - 1) * per_page)

        crates: List[SearchResultCrate] = []
        try:
            async with await self.metadata.begin(readonly=True) as tx:
                records = await tx.get_crates_by_ids(crate_id for crate_id, _ in results.hits)
                for crate_id, _score in results.hits:
                    crate = records.get(crate_id)
                    if crate is None:
                        continue
                    latest = await tx.latest_version(crate.id)
                    if latest is None:
                        continue
                    crates.append(
                        SearchResultCrate(
                            name=crate.name,
                            max_version=latest.num,
                            description=crate.description,
                            downloads=crate.downloads,
                            created_at=crate.created_at,
                            updated_at=crate.updated_at,
                            documentation=crate.documentation,
                            repository=crate.repository,
                        )
                    )
        except MetadataStoreError as e:
            raise StorageFailure(e) from e

        return SearchResponse(crates=crates, meta=SearchMeta(total=results.total))

    async def crate_info(self, name: str) -> CrateInfo:
        try:
            async with await self.metadata.begin(readonly=True) as tx:
                crate = await self._crate(tx, name)
                versions = await tx.list_versions(crate.id)
                keywords = await tx.crate_keywords(crate.id)
                categories = await tx.crate_categories(crate.id)
                badges = await tx.crate_badges(crate.id)
        except MetadataStoreError as e:
            raise StorageFailure(e) from e

        latest = pick_max_version(versions)
        return CrateInfo(
            name=crate.name,
            max_version=latest.num if latest else None,
            description=crate.description,
            documentation=crate.documentation,
            homepage=crate.homepage,
            repository=crate.repository,
            downloads=crate.downloads,
            created_at=crate.created_at,
            updated_at=crate.updated_at,
            keywords=keywords,
            categories=categories,
            badges=badges,
            versions=[v.num for v in versions],
        )

    async def suggest(self, query: str, limit: int = 10) -> List[Suggestion]:
        names = self.search_engine.suggest(query, limit)
        if not names:
            return []
        try:
            async with await self.metadata.begin(readonly=True) as tx:
                suggestions: List[Suggestion] = []
                for name in names:
                    crate = await tx.find_crate_by_name(name)
                    if crate is None:
                        continue
                    latest = await tx.latest_version(crate.id)
                    if latest is not None:
                        suggestions.append(Suggestion(name=crate.name, vers=latest.num))
                return suggestions
        except MetadataStoreError as e:
            raise StorageFailure(e) from e

    async def categories(self) -> CategoriesResponse:
        try:
            async with await self.metadata.begin(readonly=True) as tx:
                entries = await tx.list_categories()
        except MetadataStoreError as e:
            raise StorageFailure(e) from e
        return CategoriesResponse(categories=entries, meta=CategoriesMeta(total=len(entries)))

    async def rebuild_search_index(self) -> int:
        try:
            async with await self.metadata.begin(readonly=True) as tx:
                docs = await tx.search_documents()
        except MetadataStoreError as e:
            raise StorageFailure(e) from e
        self.search_engine.rebuild(docs)
        return len(docs)

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    async def index_file(self, name: str) -> bytes:
        try:
            return await asyncio.to_thread(self.index.raw_file, name)
        except IndexCrateNotFound:
            raise NotFound(f"crate '{name}' does not exist")
        except IndexRepositoryError as e:
            raise StorageFailure(e) from e

    async def index_config(self) -> RegistryIndexConfig:
        try:
            return await asyncio.to_thread(self.index.config)
        except IndexRepositoryError as e:
            raise StorageFailure(e) from e
