from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from alexandrie.core.config import DiskStorageSettings, RegistrySettings, S3StorageSettings
from alexandrie.data.index_repository import IndexRepository
from alexandrie.data.metadata_store import MetadataStore
from alexandrie.domain.errors import IndexRepositoryError
from alexandrie.domain.models import RegistryIndexConfig
from alexandrie.services.locks import KeyedLock
from alexandrie.services.publish import PublishPipeline
from alexandrie.services.queries import QueryService
from alexandrie.services.search import SearchEngine
from alexandrie.storage.crate_store import CrateStore
from alexandrie.storage.disk_store import DiskCrateStore
from alexandrie.storage.s3_store import S3CrateStore

logger = logging.getLogger(__name__)

_settings: Optional[RegistrySettings] = None
_registry: Optional["Registry"] = None


@dataclass
class Registry:
    """Everything a request handler needs, wired once at startup."""

    settings: RegistrySettings
    metadata: MetadataStore
    index: IndexRepository
    store: CrateStore
    search: SearchEngine
    publisher: PublishPipeline
    queries: QueryService

    async def close(self) -> None:
        await self.queries.flush()
        await self.metadata.close()


def get_settings() -> RegistrySettings:
    global _settings
    if _settings is None:
        _settings = RegistrySettings()
    return _settings


def build_crate_store(settings: RegistrySettings) -> CrateStore:
    storage = settings.storage
    if isinstance(storage, S3StorageSettings):
        return S3CrateStore(
            bucket=storage.bucket,
            key_prefix=storage.key_prefix,
            region=storage.region,
            endpoint_url=storage.endpoint_url,
        )
    if isinstance(storage, DiskStorageSettings):
        storage.path.mkdir(parents=True, exist_ok=True)
        return DiskCrateStore(storage.path)
    raise ValueError(f"Unsupported crate storage: {storage!r}")


def open_index(settings: RegistrySettings) -> IndexRepository:
    """Open the index working copy, creating a fresh one on first start."""
    idx = settings.index
    if (idx.path / ".git").exists():
        return IndexRepository(
            idx.path,
            remote_url=idx.remote_url,
            author_name=idx.author_name,
            author_email=idx.author_email,
        )
    api = settings.api_url.rstrip("/")
    config = RegistryIndexConfig(dl=f"{api}/api/v1/crates/{{crate}}/{{version}}/download", api=api)
    logger.info(f"No index found at {idx.path}, creating one")
    return IndexRepository.init(
        idx.path,
        config,
        remote_url=idx.remote_url,
        author_name=idx.author_name,
        author_email=idx.author_email,
    )


def build_registry(
    settings: RegistrySettings,
    metadata: Optional[MetadataStore] = None,
    index: Optional[IndexRepository] = None,
    store: Optional[CrateStore] = None,
) -> Registry:
    metadata = metadata or MetadataStore.from_url(settings.database_url)
    index = index or open_index(settings)
    store = store or build_crate_store(settings)
    search = SearchEngine()
    locks = KeyedLock()
    return Registry(
        settings=settings,
        metadata=metadata,
        index=index,
        store=store,
        search=search,
        publisher=PublishPipeline(metadata, index, store, search, locks, settings),
        queries=QueryService(metadata, index, store, search, locks, settings),
    )


async def initialize_registry(registry: Optional[Registry] = None) -> Registry:
    """
    Migrate the database, sync the index and load the search engine.
    """
    global _registry
    if registry is None:
        registry = await asyncio.to_thread(build_registry, get_settings())

    applied = await registry.metadata.migrate()
    if applied:
        logger.info(f"Applied database migrations {applied}")

    try:
        await asyncio.to_thread(registry.index.refresh)
    except IndexRepositoryError as e:
        logger.warning(f"Could not refresh the index from its upstream: {e}")

    count = await registry.queries.rebuild_search_index()
    logger.info(f"Registry ready with {count} crates")

    _registry = registry
    return registry


def get_registry() -> Registry:
    if _registry is None:
        raise RuntimeError("Registry has not been initialized")
    return _registry


async def shutdown_registry() -> None:
    global _registry
    if _registry is not None:
        await _registry.close()
        _registry = None
