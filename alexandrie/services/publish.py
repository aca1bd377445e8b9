"""
End-to-end publish of one crate version.

A publish touches four stores. The metadata transaction is opened first and
only committed last, after the index commit and the blob writes, so that any
failure before it can be undone: the transaction is rolled back, the index
commit is reverted by a new commit and blobs written by this publish are
removed. If undoing fails the registry is reported inconsistent and the
details needed to repair it are logged.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from alexandrie.core.config import RegistrySettings
from alexandrie.data.index_repository import IndexChange, IndexRepository
from alexandrie.data.metadata_store import MetadataStore, MetadataTransaction
from alexandrie.domain.crate_utils import canonical_name, is_valid_crate_name
from alexandrie.domain.errors import (
    CrateStoreError,
    DuplicateVersion,
    Inconsistent,
    IndexRepositoryError,
    IndexVersionExists,
    InvalidMetadata,
    MetadataStoreError,
    NotAnOwner,
    PayloadTooLarge,
    StorageFailure,
    VersionAlreadyExists,
)
from alexandrie.domain.models import (
    AccountRecord,
    CrateMeta,
    CrateRecord,
    IndexDependency,
    IndexEntry,
    PublishWarnings,
    SearchDocument,
    VersionRecord,
)
from alexandrie.domain.versions import is_valid_requirement, is_valid_version
from alexandrie.services.envelope import Envelope, parse_envelope
from alexandrie.services.locks import KeyedLock
from alexandrie.services.readme import prepare_readme
from alexandrie.services.search import SearchEngine
from alexandrie.storage.crate_store import CrateStore

logger = logging.getLogger(__name__)

KEYWORD_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_+-]*")


@dataclass
class PublishOutcome:
    name: str
    vers: str
    cksum: str
    warnings: PublishWarnings = field(default_factory=PublishWarnings)


def build_index_entry(meta: CrateMeta, cksum: str) -> IndexEntry:
    """
    Index line of a publish. A renamed dependency is listed under its new
    name with the real crate name in `package`.
    """
    deps: List[IndexDependency] = []
    for dep in meta.deps:
        if dep.explicit_name_in_toml:
            name, package = dep.explicit_name_in_toml, dep.name
        else:
            name, package = dep.name, None
        deps.append(
            IndexDependency(
                name=name,
                req=dep.version_req,
                features=dep.features,
                optional=dep.optional,
                default_features=dep.default_features,
                target=dep.target,
                kind=dep.kind or "normal",
                registry=dep.registry,
                package=package,
            )
        )
    return IndexEntry(
        name=meta.name,
        vers=meta.vers,
        deps=deps,
        cksum=cksum,
        features=meta.features,
        yanked=False,
        links=meta.links,
    )


def split_badges(badges: Dict[str, Any]) -> Tuple[Dict[str, Dict[str, str]], List[str]]:
    """
    Separate `[badges]` entries whose parameters are a table of strings
    from malformed ones, which are reported back by badge type.
    """
    valid: Dict[str, Dict[str, str]] = {}
    invalid: List[str] = []
    for badge_type, params in badges.items():
        if isinstance(params, dict) and all(isinstance(v, str) for v in params.values()):
            valid[badge_type] = params
        else:
            invalid.append(badge_type)
    return valid, invalid


class PublishPipeline:
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
        self.search = search
        self.locks = locks
        self.settings = settings

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, meta: CrateMeta) -> None:
        s = self.settings

        if not is_valid_crate_name(meta.name):
            raise InvalidMetadata("name", f"`{meta.name}` is not a valid crate name")
        if not is_valid_version(meta.vers):
            raise InvalidMetadata("vers", f"`{meta.vers}` is not a valid semver version")

        for dep in meta.deps:
            if not is_valid_crate_name(dep.name):
                raise InvalidMetadata("deps", f"`{dep.name}` is not a valid dependency name")
            if dep.explicit_name_in_toml is not None and not is_valid_crate_name(dep.explicit_name_in_toml):
                raise InvalidMetadata("deps", f"`{dep.explicit_name_in_toml}` is not a valid dependency rename")
            if not is_valid_requirement(dep.version_req):
                raise InvalidMetadata("deps", f"`{dep.version_req}` is not a valid requirement for `{dep.name}`")

        if len(meta.keywords) > s.max_keywords:
            raise InvalidMetadata("keywords", f"expected at most {s.max_keywords} keywords")
        for kw in meta.keywords:
            if len(kw) > s.max_keyword_length or not KEYWORD_RE.fullmatch(kw):
                raise InvalidMetadata("keywords", f"`{kw}` is not a valid keyword")

        if len(meta.categories) > s.max_categories:
            raise InvalidMetadata("categories", f"expected at most {s.max_categories} categories")
        for cat in meta.categories:
            if not cat.strip() or len(cat) > s.max_category_length:
                raise InvalidMetadata("categories", f"`{cat}` is not a valid category")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def publish_body(self, body: bytes, publisher: AccountRecord) -> PublishOutcome:
        envelope = parse_envelope(body, self.settings.max_crate_size, self.settings.max_metadata_size)
        return await self.publish(envelope, publisher)

    async def publish(self, envelope: Envelope, publisher: AccountRecord) -> PublishOutcome:
        if len(envelope.tarball) > self.settings.max_crate_size:
            raise PayloadTooLarge(len(envelope.tarball), self.settings.max_crate_size)

        meta = envelope.parse_metadata()
        self.validate(meta)

        cksum = hashlib.sha256(envelope.tarball).hexdigest()
        readme = await asyncio.to_thread(prepare_readme, meta, envelope.tarball)
        entry = build_index_entry(meta, cksum)
        badges, invalid_badges = split_badges(meta.badges)
        if invalid_badges:
            logger.info(f"Ignoring malformed badges of {meta.name}#{meta.vers}: {invalid_badges}")
        warnings = PublishWarnings(invalid_badges=invalid_badges)
        key = canonical_name(meta.name)

        await self.locks.acquire(key)
        handed_off = False
        tx: Optional[MetadataTransaction] = None
        try:
            tx = await self.metadata.begin()
            crate = await self._stage(tx, meta, cksum, entry, publisher, badges)
            # From the index commit on, the publish runs to completion (or
            # compensation) even if the caller is cancelled.
            handed_off = True
            return await asyncio.shield(
                self._commit(key, tx, crate, meta, entry, envelope.tarball, readme, warnings)
            )
        except MetadataStoreError as e:
            logger.error(f"Metadata store failed while staging {meta.name}#{meta.vers}: {e}")
            raise StorageFailure(e) from e
        finally:
            if not handed_off:
                if tx is not None and not tx.closed:
                    await self._rollback_quietly(tx)
                self.locks.release(key)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _stage(
        self,
        tx: MetadataTransaction,
        meta: CrateMeta,
        cksum: str,
        entry: IndexEntry,
        publisher: AccountRecord,
        badges: Dict[str, Dict[str, str]],
    ) -> CrateRecord:
        now = datetime.now(timezone.utc)
        crate = await tx.find_crate_by_name(meta.name, for_update=True)

        if crate is None:
            crate = await tx.insert_crate(
                CrateRecord(
                    name=meta.name,
                    canon_name=canonical_name(meta.name),
                    description=meta.description,
                    documentation=meta.documentation,
                    homepage=meta.homepage,
                    repository=meta.repository,
                    created_at=now,
                    updated_at=now,
                )
            )
            await tx.add_owner(crate.id, publisher.id)
            logger.info(f"Creating crate '{meta.name}' owned by {publisher.login}")
        else:
            if not await tx.is_owner(crate.id, publisher.id):
                raise NotAnOwner(crate.name)
            if crate.name != meta.name:
                raise InvalidMetadata("name", f"crate is already published as `{crate.name}`")
            if await tx.find_version(crate.id, meta.vers) is not None:
                raise DuplicateVersion(crate.name, meta.vers)
            crate = crate.model_copy(
                update={
                    "description": meta.description,
                    "documentation": meta.documentation,
                    "homepage": meta.homepage,
                    "repository": meta.repository,
                    "updated_at": now,
                }
            )
            await tx.update_crate(crate)

        try:
            version = await tx.insert_version(
                VersionRecord(
                    crate_id=crate.id,
                    num=meta.vers,
                    cksum=cksum,
                    license=meta.license,
                    links=meta.links,
                    features=meta.features,
                    created_at=now,
                )
            )
        except VersionAlreadyExists:
            raise DuplicateVersion(crate.name, meta.vers)

        await tx.insert_dependencies(version.id, entry.deps)
        await tx.upsert_keywords_and_attach(crate.id, meta.keywords)
        await tx.upsert_categories_and_attach(crate.id, meta.categories)
        await tx.upsert_authors_and_attach(crate.id, meta.authors)
        await tx.replace_badges(crate.id, badges)
        return crate

    async def _commit(
        self,
        key: str,
        tx: MetadataTransaction,
        crate: CrateRecord,
        meta: CrateMeta,
        entry: IndexEntry,
        tarball: bytes,
        readme: Optional[str],
        warnings: PublishWarnings,
    ) -> PublishOutcome:
        try:
            try:
                change = await asyncio.to_thread(self.index.add_or_update_line, entry)
            except IndexVersionExists:
                await self._rollback_quietly(tx)
                raise DuplicateVersion(meta.name, meta.vers)
            except IndexRepositoryError as e:
                logger.error(f"Index update failed for {meta.name}#{meta.vers}: {e}")
                await self._rollback_quietly(tx)
                raise StorageFailure(e) from e

            written: List[str] = []
            try:
                await self.store.store_crate(meta.name, meta.vers, tarball)
                written.append("crate")
                if readme is not None:
                    await self.store.store_readme(meta.name, meta.vers, readme)
                    written.append("readme")
                await tx.commit()
            except (CrateStoreError, MetadataStoreError) as e:
                await self._compensate(tx, change, written, e)

            logger.info(f"Published {meta.name}#{meta.vers} ({entry.cksum})")
            self._update_search(crate, meta)
            return PublishOutcome(name=meta.name, vers=meta.vers, cksum=entry.cksum, warnings=warnings)
        finally:
            self.locks.release(key)

    def _update_search(self, crate: CrateRecord, meta: CrateMeta) -> None:
        doc = SearchDocument(
            crate_id=crate.id,
            name=crate.name,
            description=meta.description,
            keywords=meta.keywords,
        )
        try:
            self.search.index(doc)
        except Exception as e:
            logger.error(f"Failed to update the search index for {crate.name}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------

    async def _rollback_quietly(self, tx: MetadataTransaction) -> None:
        try:
            await tx.rollback()
        except MetadataStoreError as e:
            logger.error(f"Metadata rollback failed: {e}")

    async def _compensate(
        self,
        tx: MetadataTransaction,
        change: IndexChange,
        written: List[str],
        cause: Exception,
    ) -> None:
        name, vers = change.name, change.vers
        logger.error(f"Publish of {name}#{vers} failed after the index commit {change.commit[:12]}: {cause}")
        problems: List[str] = []

        if not tx.closed:
            try:
                await tx.rollback()
            except MetadataStoreError as e:
                problems.append(f"metadata rollback failed: {e}")

        try:
            await asyncio.to_thread(self.index.revert, change)
        except IndexRepositoryError as e:
            problems.append(
                f"index revert failed: {e}; restore {change.path} to its state before commit {change.commit}"
            )

        for kind in reversed(written):
            try:
                if kind == "readme":
                    await self.store.remove_readme(name, vers)
                else:
                    await self.store.remove_crate(name, vers)
            except CrateStoreError as e:
                problems.append(f"removing the {kind} blob of {name}#{vers} failed: {e}")

        if problems:
            repair = f"publish of {name}#{vers} left the registry inconsistent: " + "; ".join(problems)
            logger.critical(repair)
            raise Inconsistent(repair) from cause

        logger.warning(f"Rolled back publish of {name}#{vers}")
        raise StorageFailure(cause) from cause
