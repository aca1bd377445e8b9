import asyncio

import pytest
from sqlalchemy import inspect, text

from alexandrie.data.metadata_store import MetadataStore
from alexandrie.data.tables import Base
from alexandrie.domain.errors import VersionAlreadyExists
from alexandrie.domain.models import CrateRecord, IndexDependency, VersionRecord


async def insert_crate(tx, name="serde_json"):
    return await tx.insert_crate(CrateRecord(name=name, canon_name=name.lower().replace("-", "_")))


class TestMigrations:
    async def test_fresh_database_upgrades_to_head(self, tmp_path):
        store = MetadataStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}")
        try:
            assert await store.migrate() == ["0001", "0002", "0003"]
            async with store.engine.connect() as conn:
                tables = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
            assert tables == set(Base.metadata.tables) | {"alembic_version"}
        finally:
            await store.close()

    async def test_applied_once(self, metadata):
        assert await metadata.migrate() == []
        async with metadata.engine.connect() as conn:
            head = (await conn.execute(text("SELECT version_num FROM alembic_version"))).scalar_one()
        assert head == "0003"


class TestCrates:
    async def test_lookup_is_case_and_dash_insensitive(self, metadata):
        async with await metadata.begin() as tx:
            crate = await insert_crate(tx)
            await tx.commit()

        async with await metadata.begin() as tx:
            found = await tx.find_crate_by_name("Serde-JSON")
        assert found.id == crate.id
        assert found.name == "serde_json"

    async def test_rollback_discards(self, metadata):
        async with await metadata.begin() as tx:
            await insert_crate(tx)
            await tx.rollback()

        async with await metadata.begin() as tx:
            assert await tx.find_crate_by_name("serde_json") is None

    async def test_leaving_without_commit_rolls_back(self, metadata):
        async with await metadata.begin() as tx:
            await insert_crate(tx)

        async with await metadata.begin() as tx:
            assert await tx.find_crate_by_name("serde_json") is None

    async def test_update(self, metadata):
        async with await metadata.begin() as tx:
            crate = await insert_crate(tx)
            await tx.update_crate(crate.model_copy(update={"description": "JSON for serde"}))
            await tx.commit()

        async with await metadata.begin() as tx:
            assert (await tx.find_crate_by_name("serde_json")).description == "JSON for serde"


class TestWriteLock:
    async def test_writers_queue_and_readers_do_not(self, metadata):
        async with await metadata.begin() as writer:
            await insert_crate(writer)
            async with await metadata.begin(readonly=True) as reader:
                assert await reader.find_crate_by_name("serde_json") is None

            second = asyncio.create_task(metadata.begin())
            await asyncio.sleep(0.05)
            assert not second.done()
            await writer.commit()

        async with await second as tx:
            assert await tx.find_crate_by_name("serde_json") is not None

    async def test_failed_transaction_releases_the_lock(self, metadata):
        async with await metadata.begin() as tx:
            crate = await insert_crate(tx)
            await tx.insert_version(VersionRecord(crate_id=crate.id, num="1.0.0", cksum="a" * 64))
            with pytest.raises(VersionAlreadyExists):
                await tx.insert_version(VersionRecord(crate_id=crate.id, num="1.0.0", cksum="b" * 64))

        tx = await asyncio.wait_for(metadata.begin(), timeout=1)
        await tx.rollback()


class TestVersions:
    async def test_duplicate_version_rejected(self, metadata):
        async with await metadata.begin() as tx:
            crate = await insert_crate(tx)
            await tx.insert_version(VersionRecord(crate_id=crate.id, num="1.0.0", cksum="a" * 64))
            await tx.commit()

        async with await metadata.begin() as tx:
            with pytest.raises(VersionAlreadyExists):
                await tx.insert_version(VersionRecord(crate_id=crate.id, num="1.0.0", cksum="b" * 64))

    async def test_yank_and_latest(self, metadata):
        async with await metadata.begin() as tx:
            crate = await insert_crate(tx)
            for num in ("0.9.0", "1.0.0", "1.1.0"):
                await tx.insert_version(VersionRecord(crate_id=crate.id, num=num, cksum="a" * 64))
            assert await tx.set_yanked(crate.id, "1.1.0", True)
            assert not await tx.set_yanked(crate.id, "7.0.0", True)
            await tx.commit()

        async with await metadata.begin() as tx:
            assert (await tx.latest_version(crate.id)).num == "1.0.0"
            assert (await tx.find_version(crate.id, "1.1.0")).yanked is True
            assert [v.num for v in await tx.list_versions(crate.id)] == ["0.9.0", "1.0.0", "1.1.0"]

    async def test_dependencies(self, metadata):
        deps = [
            IndexDependency(name="serde", req="^1.0", features=["derive"]),
            IndexDependency(name="json", req="^0.12", kind="dev", package="serde_json"),
        ]
        async with await metadata.begin() as tx:
            crate = await insert_crate(tx, "demo")
            version = await tx.insert_version(VersionRecord(crate_id=crate.id, num="0.1.0", cksum="a" * 64))
            await tx.insert_dependencies(version.id, deps)
            await tx.commit()

        async with await metadata.begin() as tx:
            assert await tx.list_dependencies(version.id) == deps

    async def test_download_counters(self, metadata):
        async with await metadata.begin() as tx:
            crate = await insert_crate(tx, "demo")
            version = await tx.insert_version(VersionRecord(crate_id=crate.id, num="0.1.0", cksum="a" * 64))
            await tx.increment_downloads(crate.id, version.id)
            await tx.increment_downloads(crate.id, version.id)
            await tx.commit()

        async with await metadata.begin() as tx:
            assert (await tx.find_crate_by_name("demo")).downloads == 2
            assert (await tx.find_version(crate.id, "0.1.0")).downloads == 2


class TestTags:
    async def test_attach_normalizes_and_replaces(self, metadata):
        async with await metadata.begin() as tx:
            crate = await insert_crate(tx, "demo")
            other = await insert_crate(tx, "other")
            assert await tx.upsert_keywords_and_attach(crate.id, ["JSON", " serde ", "json"]) == ["json", "serde"]
            await tx.upsert_keywords_and_attach(other.id, ["json"])
            await tx.upsert_categories_and_attach(crate.id, ["Encoding"])
            await tx.upsert_authors_and_attach(crate.id, ["Jane Doe"])
            await tx.commit()

        async with await metadata.begin() as tx:
            assert await tx.crate_keywords(crate.id) == ["json", "serde"]
            assert await tx.crate_keywords(other.id) == ["json"]
            assert await tx.crate_categories(crate.id) == ["encoding"]
            assert await tx.crate_authors(crate.id) == ["jane doe"]

            await tx.upsert_keywords_and_attach(crate.id, ["parser"])
            assert await tx.crate_keywords(crate.id) == ["parser"]
            await tx.commit()

    async def test_search_documents(self, metadata):
        async with await metadata.begin() as tx:
            crate = await insert_crate(tx, "demo")
            await tx.upsert_keywords_and_attach(crate.id, ["cli"])
            await tx.commit()

        async with await metadata.begin() as tx:
            docs = await tx.search_documents()
        assert [(d.crate_id, d.name, d.keywords) for d in docs] == [(crate.id, "demo", ["cli"])]


class TestOwners:
    async def test_owner_lifecycle(self, metadata, alice, bob):
        async with await metadata.begin() as tx:
            crate = await insert_crate(tx, "demo")
            assert await tx.add_owner(crate.id, alice.id) is True
            assert await tx.add_owner(crate.id, alice.id) is False
            await tx.add_owner(crate.id, bob.id)
            await tx.commit()

        async with await metadata.begin() as tx:
            assert [o.login for o in await tx.list_owners(crate.id)] == ["alice@example.com", "bob@example.com"]
            assert await tx.is_owner(crate.id, bob.id)
            assert await tx.remove_owner(crate.id, bob.id) is True
            assert await tx.count_owners(crate.id) == 1
            await tx.commit()

    async def test_accounts_by_token(self, metadata, alice):
        async with await metadata.begin() as tx:
            assert (await tx.find_account_by_token("alice-token")).id == alice.id
            assert await tx.find_account_by_token("wrong") is None
            assert (await tx.find_account_by_login("alice@example.com")).name == "Alice"
