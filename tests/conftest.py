"""Shared fixtures: a real git index, a disk crate store and a SQLite database per test."""

import gzip
import io
import json
import shutil
import subprocess
import tarfile
import uuid

import pytest

from alexandrie.core.config import DiskStorageSettings, IndexSettings, RegistrySettings
from alexandrie.core.dependencies import build_registry
from alexandrie.data.index_repository import IndexRepository
from alexandrie.data.metadata_store import MetadataStore
from alexandrie.domain.models import RegistryIndexConfig
from alexandrie.services.envelope import build_envelope
from alexandrie.storage.disk_store import DiskCrateStore

INDEX_CONFIG = RegistryIndexConfig(
    dl="http://localhost:3000/api/v1/crates/{crate}/{version}/download",
    api="http://localhost:3000",
)


def run_git(repo_path, *args):
    result = subprocess.run(["git", *args], cwd=repo_path, capture_output=True, text=True, check=True)
    return result.stdout


def make_tarball(name, vers, files=None):
    """A gzipped `.crate` tarball with a Cargo.toml and any extra files."""
    files = {"Cargo.toml": f'[package]\nname = "{name}"\nversion = "{vers}"\n', **(files or {})}
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w") as archive:
        for path, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{name}-{vers}/{path}")
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return gzip.compress(raw.getvalue(), mtime=0)


def make_metadata(name, vers, **extra):
    meta = {
        "name": name,
        "vers": vers,
        "deps": [],
        "features": {},
        "authors": ["Jane Doe <jane@example.com>"],
        "description": f"The {name} crate",
        "keywords": [],
        "categories": [],
        "license": "MIT",
    }
    meta.update(extra)
    return meta


def make_upload(name, vers, tarball=None, **extra):
    tarball = tarball if tarball is not None else make_tarball(name, vers)
    return build_envelope(json.dumps(make_metadata(name, vers, **extra)), tarball)


@pytest.fixture
def git_bin():
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    return "git"


@pytest.fixture
def index_repo(tmp_path, git_bin):
    return IndexRepository.init(
        tmp_path / "index",
        INDEX_CONFIG,
        author_name="Alexandrie Tests",
        author_email="tests@alexandrie.local",
    )


@pytest.fixture
def crate_store(tmp_path):
    return DiskCrateStore(tmp_path / "crates")


@pytest.fixture
async def metadata(tmp_path):
    store = MetadataStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'registry.db'}")
    await store.migrate()
    yield store
    await store.close()


@pytest.fixture
def settings(tmp_path):
    return RegistrySettings(
        index=IndexSettings(path=tmp_path / "index"),
        storage=DiskStorageSettings(path=tmp_path / "crates"),
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'registry.db'}",
        max_crate_size=64 * 1024,
    )


@pytest.fixture
async def registry(settings, metadata, index_repo, crate_store):
    reg = build_registry(settings, metadata=metadata, index=index_repo, store=crate_store)
    yield reg
    await reg.queries.flush()


@pytest.fixture
def create_account(metadata):
    async def _create(login=None, name=None, token=None):
        login = login or f"user-{uuid.uuid4().hex[:8]}@example.com"
        async with await metadata.begin() as tx:
            account = await tx.insert_account(login, name=name, token=token)
            await tx.commit()
        return account

    return _create


@pytest.fixture
async def alice(create_account):
    return await create_account("alice@example.com", "Alice", token="alice-token")


@pytest.fixture
async def bob(create_account):
    return await create_account("bob@example.com", "Bob", token="bob-token")
