from __future__ import annotations

import asyncio
import logging
import os
import uuid
from pathlib import Path
from typing import AsyncIterator

import aiofiles
import aiofiles.os

from alexandrie.domain.errors import AlreadyExists, BlobNotFound, StoreIOError
from alexandrie.storage.crate_store import CRATE_EXT, README_EXT, BlobStream, CrateStore, blob_key

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def _fsync_dir(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class DiskCrateStore(CrateStore):
    """
    Stores blobs as files under `root/<lowercased name>/<vers>.<ext>`.

    A blob is written to a temp file in the target directory, fsynced, and
    hard-linked into place, so an existing blob is never replaced and readers
    never see a partial file.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, name: str, vers: str, ext: str) -> Path:
        return self.root / blob_key(name, vers, ext)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _store(self, path: Path, data: bytes) -> None:
        if await aiofiles.os.path.exists(path):
            raise AlreadyExists(f"blob already exists: {path}")

        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            try:
                await aiofiles.os.link(tmp_path, path)
            except FileExistsError:
                raise AlreadyExists(f"blob already exists: {path}")
            await asyncio.to_thread(_fsync_dir, path.parent)
        except OSError as e:
            raise StoreIOError(f"failed to write {path}: {e}") from e
        finally:
            try:
                await aiofiles.os.remove(tmp_path)
            except FileNotFoundError:
                pass

        logger.debug(f"Stored {len(data)} bytes at {path}")

    async def store_crate(self, name: str, vers: str, data: bytes) -> None:
        await self._store(self._path(name, vers, CRATE_EXT), data)

    async def store_readme(self, name: str, vers: str, html: str) -> None:
        await self._store(self._path(name, vers, README_EXT), html.encode("utf-8"))

    async def _remove(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StoreIOError(f"failed to remove {path}: {e}") from e
        logger.info(f"Removed blob {path}")

    async def remove_crate(self, name: str, vers: str) -> None:
        await self._remove(self._path(name, vers, CRATE_EXT))

    async def remove_readme(self, name: str, vers: str) -> None:
        await self._remove(self._path(name, vers, README_EXT))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read(self, path: Path) -> BlobStream:
        try:
            f = await aiofiles.open(path, "rb")
        except FileNotFoundError:
            raise BlobNotFound(f"no blob at {path}")
        except OSError as e:
            raise StoreIOError(f"failed to open {path}: {e}") from e
        return BlobStream(self._iter_file(f), size=os.fstat(f.fileno()).st_size)

    @staticmethod
    async def _iter_file(f) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await f.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await f.close()

    async def read_crate(self, name: str, vers: str) -> BlobStream:
        return await self._read(self._path(name, vers, CRATE_EXT))

    async def read_readme(self, name: str, vers: str) -> BlobStream:
        return await self._read(self._path(name, vers, README_EXT))
