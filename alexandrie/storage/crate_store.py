from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from alexandrie.domain.errors import InvalidKey

CRATE_EXT = "crate"
README_EXT = "html"


def blob_key(name: str, vers: str, ext: str) -> str:
    """
    Storage key of a blob: `<lowercased name>/<vers>.<ext>`.

    Raises InvalidKey for anything that could escape the store root.
    """
    key = f"{name.lower()}/{vers}.{ext}"
    if "\\" in key or "\x00" in key or key.startswith("/"):
        raise InvalidKey(f"invalid storage key: {key!r}")
    for part in key.split("/"):
        if part in ("", ".", ".."):
            raise InvalidKey(f"invalid storage key: {key!r}")
    return key


class BlobStream:
    """Lazy chunks of one blob, with its size in bytes when the backend reports it."""

    def __init__(self, chunks: AsyncIterator[bytes], size: Optional[int] = None):
        self.chunks = chunks
        self.size = size

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.chunks


class CrateStore(ABC):
    """
    Abstract base class for crate tarball and README storage.

    Blobs are written once: storing an existing key raises AlreadyExists.
    """

    @abstractmethod
    async def store_crate(self, name: str, vers: str, data: bytes) -> None:
        """Durably store a crate tarball."""
        pass

    @abstractmethod
    async def read_crate(self, name: str, vers: str) -> BlobStream:
        """
        Return a lazy stream over a crate tarball.
        Raises BlobNotFound before returning when the blob is absent.
        """
        pass

    @abstractmethod
    async def store_readme(self, name: str, vers: str, html: str) -> None:
        """Durably store the rendered README of a crate version."""
        pass

    @abstractmethod
    async def read_readme(self, name: str, vers: str) -> BlobStream:
        """Return a lazy stream over a rendered README."""
        pass

    @abstractmethod
    async def remove_crate(self, name: str, vers: str) -> None:
        """Remove a crate tarball written by a publish being rolled back."""
        pass

    @abstractmethod
    async def remove_readme(self, name: str, vers: str) -> None:
        """Remove a README written by a publish being rolled back."""
        pass

    async def get_crate(self, name: str, vers: str) -> bytes:
        stream = await self.read_crate(name, vers)
        return b"".join([chunk async for chunk in stream])

    async def get_readme(self, name: str, vers: str) -> str:
        stream = await self.read_readme(name, vers)
        return b"".join([chunk async for chunk in stream]).decode("utf-8")
