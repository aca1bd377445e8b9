"""
Decoding of the `cargo publish` upload body.

Wire format::

    u32_le  metadata length N
    N bytes metadata JSON
    u32_le  tarball length M
    M bytes tarball
"""

from __future__ import annotations

import asyncio
import json
import struct
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from pydantic import ValidationError

from alexandrie.domain.errors import InvalidMetadata, PayloadTooLarge
from alexandrie.domain.models import CrateMeta

_U32 = struct.Struct("<I")


@dataclass
class Envelope:
    metadata: bytes
    tarball: bytes

    def parse_metadata(self) -> CrateMeta:
        return parse_metadata(self.metadata)


def parse_metadata(raw: bytes) -> CrateMeta:
    try:
        return CrateMeta.model_validate_json(raw)
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err.get("loc", ())) or "metadata"
        raise InvalidMetadata(field, err.get("msg", "invalid value")) from e
    except (ValueError, json.JSONDecodeError) as e:
        raise InvalidMetadata("metadata", f"not valid JSON: {e}") from e


def parse_envelope(body: bytes, max_crate_size: int, max_metadata_size: Optional[int] = None) -> Envelope:
    """Decode a fully buffered upload body."""
    offset = 0

    def take(n: int, what: str) -> bytes:
        nonlocal offset
        if offset + n > len(body):
            raise InvalidMetadata("body", f"truncated upload while reading {what}")
        chunk = body[offset:offset + n]
        offset += n
        return chunk

    (meta_len,) = _U32.unpack(take(4, "metadata length"))
    if max_metadata_size is not None and meta_len > max_metadata_size:
        raise InvalidMetadata("metadata", f"metadata of {meta_len} bytes exceeds {max_metadata_size} bytes")
    metadata = take(meta_len, "metadata")

    (crate_len,) = _U32.unpack(take(4, "tarball length"))
    if crate_len > max_crate_size:
        raise PayloadTooLarge(crate_len, max_crate_size)
    tarball = take(crate_len, "tarball")

    if offset != len(body):
        raise InvalidMetadata("body", f"{len(body) - offset} unexpected trailing bytes")
    return Envelope(metadata, tarball)


class _ChunkReader:
    def __init__(self, chunks: AsyncIterator[bytes]):
        self._chunks = chunks
        self._buffer = bytearray()
        self._eof = False

    async def read_exactly(self, n: int, what: str) -> bytes:
        while len(self._buffer) < n and not self._eof:
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                self._eof = True
                break
            self._buffer.extend(chunk)
        if len(self._buffer) < n:
            raise InvalidMetadata("body", f"truncated upload while reading {what}")
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data

    async def at_end(self) -> bool:
        if self._buffer:
            return False
        async for chunk in self._chunks:
            if chunk:
                self._buffer.extend(chunk)
                return False
        return True


async def read_envelope(
    chunks: AsyncIterator[bytes],
    max_crate_size: int,
    max_metadata_size: Optional[int] = None,
    timeout: Optional[float] = None,
) -> Envelope:
    """
    Decode an upload body from a chunk stream.

    Stops reading as soon as a declared length exceeds its limit, so an
    oversized tarball is rejected before it is received.
    """

    async def _read() -> Envelope:
        reader = _ChunkReader(chunks)
        (meta_len,) = _U32.unpack(await reader.read_exactly(4, "metadata length"))
        if max_metadata_size is not None and meta_len > max_metadata_size:
            raise InvalidMetadata("metadata", f"metadata of {meta_len} bytes exceeds {max_metadata_size} bytes")
        metadata = await reader.read_exactly(meta_len, "metadata")

        (crate_len,) = _U32.unpack(await reader.read_exactly(4, "tarball length"))
        if crate_len > max_crate_size:
            raise PayloadTooLarge(crate_len, max_crate_size)
        tarball = await reader.read_exactly(crate_len, "tarball")

        if not await reader.at_end():
            raise InvalidMetadata("body", "unexpected trailing bytes")
        return Envelope(metadata, tarball)

    if timeout is None:
        return await _read()
    try:
        return await asyncio.wait_for(_read(), timeout)
    except asyncio.TimeoutError:
        raise InvalidMetadata("body", f"upload not received within {timeout:g}s")


def build_envelope(metadata: bytes | str | dict, tarball: bytes) -> bytes:
    """Encode an upload body (used by clients and tests)."""
    if isinstance(metadata, dict):
        metadata = json.dumps(metadata)
    if isinstance(metadata, str):
        metadata = metadata.encode("utf-8")
    return _U32.pack(len(metadata)) + metadata + _U32.pack(len(tarball)) + tarball
