from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from alexandrie.domain.errors import AlreadyExists, BlobNotFound, StoreIOError
from alexandrie.storage.crate_store import CRATE_EXT, README_EXT, BlobStream, CrateStore, blob_key

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def _error_code(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Code", "")


def _is_not_found(err: Exception) -> bool:
    return isinstance(err, ClientError) and _error_code(err) in {"NoSuchKey", "404", "NotFound"}


def _is_precondition_failed(err: Exception) -> bool:
    return isinstance(err, ClientError) and _error_code(err) in {"PreconditionFailed", "412"}


class S3CrateStore(CrateStore):
    """
    Stores blobs as objects `<key_prefix>/<lowercased name>/<vers>.<ext>` in one bucket.

    boto3 is synchronous, so every call runs on the default thread pool.
    Writes are conditional (`If-None-Match: *`) so an existing object is
    never replaced.
    """

    def __init__(
        self,
        bucket: str,
        key_prefix: str = "crates",
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client: Any = None,
    ):
        self.bucket = bucket
        self.key_prefix = key_prefix.strip("/")
        if client is None:
            client = boto3.session.Session(region_name=region).client(
                "s3",
                region_name=region,
                endpoint_url=endpoint_url,
                config=BotoConfig(retries={"max_attempts": 5, "mode": "standard"}),
            )
        self._s3 = client

    def _key(self, name: str, vers: str, ext: str) -> str:
        key = blob_key(name, vers, ext)
        return f"{self.key_prefix}/{key}" if self.key_prefix else key

    # ------------------------------------------------------------------
    # Sync helpers (run in a worker thread)
    # ------------------------------------------------------------------

    def _exists(self, key: str) -> bool:
        try:
            self._s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise
        return True

    def _put(self, key: str, body: bytes, content_type: str) -> None:
        if self._exists(key):
            raise AlreadyExists(f"object already exists: {key}")
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                IfNoneMatch="*",
            )
        except ClientError as e:
            if _is_precondition_failed(e):
                raise AlreadyExists(f"object already exists: {key}") from e
            raise

    # ------------------------------------------------------------------
    # CrateStore interface
    # ------------------------------------------------------------------

    async def _store(self, key: str, body: bytes, content_type: str) -> None:
        try:
            await asyncio.to_thread(self._put, key, body, content_type)
        except (ClientError, BotoCoreError) as e:
            raise StoreIOError(f"failed to put s3://{self.bucket}/{key}: {e}") from e
        logger.debug(f"Stored {len(body)} bytes at s3://{self.bucket}/{key}")

    async def store_crate(self, name: str, vers: str, data: bytes) -> None:
        await self._store(self._key(name, vers, CRATE_EXT), data, "application/gzip")

    async def store_readme(self, name: str, vers: str, html: str) -> None:
        await self._store(self._key(name, vers, README_EXT), html.encode("utf-8"), "text/html; charset=utf-8")

    async def _remove(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._s3.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            if _is_not_found(e):
                return
            raise StoreIOError(f"failed to delete s3://{self.bucket}/{key}: {e}") from e
        logger.info(f"Removed blob s3://{self.bucket}/{key}")

    async def remove_crate(self, name: str, vers: str) -> None:
        await self._remove(self._key(name, vers, CRATE_EXT))

    async def remove_readme(self, name: str, vers: str) -> None:
        await self._remove(self._key(name, vers, README_EXT))

    async def _read(self, key: str) -> BlobStream:
        try:
            resp = await asyncio.to_thread(self._s3.get_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                raise BlobNotFound(f"no object at s3://{self.bucket}/{key}") from e
            raise StoreIOError(f"failed to get s3://{self.bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise StoreIOError(f"failed to get s3://{self.bucket}/{key}: {e}") from e
        return BlobStream(self._iter_body(resp["Body"]), size=resp.get("ContentLength"))

    @staticmethod
    async def _iter_body(body) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(body.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def read_crate(self, name: str, vers: str) -> BlobStream:
        return await self._read(self._key(name, vers, CRATE_EXT))

    async def read_readme(self, name: str, vers: str) -> BlobStream:
        return await self._read(self._key(name, vers, README_EXT))
