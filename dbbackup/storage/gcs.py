# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Google Cloud Storage store.

google-cloud-storage is synchronous, so every call runs in a thread pool.
Uploads are always chunked resumable uploads of CHUNK_SIZE bytes.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, TypeVar

import structlog

from dbbackup.exceptions import ObjectNotFoundError, StorageError
from dbbackup.scheduling import retry_with_backoff
from dbbackup.storage import ObjectInfo, ProgressCallback, ProgressReporter, is_not_found
from dbbackup.storage.uri import CloudURI

logger = structlog.get_logger()

# Thread pool for the blocking GCS client
_executor = ThreadPoolExecutor(max_workers=4)

CHUNK_SIZE = 10 * 1024 * 1024
READ_CHUNK_SIZE = 1024 * 1024

T = TypeVar("T")


class GCSStore:
    """ObjectStore over a GCS bucket and object prefix."""

    name = "gcs"

    def __init__(self, uri: CloudURI, max_retries: int = 3, client: Any = None):
        self.uri = uri
        self.bucket_name = uri.bucket
        self.prefix = uri.path
        self.max_retries = max_retries
        self._client = client

    def _object_name(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def location(self, name: str) -> str:
        return f"gs://{self.bucket_name}/{self._object_name(name)}"

    def _bucket(self) -> Any:
        if self._client is None:
            from google.cloud import storage

            self._client = storage.Client()
        return self._client.bucket(self.bucket_name)

    def _blob(self, name: str) -> Any:
        return self._bucket().blob(self._object_name(name), chunk_size=CHUNK_SIZE)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_executor, fn, *args)

    async def put(
        self,
        name: str,
        source_path: Path,
        size_hint: int | None = None,
        metadata: Dict[str, str] | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Upload a file with a chunked resumable upload."""
        size = size_hint if size_hint is not None else source_path.stat().st_size
        reporter = ProgressReporter(progress, size)

        def _upload() -> None:
            blob = self._blob(name)
            if metadata:
                blob.metadata = dict(metadata)
            blob.upload_from_filename(str(source_path))

        async def _attempt() -> None:
            await self._run(_upload)

        try:
            await retry_with_backoff(_attempt, retries=self.max_retries, operation=f"gcs_upload:{name}")
        except Exception as e:
            raise StorageError(
                f"Failed to upload to GCS: {e}",
                details={"bucket": self.bucket_name, "object": self._object_name(name)},
            ) from e

        reporter.advance(size)
        reporter.finish()
        logger.info("gcs_object_uploaded", bucket=self.bucket_name, object=self._object_name(name), size=size)

    async def put_bytes(self, name: str, data: bytes) -> None:
        async def _attempt() -> None:
            await self._run(self._blob(name).upload_from_string, data)

        try:
            await retry_with_backoff(_attempt, retries=self.max_retries, operation=f"gcs_put:{name}")
        except Exception as e:
            raise StorageError(f"Failed to write GCS object: {e}", details={"object": name}) from e

    async def get(
        self,
        name: str,
        dest_path: Path,
        progress: ProgressCallback | None = None,
    ) -> None:
        reporter = ProgressReporter(progress, 0)
        try:
            await self._run(self._blob(name).download_to_filename, str(dest_path))
        except Exception as e:
            if is_not_found(e):
                raise ObjectNotFoundError(f"Object not found: {self.location(name)}") from e
            raise StorageError(f"Failed to download GCS object: {e}", details={"object": name}) from e
        reporter.advance(dest_path.stat().st_size)
        reporter.finish()

    async def get_bytes(self, name: str) -> bytes:
        try:
            return await self._run(self._blob(name).download_as_bytes)
        except Exception as e:
            if is_not_found(e):
                raise ObjectNotFoundError(f"Object not found: {self.location(name)}") from e
            raise StorageError(f"Failed to read GCS object: {e}", details={"object": name}) from e

    async def open_read(self, name: str, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
        blob = self._blob(name)
        try:
            reader = await self._run(blob.open, "rb")
        except Exception as e:
            if is_not_found(e):
                raise ObjectNotFoundError(f"Object not found: {self.location(name)}") from e
            raise StorageError(f"Failed to read GCS object: {e}", details={"object": name}) from e
        try:
            while True:
                chunk = await self._run(reader.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            await self._run(reader.close)

    async def list(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        base = f"{self.prefix}/" if self.prefix else ""

        def _list() -> list:
            return list(self._bucket().list_blobs(prefix=base + prefix))

        for blob in await self._run(_list):
            relative = blob.name[len(base):]
            if not relative or "/" in relative:
                continue
            yield ObjectInfo(name=relative, size=blob.size or 0, modified=blob.updated)

    async def delete(self, name: str) -> None:
        try:
            await self._run(self._blob(name).delete)
        except Exception as e:
            if is_not_found(e):
                raise ObjectNotFoundError(f"Object not found: {self.location(name)}") from e
            raise StorageError(f"Failed to delete GCS object: {e}", details={"object": name}) from e

    async def exists(self, name: str) -> bool:
        def _reload() -> None:
            self._blob(name).reload()

        try:
            await self._run(_reload)
            return True
        except Exception as e:
            if is_not_found(e):
                return False
            raise StorageError(f"Failed to check GCS object: {e}", details={"object": name}) from e

    async def get_size(self, name: str) -> int:
        def _size() -> int:
            blob = self._blob(name)
            blob.reload()
            return blob.size or 0

        try:
            return await self._run(_size)
        except Exception as e:
            if is_not_found(e):
                raise ObjectNotFoundError(f"Object not found: {self.location(name)}") from e
            raise StorageError(f"Failed to stat GCS object: {e}", details={"object": name}) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._run(self._client.close)
            self._client = None

    async def __aenter__(self) -> "GCSStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
