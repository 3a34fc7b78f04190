# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Azure Blob Storage store on the azure-storage-blob asyncio client.

Blobs above BLOCK_UPLOAD_THRESHOLD are uploaded as staged blocks of
BLOCK_SIZE bytes and committed in one block list.
"""

import base64
import os
from pathlib import Path
from typing import Any, AsyncIterator, Dict

import aiofiles
import structlog

from dbbackup.exceptions import ConfigurationError, ObjectNotFoundError, StorageError
from dbbackup.scheduling import retry_with_backoff
from dbbackup.storage import ObjectInfo, ProgressCallback, ProgressReporter, is_not_found
from dbbackup.storage.uri import CloudURI

logger = structlog.get_logger()

BLOCK_UPLOAD_THRESHOLD = 256 * 1024 * 1024
BLOCK_SIZE = 100 * 1024 * 1024


def _block_id(index: int) -> str:
    return base64.b64encode(f"block-{index:06d}".encode("ascii")).decode("ascii")


class AzureBlobStore:
    """ObjectStore over an Azure container and blob prefix."""

    name = "azure"

    def __init__(self, uri: CloudURI, max_retries: int = 3, service_client: Any = None):
        self.uri = uri
        self.container = uri.bucket
        self.prefix = uri.path
        self.max_retries = max_retries
        self._service = service_client

    def _blob_name(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def location(self, name: str) -> str:
        return f"azure://{self.container}/{self._blob_name(name)}"

    def _get_service(self) -> Any:
        if self._service is None:
            from azure.storage.blob.aio import BlobServiceClient

            conn_str = os.environ.get("AZURE_STORAGE_CONNECTION_STRING")
            if not conn_str:
                raise ConfigurationError(
                    "AZURE_STORAGE_CONNECTION_STRING is required for azure:// URIs"
                )
            self._service = BlobServiceClient.from_connection_string(conn_str)
        return self._service

    def _blob(self, name: str) -> Any:
        return self._get_service().get_blob_client(self.container, self._blob_name(name))

    async def put(
        self,
        name: str,
        source_path: Path,
        size_hint: int | None = None,
        metadata: Dict[str, str] | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Upload a file as one blob, staging blocks for large files."""
        size = size_hint if size_hint is not None else source_path.stat().st_size
        blob = self._blob(name)

        async def _upload() -> None:
            reporter = ProgressReporter(progress, size)
            if size > BLOCK_UPLOAD_THRESHOLD:
                await self._put_blocks(blob, source_path, metadata or {}, reporter)
            else:
                async with aiofiles.open(source_path, "rb") as f:
                    data = await f.read()
                await blob.upload_blob(data, overwrite=True, metadata=metadata or {})
                reporter.advance(len(data))
            reporter.finish()

        try:
            await retry_with_backoff(_upload, retries=self.max_retries, operation=f"azure_upload:{name}")
        except Exception as e:
            raise StorageError(
                f"Failed to upload to Azure: {e}",
                details={"container": self.container, "blob": self._blob_name(name)},
            ) from e

        logger.info("azure_blob_uploaded", container=self.container, blob=self._blob_name(name), size=size)

    async def _put_blocks(
        self,
        blob: Any,
        source_path: Path,
        metadata: Dict[str, str],
        reporter: ProgressReporter,
    ) -> None:
        from azure.storage.blob import BlobBlock

        block_ids = []
        async with aiofiles.open(source_path, "rb") as f:
            index = 0
            while True:
                chunk = await f.read(BLOCK_SIZE)
                if not chunk:
                    break
                block_id = _block_id(index)
                await blob.stage_block(block_id=block_id, data=chunk)
                block_ids.append(BlobBlock(block_id=block_id))
                reporter.advance(len(chunk))
                index += 1

        await blob.commit_block_list(block_ids, metadata=metadata)

    async def put_bytes(self, name: str, data: bytes) -> None:
        blob = self._blob(name)

        async def _put() -> None:
            await blob.upload_blob(data, overwrite=True)

        try:
            await retry_with_backoff(_put, retries=self.max_retries, operation=f"azure_put:{name}")
        except Exception as e:
            raise StorageError(f"Failed to write Azure blob: {e}", details={"blob": name}) from e

    async def get(
        self,
        name: str,
        dest_path: Path,
        progress: ProgressCallback | None = None,
    ) -> None:
        reporter = ProgressReporter(progress, await self.get_size(name))
        async with aiofiles.open(dest_path, "wb") as f:
            async for chunk in self.open_read(name):
                await f.write(chunk)
                reporter.advance(len(chunk))
        reporter.finish()

    async def get_bytes(self, name: str) -> bytes:
        return b"".join([chunk async for chunk in self.open_read(name)])

    async def open_read(self, name: str, chunk_size: int = 0) -> AsyncIterator[bytes]:
        blob = self._blob(name)
        try:
            downloader = await blob.download_blob()
        except Exception as e:
            if is_not_found(e):
                raise ObjectNotFoundError(f"Blob not found: {self.location(name)}") from e
            raise StorageError(f"Failed to read Azure blob: {e}", details={"blob": name}) from e
        async for chunk in downloader.chunks():
            yield chunk

    async def list(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        container = self._get_service().get_container_client(self.container)
        base = f"{self.prefix}/" if self.prefix else ""
        async for blob in container.list_blobs(name_starts_with=base + prefix):
            relative = blob.name[len(base):]
            if not relative or "/" in relative:
                continue
            yield ObjectInfo(name=relative, size=blob.size, modified=blob.last_modified)

    async def delete(self, name: str) -> None:
        try:
            await self._blob(name).delete_blob()
        except Exception as e:
            if is_not_found(e):
                raise ObjectNotFoundError(f"Blob not found: {self.location(name)}") from e
            raise StorageError(f"Failed to delete Azure blob: {e}", details={"blob": name}) from e

    async def exists(self, name: str) -> bool:
        try:
            await self._blob(name).get_blob_properties()
            return True
        except Exception as e:
            if is_not_found(e):
                return False
            raise StorageError(f"Failed to check Azure blob: {e}", details={"blob": name}) from e

    async def get_size(self, name: str) -> int:
        try:
            properties = await self._blob(name).get_blob_properties()
        except Exception as e:
            if is_not_found(e):
                raise ObjectNotFoundError(f"Blob not found: {self.location(name)}") from e
            raise StorageError(f"Failed to stat Azure blob: {e}", details={"blob": name}) from e
        return properties.size

    async def close(self) -> None:
        if self._service is not None:
            await self._service.close()
            self._service = None

    async def __aenter__(self) -> "AzureBlobStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
