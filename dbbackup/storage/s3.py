# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
S3-compatible store (AWS S3, MinIO, Backblaze B2) on aiobotocore.

Objects larger than MULTIPART_THRESHOLD are uploaded in MULTIPART_CHUNK_SIZE
parts; a failed multipart upload is aborted so no orphaned parts remain.
"""

import os
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, AsyncIterator, Dict

import aiofiles
import aiofiles.os
import structlog
from aiobotocore.config import AioConfig
from aiobotocore.session import get_session

from dbbackup.errors import explain_missing_endpoint
from dbbackup.exceptions import ConfigurationError, ObjectNotFoundError, StorageError
from dbbackup.scheduling import retry_with_backoff
from dbbackup.storage import (
    ObjectInfo,
    ProgressCallback,
    ProgressReporter,
    is_not_found,
)
from dbbackup.storage.uri import CloudURI, Provider

logger = structlog.get_logger()

MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024
READ_CHUNK_SIZE = 1024 * 1024


class S3Store:
    """ObjectStore over an S3 bucket and key prefix."""

    def __init__(self, uri: CloudURI, max_retries: int = 3, client: Any = None):
        self.uri = uri
        self.name = uri.provider.value
        self.bucket = uri.bucket
        self.prefix = uri.path
        self.max_retries = max_retries
        self.region = uri.region or os.environ.get("AWS_REGION") or "us-east-1"
        self.endpoint = uri.endpoint or os.environ.get("AWS_ENDPOINT_URL")

        if uri.provider in (Provider.MINIO, Provider.B2) and not self.endpoint:
            raise ConfigurationError(explain_missing_endpoint(uri.provider.value))

        self._client = client
        self._stack: AsyncExitStack | None = None

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def location(self, name: str) -> str:
        return f"{self.name}://{self.bucket}/{self._key(name)}"

    async def _get_client(self) -> Any:
        if self._client is None:
            self._stack = AsyncExitStack()
            session = get_session()
            config = AioConfig(
                s3={"addressing_style": "path" if self.uri.path_style else "auto"},
                retries={"max_attempts": 1},
            )
            self._client = await self._stack.enter_async_context(
                session.create_client(
                    "s3",
                    region_name=self.region,
                    endpoint_url=self.endpoint,
                    config=config,
                )
            )
        return self._client

    async def put(
        self,
        name: str,
        source_path: Path,
        size_hint: int | None = None,
        metadata: Dict[str, str] | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        """
        Upload a file, using multipart above the threshold.

        Args:
            name: Object name under the store prefix
            source_path: Local file to upload
            size_hint: Known size, otherwise the file is stat()ed
            metadata: User metadata (e.g. sha256) stored with the object
            progress: Optional progress callback
        """
        size = size_hint if size_hint is not None else source_path.stat().st_size
        key = self._key(name)

        async def _upload() -> None:
            reporter = ProgressReporter(progress, size)
            if size > MULTIPART_THRESHOLD:
                await self._put_multipart(key, source_path, metadata or {}, reporter)
            else:
                await self._put_simple(key, source_path, metadata or {}, reporter)
            reporter.finish()

        try:
            await retry_with_backoff(
                _upload,
                retries=self.max_retries,
                operation=f"s3_upload:{name}",
            )
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                f"Failed to upload to S3: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e

        logger.info("s3_object_uploaded", bucket=self.bucket, key=key, size=size)

    async def _put_simple(
        self,
        key: str,
        source_path: Path,
        metadata: Dict[str, str],
        reporter: ProgressReporter,
    ) -> None:
        client = await self._get_client()
        size = (await aiofiles.os.stat(source_path)).st_size
        # The HTTP layer reads the handle in chunks; the payload is never held whole
        with open(source_path, "rb") as body:
            await client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentLength=size,
                Metadata=metadata,
            )
        reporter.advance(size)

    async def _put_multipart(
        self,
        key: str,
        source_path: Path,
        metadata: Dict[str, str],
        reporter: ProgressReporter,
    ) -> None:
        client = await self._get_client()
        response = await client.create_multipart_upload(
            Bucket=self.bucket, Key=key, Metadata=metadata
        )
        upload_id = response["UploadId"]
        parts = []

        try:
            async with aiofiles.open(source_path, "rb") as f:
                part_number = 1
                while True:
                    chunk = await f.read(MULTIPART_CHUNK_SIZE)
                    if not chunk:
                        break
                    part = await client.upload_part(
                        Bucket=self.bucket,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=chunk,
                    )
                    parts.append({"ETag": part["ETag"], "PartNumber": part_number})
                    reporter.advance(len(chunk))
                    part_number += 1

            await client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except BaseException:
            logger.warning("s3_multipart_aborted", bucket=self.bucket, key=key, parts=len(parts))
            await client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
            raise

    async def put_bytes(self, name: str, data: bytes) -> None:
        client = await self._get_client()
        key = self._key(name)

        async def _put() -> None:
            await client.put_object(Bucket=self.bucket, Key=key, Body=data)

        try:
            await retry_with_backoff(_put, retries=self.max_retries, operation=f"s3_put:{name}")
        except Exception as e:
            raise StorageError(
                f"Failed to write S3 object: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e

    async def get(
        self,
        name: str,
        dest_path: Path,
        progress: ProgressCallback | None = None,
    ) -> None:
        size = await self.get_size(name)
        reporter = ProgressReporter(progress, size)
        async with aiofiles.open(dest_path, "wb") as f:
            async for chunk in self.open_read(name):
                await f.write(chunk)
                reporter.advance(len(chunk))
        reporter.finish()

    async def get_bytes(self, name: str) -> bytes:
        chunks = [chunk async for chunk in self.open_read(name)]
        return b"".join(chunks)

    async def open_read(self, name: str, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
        client = await self._get_client()
        key = self._key(name)
        try:
            response = await client.get_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            if is_not_found(e):
                raise ObjectNotFoundError(
                    f"Object not found: s3://{self.bucket}/{key}",
                    details={"name": name},
                ) from e
            raise StorageError(f"Failed to read S3 object: {e}", details={"key": key}) from e

        body = response["Body"]
        try:
            while True:
                chunk = await body.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def list(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        client = await self._get_client()
        base = f"{self.prefix}/" if self.prefix else ""
        paginator = client.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=self.bucket, Prefix=base + prefix):
            for obj in page.get("Contents", []):
                relative = obj["Key"][len(base):]
                if not relative or "/" in relative:
                    continue
                yield ObjectInfo(
                    name=relative,
                    size=obj["Size"],
                    modified=obj.get("LastModified"),
                )

    async def delete(self, name: str) -> None:
        client = await self._get_client()
        key = self._key(name)
        try:
            await client.delete_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            raise StorageError(f"Failed to delete S3 object: {e}", details={"key": key}) from e

    async def exists(self, name: str) -> bool:
        client = await self._get_client()
        key = self._key(name)
        try:
            await client.head_object(Bucket=self.bucket, Key=key)
            return True
        except Exception as e:
            if is_not_found(e):
                return False
            raise StorageError(
                f"Failed to check S3 object: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e

    async def get_size(self, name: str) -> int:
        client = await self._get_client()
        key = self._key(name)
        try:
            response = await client.head_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            if is_not_found(e):
                raise ObjectNotFoundError(
                    f"Object not found: s3://{self.bucket}/{key}",
                    details={"name": name},
                ) from e
            raise StorageError(f"Failed to stat S3 object: {e}", details={"key": key}) from e
        return response["ContentLength"]

    async def close(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
            self._client = None

    async def __aenter__(self) -> "S3Store":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"S3Store(bucket={self.bucket!r}, prefix={self.prefix!r})"
