# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Object Storage Layer - One interface over local disk and cloud buckets.

Backends are imported lazily so the Azure and GCS client libraries are only
needed when a URI actually names them.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Callable, Dict, Protocol, Tuple

import structlog

from dbbackup.storage.uri import CloudURI, Provider, is_cloud_uri, parse_cloud_uri

if TYPE_CHECKING:
    from dbbackup.config import BackupConfig

logger = structlog.get_logger()

# Reports (bytes_done, bytes_total); total is 0 when unknown
ProgressCallback = Callable[[int, int], None]

PROGRESS_INTERVAL_SECONDS = 0.1


@dataclass
class ObjectInfo:
    """One listed object."""

    name: str
    size: int
    modified: datetime | None = None


class ProgressReporter:
    """
    Throttles progress callbacks to at most one per interval.

    The final update is always delivered by finish().
    """

    def __init__(
        self,
        callback: ProgressCallback | None,
        total: int = 0,
        interval: float = PROGRESS_INTERVAL_SECONDS,
    ):
        self._callback = callback
        self._total = total
        self._interval = interval
        self._last = 0.0
        self.done = 0

    def advance(self, nbytes: int) -> None:
        self.done += nbytes
        if self._callback is None:
            return
        now = time.monotonic()
        if now - self._last >= self._interval:
            self._last = now
            self._callback(self.done, self._total)

    def finish(self) -> None:
        if self._callback is not None:
            self._callback(self.done, self._total or self.done)


class ObjectStore(Protocol):
    """Protocol every storage backend implements."""

    name: str

    async def put(
        self,
        name: str,
        source_path: Path,
        size_hint: int | None = None,
        metadata: Dict[str, str] | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Upload a local file as object `name`."""
        ...

    async def put_bytes(self, name: str, data: bytes) -> None:
        """Store a small object such as a sidecar file."""
        ...

    async def get(
        self,
        name: str,
        dest_path: Path,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Download object `name` into a local file."""
        ...

    async def get_bytes(self, name: str) -> bytes:
        """Read a small object fully."""
        ...

    def open_read(self, name: str, chunk_size: int = ...) -> AsyncIterator[bytes]:
        """Stream an object's bytes."""
        ...

    def list(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        """List objects whose name starts with `prefix`."""
        ...

    async def delete(self, name: str) -> None:
        ...

    async def exists(self, name: str) -> bool:
        """False only when the object is not found; other failures raise."""
        ...

    async def get_size(self, name: str) -> int:
        ...

    def location(self, name: str) -> str:
        """Human-readable location of `name`, for logs and results."""
        ...

    async def close(self) -> None:
        ...

    async def __aenter__(self) -> "ObjectStore":
        ...

    async def __aexit__(self, *exc_info) -> None:
        ...


def open_store(
    uri_or_path: "str | Path | CloudURI",
    config: "BackupConfig | None" = None,
) -> ObjectStore:
    """
    Create the store that serves a URI or local directory.

    Args:
        uri_or_path: Cloud URI, file:// URI, plain path, or a parsed CloudURI
        config: Configuration for retry and chunk settings

    Returns:
        An ObjectStore; use it as an async context manager

    Raises:
        ConfigurationError: If the URI scheme is unknown
    """
    if isinstance(uri_or_path, CloudURI):
        uri = uri_or_path
    elif isinstance(uri_or_path, Path) or not is_cloud_uri(str(uri_or_path)):
        from dbbackup.storage.local import LocalStore

        return LocalStore(Path(uri_or_path))
    else:
        uri = parse_cloud_uri(str(uri_or_path))

    max_retries = config.max_retries if config is not None else 3

    if uri.provider == Provider.LOCAL:
        from dbbackup.storage.local import LocalStore

        return LocalStore(Path(uri.path))
    elif uri.provider.is_s3_compatible:
        from dbbackup.storage.s3 import S3Store

        return S3Store(uri, max_retries=max_retries)
    elif uri.provider == Provider.AZURE:
        from dbbackup.storage.azure import AzureBlobStore

        return AzureBlobStore(uri, max_retries=max_retries)
    else:
        from dbbackup.storage.gcs import GCSStore

        return GCSStore(uri, max_retries=max_retries)


def open_object(
    uri_or_path: "str | Path",
    config: "BackupConfig | None" = None,
) -> Tuple[ObjectStore, str]:
    """
    Split an object URI or file path into (store, name).

    The store is rooted at the object's parent so sidecars resolve next to it.
    """
    if isinstance(uri_or_path, Path) or not is_cloud_uri(str(uri_or_path)):
        path = Path(uri_or_path)
        return open_store(path.parent, config), path.name

    uri = parse_cloud_uri(str(uri_or_path))
    if uri.provider == Provider.LOCAL:
        path = Path(uri.path)
        return open_store(path.parent, config), path.name
    return open_store(uri.parent(), config), uri.base_name


def is_not_found(exc: BaseException) -> bool:
    """
    True when a backend exception means "object does not exist".

    Only 404-style errors qualify; access denied and friends do not.
    """
    if isinstance(exc, FileNotFoundError):
        return True

    # botocore ClientError
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        code = str(response.get("Error", {}).get("Code", ""))
        if code in ("404", "NoSuchKey", "NotFound"):
            return True

    # azure ResourceNotFoundError, google NotFound
    if type(exc).__name__ in ("ResourceNotFoundError", "NotFound"):
        return True
    return getattr(exc, "status_code", None) == 404 or getattr(exc, "code", None) == 404


__all__ = [
    "CloudURI",
    "ObjectInfo",
    "ObjectStore",
    "ProgressCallback",
    "ProgressReporter",
    "Provider",
    "is_cloud_uri",
    "is_not_found",
    "open_object",
    "open_store",
    "parse_cloud_uri",
]
