# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Archive format detection and pre-restore validation.

Detection looks at content first (encryption magic, PGDMP signature,
compression magic) and falls back to the file name.
"""

import asyncio
import gzip
import tarfile
import zlib
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import List

import structlog
import zstandard as zstd

from dbbackup.config import EngineType
from dbbackup.crypto import MAGIC
from dbbackup.exceptions import RestoreError

logger = structlog.get_logger()

_executor = ThreadPoolExecutor(max_workers=2)

PGDMP_SIGNATURE = b"PGDMP"
MIN_ARCHIVE_SIZE = 100
HEADER_PEEK_SIZE = 512

_GZIP_MAGIC = b"\x1f\x8b"
_ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
_TAR_MAGIC_OFFSET = 257


class ArchiveFormat(str, Enum):
    """Kinds of backup archive accepted by restore."""

    POSTGRES_DUMP = "postgres_dump"
    POSTGRES_DUMP_GZ = "postgres_dump_gz"
    POSTGRES_SQL = "postgres_sql"
    POSTGRES_SQL_GZ = "postgres_sql_gz"
    POSTGRES_SQL_ZST = "postgres_sql_zst"
    MYSQL_SQL = "mysql_sql"
    MYSQL_SQL_GZ = "mysql_sql_gz"
    MYSQL_SQL_ZST = "mysql_sql_zst"
    CLUSTER_TAR_GZ = "cluster_tar_gz"
    ENCRYPTED = "encrypted"
    UNKNOWN = "unknown"

    @property
    def is_compressed(self) -> bool:
        return self in (
            ArchiveFormat.POSTGRES_DUMP_GZ,
            ArchiveFormat.POSTGRES_SQL_GZ,
            ArchiveFormat.POSTGRES_SQL_ZST,
            ArchiveFormat.MYSQL_SQL_GZ,
            ArchiveFormat.MYSQL_SQL_ZST,
            ArchiveFormat.CLUSTER_TAR_GZ,
        )

    @property
    def is_cluster(self) -> bool:
        return self == ArchiveFormat.CLUSTER_TAR_GZ

    @property
    def is_custom_dump(self) -> bool:
        return self in (ArchiveFormat.POSTGRES_DUMP, ArchiveFormat.POSTGRES_DUMP_GZ)

    @property
    def is_mysql(self) -> bool:
        return self in (ArchiveFormat.MYSQL_SQL, ArchiveFormat.MYSQL_SQL_GZ, ArchiveFormat.MYSQL_SQL_ZST)


def _read_head(path: Path, size: int = HEADER_PEEK_SIZE) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read(size)
    except OSError:
        return b""


def _decompressed_head(path: Path, size: int = HEADER_PEEK_SIZE) -> bytes:
    """First bytes of a gzip or zstd file after decompression, or b""."""
    head = _read_head(path, 4)
    try:
        if head.startswith(_GZIP_MAGIC):
            with gzip.open(path, "rb") as f:
                return f.read(size)
        if head.startswith(_ZSTD_MAGIC):
            with open(path, "rb") as raw:
                with zstd.ZstdDecompressor().stream_reader(raw) as reader:
                    return reader.read(size)
    except (OSError, EOFError, zlib.error, zstd.ZstdError):
        return b""
    return b""


def _sql_format(mysql: bool, suffix: str) -> ArchiveFormat:
    if suffix == "gz":
        return ArchiveFormat.MYSQL_SQL_GZ if mysql else ArchiveFormat.POSTGRES_SQL_GZ
    if suffix == "zst":
        return ArchiveFormat.MYSQL_SQL_ZST if mysql else ArchiveFormat.POSTGRES_SQL_ZST
    return ArchiveFormat.MYSQL_SQL if mysql else ArchiveFormat.POSTGRES_SQL


def detect_archive_format(path: Path, engine_hint: EngineType | None = None) -> ArchiveFormat:
    """
    Detect what kind of archive a file is.

    Args:
        path: Archive file
        engine_hint: Engine from metadata or config, used to tell MySQL
            SQL from PostgreSQL SQL when the file name does not say

    Returns:
        The detected ArchiveFormat
    """
    head = _read_head(path)
    if head.startswith(MAGIC):
        return ArchiveFormat.ENCRYPTED

    lower = path.name.lower()
    mysql = "mysql" in lower or "mariadb" in lower or bool(
        engine_hint is not None and engine_hint.is_mysql_family
    )

    if lower.endswith((".tar.gz", ".tgz")):
        return ArchiveFormat.CLUSTER_TAR_GZ

    if lower.endswith(".dump.gz"):
        if _decompressed_head(path).startswith(PGDMP_SIGNATURE):
            return ArchiveFormat.POSTGRES_DUMP_GZ
        return ArchiveFormat.POSTGRES_SQL_GZ

    if lower.endswith(".dump"):
        if head.startswith(PGDMP_SIGNATURE):
            return ArchiveFormat.POSTGRES_DUMP
        # Custom dumps written with pipeline compression keep the .dump name
        if head.startswith((_GZIP_MAGIC, _ZSTD_MAGIC)):
            if _decompressed_head(path).startswith(PGDMP_SIGNATURE):
                return ArchiveFormat.POSTGRES_DUMP_GZ
            return _sql_format(False, "zst" if head.startswith(_ZSTD_MAGIC) else "gz")
        return ArchiveFormat.POSTGRES_SQL

    if lower.endswith(".sql.gz"):
        return _sql_format(mysql, "gz")
    if lower.endswith(".sql.zst"):
        return _sql_format(mysql, "zst")
    if lower.endswith(".sql"):
        return _sql_format(mysql, "")

    # Unrecognized name: fall back to content
    if head.startswith(PGDMP_SIGNATURE):
        return ArchiveFormat.POSTGRES_DUMP
    if head.startswith(_GZIP_MAGIC):
        inner = _decompressed_head(path)
        if inner.startswith(PGDMP_SIGNATURE):
            return ArchiveFormat.POSTGRES_DUMP_GZ
        if len(inner) > _TAR_MAGIC_OFFSET + 5 and inner[_TAR_MAGIC_OFFSET:_TAR_MAGIC_OFFSET + 5] == b"ustar":
            return ArchiveFormat.CLUSTER_TAR_GZ
        return _sql_format(mysql, "gz")
    if head.startswith(_ZSTD_MAGIC):
        return _sql_format(mysql, "zst")

    return ArchiveFormat.UNKNOWN


def validate_archive(path: Path, engine_hint: EngineType | None = None) -> ArchiveFormat:
    """
    Reject archives that cannot possibly restore.

    Checks: the file exists and is not empty, is at least 100 bytes, has a
    known format, compressed data opens, and custom dumps carry the PGDMP
    signature.

    Returns:
        The detected ArchiveFormat

    Raises:
        RestoreError: If the archive fails a check
    """
    try:
        size = path.stat().st_size
    except OSError as e:
        raise RestoreError(f"Archive not accessible: {e}", details={"path": str(path)}) from e

    if size == 0:
        raise RestoreError("Archive is empty", details={"path": str(path)})

    if size < MIN_ARCHIVE_SIZE:
        raise RestoreError(
            f"Archive is suspiciously small ({size} bytes)",
            details={"path": str(path), "size": size},
        )

    fmt = detect_archive_format(path, engine_hint)
    if fmt == ArchiveFormat.UNKNOWN:
        raise RestoreError(f"Unknown archive format: {path.name}", details={"path": str(path)})

    if fmt == ArchiveFormat.ENCRYPTED:
        # Content checks happen after decryption
        return fmt

    if fmt.is_compressed:
        inner = _decompressed_head(path)
        if not inner:
            raise RestoreError(
                f"Not a valid {fmt.value} archive: compressed data cannot be read",
                details={"path": str(path)},
            )
        if fmt == ArchiveFormat.POSTGRES_DUMP_GZ and not inner.startswith(PGDMP_SIGNATURE):
            raise RestoreError("Compressed dump is missing the PGDMP signature", details={"path": str(path)})
        if fmt.is_cluster and inner[_TAR_MAGIC_OFFSET:_TAR_MAGIC_OFFSET + 5] != b"ustar":
            raise RestoreError("Cluster archive does not contain a tar stream", details={"path": str(path)})

    if fmt == ArchiveFormat.POSTGRES_DUMP and not _read_head(path).startswith(PGDMP_SIGNATURE):
        raise RestoreError("Custom dump is missing the PGDMP signature", details={"path": str(path)})

    logger.debug("archive_validated", path=str(path), format=fmt.value, size=size)
    return fmt


def _extract_tar(tarball_path: Path, extract_to: Path) -> List[str]:
    extract_to.mkdir(parents=True, exist_ok=True)
    with tarfile.open(tarball_path, "r:*") as tar:
        members = tar.getmembers()
        # Security: Check for path traversal
        for member in members:
            if member.name.startswith("/") or ".." in member.name:
                raise RestoreError(
                    f"Unsafe path in archive: {member.name}",
                    details={"archive": str(tarball_path)},
                )
            if (member.issym() or member.islnk()) and (
                member.linkname.startswith("/") or ".." in member.linkname
            ):
                raise RestoreError(
                    f"Unsafe link in archive: {member.name} -> {member.linkname}",
                    details={"archive": str(tarball_path)},
                )
        tar.extractall(extract_to, members=members)
    return [m.name for m in members if m.isfile()]


async def extract_archive(tarball_path: Path, extract_to: Path) -> List[str]:
    """
    Extract a tar archive (plain or gzip) after checking every member path.

    Absolute paths, ".." components, and links escaping the target are
    rejected before anything is written.

    Returns:
        Names of the regular files extracted
    """
    loop = asyncio.get_running_loop()
    try:
        files = await loop.run_in_executor(_executor, _extract_tar, tarball_path, extract_to)
    except RestoreError:
        raise
    except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
        raise RestoreError(
            f"Failed to extract archive: {e}",
            details={"archive": str(tarball_path)},
        ) from e

    logger.debug("archive_extracted", archive=str(tarball_path), files=len(files))
    return files
