# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Metadata - Backup artifacts and their sidecar files.

Every payload B is published as a triple in one store:

    B           the payload
    B.sha256    "<hex>  B\\n" (sha256sum format)
    B.info      JSON document of the BackupArtifact

The triple is written payload first, then checksum, then metadata, so a
reader that sees B.info can rely on the other two.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List

import aiofiles
import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from dbbackup.config import (
    BackupScope,
    BackupType,
    CompressionAlgo,
    DumpFormat,
    EncryptionAlgo,
    EngineType,
    SampleStrategy,
)
from dbbackup.exceptions import IntegrityError, ObjectNotFoundError, StorageError
from dbbackup.storage import ObjectInfo, ObjectStore, ProgressCallback

logger = structlog.get_logger()

METADATA_VERSION = "2.0"

CHECKSUM_SUFFIX = ".sha256"
INFO_SUFFIX = ".info"
LEGACY_META_SUFFIX = ".meta.json"
SIDECAR_SUFFIXES = (CHECKSUM_SUFFIX, INFO_SUFFIX, LEGACY_META_SUFFIX)

HASH_CHUNK_SIZE = 1024 * 1024


class BackupArtifact(BaseModel):
    """One atomic backup output, serialized to B.info."""

    model_config = ConfigDict(frozen=True)

    version: str = METADATA_VERSION
    name: str
    database: str
    engine: EngineType
    scope: BackupScope
    format: DumpFormat
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    size_bytes: int = 0  # On disk, ciphertext when encrypted
    size_bytes_plaintext: int = 0
    sha256: str = ""  # Of the bytes on disk

    compression: CompressionAlgo = CompressionAlgo.GZIP
    compression_level: int = 6
    encryption: EncryptionAlgo = EncryptionAlgo.NONE
    encryption_header_offset: int = 0

    databases: List[str] = Field(default_factory=list)
    backup_type: BackupType = BackupType.FULL
    parent_ref: str | None = None
    tool_version: str | None = None
    server_version: str | None = None  # "major.minor" of the source server

    # Connection context; the password is never stored
    host: str | None = None
    port: int | None = None
    user: str | None = None

    sample_strategy: SampleStrategy | None = None
    sample_value: float | None = None

    duration_seconds: float = 0.0
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("sha256")
    @classmethod
    def _check_sha256(cls, value: str) -> str:
        value = value.strip().lower()
        if value and (len(value) != 64 or any(c not in "0123456789abcdef" for c in value)):
            raise ValueError(f"sha256 must be 64 hex characters, got {value!r}")
        return value

    @field_validator("created_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @property
    def is_encrypted(self) -> bool:
        return self.encryption != EncryptionAlgo.NONE

    @property
    def checksum_name(self) -> str:
        return checksum_name(self.name)

    @property
    def info_name(self) -> str:
        return info_name(self.name)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, text: str | bytes) -> "BackupArtifact":
        return cls.model_validate_json(text)


def checksum_name(name: str) -> str:
    return name + CHECKSUM_SUFFIX


def info_name(name: str) -> str:
    return name + INFO_SUFFIX


def legacy_meta_name(name: str) -> str:
    return name + LEGACY_META_SUFFIX


def is_sidecar(name: str) -> bool:
    return name.endswith(SIDECAR_SUFFIXES)


def format_checksum_line(hex_digest: str, name: str) -> str:
    """Render one line in sha256sum format."""
    return f"{hex_digest}  {name}\n"


def parse_checksum_file(text: str) -> str:
    """
    Extract the hex digest from a sha256sum-format file.

    Raises:
        IntegrityError: If the file holds no valid digest
    """
    token = text.strip().split(maxsplit=1)[0].lower() if text.strip() else ""
    if len(token) != 64 or any(c not in "0123456789abcdef" for c in token):
        raise IntegrityError("Checksum file does not contain a valid SHA-256 digest")
    return token


async def sha256_file(path: Path) -> str:
    """Stream a local file through SHA-256."""
    hasher = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(HASH_CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


async def sha256_stream(source: AsyncIterator[bytes]) -> tuple:
    """Hash an async byte stream. Returns (hex_digest, byte_count)."""
    hasher = hashlib.sha256()
    count = 0
    async for chunk in source:
        hasher.update(chunk)
        count += len(chunk)
    return hasher.hexdigest(), count


async def write_checksum_file(store: ObjectStore, name: str, hex_digest: str) -> None:
    await store.put_bytes(checksum_name(name), format_checksum_line(hex_digest, name).encode("utf-8"))


async def write_info_file(store: ObjectStore, artifact: BackupArtifact) -> None:
    await store.put_bytes(info_name(artifact.name), artifact.to_json().encode("utf-8"))


async def read_checksum_file(store: ObjectStore, name: str) -> str:
    data = await store.get_bytes(checksum_name(name))
    return parse_checksum_file(data.decode("utf-8", "replace"))


async def read_info_file(store: ObjectStore, name: str) -> BackupArtifact:
    """
    Read and validate B.info.

    Raises:
        ObjectNotFoundError: If the metadata file is missing
        StorageError: If the document is not a valid BackupArtifact
    """
    data = await store.get_bytes(info_name(name))
    try:
        return BackupArtifact.from_json(data)
    except ValueError as e:
        raise StorageError(
            f"Invalid metadata document for {name}: {e}",
            details={"name": name},
        ) from e


def _legacy_format(name: str) -> DumpFormat:
    if name.endswith((".tar.gz", ".tar")):
        return DumpFormat.TAR
    if name.endswith(".dump"):
        return DumpFormat.CUSTOM
    return DumpFormat.PLAIN


async def load_legacy_metadata(store: ObjectStore, name: str) -> BackupArtifact | None:
    """
    Read the historical B.meta.json document and convert it to an artifact.

    Returns:
        BackupArtifact, or None when no legacy document exists
    """
    try:
        data = await store.get_bytes(legacy_meta_name(name))
    except ObjectNotFoundError:
        return None

    try:
        raw = json.loads(data)
    except json.JSONDecodeError as e:
        logger.warning("legacy_metadata_invalid", name=name, error=str(e))
        return None

    engine_name = str(raw.get("database_type") or "postgres").lower()
    if engine_name.startswith("postgres"):
        engine = EngineType.POSTGRES
    elif engine_name == "mariadb":
        engine = EngineType.MARIADB
    else:
        engine = EngineType.MYSQL

    compression_name = str(raw.get("compression") or "gzip").lower()
    compression = CompressionAlgo.NONE if compression_name == "none" else CompressionAlgo.GZIP

    base_backup = raw.get("base_backup") or None
    if raw.get("backup_type") == "incremental":
        backup_type = BackupType.INCREMENTAL_DELTA if base_backup else BackupType.INCREMENTAL_BASE
    else:
        backup_type = BackupType.FULL

    databases = [d.get("database") for d in raw.get("databases", []) if isinstance(d, dict)]
    scope = BackupScope.CLUSTER if name.startswith("cluster_") else BackupScope.SINGLE

    return BackupArtifact(
        version=str(raw.get("version") or "1.0"),
        name=name,
        database=raw.get("database") or raw.get("cluster_name") or "",
        engine=engine,
        scope=scope,
        format=_legacy_format(name),
        created_at=raw.get("timestamp") or datetime.now(UTC),
        size_bytes=int(raw.get("size_bytes") or raw.get("total_size_bytes") or 0),
        sha256=raw.get("sha256") or "",
        compression=compression,
        databases=[d for d in databases if d],
        backup_type=backup_type,
        parent_ref=base_backup,
        tool_version=raw.get("database_version"),
        host=raw.get("host"),
        port=raw.get("port"),
        user=raw.get("user"),
        duration_seconds=float(raw.get("duration_seconds") or 0.0),
        extra=dict(raw.get("extra_info") or {}),
    )


async def load_artifact(store: ObjectStore, name: str) -> BackupArtifact | None:
    """B.info, falling back to the legacy B.meta.json; None if neither exists."""
    try:
        return await read_info_file(store, name)
    except ObjectNotFoundError:
        return await load_legacy_metadata(store, name)


async def publish_artifact(
    store: ObjectStore,
    local_payload: Path,
    artifact: BackupArtifact,
    progress: ProgressCallback | None = None,
) -> str:
    """
    Publish payload, checksum and metadata to one store.

    If the sidecars cannot be written, the payload is removed again so no
    partial triple is left behind.

    Args:
        store: Destination store (the same handle is used for all three)
        local_payload: Finished payload file
        artifact: Metadata describing the payload; its sha256 is recorded
        progress: Optional upload progress callback

    Returns:
        Location of the published payload
    """
    written: List[str] = []
    try:
        await store.put(
            artifact.name,
            local_payload,
            size_hint=artifact.size_bytes or None,
            metadata={"sha256": artifact.sha256},
            progress=progress,
        )
        written.append(artifact.name)

        await write_checksum_file(store, artifact.name, artifact.sha256)
        written.append(checksum_name(artifact.name))

        await write_info_file(store, artifact)
        written.append(info_name(artifact.name))
    except BaseException:
        for name in reversed(written):
            try:
                await store.delete(name)
            except (StorageError, OSError) as cleanup_error:
                logger.warning(
                    "partial_artifact_cleanup_failed",
                    name=name,
                    error=str(cleanup_error),
                )
        raise

    location = store.location(artifact.name)
    logger.info(
        "artifact_published",
        location=location,
        size_bytes=artifact.size_bytes,
        sha256=artifact.sha256,
        encrypted=artifact.is_encrypted,
    )
    return location


@dataclass
class VerifyResult:
    """Outcome of verifying one artifact."""

    name: str
    valid: bool
    actual_sha256: str
    expected_sha256: str | None = None
    info_sha256: str | None = None
    size_bytes: int = 0
    errors: List[str] = field(default_factory=list)


async def verify_artifact(store: ObjectStore, name: str) -> VerifyResult:
    """
    Recompute a payload's SHA-256 and compare it with its sidecars.

    Raises:
        IntegrityError: If the payload disagrees with .sha256 or .info
        ObjectNotFoundError: If the payload does not exist
    """
    actual, size = await sha256_stream(store.open_read(name))

    expected: str | None = None
    try:
        expected = await read_checksum_file(store, name)
    except ObjectNotFoundError:
        pass

    artifact = await load_artifact(store, name)
    info_digest = artifact.sha256 if artifact is not None and artifact.sha256 else None

    result = VerifyResult(
        name=name,
        valid=True,
        actual_sha256=actual,
        expected_sha256=expected,
        info_sha256=info_digest,
        size_bytes=size,
    )

    if expected is None and info_digest is None:
        result.valid = False
        result.errors.append("No checksum recorded for this artifact")
        logger.warning("artifact_unverifiable", name=name)
        return result

    for label, digest in ((CHECKSUM_SUFFIX, expected), (INFO_SUFFIX, info_digest)):
        if digest is not None and digest != actual:
            logger.error("artifact_checksum_mismatch", name=name, source=label, expected=digest, actual=actual)
            raise IntegrityError(
                f"Checksum mismatch for {name}",
                details={"source": label, "expected": digest, "actual": actual},
            )

    logger.info("artifact_verified", name=name, sha256=actual, size_bytes=size)
    return result


@dataclass
class ArtifactEntry:
    """A payload object together with its metadata, if any."""

    name: str
    size: int
    modified: datetime | None
    artifact: BackupArtifact | None = None

    @property
    def created_at(self) -> datetime | None:
        if self.artifact is not None:
            return self.artifact.created_at
        return self.modified


async def list_artifacts(store: ObjectStore, prefix: str = "") -> List[ArtifactEntry]:
    """
    List payloads (not sidecars) in a store with their metadata.

    Metadata comes from B.info, then the legacy B.meta.json. Entries without
    either keep artifact=None and fall back to the object mtime.
    """
    objects: Dict[str, ObjectInfo] = {}
    async for info in store.list(prefix):
        objects[info.name] = info

    entries: List[ArtifactEntry] = []
    for name, info in objects.items():
        if is_sidecar(name):
            continue

        artifact: BackupArtifact | None = None
        try:
            if info_name(name) in objects:
                artifact = await read_info_file(store, name)
            elif legacy_meta_name(name) in objects:
                artifact = await load_legacy_metadata(store, name)
        except StorageError as e:
            logger.warning("artifact_metadata_unreadable", name=name, error=str(e))

        entries.append(
            ArtifactEntry(name=name, size=info.size, modified=info.modified, artifact=artifact)
        )

    return entries


def format_size(num_bytes: int) -> str:
    """Human-readable binary size, e.g. 1536 -> '1.5 KiB'."""
    unit = 1024
    if num_bytes < unit:
        return f"{num_bytes} B"
    div, exp = unit, 0
    n = num_bytes // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{num_bytes / div:.1f} {'KMGTPE'[exp]}iB"
