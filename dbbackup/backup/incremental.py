# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Incremental file-level backups of a physical data directory.

A base archive holds every file; each delta holds only the files modified
after its parent was created. Restoring applies base, then deltas, in order
into one target directory. Change detection is mtime based.
"""

import asyncio
import os
import stat
import tarfile
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import List

import structlog

from dbbackup.backup.formats import extract_archive
from dbbackup.backup.manager import (
    BackupResult,
    artifact_common_fields,
    encryption_key_for,
    track_backup,
    backup_workspace,
    backup_timestamp,
    publish_everywhere,
)
from dbbackup.config import BackupConfig, BackupScope, BackupType, CompressionAlgo, DumpFormat
from dbbackup.crypto import KeyMaterial
from dbbackup.exceptions import BackupError, ObjectNotFoundError, RestoreError
from dbbackup.metadata import BackupArtifact, load_artifact
from dbbackup.pipeline import iter_file, run_backup_pipeline, run_restore_to_file
from dbbackup.storage import ObjectStore

logger = structlog.get_logger()

_executor = ThreadPoolExecutor(max_workers=2)

# Runtime files that are regenerated on startup
_SKIP_NAMES = frozenset({"postmaster.pid", "postmaster.opts"})
_SKIP_SUFFIXES = (".tmp", ".lock")
_SKIP_DIRS = frozenset({"pg_wal", "pg_xlog", "pg_replslot"})

MAX_CHAIN_LENGTH = 1000


@dataclass
class ChangedFile:
    """A file selected for an incremental archive."""

    relative_path: str
    size: int
    modified: datetime


@dataclass
class ChainRestoreResult:
    """Result of applying an incremental chain."""

    target_dir: Path
    applied: List[str] = field(default_factory=list)
    files_written: int = 0
    duration_seconds: float = 0.0


def incremental_backup_name(label: str, backup_type: BackupType, ts: str) -> str:
    kind = "base" if backup_type == BackupType.INCREMENTAL_BASE else "delta"
    return f"incr_{label}_{kind}_{ts}.tar.gz"


def _should_skip(path: Path, mode: int) -> bool:
    if path.name in _SKIP_NAMES or path.name.endswith(_SKIP_SUFFIXES):
        return True
    if stat.S_ISSOCK(mode):
        return True
    return any(part in _SKIP_DIRS for part in path.parts)


def find_changed_files(data_dir: Path, since: datetime | None = None) -> List[ChangedFile]:
    """
    List regular files under data_dir modified after `since`.

    With since=None every file qualifies (a base archive).
    """
    cutoff = since.timestamp() if since is not None else None
    changed: List[ChangedFile] = []

    for root, dirs, files in os.walk(data_dir):
        dirs[:] = [d for d in dirs if d not in _SKIP_DIRS]
        for file_name in files:
            path = Path(root) / file_name
            try:
                st = path.lstat()
            except FileNotFoundError:
                # Removed while walking
                continue
            if not stat.S_ISREG(st.st_mode) or _should_skip(path.relative_to(data_dir), st.st_mode):
                continue
            if cutoff is not None and st.st_mtime <= cutoff:
                continue
            changed.append(
                ChangedFile(
                    relative_path=str(path.relative_to(data_dir)),
                    size=st.st_size,
                    modified=datetime.fromtimestamp(st.st_mtime, UTC),
                )
            )

    changed.sort(key=lambda f: f.relative_path)
    return changed


def _write_tar(data_dir: Path, files: List[ChangedFile], tar_path: Path) -> None:
    with tarfile.open(tar_path, "w") as tar:
        for item in files:
            tar.add(data_dir / item.relative_path, arcname=item.relative_path, recursive=False)


async def backup_incremental(
    config: BackupConfig,
    data_dir: Path,
    base_artifact: BackupArtifact | None = None,
    label: str | None = None,
    store: ObjectStore | None = None,
) -> BackupResult:
    """
    Archive a data directory as an incremental base or delta.

    Args:
        config: Backup configuration
        data_dir: Physical data directory to archive
        base_artifact: Parent artifact; None creates a new base
        label: Series name used in the archive name (defaults to the
            configured database or the directory name)
        store: Primary store (defaults to the local backup directory)

    Returns:
        BackupResult for the published archive

    Raises:
        BackupError: If data_dir is missing or the parent is not incremental
    """
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        raise BackupError(f"Data directory not found: {data_dir}", details={"data_dir": str(data_dir)})

    if base_artifact is not None and base_artifact.backup_type == BackupType.FULL:
        raise BackupError(
            f"{base_artifact.name} is not part of an incremental series",
            details={"backup_type": base_artifact.backup_type.value},
        )

    label = label or config.database or data_dir.name

    async def _work() -> BackupResult:
        return await _backup_incremental(config, data_dir, base_artifact, label, store)

    return await track_backup(config, "backup_incremental", label, _work, config.operation_timeout_minutes)


async def _backup_incremental(
    config: BackupConfig,
    data_dir: Path,
    base_artifact: BackupArtifact | None,
    label: str,
    store: ObjectStore | None,
) -> BackupResult:
    started = time.monotonic()
    now = datetime.now(UTC)
    backup_type = BackupType.INCREMENTAL_BASE if base_artifact is None else BackupType.INCREMENTAL_DELTA
    name = incremental_backup_name(label, backup_type, backup_timestamp(now))
    key = encryption_key_for(config)

    since = base_artifact.created_at if base_artifact is not None else None
    loop = asyncio.get_running_loop()
    changed = await loop.run_in_executor(_executor, find_changed_files, data_dir, since)
    total_size = sum(f.size for f in changed)

    if base_artifact is not None:
        chain = list(base_artifact.extra.get("backup_chain") or [base_artifact.name])
    else:
        chain = []
    chain.append(name)

    logger.info(
        "incremental_backup_started",
        name=name,
        backup_type=backup_type.value,
        parent=base_artifact.name if base_artifact else None,
        files=len(changed),
        total_size=total_size,
    )

    with backup_workspace(config) as workspace:
        tar_path = Path(workspace) / f"{name[:-len('.gz')]}"
        await loop.run_in_executor(_executor, _write_tar, data_dir, changed, tar_path)

        payload = Path(workspace) / name
        pipeline = await run_backup_pipeline(
            iter_file(tar_path, config.chunk_size),
            payload,
            CompressionAlgo.GZIP,
            config.compression_level,
            key,
            config.use_parallel_gzip,
        )
        tar_path.unlink()

        artifact = BackupArtifact(
            name=name,
            database=label,
            scope=BackupScope.INCREMENTAL,
            format=DumpFormat.TAR,
            created_at=now,
            databases=[label],
            backup_type=backup_type,
            parent_ref=base_artifact.name if base_artifact is not None else None,
            duration_seconds=time.monotonic() - started,
            extra={
                "backup_chain": chain,
                "incremental_files": len(changed),
                "total_size": total_size,
                "data_dir": str(data_dir),
                "base_created_at": since.isoformat() if since is not None else None,
            },
            **artifact_common_fields(config, pipeline, key, CompressionAlgo.GZIP),
        )
        locations, local_path = await publish_everywhere(config, payload, artifact, store)

    # Deltas depend on every older link, so the series is never swept by retention
    return BackupResult(
        artifact=artifact,
        local_path=local_path,
        locations=locations,
        pipeline=pipeline,
        duration_seconds=time.monotonic() - started,
    )


async def resolve_chain(store: ObjectStore, name: str) -> List[BackupArtifact]:
    """
    Follow parent_ref links from `name` back to its base.

    Returns:
        Artifacts ordered base first, `name` last

    Raises:
        RestoreError: If a link is missing or the chain loops
    """
    chain: List[BackupArtifact] = []
    seen = set()
    current: str | None = name

    while current is not None:
        if current in seen or len(chain) >= MAX_CHAIN_LENGTH:
            raise RestoreError(
                f"Backup chain for {name} loops at {current}",
                details={"chain": [a.name for a in chain]},
            )
        seen.add(current)

        artifact = await load_artifact(store, current)
        if artifact is None:
            raise RestoreError(
                f"Backup chain for {name} is broken: {current} not found in {store.location('')}",
                details={"missing": current, "chain": [a.name for a in chain]},
            )
        chain.append(artifact)
        current = artifact.parent_ref

    chain.reverse()
    if chain[0].backup_type == BackupType.INCREMENTAL_DELTA:
        raise RestoreError(
            f"Backup chain for {name} does not start with a base",
            details={"first": chain[0].name},
        )

    logger.info("backup_chain_resolved", name=name, chain=[a.name for a in chain])
    return chain


async def apply_incremental_chain(
    store: ObjectStore,
    chain: List[BackupArtifact],
    target_dir: Path,
    key: KeyMaterial | None = None,
    work_dir: Path | None = None,
    chunk_size: int = 4 * 1024 * 1024,
) -> ChainRestoreResult:
    """
    Extract each archive of a chain, in order, into target_dir.

    Later archives overwrite files from earlier ones. Each payload is
    verified against its recorded SHA-256 while it is staged.
    """
    started = time.monotonic()
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    result = ChainRestoreResult(target_dir=target_dir)

    with tempfile.TemporaryDirectory(dir=work_dir, prefix="dbbackup-chain-") as staging:
        for artifact in chain:
            tar_path = Path(staging) / f"{artifact.name}.tar"
            try:
                await run_restore_to_file(
                    store.open_read(artifact.name, chunk_size),
                    tar_path,
                    key=key,
                    expected_sha256=artifact.sha256 or None,
                    decompress=True,
                )
            except ObjectNotFoundError as e:
                raise RestoreError(
                    f"Chain payload missing: {artifact.name}",
                    details={"name": artifact.name},
                ) from e

            files = await extract_archive(tar_path, target_dir)
            tar_path.unlink()
            result.applied.append(artifact.name)
            result.files_written += len(files)
            logger.info("incremental_applied", name=artifact.name, files=len(files))

    result.duration_seconds = time.monotonic() - started
    logger.info(
        "incremental_chain_restored",
        target_dir=str(target_dir),
        applied=len(result.applied),
        files_written=result.files_written,
    )
    return result
