# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Retention - Age-based cleanup with a minimum-count floor.

The newest max(min_backups, count newer than retention_days) artifacts are
kept; everything older is deleted as a unit: B.info, B.sha256, the payload B,
and the legacy B.meta.json when present. A failure on one artifact is logged
and counted, and the sweep continues.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Callable, List

import structlog

from dbbackup.exceptions import ObjectNotFoundError, StorageError
from dbbackup.metadata import (
    ArtifactEntry,
    checksum_name,
    info_name,
    legacy_meta_name,
    list_artifacts,
)
from dbbackup.storage import ObjectStore

logger = structlog.get_logger()


@dataclass
class RetentionResult:
    """Result of one retention sweep."""

    kept: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    bytes_freed: int = 0
    dry_run: bool = False
    errors: List[str] = field(default_factory=list)
    operation_id: str | None = None


def _entry_time(entry: ArtifactEntry, now: datetime) -> datetime:
    # Entries with no metadata and no mtime are treated as brand new
    created = entry.created_at
    if created is None:
        return now
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return created


def select_survivors(
    entries: List[ArtifactEntry],
    retention_days: int,
    min_backups: int,
    now: datetime | None = None,
) -> tuple:
    """
    Split entries into (keep, delete), both newest first.

    Args:
        entries: Artifacts in the store
        retention_days: Age limit in days
        min_backups: Minimum number of artifacts always kept
        now: Reference time (defaults to the current UTC time)

    Returns:
        Tuple of (kept entries, entries to delete)
    """
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=retention_days)

    ordered = sorted(entries, key=lambda e: _entry_time(e, now), reverse=True)
    newer = sum(1 for e in ordered if _entry_time(e, now) >= cutoff)
    keep_count = max(min_backups, newer)

    return ordered[:keep_count], ordered[keep_count:]


async def delete_artifact(store: ObjectStore, name: str) -> None:
    """
    Delete an artifact's triple, metadata first.

    Missing sidecars are skipped. Other storage errors propagate.
    """
    for item in (info_name(name), checksum_name(name), name, legacy_meta_name(name)):
        try:
            await store.delete(item)
        except ObjectNotFoundError:
            continue


async def apply_retention(
    store: ObjectStore,
    prefix: str = "",
    retention_days: int = 30,
    min_backups: int = 5,
    dry_run: bool = False,
    audit_db: Path | None = None,
    now: datetime | None = None,
    match: Callable[[str], bool] | None = None,
) -> RetentionResult:
    """
    Apply the retention policy to one store.

    Args:
        store: Store holding the artifacts
        prefix: Only artifacts whose names start with this are considered
        retention_days: Age limit in days
        min_backups: Minimum number of artifacts always kept
        dry_run: Report the deletion set without deleting
        audit_db: Optional audit journal path
        now: Reference time (defaults to the current UTC time)
        match: Optional name filter applied after the prefix

    Returns:
        RetentionResult with kept, deleted, and failed names
    """
    now = now or datetime.now(UTC)
    entries = await list_artifacts(store, prefix)
    if match is not None:
        entries = [e for e in entries if match(e.name)]
    keep, remove = select_survivors(entries, retention_days, min_backups, now)

    logger.info(
        "retention_started",
        store=store.location(prefix),
        total=len(entries),
        keep=len(keep),
        remove=len(remove),
        dry_run=dry_run,
    )

    result = RetentionResult(kept=[e.name for e in keep], dry_run=dry_run)

    if audit_db is None:
        await _sweep(store, remove, result, now, dry_run)
    else:
        from dbbackup.audit import audit_operation

        async with audit_operation(
            audit_db,
            "retention",
            store.location(prefix),
            {"retention_days": retention_days, "min_backups": min_backups, "dry_run": dry_run},
        ) as handle:
            result.operation_id = handle.operation_id
            await _sweep(store, remove, result, now, dry_run, handle)
            handle.details.update(
                deleted=len(result.deleted),
                failed=len(result.failed),
                bytes_freed=result.bytes_freed,
            )

    logger.info(
        "retention_complete",
        store=store.location(prefix),
        kept=len(result.kept),
        deleted=len(result.deleted),
        failed=len(result.failed),
        bytes_freed=result.bytes_freed,
        dry_run=dry_run,
    )
    return result


async def _sweep(
    store: ObjectStore,
    remove: List[ArtifactEntry],
    result: RetentionResult,
    now: datetime,
    dry_run: bool,
    handle=None,
) -> None:
    for entry in remove:
        created = _entry_time(entry, now)
        age_days = round((now - created).total_seconds() / 86400, 1)

        if handle is not None:
            from dbbackup.audit import record_retention_deletion

            await record_retention_deletion(
                handle.db,
                handle.operation_id,
                entry.name,
                store.location(entry.name),
                entry.size,
                created,
                dry_run,
            )

        if not dry_run:
            try:
                await delete_artifact(store, entry.name)
            except StorageError as e:
                result.failed.append(entry.name)
                result.errors.append(f"{entry.name}: {e}")
                logger.warning("retention_delete_failed", name=entry.name, error=str(e))
                continue

        result.deleted.append(entry.name)
        result.bytes_freed += entry.size
        logger.info(
            "retention_artifact_deleted",
            name=entry.name,
            age_days=age_days,
            size_bytes=entry.size,
            dry_run=dry_run,
        )
