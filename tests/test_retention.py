# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Retention tests.

Retention deletes data, so these tests pin down exactly what goes:
1. Age cutoff - artifacts older than retention_days are removed as a triple
2. Minimum floor - the newest min_backups always survive
3. Dry run - reports the same set and deletes nothing
4. Journal - every deletion is recorded in the audit database
"""

import hashlib
import json
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import List

import aiosqlite
import pytest

from dbbackup.audit import get_retention_deletions, list_operations
from dbbackup.config import BackupScope, DumpFormat, EngineType
from dbbackup.exceptions import StorageError
from dbbackup.metadata import BackupArtifact, list_artifacts, publish_artifact
from dbbackup.retention import apply_retention, select_survivors
from dbbackup.storage.local import LocalStore

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)
AGES_DAYS = [45, 40, 35, 10, 2]


def _name(age_days: int) -> str:
    created = NOW - timedelta(days=age_days)
    return f"db_app_{created.strftime('%Y%m%d_%H%M%S')}.dump"


async def _publish(store, temp_dir: Path, age_days: int, size: int = 256) -> str:
    """Publish a small artifact whose metadata says it is age_days old."""
    name = _name(age_days)
    payload = temp_dir / f"payload-{age_days}"
    data = bytes([age_days % 256]) * size
    payload.write_bytes(data)
    artifact = BackupArtifact(
        name=name,
        database="app",
        engine=EngineType.POSTGRES,
        scope=BackupScope.SINGLE,
        format=DumpFormat.CUSTOM,
        created_at=NOW - timedelta(days=age_days),
        size_bytes=size,
        sha256=hashlib.sha256(data).hexdigest(),
    )
    await publish_artifact(store, payload, artifact)
    return name


async def _populate(store, temp_dir: Path, ages: List[int] = AGES_DAYS) -> dict:
    return {age: await _publish(store, temp_dir, age) for age in ages}


# ============================================================================
# Test 1: AGE CUTOFF
# ============================================================================

@pytest.mark.asyncio
async def test_retention_scenario_local(local_store: LocalStore, temp_dir: Path):
    """
    CRITICAL: With ages 45/40/35/10/2 days, retention 30 and min 2, the
    three old artifacts are removed as whole triples.
    """
    names = await _populate(local_store, temp_dir)

    result = await apply_retention(local_store, retention_days=30, min_backups=2, now=NOW)

    assert sorted(result.deleted) == sorted(names[a] for a in (45, 40, 35))
    assert result.kept == [names[2], names[10]]
    assert result.failed == []
    assert result.bytes_freed == 3 * 256

    remaining = sorted(p.name for p in local_store.root.iterdir())
    expected = sorted(f"{names[a]}{s}" for a in (10, 2) for s in ("", ".sha256", ".info"))
    assert remaining == expected


@pytest.mark.asyncio
async def test_retention_scenario_s3(s3_store, mock_s3_client, temp_dir: Path):
    names = await _populate(s3_store, temp_dir)

    result = await apply_retention(s3_store, retention_days=30, min_backups=2, now=NOW)

    assert sorted(result.deleted) == sorted(names[a] for a in (45, 40, 35))

    response = await mock_s3_client.list_objects_v2(Bucket="test-bucket", Prefix="backups/")
    keys = sorted(obj["Key"] for obj in response.get("Contents", []))
    expected = sorted(f"backups/{names[a]}{s}" for a in (10, 2) for s in ("", ".sha256", ".info"))
    assert keys == expected


# ============================================================================
# Test 2: MINIMUM FLOOR
# ============================================================================

@pytest.mark.asyncio
async def test_min_backups_floor_keeps_old_artifacts(local_store: LocalStore, temp_dir: Path):
    names = await _populate(local_store, temp_dir)

    result = await apply_retention(local_store, retention_days=30, min_backups=4, now=NOW)

    assert result.deleted == [names[45]]
    assert len(result.kept) == 4


@pytest.mark.asyncio
async def test_everything_old_still_keeps_min_backups(local_store: LocalStore, temp_dir: Path):
    names = await _populate(local_store, temp_dir, [90, 80, 70])

    result = await apply_retention(local_store, retention_days=7, min_backups=1, now=NOW)

    assert result.kept == [names[70]]
    assert sorted(result.deleted) == sorted([names[90], names[80]])


def test_select_survivors_orders_newest_first():
    from dbbackup.metadata import ArtifactEntry

    entries = [
        ArtifactEntry(name=f"b{age}", size=1, modified=NOW - timedelta(days=age))
        for age in (5, 50, 1)
    ]

    keep, remove = select_survivors(entries, retention_days=30, min_backups=0, now=NOW)

    assert [e.name for e in keep] == ["b1", "b5"]
    assert [e.name for e in remove] == ["b50"]


# ============================================================================
# Test 3: DRY RUN AND FILTERS
# ============================================================================

@pytest.mark.asyncio
async def test_dry_run_deletes_nothing(local_store: LocalStore, temp_dir: Path):
    names = await _populate(local_store, temp_dir)
    before = sorted(p.name for p in local_store.root.iterdir())

    result = await apply_retention(local_store, retention_days=30, min_backups=2, dry_run=True, now=NOW)

    assert result.dry_run
    assert sorted(result.deleted) == sorted(names[a] for a in (45, 40, 35))
    assert sorted(p.name for p in local_store.root.iterdir()) == before


@pytest.mark.asyncio
async def test_prefix_and_match_limit_the_series(local_store: LocalStore, temp_dir: Path):
    await _populate(local_store, temp_dir, [45])
    other = temp_dir / "other.dump"
    other.write_bytes(b"x" * 200)
    old = NOW - timedelta(days=60)
    await publish_artifact(
        local_store,
        other,
        BackupArtifact(
            name="db_app_archive_20250101_000000.dump",
            database="app_archive",
            engine=EngineType.POSTGRES,
            scope=BackupScope.SINGLE,
            format=DumpFormat.CUSTOM,
            created_at=old,
            size_bytes=200,
            sha256=hashlib.sha256(b"x" * 200).hexdigest(),
        ),
    )

    result = await apply_retention(
        local_store,
        prefix="db_app_",
        retention_days=30,
        min_backups=0,
        now=NOW,
        match=lambda name: not name.startswith("db_app_archive_"),
    )

    assert result.deleted == [_name(45)]
    assert await local_store.exists("db_app_archive_20250101_000000.dump")


@pytest.mark.asyncio
async def test_legacy_metadata_is_deleted_with_payload(local_store: LocalStore, temp_dir: Path):
    created = NOW - timedelta(days=90)
    name = "db_legacy_20251201_000000.dump"
    await local_store.put_bytes(name, b"PGDMP" + b"\x00" * 200)
    await local_store.put_bytes(
        f"{name}.meta.json",
        json.dumps({"version": "1.0", "timestamp": created.isoformat(), "database": "legacy"}).encode(),
    )

    result = await apply_retention(local_store, retention_days=30, min_backups=0, now=NOW)

    assert result.deleted == [name]
    assert list(local_store.root.iterdir()) == []


@pytest.mark.asyncio
async def test_retention_continues_after_delete_failure(local_store: LocalStore, temp_dir: Path, monkeypatch):
    names = await _populate(local_store, temp_dir)
    real_delete = local_store.delete

    async def flaky_delete(name: str) -> None:
        if name.startswith(names[40]):
            raise StorageError("simulated permission error")
        await real_delete(name)

    monkeypatch.setattr(local_store, "delete", flaky_delete)

    result = await apply_retention(local_store, retention_days=30, min_backups=2, now=NOW)

    assert result.failed == [names[40]]
    assert sorted(result.deleted) == sorted([names[45], names[35]])
    assert len(result.errors) == 1


# ============================================================================
# Test 4: AUDIT JOURNAL
# ============================================================================

@pytest.mark.asyncio
async def test_retention_deletions_are_journaled(local_store: LocalStore, temp_dir: Path):
    await _populate(local_store, temp_dir)
    audit_db = temp_dir / "audit.db"

    result = await apply_retention(
        local_store, retention_days=30, min_backups=2, now=NOW, audit_db=audit_db
    )

    assert result.operation_id is not None
    async with aiosqlite.connect(audit_db) as db:
        deletions = await get_retention_deletions(db, result.operation_id)
        operations = await list_operations(db, kind="retention")

    assert sorted(d["name"] for d in deletions) == sorted(result.deleted)
    assert all(not d["dry_run"] for d in deletions)
    assert operations[0]["details"]["deleted"] == 3
    assert operations[0]["completed_at"] is not None


@pytest.mark.asyncio
async def test_list_artifacts_skips_sidecars(local_store: LocalStore, temp_dir: Path):
    names = await _populate(local_store, temp_dir, [10, 2])

    entries = await list_artifacts(local_store)

    assert sorted(e.name for e in entries) == sorted(names.values())
    assert all(e.artifact is not None for e in entries)
