# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup orchestration tests.

These tests verify the backup guarantees:
1. Triple co-location - payload, .sha256 and .info land side by side and agree
2. Format selection - custom dumps below the size threshold, SQL otherwise
3. Encryption - encrypted payloads start with the magic and round-trip
4. Cluster archives - globals, manifest and one dump per database
5. Cancellation - nothing half-written is left in the backup directory
"""

import asyncio
import gzip
import hashlib
import json
import re
import tarfile
from pathlib import Path

import aiosqlite
import pytest

from dbbackup.audit import list_operations
from dbbackup.backup import backup_cluster, backup_sample, backup_single
from dbbackup.config import (
    BackupScope,
    CompressionAlgo,
    DumpFormat,
    EncryptionAlgo,
    EngineType,
    SampleStrategy,
)
from dbbackup.crypto import MAGIC, key_from_config
from dbbackup.engines import ToolProcess
from dbbackup.exceptions import BackupError, EncryptionError, EngineError, OperationTimeout
from dbbackup.metadata import parse_checksum_file, read_info_file
from dbbackup.metrics import session_metrics
from dbbackup.pipeline import iter_file, run_restore_to_file
from dbbackup.scheduling import process_registry, with_timeout
from dbbackup.storage.local import LocalStore

from tests.conftest import FakeEngine, custom_payload, s3_object_exists, sql_payload


def _sha256(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


# ============================================================================
# Test 1: TRIPLE CO-LOCATION
# ============================================================================

@pytest.mark.asyncio
async def test_single_backup_writes_triple_side_by_side(test_config, fake_engine, temp_dir: Path):
    """
    CRITICAL: The payload, its checksum and its metadata share a directory
    and agree on the SHA-256 of the bytes on disk.
    """
    result = await backup_single(test_config, "app", engine=fake_engine)

    backup_dir = temp_dir / "backups"
    payload = backup_dir / result.name
    assert re.match(r"^db_app_\d{8}_\d{6}\.dump$", result.name)
    assert result.local_path == payload
    assert payload.is_file()
    assert (backup_dir / f"{result.name}.sha256").is_file()
    assert (backup_dir / f"{result.name}.info").is_file()

    checksum = parse_checksum_file((backup_dir / f"{result.name}.sha256").read_text())
    info = json.loads((backup_dir / f"{result.name}.info").read_text())

    assert checksum == info["sha256"] == _sha256(payload)
    assert (backup_dir / f"{result.name}.sha256").read_text() == f"{checksum}  {result.name}\n"
    assert info["database"] == "app"
    assert info["scope"] == BackupScope.SINGLE.value
    assert info["format"] == DumpFormat.CUSTOM.value
    assert info["size_bytes"] == payload.stat().st_size
    assert "password" not in json.dumps(info)


@pytest.mark.asyncio
async def test_single_backup_payload_decompresses_to_dump(test_config, fake_engine, temp_dir: Path):
    result = await backup_single(test_config, "app", engine=fake_engine)

    payload = temp_dir / "backups" / result.name
    assert gzip.decompress(payload.read_bytes()) == custom_payload("app")


@pytest.mark.asyncio
async def test_no_partial_files_remain_after_backup(test_config, fake_engine, temp_dir: Path):
    await backup_single(test_config, "app", engine=fake_engine)

    names = [p.name for p in (temp_dir / "backups").iterdir()]
    assert not [n for n in names if n.startswith(".") or n.endswith(".partial")]
    assert not list((temp_dir / "tmp").glob("dbbackup-*"))


# ============================================================================
# Test 2: FORMAT SELECTION
# ============================================================================

@pytest.mark.asyncio
async def test_large_database_is_dumped_as_plain_sql(test_config, fake_engine):
    config = test_config.with_updates(large_db_threshold_bytes=10)

    result = await backup_single(config, "app", engine=fake_engine)

    assert result.name.endswith(".sql.gz")
    assert result.artifact.format == DumpFormat.PLAIN


@pytest.mark.asyncio
async def test_mysql_backup_is_plain_sql(test_config, temp_dir: Path):
    config = test_config.with_updates(engine=EngineType.MYSQL, user="root")
    engine = FakeEngine(temp_dir / "engine", databases={"shop": sql_payload("shop")})

    result = await backup_single(config, "shop", engine=engine)

    assert re.match(r"^db_shop_\d{8}_\d{6}\.sql\.gz$", result.name)
    assert result.artifact.engine == EngineType.MYSQL
    assert result.artifact.port == 3306


@pytest.mark.asyncio
async def test_zstd_compression_suffix(test_config, temp_dir: Path):
    config = test_config.with_updates(
        engine=EngineType.MYSQL,
        compression_algo=CompressionAlgo.ZSTD,
    )
    engine = FakeEngine(temp_dir / "engine", databases={"shop": sql_payload("shop")})

    result = await backup_single(config, "shop", engine=engine)

    assert result.name.endswith(".sql.zst")
    assert result.artifact.compression == CompressionAlgo.ZSTD


# ============================================================================
# Test 3: ENCRYPTION
# ============================================================================

@pytest.mark.asyncio
async def test_encrypted_backup_round_trip(test_config, fake_engine, key_file: Path, temp_dir: Path):
    config = test_config.with_updates(encrypt=True, encryption_key_file=key_file)

    result = await backup_single(config, "app", engine=fake_engine)

    payload = temp_dir / "backups" / result.name
    assert payload.read_bytes().startswith(MAGIC)
    assert result.artifact.encryption == EncryptionAlgo.AES_256_GCM
    assert result.artifact.is_encrypted

    restored = temp_dir / "restored.dump"
    await run_restore_to_file(
        iter_file(payload),
        restored,
        key=key_from_config(config),
        expected_sha256=result.artifact.sha256,
        decompress=True,
    )
    assert restored.read_bytes() == custom_payload("app")


@pytest.mark.asyncio
async def test_encrypt_without_key_fails_before_dumping(test_config, fake_engine):
    config = test_config.with_updates(encrypt=True)

    with pytest.raises(EncryptionError):
        await backup_single(config, "app", engine=fake_engine)

    assert ("dump", "app") not in fake_engine.events


# ============================================================================
# Test 4: SAMPLE BACKUPS
# ============================================================================

@pytest.mark.asyncio
async def test_sample_backup(test_config, fake_engine, temp_dir: Path):
    result = await backup_sample(test_config, "app", SampleStrategy.COUNT, 10, engine=fake_engine)

    assert result.name.startswith("sample_app_")
    assert result.artifact.scope == BackupScope.SAMPLE
    assert result.artifact.sample_strategy == SampleStrategy.COUNT
    assert result.artifact.sample_value == 10
    assert result.artifact.format == DumpFormat.PLAIN

    payload = temp_dir / "backups" / result.name
    text = gzip.decompress(payload.read_bytes()).decode()
    assert text.count("INSERT INTO items") == 10


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "strategy, value",
    [
        (SampleStrategy.PERCENT, 150),
        (SampleStrategy.RATIO, 0),
        (SampleStrategy.COUNT, -5),
    ],
)
async def test_sample_rejects_invalid_values(test_config, fake_engine, strategy, value):
    with pytest.raises(BackupError):
        await backup_sample(test_config, "app", strategy, value, engine=fake_engine)

    assert fake_engine.events == []


# ============================================================================
# Test 5: CLUSTER BACKUPS
# ============================================================================

@pytest.mark.asyncio
async def test_cluster_backup_contains_globals_manifest_and_dumps(test_config, fake_engine, temp_dir: Path):
    result = await backup_cluster(test_config, engine=fake_engine)

    assert re.match(r"^cluster_\d{8}_\d{6}\.tar\.gz$", result.name)
    assert result.artifact.scope == BackupScope.CLUSTER
    assert result.artifact.format == DumpFormat.TAR
    assert result.artifact.databases == ["app", "postgres"]

    # Globals are dumped before any database
    assert fake_engine.events[0] == ("dump_globals", "")

    extract = temp_dir / "extract"
    with tarfile.open(temp_dir / "backups" / result.name, "r:gz") as tar:
        names = sorted(tar.getnames())
        tar.extractall(extract)

    assert names == ["db_app.dump", "db_postgres.dump", "globals.sql", "metadata.json"]
    assert (extract / "db_app.dump").read_bytes() == custom_payload("app")
    assert (extract / "globals.sql").read_text() == fake_engine.globals_sql

    manifest = json.loads((extract / "metadata.json").read_text())
    assert manifest["globals"] == "globals.sql"
    assert list(manifest["databases"]) == ["app", "postgres"]
    assert manifest["databases"]["app"]["file"] == "db_app.dump"


@pytest.mark.asyncio
async def test_cluster_backup_fails_when_any_database_fails(test_config, temp_dir: Path):
    engine = FakeEngine(
        temp_dir / "engine",
        databases={"good": custom_payload("good"), "bad": custom_payload("bad")},
    )

    def _fail(database: str) -> None:
        if database == "bad":
            raise EngineError("pg_dump exited with code 1")

    engine.on_dump = _fail

    with pytest.raises(BackupError) as exc_info:
        await backup_cluster(test_config, engine=engine)

    assert "bad" in exc_info.value.details["database_errors"]
    backup_dir = temp_dir / "backups"
    assert not backup_dir.exists() or not list(backup_dir.iterdir())


@pytest.mark.asyncio
async def test_mysql_cluster_has_no_globals(test_config, temp_dir: Path):
    config = test_config.with_updates(engine=EngineType.MARIADB)
    engine = FakeEngine(temp_dir / "engine", databases={"shop": sql_payload("shop")})

    result = await backup_cluster(config, engine=engine)

    with tarfile.open(temp_dir / "backups" / result.name, "r:gz") as tar:
        names = sorted(tar.getnames())
    assert names == ["db_shop.sql.gz", "metadata.json"]
    assert ("dump_globals", "") not in engine.events


# ============================================================================
# Test 6: CANCELLATION
# ============================================================================

class SlowEngine(FakeEngine):
    """Dump tool that writes a little and then hangs."""

    async def start_dump(self, database, options):
        self.events.append(("dump", database))
        return await ToolProcess.start(["sh", "-c", "printf 'PGDMP partial'; sleep 30"])


@pytest.mark.asyncio
async def test_cancelled_backup_leaves_no_partial_files(test_config, temp_dir: Path):
    """
    CRITICAL: Cancelling mid-dump kills the tool and leaves no payload,
    partial file or workspace behind.
    """
    engine = SlowEngine(temp_dir / "engine", databases={"app": b""})

    task = asyncio.create_task(backup_single(test_config, "app", engine=engine))
    await asyncio.sleep(0.5)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    backup_dir = temp_dir / "backups"
    assert not backup_dir.exists() or not list(backup_dir.iterdir())
    assert not list((temp_dir / "tmp").glob("dbbackup-*"))
    assert process_registry.sweep() == []


@pytest.mark.asyncio
async def test_backup_timeout_is_reported_as_timeout(test_config, temp_dir: Path, monkeypatch):
    engine = SlowEngine(temp_dir / "engine", databases={"app": b""})
    monkeypatch.setattr(
        "dbbackup.backup.manager.with_timeout",
        _short_timeout,
    )

    with pytest.raises(OperationTimeout):
        await backup_single(test_config, "app", engine=engine)

    assert process_registry.sweep() == []


async def _short_timeout(awaitable, minutes, operation):
    return await with_timeout(awaitable, 0.01, operation)


# ============================================================================
# Test 7: METRICS, AUDIT AND CLOUD MIRROR
# ============================================================================

@pytest.mark.asyncio
async def test_backup_records_session_metrics(test_config, fake_engine):
    session_metrics.reset()

    result = await backup_single(test_config, "app", engine=fake_engine)

    snapshot = session_metrics.snapshot()
    assert snapshot["completed"] == 1
    assert snapshot["failed"] == 0
    assert snapshot["bytes_out"] == result.artifact.size_bytes
    assert snapshot["operations"][0]["operation"] == "backup_single"


@pytest.mark.asyncio
async def test_backup_is_journaled(test_config, fake_engine, temp_dir: Path):
    audit_db = temp_dir / "audit.db"
    config = test_config.with_updates(audit_db_path=audit_db)

    result = await backup_single(config, "app", engine=fake_engine)

    async with aiosqlite.connect(audit_db) as db:
        records = await list_operations(db, kind="backup")

    assert len(records) == 1
    assert records[0]["target"] == "app"
    assert records[0]["completed_at"] is not None
    assert records[0]["error"] is None
    assert records[0]["details"]["name"] == result.name


@pytest.mark.asyncio
async def test_backup_is_mirrored_to_s3(test_config, fake_engine, mock_s3_client, temp_dir: Path):
    config = test_config.with_updates(cloud_uri="s3://test-bucket/mirror")

    result = await backup_single(config, "app", engine=fake_engine)

    assert len(result.locations) == 2
    assert result.locations[1] == f"s3://test-bucket/mirror/{result.name}"
    for suffix in ("", ".sha256", ".info"):
        assert await s3_object_exists(mock_s3_client, "test-bucket", f"mirror/{result.name}{suffix}")


@pytest.mark.asyncio
async def test_backup_to_explicit_store(test_config, fake_engine, temp_dir: Path):
    async with LocalStore(temp_dir / "elsewhere") as store:
        result = await backup_single(test_config, "app", engine=fake_engine, store=store)
        artifact = await read_info_file(store, result.name)

    assert artifact.sha256 == result.artifact.sha256
    assert (temp_dir / "elsewhere" / result.name).is_file()
    assert not (temp_dir / "backups").exists()
