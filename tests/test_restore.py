# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore tests.

These tests verify the restore guarantees:
1. Round trip - what was dumped is exactly what the restore tool receives
2. Integrity - tampered payloads and wrong keys never reach the database
3. Cluster ordering - globals first, then terminate/drop/create/restore
4. Large objects - any large object forces a sequential restore
5. Diagnostics - ignorable lines pass, CRITICAL fails one database,
   FATAL stops everything
6. Incremental chains - base plus deltas rebuild a directory
7. Versions - older or much newer target servers only warn
"""

import asyncio
import os
import time
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from dbbackup.backup import (
    backup_cluster,
    backup_incremental,
    backup_single,
    restore_cluster,
    restore_single,
)
from dbbackup.backup.restore import check_version_compatible, source_server_version
from dbbackup.config import EngineType
from dbbackup.engines import ToolProcess
from dbbackup.exceptions import FatalError, IntegrityError, RestoreError
from dbbackup.scheduling import process_registry

from tests.conftest import FakeEngine, custom_payload, sql_payload


async def _cluster_archive(config, temp_dir: Path, databases=None) -> Path:
    """Take a cluster backup and return the archive path."""
    engine = FakeEngine(
        temp_dir / "source-engine",
        databases=databases or {"app": custom_payload("app"), "postgres": custom_payload("postgres", rows=20)},
    )
    result = await backup_cluster(config, engine=engine)
    return result.local_path


# ============================================================================
# Test 1: SINGLE DATABASE ROUND TRIP
# ============================================================================

@pytest.mark.asyncio
async def test_single_restore_round_trip(test_config, fake_engine):
    backup = await backup_single(test_config, "app", engine=fake_engine)

    result = await restore_single(test_config, backup.local_path, engine=fake_engine)

    assert result.success
    assert result.database == "app"
    assert fake_engine.restored("app") == custom_payload("app")
    assert result.report.ignorable == 0
    assert not result.created


@pytest.mark.asyncio
async def test_plain_sql_restore_streams_into_client(test_config, temp_dir: Path):
    config = test_config.with_updates(engine=EngineType.MYSQL)
    engine = FakeEngine(temp_dir / "engine", databases={"shop": sql_payload("shop")})
    backup = await backup_single(config, "shop", engine=engine)

    result = await restore_single(config, backup.local_path, engine=engine)

    assert result.success
    assert engine.restore_options["shop"].format.value == "plain"
    assert engine.restored("shop") == sql_payload("shop")


@pytest.mark.asyncio
async def test_restore_into_missing_database_requires_create(test_config, fake_engine):
    backup = await backup_single(test_config, "app", engine=fake_engine)

    with pytest.raises(RestoreError):
        await restore_single(test_config, backup.local_path, target_db="copy", engine=fake_engine)

    assert ("restore", "copy") not in fake_engine.events


@pytest.mark.asyncio
async def test_restore_with_create(test_config, fake_engine):
    backup = await backup_single(test_config, "app", engine=fake_engine)

    result = await restore_single(test_config, backup.local_path, target_db="copy", create=True, engine=fake_engine)

    assert result.created
    assert fake_engine.steps_for("copy") == ["create", "restore"]
    assert fake_engine.restored("copy") == custom_payload("app")


@pytest.mark.asyncio
async def test_non_superuser_restore_skips_ownership(test_config, temp_dir: Path):
    engine = FakeEngine(temp_dir / "engine", databases={"app": custom_payload("app")}, superuser=False)
    backup = await backup_single(test_config, "app", engine=engine)

    await restore_single(test_config, backup.local_path, engine=engine)

    options = engine.restore_options["app"]
    assert options.no_owner
    assert options.no_privileges


@pytest.mark.asyncio
async def test_cluster_archive_rejected_by_single_restore(test_config, temp_dir: Path):
    archive = await _cluster_archive(test_config, temp_dir)

    with pytest.raises(RestoreError):
        await restore_single(test_config, archive, target_db="app", engine=FakeEngine(temp_dir / "other"))


# ============================================================================
# Test 2: INTEGRITY
# ============================================================================

@pytest.mark.asyncio
async def test_tampered_payload_is_rejected(test_config, fake_engine):
    """
    CRITICAL: A payload that no longer matches its recorded checksum must
    never reach the restore tool.
    """
    backup = await backup_single(test_config, "app", engine=fake_engine)
    data = bytearray(backup.local_path.read_bytes())
    data[-1] ^= 0xFF
    backup.local_path.write_bytes(bytes(data))

    with pytest.raises(IntegrityError):
        await restore_single(test_config, backup.local_path, engine=fake_engine)

    assert ("restore", "app") not in fake_engine.events


@pytest.mark.asyncio
async def test_encrypted_restore_without_key(test_config, fake_engine, key_file: Path):
    encrypted = test_config.with_updates(encrypt=True, encryption_key_file=key_file)
    backup = await backup_single(encrypted, "app", engine=fake_engine)

    with pytest.raises(IntegrityError):
        await restore_single(test_config, backup.local_path, engine=fake_engine)

    assert ("restore", "app") not in fake_engine.events


@pytest.mark.asyncio
async def test_encrypted_restore_with_wrong_key(test_config, fake_engine, key_file: Path, temp_dir: Path):
    encrypted = test_config.with_updates(encrypt=True, encryption_key_file=key_file)
    backup = await backup_single(encrypted, "app", engine=fake_engine)

    wrong_key = temp_dir / "wrong.key"
    wrong_key.write_bytes(bytes(32))
    with pytest.raises(IntegrityError):
        await restore_single(
            test_config.with_updates(encryption_key_file=wrong_key),
            backup.local_path,
            engine=fake_engine,
        )

    assert ("restore", "app") not in fake_engine.events


@pytest.mark.asyncio
async def test_encrypted_restore_with_right_key(test_config, fake_engine, key_file: Path):
    encrypted = test_config.with_updates(encrypt=True, encryption_key_file=key_file)
    backup = await backup_single(encrypted, "app", engine=fake_engine)

    result = await restore_single(encrypted, backup.local_path, engine=fake_engine)

    assert result.success
    assert fake_engine.restored("app") == custom_payload("app")


@pytest.mark.asyncio
async def test_cross_family_restore_is_refused(test_config, fake_engine):
    backup = await backup_single(test_config, "app", engine=fake_engine)

    with pytest.raises(RestoreError):
        await restore_single(
            test_config.with_updates(engine=EngineType.MYSQL),
            backup.local_path,
            engine=fake_engine,
        )


@pytest.mark.asyncio
async def test_mysql_backup_restores_into_mariadb(test_config, temp_dir: Path):
    engine = FakeEngine(temp_dir / "engine", databases={"shop": sql_payload("shop")})
    backup = await backup_single(test_config.with_updates(engine=EngineType.MYSQL), "shop", engine=engine)

    result = await restore_single(test_config.with_updates(engine=EngineType.MARIADB), backup.local_path, engine=engine)

    assert result.success


# ============================================================================
# Test 3: CLUSTER ORDERING
# ============================================================================

@pytest.mark.asyncio
async def test_cluster_restore_order(test_config, temp_dir: Path):
    """
    CRITICAL: Globals are restored before any database, and each database
    goes through terminate, drop, create, restore. The postgres system
    database is restored in place and never dropped.
    """
    archive = await _cluster_archive(test_config, temp_dir)
    engine = FakeEngine(temp_dir / "target")

    result = await restore_cluster(test_config, archive, engine=engine)

    assert result.success
    assert result.superuser
    assert engine.events[0] == ("globals", "")
    assert engine.steps_for("app") == ["terminate", "drop", "create", "restore"]
    assert engine.steps_for("postgres") == ["terminate", "restore"]
    assert engine.restored("app") == custom_payload("app")
    assert engine.restored("__globals__") == b"CREATE ROLE app_owner;\n"
    assert [r.database for r in result.databases] == ["app", "postgres"]


@pytest.mark.asyncio
async def test_cluster_restore_with_plain_members(test_config, temp_dir: Path):
    archive = await _cluster_archive(
        test_config.with_updates(large_db_threshold_bytes=10),
        temp_dir,
        databases={"app": sql_payload("app")},
    )
    engine = FakeEngine(temp_dir / "target")

    result = await restore_cluster(test_config, archive, engine=engine)

    assert result.success
    assert engine.restored("app") == sql_payload("app")


@pytest.mark.asyncio
async def test_cluster_dry_run_touches_nothing(test_config, temp_dir: Path):
    archive = await _cluster_archive(test_config, temp_dir)
    engine = FakeEngine(temp_dir / "target")

    result = await restore_cluster(test_config, archive, engine=engine, dry_run=True)

    assert result.dry_run
    assert result.success
    assert [e.database for e in result.plan.entries] == ["app", "postgres"]
    assert len(result.plan.globals_files) == 1
    assert engine.events == []


@pytest.mark.asyncio
async def test_globals_exit_code_is_a_warning_for_superuser(test_config, temp_dir: Path):
    archive = await _cluster_archive(test_config, temp_dir)
    engine = FakeEngine(temp_dir / "target", globals_exit=1, globals_stderr=["ERROR:  role creation failed"])

    result = await restore_cluster(test_config, archive, engine=engine)

    assert result.success
    assert result.globals_report.returncode == 1
    assert engine.restored("app") == custom_payload("app")


@pytest.mark.asyncio
async def test_fatal_globals_diagnostic_stops_restore(test_config, temp_dir: Path):
    archive = await _cluster_archive(test_config, temp_dir)
    engine = FakeEngine(
        temp_dir / "target",
        globals_exit=3,
        globals_stderr=['ERROR:  syntax error at or near "CREAT"'],
    )

    with pytest.raises(FatalError):
        await restore_cluster(test_config, archive, engine=engine)

    assert not [e for e in engine.events if e[0] == "drop"]


@pytest.mark.asyncio
async def test_globals_failure_is_a_warning_for_non_superuser(test_config, temp_dir: Path):
    archive = await _cluster_archive(test_config, temp_dir)
    engine = FakeEngine(
        temp_dir / "target",
        globals_exit=1,
        globals_stderr=['ERROR:  role "app_owner" already exists'],
        superuser=False,
    )

    result = await restore_cluster(test_config, archive, engine=engine)

    assert result.success
    assert result.globals_report.returncode == 1
    assert engine.restore_options["app"].no_owner


# ============================================================================
# Test 4: LARGE OBJECTS
# ============================================================================

@pytest.mark.asyncio
async def test_large_objects_force_sequential_restore(test_config, temp_dir: Path):
    """
    CRITICAL: A single dump with large objects drops the effective
    parallelism to one, so each database finishes before the next starts.
    """
    archive = await _cluster_archive(
        test_config,
        temp_dir,
        databases={"alpha": custom_payload("alpha"), "beta": custom_payload("beta"), "gamma": custom_payload("gamma")},
    )
    engine = FakeEngine(temp_dir / "target", large_objects={"beta": 12})

    result = await restore_cluster(test_config.with_updates(jobs=4), archive, engine=engine)

    assert result.success
    assert result.effective_jobs == 1
    assert result.plan.large_object_databases == ["beta"]

    database_events = [name for kind, name in engine.events if kind != "globals"]
    assert database_events == ["alpha"] * 4 + ["beta"] * 4 + ["gamma"] * 4


@pytest.mark.asyncio
async def test_configured_jobs_used_without_large_objects(test_config, temp_dir: Path):
    archive = await _cluster_archive(test_config, temp_dir)
    engine = FakeEngine(temp_dir / "target")

    result = await restore_cluster(test_config.with_updates(jobs=3), archive, engine=engine)

    assert result.effective_jobs == 3


# ============================================================================
# Test 5: DIAGNOSTICS
# ============================================================================

@pytest.mark.asyncio
async def test_ignorable_diagnostics_do_not_fail(test_config, temp_dir: Path):
    archive = await _cluster_archive(test_config, temp_dir)
    engine = FakeEngine(
        temp_dir / "target",
        restore_stderr={"app": ['pg_restore: error: relation "items" already exists'] * 3},
        restore_exit={"app": 1},
    )

    result = await restore_cluster(test_config, archive, engine=engine)

    assert result.success
    report = result.databases[0]
    assert report.ignorable == 3
    assert report.categories == {"duplicate": 3}


@pytest.mark.asyncio
async def test_critical_diagnostic_fails_one_database(test_config, temp_dir: Path):
    archive = await _cluster_archive(test_config, temp_dir)
    engine = FakeEngine(
        temp_dir / "target",
        restore_stderr={"app": ["ERROR:  out of shared memory"]},
        restore_exit={"app": 1},
    )

    result = await restore_cluster(test_config, archive, engine=engine)

    assert not result.success
    assert result.failed_databases == ["app"]
    app = result.databases[0]
    assert app.critical == 1
    assert any("max_locks_per_transaction" in hint for hint in app.hints)
    # The sibling still restored
    assert engine.restored("postgres") == custom_payload("postgres", rows=20)


@pytest.mark.asyncio
async def test_tool_failure_without_diagnostics_fails(test_config, temp_dir: Path):
    archive = await _cluster_archive(test_config, temp_dir)
    engine = FakeEngine(temp_dir / "target", restore_exit={"app": 2})

    result = await restore_cluster(test_config, archive, engine=engine)

    assert result.failed_databases == ["app"]
    assert "exited with code 2" in result.databases[0].error


@pytest.mark.asyncio
async def test_warnings_fail_in_strict_mode(test_config, temp_dir: Path):
    archive = await _cluster_archive(test_config, temp_dir)
    engine = FakeEngine(temp_dir / "target", restore_stderr={"app": ["pg_restore: warning: version mismatch"]})

    result = await restore_cluster(test_config.with_updates(strict=True), archive, engine=engine)

    assert result.failed_databases == ["app"]


class HangingRestoreEngine(FakeEngine):
    """Restore of 'slow' never finishes on its own."""

    async def start_restore(self, database, options, path=None, diagnostics=None, on_line=None):
        if database != "slow":
            return await super().start_restore(database, options, path, diagnostics, on_line)
        self.events.append(("restore", database))
        return await ToolProcess.start(["sleep", "30"], diagnostics=diagnostics, on_line=on_line)


@pytest.mark.asyncio
async def test_fatal_diagnostic_cancels_siblings(test_config, temp_dir: Path):
    """
    CRITICAL: A FATAL line in one database stops the whole restore and
    terminates sibling restore tools.
    """
    archive = await _cluster_archive(
        test_config,
        temp_dir,
        databases={"app": custom_payload("app"), "slow": custom_payload("slow")},
    )
    engine = HangingRestoreEngine(
        temp_dir / "target",
        restore_stderr={"app": ['ERROR:  syntax error at or near "COPY"']},
    )

    started = time.monotonic()
    with pytest.raises(FatalError):
        await restore_cluster(test_config, archive, engine=engine)

    assert time.monotonic() - started < 20
    assert process_registry.sweep() == []


# ============================================================================
# Test 6: INCREMENTAL CHAIN
# ============================================================================

@pytest.mark.asyncio
async def test_incremental_chain_restore(test_config, temp_dir: Path):
    data_dir = temp_dir / "pgdata"
    (data_dir / "base").mkdir(parents=True)
    (data_dir / "base" / "1").write_bytes(b"original table data")
    (data_dir / "PG_VERSION").write_text("16\n")

    base = await backup_incremental(test_config, data_dir, label="main")

    # Changes after the base was taken
    future = time.time() + 60
    (data_dir / "base" / "1").write_bytes(b"updated table data")
    (data_dir / "base" / "2").write_bytes(b"new table")
    for path in (data_dir / "base" / "1", data_dir / "base" / "2"):
        os.utime(path, (future, future))

    delta = await backup_incremental(test_config, data_dir, base_artifact=base.artifact, label="main")

    assert delta.artifact.parent_ref == base.name
    assert delta.artifact.extra["incremental_files"] == 2
    assert delta.artifact.extra["backup_chain"] == [base.name, delta.name]

    target = temp_dir / "restored-pgdata"
    result = await restore_single(test_config, delta.local_path, target_dir=target)

    assert result.success
    assert result.chain.applied == [base.name, delta.name]
    assert (target / "base" / "1").read_bytes() == b"updated table data"
    assert (target / "base" / "2").read_bytes() == b"new table"
    assert (target / "PG_VERSION").read_text() == "16\n"


@pytest.mark.asyncio
async def test_incremental_restore_needs_target_dir(test_config, temp_dir: Path):
    data_dir = temp_dir / "pgdata"
    data_dir.mkdir()
    (data_dir / "PG_VERSION").write_text("16\n")
    base = await backup_incremental(test_config, data_dir, label="main")

    with pytest.raises(RestoreError):
        await restore_single(test_config, base.local_path)


@pytest.mark.asyncio
async def test_broken_chain_is_reported(test_config, temp_dir: Path):
    data_dir = temp_dir / "pgdata"
    data_dir.mkdir()
    (data_dir / "PG_VERSION").write_text("16\n")
    base = await backup_incremental(test_config, data_dir, label="main")
    future = time.time() + 60
    os.utime(data_dir / "PG_VERSION", (future, future))
    delta = await backup_incremental(test_config, data_dir, base_artifact=base.artifact, label="main")

    for suffix in ("", ".sha256", ".info"):
        (base.local_path.parent / f"{base.name}{suffix}").unlink()

    with pytest.raises(RestoreError):
        await restore_single(test_config, delta.local_path, target_dir=temp_dir / "out")


@pytest.mark.asyncio
async def test_cancelled_restore_cleans_up(test_config, temp_dir: Path):
    archive = await _cluster_archive(
        test_config,
        temp_dir,
        databases={"slow": custom_payload("slow")},
    )
    engine = HangingRestoreEngine(temp_dir / "target")

    task = asyncio.create_task(restore_cluster(test_config, archive, engine=engine))
    await asyncio.sleep(1.0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert process_registry.sweep() == []
    assert not list((temp_dir / "tmp").glob("dbbackup-*"))


# ============================================================================
# Test 7: VERSION COMPATIBILITY
# ============================================================================

@pytest.mark.asyncio
async def test_backup_records_server_version(test_config, temp_dir: Path):
    engine = FakeEngine(temp_dir / "source", databases={"app": custom_payload("app")}, version=(15, 4))

    backup = await backup_single(test_config, "app", engine=engine)

    assert backup.artifact.server_version == "15.4"
    assert source_server_version(backup.artifact) == (15, 4)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "target_version, expected",
    [((16, 2), "same"), ((17, 0), "upgrade"), ((21, 0), "large_upgrade"), ((13, 9), "downgrade")],
)
async def test_version_compatibility_levels(test_config, temp_dir: Path, target_version, expected):
    source = FakeEngine(temp_dir / "source", databases={"app": custom_payload("app")}, version=(16, 0))
    backup = await backup_single(test_config, "app", engine=source)

    target = FakeEngine(temp_dir / "target", databases={"app": b""}, version=target_version)

    assert await check_version_compatible(backup.artifact, target) == expected


@pytest.mark.asyncio
async def test_downgrade_restore_only_warns(test_config, temp_dir: Path):
    source = FakeEngine(temp_dir / "source", databases={"app": custom_payload("app")}, version=(17, 1))
    backup = await backup_single(test_config, "app", engine=source)
    target = FakeEngine(temp_dir / "target", databases={"app": b""}, version=(14, 0))

    with capture_logs() as logs:
        result = await restore_single(test_config, backup.local_path, engine=target)

    assert result.success
    assert target.restored("app") == custom_payload("app")
    assert any(entry["event"] == "version_downgrade_warning" for entry in logs)


@pytest.mark.asyncio
async def test_unknown_source_version(temp_dir: Path):
    assert await check_version_compatible(None, FakeEngine(temp_dir / "target")) == "unknown"
