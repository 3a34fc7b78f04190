# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Point-in-time recovery tests.

These tests verify:
1. Target parsing - exactly one target, validated, named verbatim
2. Archiving setup - postgresql.conf edited in place with a backup copy
3. WAL archive - segment listing and age-based cleanup
4. Recovery - data directory prepared with settings and recovery.signal
"""

import io
import os
import tarfile
import time
from pathlib import Path

import pytest

from dbbackup.crypto import encrypt_bytes, key_from_bytes
from dbbackup.exceptions import IntegrityError, PITRError
from dbbackup.pitr import (
    cleanup_archive,
    enable_archiving,
    format_config_line,
    list_archived_segments,
    parse_recovery_target,
    recover,
    recovery_status,
    scan_archive,
)


def _base_backup(path: Path, files: dict) -> Path:
    """Write a gzip tarball holding `files` (name -> bytes)."""
    with tarfile.open(path, "w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


# ============================================================================
# Test 1: TARGET PARSING
# ============================================================================

def test_two_targets_rejected():
    """CRITICAL: Supplying both a time and an xid is an error."""
    with pytest.raises(PITRError) as exc_info:
        parse_recovery_target(time="2026-01-15 12:00:00", xid="1000")

    assert "only one allowed" in str(exc_info.value)


def test_no_target_rejected():
    with pytest.raises(PITRError) as exc_info:
        parse_recovery_target()

    assert "no recovery target" in str(exc_info.value)


def test_time_target_is_named_verbatim():
    target = parse_recovery_target(time="2026-01-15 12:00:00")

    assert target.to_postgres_config() == {
        "recovery_target_time": "2026-01-15 12:00:00",
        "recovery_target_action": "promote",
        "recovery_target_timeline": "latest",
        "recovery_target_inclusive": "true",
    }


@pytest.mark.parametrize(
    "kwargs, key, value",
    [
        ({"xid": "1000"}, "recovery_target_xid", "1000"),
        ({"xid": 42}, "recovery_target_xid", "42"),
        ({"lsn": "0/3000000"}, "recovery_target_lsn", "0/3000000"),
        ({"name": "before_migration"}, "recovery_target_name", "before_migration"),
        ({"time": "2026-01-15T12:00:00Z"}, "recovery_target_time", "2026-01-15T12:00:00Z"),
    ],
)
def test_each_target_kind(kwargs, key, value):
    config = parse_recovery_target(**kwargs).to_postgres_config()

    assert config[key] == value


def test_immediate_target():
    target = parse_recovery_target(immediate=True, action="pause")

    config = target.to_postgres_config()
    assert config["recovery_target"] == "immediate"
    assert config["recovery_target_action"] == "pause"
    assert "recovery_target_inclusive" not in config


def test_name_target_has_no_inclusive_setting():
    config = parse_recovery_target(name="checkpoint_1").to_postgres_config()

    assert "recovery_target_inclusive" not in config


def test_exclusive_target():
    config = parse_recovery_target(lsn="0/16B3748", inclusive=False).to_postgres_config()

    assert config["recovery_target_inclusive"] == "false"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"time": "yesterday"},
        {"xid": "abc"},
        {"xid": "0"},
        {"lsn": "3000000"},
        {"name": "has space"},
        {"name": "x" * 64},
        {"xid": "100", "action": "explode"},
        {"xid": "100", "timeline": "sideways"},
    ],
)
def test_invalid_targets_rejected(kwargs):
    with pytest.raises(PITRError):
        parse_recovery_target(**kwargs)


def test_format_config_line_quoting():
    assert format_config_line("recovery_target_xid", "1000") == "recovery_target_xid = 1000"
    assert (
        format_config_line("recovery_target_time", "2026-01-15 12:00:00")
        == "recovery_target_time = '2026-01-15 12:00:00'"
    )
    assert format_config_line("restore_command", "cp '/a b'/%f %p") == "restore_command = 'cp ''/a b''/%f %p'"


# ============================================================================
# Test 2: ARCHIVING SETUP
# ============================================================================

@pytest.mark.asyncio
async def test_enable_archiving_edits_config(temp_dir: Path):
    data_dir = temp_dir / "pgdata"
    data_dir.mkdir()
    conf = data_dir / "postgresql.conf"
    conf.write_text(
        "listen_addresses = '*'\n"
        "#wal_level = minimal\n"
        "archive_mode = off\n"
        "# archive_mode = always\n"
    )
    archive_dir = temp_dir / "wal_archive"

    settings = await enable_archiving(data_dir, archive_dir)

    text = conf.read_text()
    assert "wal_level = replica" in text
    assert "archive_mode = on" in text
    assert "# archive_mode = always" in text
    assert "listen_addresses = '*'" in text
    assert f"archive_command = 'cp %p {archive_dir}/%f'" in text
    assert "max_wal_senders = 3" in text
    assert settings["wal_keep_size"] == "1GB"
    assert archive_dir.is_dir()

    backups = list(data_dir.glob("postgresql.conf.bak.*"))
    assert len(backups) == 1
    assert "archive_mode = off" in backups[0].read_text()


@pytest.mark.asyncio
async def test_enable_archiving_custom_command(temp_dir: Path):
    data_dir = temp_dir / "pgdata"
    data_dir.mkdir()
    (data_dir / "postgresql.conf").write_text("")

    settings = await enable_archiving(data_dir, temp_dir / "wal", archive_command="/usr/local/bin/ship %p")

    assert settings["archive_command"] == "/usr/local/bin/ship %p"


@pytest.mark.asyncio
async def test_enable_archiving_requires_config(temp_dir: Path):
    with pytest.raises(PITRError):
        await enable_archiving(temp_dir, temp_dir / "wal")


# ============================================================================
# Test 3: WAL ARCHIVE
# ============================================================================

def _wal_archive(temp_dir: Path) -> Path:
    archive = temp_dir / "wal_archive"
    archive.mkdir()
    for name in (
        "000000010000000000000002",
        "000000010000000000000001.gz",
        "000000020000000000000001.gz.enc",
        "00000002.history",
        "000000010000000000000001.00000028.backup",
        "README",
    ):
        (archive / name).write_bytes(b"\x00" * 64)
    return archive


def test_scan_archive_classifies_files(temp_dir: Path):
    archive = scan_archive(_wal_archive(temp_dir))

    assert [s.file_name for s in archive.segments] == [
        "000000010000000000000001.gz",
        "000000010000000000000002",
        "000000020000000000000001.gz.enc",
    ]
    assert archive.segments[0].compressed
    assert archive.segments[2].encrypted
    assert archive.segments[2].timeline == 2
    assert archive.segments[1].segment_id == 2
    assert [p.name for p in archive.history_files] == ["00000002.history"]
    assert len(archive.backup_labels) == 1


def test_missing_archive_is_empty(temp_dir: Path):
    assert list_archived_segments(temp_dir / "nowhere") == []


def test_cleanup_archive_by_age(temp_dir: Path):
    archive = _wal_archive(temp_dir)
    old = time.time() - 10 * 86400
    os.utime(archive / "000000010000000000000001.gz", (old, old))

    assert cleanup_archive(archive, retention_days=7, dry_run=True) == 1
    assert (archive / "000000010000000000000001.gz").exists()

    assert cleanup_archive(archive, retention_days=7) == 1
    assert not (archive / "000000010000000000000001.gz").exists()
    assert (archive / "000000010000000000000002").exists()
    assert (archive / "00000002.history").exists()


def test_cleanup_disabled_with_zero_retention(temp_dir: Path):
    archive = _wal_archive(temp_dir)
    old = time.time() - 100 * 86400
    os.utime(archive / "000000010000000000000002", (old, old))

    assert cleanup_archive(archive, retention_days=0) == 0


# ============================================================================
# Test 4: RECOVERY
# ============================================================================

@pytest.mark.asyncio
async def test_recover_prepares_data_dir(temp_dir: Path):
    base = _base_backup(temp_dir / "base.tar.gz", {"PG_VERSION": b"16\n", "base/1/1259": b"catalog"})
    archive_dir = temp_dir / "wal_archive"
    archive_dir.mkdir()
    data_dir = temp_dir / "restored"
    target = parse_recovery_target(time="2026-01-15 12:00:00")

    settings = await recover(base, data_dir, archive_dir, target)

    assert (data_dir / "PG_VERSION").read_text() == "16\n"
    assert (data_dir / "recovery.signal").exists()
    assert settings["restore_command"] == f"cp {archive_dir}/%f %p"

    auto_conf = (data_dir / "postgresql.auto.conf").read_text()
    assert "# PITR Recovery Configuration (added by dbbackup)" in auto_conf
    assert "recovery_target_time = '2026-01-15 12:00:00'" in auto_conf

    status = recovery_status(data_dir)
    assert status.in_recovery
    assert status.mode == "recovery"
    assert status.recovery_settings["recovery_target_time"] == "2026-01-15 12:00:00"
    assert not status.server_running


@pytest.mark.asyncio
async def test_recover_refuses_non_empty_data_dir(temp_dir: Path):
    base = _base_backup(temp_dir / "base.tar.gz", {"PG_VERSION": b"16\n"})
    archive_dir = temp_dir / "wal_archive"
    archive_dir.mkdir()
    data_dir = temp_dir / "restored"
    data_dir.mkdir()
    (data_dir / "existing").write_text("keep me")

    with pytest.raises(PITRError):
        await recover(base, data_dir, archive_dir, parse_recovery_target(xid="5"))

    assert (data_dir / "existing").read_text() == "keep me"
    assert not (data_dir / "recovery.signal").exists()


@pytest.mark.asyncio
async def test_recover_rejects_unsupported_base(temp_dir: Path):
    base = temp_dir / "base.zip"
    base.write_bytes(b"PK")
    archive_dir = temp_dir / "wal_archive"
    archive_dir.mkdir()

    with pytest.raises(PITRError):
        await recover(base, temp_dir / "restored", archive_dir, parse_recovery_target(immediate=True))


@pytest.mark.asyncio
async def test_recover_encrypted_base(test_config, key_file: Path, temp_dir: Path):
    plain = _base_backup(temp_dir / "plain.tar.gz", {"PG_VERSION": b"16\n"})
    encrypted = temp_dir / "base.tar.gz.enc"
    encrypted.write_bytes(encrypt_bytes(plain.read_bytes(), key_from_bytes(key_file.read_bytes())))
    archive_dir = temp_dir / "wal_archive"
    archive_dir.mkdir()
    target = parse_recovery_target(immediate=True)

    with pytest.raises(IntegrityError):
        await recover(encrypted, temp_dir / "no-key", archive_dir, target, test_config)

    config = test_config.with_updates(encryption_key_file=key_file)
    await recover(encrypted, temp_dir / "restored", archive_dir, target, config)

    assert (temp_dir / "restored" / "PG_VERSION").read_text() == "16\n"


def test_recovery_status_standby(temp_dir: Path):
    (temp_dir / "standby.signal").touch()
    (temp_dir / "postmaster.pid").write_text("1234\n")

    status = recovery_status(temp_dir)

    assert status.mode == "standby"
    assert status.server_running


def test_recovery_status_missing_dir(temp_dir: Path):
    with pytest.raises(PITRError):
        recovery_status(temp_dir / "absent")
