# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup PITR - Point-in-time recovery setup for PostgreSQL.

Covers the file-level half of PITR: turning on WAL archiving in
postgresql.conf, listing and pruning the archive, and preparing a data
directory for recovery to a target. Replaying WAL is left to the server.
"""

import re
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Dict, List

import aiofiles
import structlog

from dbbackup.backup.formats import extract_archive
from dbbackup.config import BackupConfig
from dbbackup.crypto import is_encrypted_file, key_from_config
from dbbackup.exceptions import IntegrityError, PITRError
from dbbackup.pipeline import iter_file, run_restore_to_file

logger = structlog.get_logger()

RECOVERY_ACTIONS = ("promote", "pause", "shutdown")
MAX_RESTORE_POINT_NAME = 63

_LSN_PATTERN = re.compile(r"^[0-9A-Fa-f]+/[0-9A-Fa-f]+$")
_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_WAL_PATTERN = re.compile(r"^[0-9A-F]{24}$")
_QUOTE_CHARS = frozenset(" \t#'\"\\")

_TIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
)

ARCHIVE_SETTINGS = {
    "wal_level": "replica",
    "archive_mode": "on",
    "max_wal_senders": "3",
    "wal_keep_size": "1GB",
}

BASE_BACKUP_SUFFIXES = (".tar.gz", ".tgz", ".tar")


# ============================================================================
# Recovery targets
# ============================================================================

@dataclass
class RecoveryTarget:
    """Where WAL replay should stop and what the server does there."""

    kind: str  # time, xid, lsn, name or immediate
    value: str
    action: str = "promote"
    timeline: str = "latest"
    inclusive: bool = True

    def to_postgres_config(self) -> Dict[str, str]:
        """Settings for postgresql.auto.conf, in write order."""
        settings: Dict[str, str] = {}
        if self.kind == "immediate":
            settings["recovery_target"] = "immediate"
        else:
            settings[f"recovery_target_{self.kind}"] = self.value
        settings["recovery_target_action"] = self.action
        settings["recovery_target_timeline"] = self.timeline
        if self.kind in ("time", "xid", "lsn"):
            settings["recovery_target_inclusive"] = "true" if self.inclusive else "false"
        return settings

    def describe(self) -> str:
        if self.kind == "immediate":
            return "immediate (end of base backup)"
        return f"{self.kind} {self.value}"


def _validate_time(value: str) -> None:
    for fmt in _TIME_FORMATS:
        try:
            datetime.strptime(value, fmt)
            return
        except ValueError:
            continue
    # ISO 8601 / RFC 3339 with an offset or Z suffix
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(
            f"invalid timestamp format: {value} (expected YYYY-MM-DD HH:MM:SS or RFC 3339)"
        ) from None


def _validate_xid(value: str) -> None:
    if not value.isdigit() or int(value) == 0:
        raise ValueError(f"invalid transaction ID: {value} (must be a positive integer)")


def _validate_lsn(value: str) -> None:
    if not _LSN_PATTERN.match(value):
        raise ValueError(f"invalid LSN format: {value} (expected e.g. 0/3000000)")


def _validate_name(value: str) -> None:
    if len(value) > MAX_RESTORE_POINT_NAME:
        raise ValueError(f"restore point name too long: {len(value)} characters (max {MAX_RESTORE_POINT_NAME})")
    if not _NAME_PATTERN.match(value):
        raise ValueError(f"invalid restore point name: {value} (letters, digits, '_' and '-' only)")


def _validate_timeline(value: str) -> None:
    if value in ("latest", "current"):
        return
    if not value.isdigit() or int(value) == 0:
        raise ValueError(f"invalid timeline: {value} (expected latest, current or a positive integer)")


_VALIDATORS = {
    "time": _validate_time,
    "xid": _validate_xid,
    "lsn": _validate_lsn,
    "name": _validate_name,
}


def _build_target(
    time: str | None,
    xid: str | int | None,
    lsn: str | None,
    name: str | None,
    immediate: bool,
    action: str,
    timeline: str | int,
    inclusive: bool,
) -> RecoveryTarget:
    given = {
        kind: str(value)
        for kind, value in (("time", time), ("xid", xid), ("lsn", lsn), ("name", name))
        if value is not None and value != ""
    }
    if immediate:
        given["immediate"] = "immediate"

    if not given:
        raise ValueError("no recovery target specified")
    if len(given) > 1:
        raise ValueError("multiple recovery targets specified, only one allowed")

    kind, value = next(iter(given.items()))
    if kind in _VALIDATORS:
        _VALIDATORS[kind](value)

    action = action or "promote"
    if action not in RECOVERY_ACTIONS:
        raise ValueError(f"invalid recovery action: {action} (must be one of {', '.join(RECOVERY_ACTIONS)})")

    timeline = str(timeline or "latest")
    _validate_timeline(timeline)

    return RecoveryTarget(kind=kind, value=value, action=action, timeline=timeline, inclusive=inclusive)


def parse_recovery_target(
    time: str | None = None,
    xid: str | int | None = None,
    lsn: str | None = None,
    name: str | None = None,
    immediate: bool = False,
    action: str = "promote",
    timeline: str | int = "latest",
    inclusive: bool = True,
) -> RecoveryTarget:
    """
    Normalize user input into exactly one recovery target.

    Args:
        time: Timestamp, "YYYY-MM-DD HH:MM:SS[.ffffff]" or RFC 3339
        xid: Transaction ID
        lsn: Log sequence number, e.g. "0/3000000"
        name: Named restore point
        immediate: Stop as soon as the base backup is consistent
        action: promote, pause or shutdown once the target is reached
        timeline: "latest", "current" or a timeline number
        inclusive: Stop after (True) or before (False) the target

    Returns:
        Validated RecoveryTarget

    Raises:
        PITRError: If zero or several targets are given, or a value is invalid
    """
    try:
        return _build_target(time, xid, lsn, name, immediate, action, timeline, inclusive)
    except ValueError as e:
        raise PITRError(str(e)) from e


def format_config_line(key: str, value: str) -> str:
    """Render `key = value`, quoting values with spaces, quotes, '#' or backslashes."""
    if any(c in _QUOTE_CHARS for c in value):
        value = "'" + value.replace("'", "''") + "'"
    return f"{key} = {value}"


# ============================================================================
# WAL archiving
# ============================================================================

def _apply_settings(text: str, settings: Dict[str, str]) -> str:
    lines = text.splitlines()
    for key, value in settings.items():
        line = format_config_line(key, value)
        active = re.compile(rf"^\s*{re.escape(key)}\s*=")
        commented = re.compile(rf"^\s*#\s*{re.escape(key)}\s*=")
        index = next((i for i, l in enumerate(lines) if active.match(l)), None)
        if index is None:
            index = next((i for i, l in enumerate(lines) if commented.match(l)), None)
        if index is None:
            lines.append(line)
        else:
            lines[index] = line
    return "\n".join(lines) + "\n"


async def enable_archiving(
    data_dir: Path,
    archive_dir: Path,
    archive_command: str | None = None,
) -> Dict[str, str]:
    """
    Turn on WAL archiving in postgresql.conf.

    The current file is copied to postgresql.conf.bak.<timestamp> first.
    Existing settings are replaced in place; missing ones are appended.
    The server must be restarted for wal_level and archive_mode to apply.

    Args:
        data_dir: PostgreSQL data directory holding postgresql.conf
        archive_dir: Directory WAL segments are copied to
        archive_command: Custom archive_command (defaults to a cp into archive_dir)

    Returns:
        The settings written

    Raises:
        PITRError: If postgresql.conf cannot be read or written
    """
    data_dir = Path(data_dir)
    archive_dir = Path(archive_dir)
    conf_path = data_dir / "postgresql.conf"
    if not conf_path.is_file():
        raise PITRError(f"postgresql.conf not found in {data_dir}", details={"data_dir": str(data_dir)})

    settings = dict(ARCHIVE_SETTINGS)
    settings["archive_command"] = archive_command or f"cp %p {archive_dir}/%f"

    try:
        archive_dir.mkdir(parents=True, exist_ok=True)
        backup_path = conf_path.with_name(f"postgresql.conf.bak.{datetime.now(UTC).strftime('%Y%m%d_%H%M%S')}")
        shutil.copy2(conf_path, backup_path)

        async with aiofiles.open(conf_path, "r") as f:
            text = await f.read()
        async with aiofiles.open(conf_path, "w") as f:
            await f.write(_apply_settings(text, settings))
    except OSError as e:
        raise PITRError(f"Failed to update postgresql.conf: {e}", details={"path": str(conf_path)}) from e

    logger.info(
        "wal_archiving_enabled",
        data_dir=str(data_dir),
        archive_dir=str(archive_dir),
        config_backup=str(backup_path),
    )
    return settings


@dataclass
class WALSegment:
    """One archived WAL segment."""

    file_name: str
    path: Path
    timeline: int
    log_id: int
    segment_id: int
    size: int
    modified: datetime
    compressed: bool = False
    encrypted: bool = False


@dataclass
class WALArchive:
    """Contents of a WAL archive directory."""

    segments: List[WALSegment] = field(default_factory=list)
    history_files: List[Path] = field(default_factory=list)
    backup_labels: List[Path] = field(default_factory=list)


def _segment_base_name(file_name: str) -> tuple:
    base = file_name
    encrypted = compressed = False
    if base.endswith(".enc"):
        base, encrypted = base[:-4], True
    if base.endswith(".gz"):
        base, compressed = base[:-3], True
    return base, compressed, encrypted


def scan_archive(archive_dir: Path) -> WALArchive:
    """Classify every file in the archive; a missing directory is empty."""
    archive = WALArchive()
    archive_dir = Path(archive_dir)
    if not archive_dir.is_dir():
        return archive

    for path in sorted(archive_dir.iterdir()):
        if not path.is_file():
            continue
        if path.name.endswith(".history"):
            archive.history_files.append(path)
            continue
        if path.name.endswith(".backup"):
            archive.backup_labels.append(path)
            continue

        base, compressed, encrypted = _segment_base_name(path.name)
        if not _WAL_PATTERN.match(base.upper()):
            continue
        st = path.stat()
        archive.segments.append(
            WALSegment(
                file_name=path.name,
                path=path,
                timeline=int(base[0:8], 16),
                log_id=int(base[8:16], 16),
                segment_id=int(base[16:24], 16),
                size=st.st_size,
                modified=datetime.fromtimestamp(st.st_mtime, UTC),
                compressed=compressed,
                encrypted=encrypted,
            )
        )

    archive.segments.sort(key=lambda s: (s.timeline, s.log_id, s.segment_id))
    return archive


def list_archived_segments(archive_dir: Path) -> List[WALSegment]:
    """WAL segments in the archive, ordered by timeline, log and segment."""
    return scan_archive(archive_dir).segments


def cleanup_archive(archive_dir: Path, retention_days: int, dry_run: bool = False) -> int:
    """
    Delete WAL segments older than the retention window.

    Returns:
        Number of segments deleted (or that would be, with dry_run)
    """
    if retention_days <= 0:
        return 0

    cutoff = time.time() - retention_days * 86400
    deleted = 0
    for segment in list_archived_segments(archive_dir):
        if segment.modified.timestamp() >= cutoff:
            continue
        if dry_run:
            logger.info("wal_segment_would_delete", file_name=segment.file_name)
        else:
            try:
                segment.path.unlink()
            except OSError as e:
                logger.warning("wal_segment_delete_failed", file_name=segment.file_name, error=str(e))
                continue
            logger.debug("wal_segment_deleted", file_name=segment.file_name)
        deleted += 1

    logger.info(
        "wal_archive_cleanup_complete",
        archive_dir=str(archive_dir),
        retention_days=retention_days,
        deleted=deleted,
        dry_run=dry_run,
    )
    return deleted


# ============================================================================
# Recovery
# ============================================================================

def _is_base_backup_name(path: Path) -> bool:
    name = path.name.lower()
    if name.endswith(".enc"):
        name = name[:-4]
    return name.endswith(BASE_BACKUP_SUFFIXES)


async def recover(
    base_backup: Path,
    data_dir: Path,
    archive_dir: Path,
    target: RecoveryTarget,
    config: BackupConfig | None = None,
) -> Dict[str, str]:
    """
    Prepare data_dir to replay archived WAL up to a target.

    The base backup tarball is extracted into data_dir, the recovery
    settings and restore_command are appended to postgresql.auto.conf,
    and recovery.signal is created. Starting the server performs the replay.

    Args:
        base_backup: Base backup tarball (.tar.gz, .tgz or .tar, optionally encrypted)
        data_dir: Empty or non-existent target data directory
        archive_dir: WAL archive to restore segments from
        target: Parsed recovery target
        config: Configuration supplying the decryption key and temp directory

    Returns:
        The settings written to postgresql.auto.conf

    Raises:
        PITRError: If the base backup or directories are unusable
        IntegrityError: If the base backup is encrypted and no key is available
    """
    base_backup = Path(base_backup)
    data_dir = Path(data_dir)
    archive_dir = Path(archive_dir)

    if not base_backup.is_file():
        raise PITRError(f"Base backup not found: {base_backup}", details={"base_backup": str(base_backup)})
    if not _is_base_backup_name(base_backup):
        raise PITRError(
            f"Unsupported base backup format: {base_backup.name} (expected .tar.gz, .tgz or .tar)",
            details={"base_backup": str(base_backup)},
        )
    if not archive_dir.is_dir():
        raise PITRError(f"WAL archive not found: {archive_dir}", details={"archive_dir": str(archive_dir)})
    if data_dir.exists() and any(data_dir.iterdir()):
        raise PITRError(
            f"Target data directory is not empty: {data_dir}",
            details={"data_dir": str(data_dir)},
        )

    logger.info(
        "pitr_recovery_started",
        base_backup=str(base_backup),
        data_dir=str(data_dir),
        target=target.describe(),
    )

    work_dir = config.temp_dir if config is not None else None
    with tempfile.TemporaryDirectory(dir=work_dir, prefix="dbbackup-pitr-") as staging:
        tarball = base_backup
        if await is_encrypted_file(base_backup):
            key = key_from_config(config, required=False) if config is not None else None
            if key is None:
                raise IntegrityError(
                    f"{base_backup.name} is encrypted but no decryption key was provided",
                    details={"base_backup": str(base_backup)},
                )
            tarball = Path(staging) / "base.tar"
            await run_restore_to_file(iter_file(base_backup), tarball, key=key, decompress=True)

        data_dir.mkdir(parents=True, exist_ok=True)
        files = await extract_archive(tarball, data_dir)

    settings = {"restore_command": f"cp {archive_dir}/%f %p"}
    settings.update(target.to_postgres_config())

    auto_conf = data_dir / "postgresql.auto.conf"
    lines = ["", "# PITR Recovery Configuration (added by dbbackup)"]
    lines.extend(format_config_line(k, v) for k, v in settings.items())
    try:
        async with aiofiles.open(auto_conf, "a") as f:
            await f.write("\n".join(lines) + "\n")
        (data_dir / "recovery.signal").touch()
    except OSError as e:
        raise PITRError(f"Failed to write recovery configuration: {e}", details={"data_dir": str(data_dir)}) from e

    logger.info(
        "pitr_recovery_prepared",
        data_dir=str(data_dir),
        files=len(files),
        target=target.describe(),
        action=target.action,
    )
    return settings


@dataclass
class RecoveryStatus:
    """What a data directory says about recovery."""

    data_dir: Path
    recovery_signal: bool = False
    standby_signal: bool = False
    legacy_recovery_conf: bool = False
    server_running: bool = False
    recovery_settings: Dict[str, str] = field(default_factory=dict)

    @property
    def in_recovery(self) -> bool:
        return self.recovery_signal or self.standby_signal or self.legacy_recovery_conf

    @property
    def mode(self) -> str:
        if self.standby_signal:
            return "standby"
        if self.recovery_signal or self.legacy_recovery_conf:
            return "recovery"
        return "normal"


_SETTING_LINE = re.compile(r"^\s*((?:recovery_target\w*|restore_command))\s*=\s*(.*?)\s*$")


def _read_recovery_settings(path: Path) -> Dict[str, str]:
    settings: Dict[str, str] = {}
    if not path.is_file():
        return settings
    for line in path.read_text().splitlines():
        match = _SETTING_LINE.match(line)
        if match:
            value = match.group(2)
            if len(value) >= 2 and value[0] == value[-1] == "'":
                value = value[1:-1].replace("''", "'")
            settings[match.group(1)] = value
    return settings


def recovery_status(data_dir: Path) -> RecoveryStatus:
    """Inspect signal files, recovery.conf and postmaster.pid in a data directory."""
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        raise PITRError(f"Data directory not found: {data_dir}", details={"data_dir": str(data_dir)})

    status = RecoveryStatus(
        data_dir=data_dir,
        recovery_signal=(data_dir / "recovery.signal").exists(),
        standby_signal=(data_dir / "standby.signal").exists(),
        legacy_recovery_conf=(data_dir / "recovery.conf").exists(),
        server_running=(data_dir / "postmaster.pid").exists(),
    )
    source = data_dir / ("recovery.conf" if status.legacy_recovery_conf else "postgresql.auto.conf")
    status.recovery_settings = _read_recovery_settings(source)

    logger.debug("recovery_status", data_dir=str(data_dir), mode=status.mode, running=status.server_running)
    return status
