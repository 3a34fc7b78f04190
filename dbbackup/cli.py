# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup command line.

Exit codes:
    0    success
    1    operational failure (CRITICAL or FATAL diagnostics, any dbbackup error)
    2    usage or configuration error
    130  cancelled by SIGINT or SIGTERM
"""

import argparse
import asyncio
import getpass
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List

import structlog

from dbbackup import __version__
from dbbackup.config import BackupConfig, EngineType, SampleStrategy
from dbbackup.env import (
    CONFIG_FILE_NAME,
    archival_profile,
    fast_profile,
    resolve_config,
    save_config_file,
)
from dbbackup.exceptions import (
    BackupError,
    CancelledOperation,
    ConfigurationError,
    DBBackupError,
    OperationTimeout,
)
from dbbackup.logging import configure_logging
from dbbackup.metadata import format_size, load_artifact, verify_artifact
from dbbackup.metrics import session_metrics
from dbbackup.scheduling import process_registry
from dbbackup.storage import open_object, open_store

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

# Flags that map 1:1 onto BackupConfig fields
_CONFIG_FLAGS = frozenset(
    {
        "engine",
        "host",
        "port",
        "user",
        "cloud_uri",
        "encrypt",
        "encryption_key_file",
        "encryption_key_env",
        "compression_level",
        "jobs",
        "dump_jobs",
        "backup_dir",
        "temp_dir",
        "retention_days",
        "min_backups",
        "audit_db_path",
        "strict",
    }
)


# ============================================================================
# Parser
# ============================================================================

def _common_parser() -> argparse.ArgumentParser:
    """
    Flags shared by every command.

    Config flags default to SUPPRESS so that only the ones the user typed
    show up in the namespace and override the config file.
    """
    common = argparse.ArgumentParser(add_help=False, argument_default=argparse.SUPPRESS)

    db = common.add_argument_group("database")
    db.add_argument("--db-type", dest="engine", choices=[e.value for e in EngineType], help="Database engine")
    db.add_argument("--host", help="Database host")
    db.add_argument("--port", type=int, help="Database port")
    db.add_argument("--user", help="Database user")

    storage = common.add_argument_group("storage")
    storage.add_argument("--backup-dir", type=Path, help="Local backup directory")
    storage.add_argument("--temp-dir", type=Path, help="Scratch directory for staging")
    storage.add_argument("--cloud", dest="cloud_uri", help="Cloud mirror, e.g. s3://bucket/prefix")
    storage.add_argument("--retention-days", type=int, help="Delete backups older than N days")
    storage.add_argument("--min-backups", type=int, help="Always keep at least M backups")

    enc = common.add_argument_group("encryption")
    enc.add_argument("--encrypt", action="store_true", help="Encrypt backups with AES-256-GCM")
    enc.add_argument("--encryption-key-file", type=Path, help="File holding the key")
    enc.add_argument("--encryption-key-env", help="Environment variable holding the key")
    enc.add_argument(
        "--encryption-key-passphrase",
        dest="prompt_passphrase",
        action="store_true",
        help="Prompt for a passphrase",
    )

    perf = common.add_argument_group("performance")
    perf.add_argument("--compression", dest="compression_level", type=int, help="Compression level 0-9")
    perf.add_argument("--jobs", type=int, help="Databases processed in parallel")
    perf.add_argument("--dump-jobs", type=int, help="Parallel jobs inside one dump or restore")

    misc = common.add_argument_group("general")
    misc.add_argument("--config", dest="config_file", type=Path, help=f"Config file (default ./{CONFIG_FILE_NAME})")
    misc.add_argument("--no-config", action="store_true", help="Ignore the config file")
    misc.add_argument("--profile", choices=["fast", "archival"], help="Apply a tuning profile on top of the settings")
    misc.add_argument("--audit-db", dest="audit_db_path", type=Path, help="SQLite audit journal")
    misc.add_argument("--strict", action="store_true", help="Fail on warnings")
    misc.add_argument("--confirm", action="store_true", help="Confirm destructive operations")
    misc.add_argument("--dry-run", action="store_true", help="Show what would happen")
    misc.add_argument("--debug", action="store_true", help="Debug logging")
    misc.add_argument("--json-logs", action="store_true", help="Log as JSON lines")
    return common


def build_parser() -> argparse.ArgumentParser:
    common = _common_parser()
    parser = argparse.ArgumentParser(
        prog="dbbackup",
        description="Backup and restore for PostgreSQL, MySQL and MariaDB",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", required=True)

    # backup
    backup = commands.add_parser("backup", help="Create backups")
    backup_kinds = backup.add_subparsers(dest="kind", required=True)

    single = backup_kinds.add_parser("single", parents=[common], help="Back up one database")
    single.add_argument("database")

    sample = backup_kinds.add_parser("sample", parents=[common], help="Back up schema plus a subset of rows")
    sample.add_argument("database")
    strategy = sample.add_mutually_exclusive_group(required=True)
    strategy.add_argument("--ratio", type=int, help="Every Nth row")
    strategy.add_argument("--percent", type=float, help="Random P percent of rows")
    strategy.add_argument("--count", type=int, help="First N rows of each table")

    backup_kinds.add_parser("cluster", parents=[common], help="Back up every database of the server")

    incremental = backup_kinds.add_parser("incremental", parents=[common], help="Archive a data directory")
    incremental.add_argument("--data-dir", type=Path, required=True)
    incremental.add_argument("--base", help="Parent archive (path or URI); omit for a new base")
    incremental.add_argument("--label", help="Series name")

    # restore
    restore = commands.add_parser("restore", help="Restore backups")
    restore_kinds = restore.add_subparsers(dest="kind", required=True)

    r_single = restore_kinds.add_parser("single", parents=[common], help="Restore one database")
    r_single.add_argument("source", help="Backup path or URI")
    r_single.add_argument("--target", help="Target database (defaults to the backed-up name)")
    r_single.add_argument("--create", action="store_true", help="Create the target database")
    r_single.add_argument("--clean", action="store_true", help="Drop objects before recreating them")
    r_single.add_argument("--target-dir", type=Path, help="Destination for incremental archives")

    r_cluster = restore_kinds.add_parser("cluster", parents=[common], help="Restore a cluster archive")
    r_cluster.add_argument("source", help="Cluster archive path or URI")

    # cleanup / verify
    cleanup = commands.add_parser("cleanup", parents=[common], help="Apply the retention policy")
    cleanup.add_argument("store", help="Directory or store URI")
    cleanup.add_argument("--prefix", default="", help="Only consider names starting with this")

    verify = commands.add_parser("verify", parents=[common], help="Check a backup against its checksums")
    verify.add_argument("source", help="Backup path or URI")

    # pitr
    pitr = commands.add_parser("pitr", help="Point-in-time recovery")
    pitr_kinds = pitr.add_subparsers(dest="kind", required=True)

    enable = pitr_kinds.add_parser("enable", parents=[common], help="Turn on WAL archiving")
    enable.add_argument("--data-dir", type=Path, required=True)
    enable.add_argument("--archive-dir", type=Path, required=True)
    enable.add_argument("--archive-command", help="Custom archive_command")

    status = pitr_kinds.add_parser("status", parents=[common], help="Show recovery state of a data directory")
    status.add_argument("--data-dir", type=Path, required=True)
    status.add_argument("--archive-dir", type=Path, help="Also summarize the WAL archive")

    wal_cleanup = pitr_kinds.add_parser("wal-cleanup", parents=[common], help="Prune old WAL segments")
    wal_cleanup.add_argument("--archive-dir", type=Path, required=True)
    wal_cleanup.add_argument("--wal-retention-days", type=int, required=True)

    recover = pitr_kinds.add_parser("recover", parents=[common], help="Prepare a data directory for PITR")
    recover.add_argument("--base", type=Path, required=True, help="Base backup tarball")
    recover.add_argument("--data-dir", type=Path, required=True)
    recover.add_argument("--archive-dir", type=Path, required=True)
    target = recover.add_mutually_exclusive_group()
    target.add_argument("--target-time")
    target.add_argument("--target-xid")
    target.add_argument("--target-lsn")
    target.add_argument("--target-name")
    target.add_argument("--target-immediate", action="store_true")
    recover.add_argument("--target-action", default="promote", choices=["promote", "pause", "shutdown"])
    recover.add_argument("--target-timeline", default="latest")
    recover.add_argument("--exclusive", action="store_true", help="Stop just before the target")

    config_cmd = commands.add_parser("config", help="Manage the config file")
    config_kinds = config_cmd.add_subparsers(dest="kind", required=True)
    save = config_kinds.add_parser("save", parents=[common], help="Write the effective settings to a config file")
    save.add_argument("--output", type=Path, help=f"Destination (default ./{CONFIG_FILE_NAME})")

    return parser


# ============================================================================
# Configuration
# ============================================================================

def explicit_flags(args: argparse.Namespace) -> Dict[str, Any]:
    """Config fields the user set on the command line."""
    return {k: v for k, v in vars(args).items() if k in _CONFIG_FLAGS}


def config_from_args(args: argparse.Namespace) -> BackupConfig:
    flags = explicit_flags(args)

    if getattr(args, "prompt_passphrase", False):
        flags["encryption_passphrase"] = getpass.getpass("Encryption passphrase: ")

    config_file: Path | None = None
    if not getattr(args, "no_config", False):
        config_file = getattr(args, "config_file", None) or Path(CONFIG_FILE_NAME)
        if not config_file.exists():
            if getattr(args, "config_file", None) is not None:
                raise ConfigurationError(f"Config file not found: {config_file}")
            config_file = None

    config = resolve_config(flags, config_file)

    profile = getattr(args, "profile", None)
    if profile == "fast":
        config = fast_profile(config)
    elif profile == "archival":
        config = archival_profile(config)
    return config


# ============================================================================
# Commands
# ============================================================================

def _print_backup(result) -> None:
    artifact = result.artifact
    print(f"Backup created: {artifact.name}")
    print(f"  Size:      {format_size(artifact.size_bytes)}")
    print(f"  SHA-256:   {artifact.sha256}")
    print(f"  Encrypted: {'yes' if artifact.is_encrypted else 'no'}")
    for location in result.locations:
        print(f"  Stored at: {location}")
    for database, summary in result.database_errors.items():
        print(f"  Warnings in {database}: {summary}")


async def _cmd_backup(args: argparse.Namespace, config: BackupConfig) -> int:
    from dbbackup.backup import backup_cluster, backup_incremental, backup_sample, backup_single

    if args.kind == "single":
        result = await backup_single(config, args.database)
    elif args.kind == "sample":
        if args.ratio is not None:
            strategy, value = SampleStrategy.RATIO, args.ratio
        elif args.percent is not None:
            strategy, value = SampleStrategy.PERCENT, args.percent
        else:
            strategy, value = SampleStrategy.COUNT, args.count
        result = await backup_sample(config, args.database, strategy, value)
    elif args.kind == "cluster":
        result = await backup_cluster(config)
    else:
        base = None
        if args.base:
            store, name = open_object(args.base, config)
            async with store:
                base = await load_artifact(store, name)
            if base is None:
                raise BackupError(f"No metadata found for base archive {args.base}")
        result = await backup_incremental(config, args.data_dir, base_artifact=base, label=args.label)

    _print_backup(result)
    return EXIT_OK


def _print_report(report) -> None:
    state = "ok" if report.success else "FAILED"
    line = (
        f"  {report.database:<30} {state:<7} ignorable={report.ignorable} "
        f"warnings={report.warnings} critical={report.critical} fatal={report.fatal}"
    )
    print(line)
    if report.error:
        print(f"      error: {report.error}")
    for hint in report.hints:
        print(f"      hint: {hint}")


async def _cmd_restore(args: argparse.Namespace, config: BackupConfig) -> int:
    from dbbackup.backup import restore_cluster, restore_single

    if args.kind == "single":
        result = await restore_single(
            config,
            args.source,
            target_db=args.target,
            create=args.create,
            clean=args.clean,
            target_dir=args.target_dir,
        )
        if result.chain is not None:
            print(f"Restored {len(result.chain.applied)} archive(s) into {result.chain.target_dir}")
            print(f"  Files written: {result.chain.files_written}")
        else:
            print(f"Restore of {result.source} into {result.database}:")
            _print_report(result.report)
        return EXIT_OK if result.success else EXIT_FAILURE

    dry_run = getattr(args, "dry_run", False) or not getattr(args, "confirm", False)
    if dry_run and not getattr(args, "dry_run", False):
        print("Cluster restore drops and recreates databases; planning only. Pass --confirm to execute.")

    result = await restore_cluster(config, args.source, dry_run=dry_run)
    print(f"Cluster archive: {result.archive}")
    print(f"  Superuser: {'yes' if result.superuser else 'no'}")
    print(f"  Parallel jobs: {result.effective_jobs}")
    if result.plan.has_large_objects:
        print(f"  Large objects in: {', '.join(result.plan.large_object_databases)}")
    if result.dry_run:
        for entry in result.plan.entries:
            print(f"  would restore {entry.database} ({entry.format.value}, {format_size(entry.declared_size)})")
        return EXIT_OK

    if result.globals_report is not None:
        _print_report(result.globals_report)
    for report in result.databases:
        _print_report(report)
    if result.failed_databases:
        print(f"Failed databases: {', '.join(result.failed_databases)}")
    return EXIT_OK if result.success else EXIT_FAILURE


async def _cmd_cleanup(args: argparse.Namespace, config: BackupConfig) -> int:
    from dbbackup.retention import apply_retention

    async with open_store(args.store, config) as store:
        result = await apply_retention(
            store,
            prefix=args.prefix,
            retention_days=config.retention_days,
            min_backups=config.min_backups,
            dry_run=getattr(args, "dry_run", False),
            audit_db=config.audit_db_path,
        )

    verb = "Would delete" if result.dry_run else "Deleted"
    for name in result.deleted:
        print(f"{verb}: {name}")
    for name in result.failed:
        print(f"Failed to delete: {name}")
    print(f"Kept {len(result.kept)}, {verb.lower()} {len(result.deleted)}, freed {format_size(result.bytes_freed)}")
    return EXIT_FAILURE if result.failed else EXIT_OK


async def _cmd_verify(args: argparse.Namespace, config: BackupConfig) -> int:
    store, name = open_object(args.source, config)
    async with store:
        result = await verify_artifact(store, name)

    if not result.valid:
        for error in result.errors:
            print(f"{name}: {error}")
        return EXIT_FAILURE
    print(f"{name}: OK ({format_size(result.size_bytes)}, sha256 {result.actual_sha256})")
    return EXIT_OK


async def _cmd_pitr(args: argparse.Namespace, config: BackupConfig) -> int:
    from dbbackup import pitr

    if args.kind == "enable":
        settings = await pitr.enable_archiving(args.data_dir, args.archive_dir, args.archive_command)
        print(f"WAL archiving enabled in {args.data_dir / 'postgresql.conf'}:")
        for key, value in settings.items():
            print(f"  {pitr.format_config_line(key, value)}")
        print("Restart PostgreSQL for the changes to take effect.")
        return EXIT_OK

    if args.kind == "status":
        status = pitr.recovery_status(args.data_dir)
        print(f"Data directory: {status.data_dir}")
        print(f"  Mode:    {status.mode}")
        print(f"  Running: {'yes' if status.server_running else 'no'}")
        for key, value in status.recovery_settings.items():
            print(f"  {key} = {value}")
        if args.archive_dir is not None:
            archive = pitr.scan_archive(args.archive_dir)
            print(f"WAL archive: {args.archive_dir}")
            print(f"  Segments: {len(archive.segments)}")
            print(f"  History files: {len(archive.history_files)}")
            if archive.segments:
                print(f"  Oldest: {archive.segments[0].file_name}")
                print(f"  Newest: {archive.segments[-1].file_name}")
        return EXIT_OK

    if args.kind == "wal-cleanup":
        dry_run = getattr(args, "dry_run", False)
        deleted = pitr.cleanup_archive(args.archive_dir, args.wal_retention_days, dry_run=dry_run)
        print(f"{'Would delete' if dry_run else 'Deleted'} {deleted} WAL segment(s)")
        return EXIT_OK

    # Target is validated before anything touches the data directory
    target = pitr.parse_recovery_target(
        time=args.target_time,
        xid=args.target_xid,
        lsn=args.target_lsn,
        name=args.target_name,
        immediate=args.target_immediate,
        action=args.target_action,
        timeline=args.target_timeline,
        inclusive=not args.exclusive,
    )
    settings = await pitr.recover(args.base, args.data_dir, args.archive_dir, target, config=config)
    print(f"Recovery prepared in {args.data_dir} (target: {target.describe()}):")
    for key, value in settings.items():
        print(f"  {pitr.format_config_line(key, value)}")
    print("Start PostgreSQL to replay WAL up to the target.")
    return EXIT_OK


async def _cmd_config(args: argparse.Namespace, config: BackupConfig) -> int:
    path = getattr(args, "output", None) or Path(CONFIG_FILE_NAME)
    save_config_file(config, path)
    print(f"Saved settings to {path} (passwords are not stored)")
    return EXIT_OK


_COMMANDS = {
    "backup": _cmd_backup,
    "restore": _cmd_restore,
    "cleanup": _cmd_cleanup,
    "verify": _cmd_verify,
    "pitr": _cmd_pitr,
    "config": _cmd_config,
}


# ============================================================================
# Entry point
# ============================================================================

async def run(args: argparse.Namespace, config: BackupConfig) -> int:
    """
    Run one command with SIGINT/SIGTERM cancelling it.

    Child processes are terminated on the way out whatever the outcome.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    received: List[signal.Signals] = []

    def _on_signal(sig: signal.Signals) -> None:
        if not received:
            logger.warning("signal_received", signal=sig.name)
        received.append(sig)
        task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig)

    try:
        return await _COMMANDS[args.command](args, config)
    except asyncio.CancelledError:
        if not received:
            raise
        raise CancelledOperation(f"Interrupted by {received[0].name}") from None
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await process_registry.terminate_all()
        process_registry.sweep()


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(debug=getattr(args, "debug", False), json=getattr(args, "json_logs", False))

    try:
        config = config_from_args(args)
    except ConfigurationError as e:
        errors = e.details.get("errors") or [e.message]
        for error in errors:
            print(f"dbbackup: {error}", file=sys.stderr)
        return EXIT_USAGE

    try:
        return asyncio.run(run(args, config))
    except OperationTimeout as e:
        logger.error("operation_timed_out", error=str(e))
        return EXIT_FAILURE
    except (CancelledOperation, KeyboardInterrupt):
        print("dbbackup: cancelled", file=sys.stderr)
        return EXIT_CANCELLED
    except ConfigurationError as e:
        print(f"dbbackup: {e}", file=sys.stderr)
        return EXIT_USAGE
    except DBBackupError as e:
        logger.error("command_failed", command=args.command, error=e.message, **_safe_details(e.details))
        print(f"dbbackup: {e.message}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        if session_metrics.started:
            session_metrics.report()


def _safe_details(details: Dict[str, Any]) -> Dict[str, Any]:
    # Keys that would collide with structlog's own fields are dropped
    return {k: v for k, v in details.items() if k not in ("event", "level", "timestamp", "command", "error")}


if __name__ == "__main__":
    sys.exit(main())
