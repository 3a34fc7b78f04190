# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Restore - Single-database and cluster restores.

A cluster restore runs in four phases:

    PreFlight    superuser check, archive validation, extraction, plan
    Globals      roles and tablespaces via the SQL client
    PerDatabase  terminate connections, drop, create, restore
    Report       per-database diagnostic counts and overall verdict

Restore tools never run with single-transaction or exit-on-error by default.
Every stderr line is classified instead: ignorable lines are counted, a
CRITICAL line fails that database, and a FATAL line stops the whole restore.
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Tuple, TypeVar

import structlog

from dbbackup.audit import maybe_audit
from dbbackup.backup.formats import (
    ArchiveFormat,
    detect_archive_format,
    extract_archive,
    validate_archive,
)
from dbbackup.backup.incremental import ChainRestoreResult, apply_incremental_chain, resolve_chain
from dbbackup.backup.manager import CLUSTER_MANIFEST, GLOBALS_FILE, backup_workspace
from dbbackup.classifier import DiagnosticCounter, ErrorClass, classify, summarize
from dbbackup.config import BackupConfig, BackupScope, BackupType, DumpFormat, EngineType
from dbbackup.crypto import is_encrypted_file, key_from_config
from dbbackup.engines import DumpToc, EngineAdapter, RestoreOptions, ToolProcess, ToolResult, get_engine
from dbbackup.errors import (
    explain_large_objects_sequential,
    explain_non_superuser_restore,
    explain_target_database_missing,
    explain_version_downgrade,
)
from dbbackup.exceptions import (
    CancelledOperation,
    FatalError,
    IntegrityError,
    ObjectNotFoundError,
    RestoreError,
)
from dbbackup.metadata import BackupArtifact, load_artifact, read_checksum_file, sha256_file
from dbbackup.metrics import session_metrics
from dbbackup.pipeline import (
    iter_file,
    run_restore_to_file,
    run_restore_to_process,
    verify_stream,
    with_tool_cleanup,
    write_atomic,
)
from dbbackup.scheduling import cancellable_sleep, run_bounded, with_timeout
from dbbackup.storage import open_object
from dbbackup.storage.local import LocalStore

logger = structlog.get_logger()

T = TypeVar("T")

# Pause between terminating connections and dropping the database
TERMINATE_SETTLE_SECONDS = 0.5

LEGACY_DUMPS_DIR = "dumps"

# Upgrades across more majors than this get a warning
MAX_SAFE_MAJOR_JUMP = 3


# ============================================================================
# Plan and reports
# ============================================================================

@dataclass
class PlanEntry:
    """One per-database restore job."""

    database: str
    path: Path
    format: DumpFormat
    declared_size: int = 0
    toc: DumpToc = field(default_factory=DumpToc)

    @property
    def contains_large_objects(self) -> bool:
        return self.toc.contains_large_objects


@dataclass
class RestorePlan:
    """What a cluster restore will do, in order."""

    globals_files: List[Path] = field(default_factory=list)
    entries: List[PlanEntry] = field(default_factory=list)

    @property
    def large_object_databases(self) -> List[str]:
        return [e.database for e in self.entries if e.contains_large_objects]

    @property
    def has_large_objects(self) -> bool:
        return any(e.contains_large_objects for e in self.entries)

    def effective_jobs(self, configured_jobs: int) -> int:
        """One database at a time when any dump holds large objects."""
        return 1 if self.has_large_objects else max(1, configured_jobs)


@dataclass
class DatabaseRestoreReport:
    """Outcome of restoring one database (or the globals script)."""

    database: str
    success: bool
    ignorable: int = 0
    warnings: int = 0
    critical: int = 0
    fatal: int = 0
    categories: Dict[str, int] = field(default_factory=dict)
    hints: List[str] = field(default_factory=list)
    returncode: int | None = None
    error: str | None = None
    duration_seconds: float = 0.0

    @classmethod
    def from_counter(
        cls,
        database: str,
        counter: DiagnosticCounter,
        result: ToolResult | None,
        strict: bool = False,
        duration_seconds: float = 0.0,
    ) -> "DatabaseRestoreReport":
        success = counter.is_success(strict)
        returncode = result.returncode if result is not None else None
        error: str | None = None

        # A non-zero exit with no diagnostics at all means the tool itself failed
        total_lines = counter.ignorable + counter.warnings + counter.critical + counter.fatal
        if returncode and total_lines == 0:
            success = False
            error = f"{result.program} exited with code {returncode}"
        elif not success:
            error = summarize(counter)

        hints: List[str] = []
        if counter.first_blocking is not None:
            hints.append(f"{counter.first_blocking.hint}. {counter.first_blocking.action}")

        return cls(
            database=database,
            success=success,
            ignorable=counter.ignorable,
            warnings=counter.warnings,
            critical=counter.critical,
            fatal=counter.fatal,
            categories=dict(counter.by_category),
            hints=hints,
            returncode=returncode,
            error=error,
            duration_seconds=duration_seconds,
        )

    @classmethod
    def failed(cls, database: str, error: BaseException) -> "DatabaseRestoreReport":
        return cls(database=database, success=False, error=str(error) or type(error).__name__)


@dataclass
class ClusterRestoreResult:
    """Result of a cluster restore."""

    archive: str
    plan: RestorePlan
    superuser: bool
    effective_jobs: int
    globals_report: DatabaseRestoreReport | None = None
    databases: List[DatabaseRestoreReport] = field(default_factory=list)
    dry_run: bool = False
    duration_seconds: float = 0.0

    @property
    def failed_databases(self) -> List[str]:
        return [r.database for r in self.databases if not r.success]

    @property
    def success(self) -> bool:
        if self.dry_run:
            return True
        if self.globals_report is not None and self.globals_report.fatal:
            return False
        return all(r.success for r in self.databases)


@dataclass
class RestoreResult:
    """Result of a single-database or incremental-chain restore."""

    source: str
    database: str | None
    format: ArchiveFormat | None = None
    report: DatabaseRestoreReport | None = None
    chain: ChainRestoreResult | None = None
    created: bool = False
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        if self.chain is not None:
            return True
        return self.report is not None and self.report.success


# ============================================================================
# Staging
# ============================================================================

@dataclass
class StagedArtifact:
    """A payload available as a local file, with its metadata if any."""

    path: Path
    name: str
    artifact: BackupArtifact | None
    source: str


async def stage_artifact(config: BackupConfig, source: str | Path, workspace: Path) -> StagedArtifact:
    """
    Make a payload available locally and verify its recorded checksum.

    Local files are used in place; cloud objects are downloaded into the
    workspace. The SHA-256 from B.info (or B.sha256) is checked either way.

    Raises:
        RestoreError: If the payload does not exist
        IntegrityError: If the payload does not match its checksum
    """
    store, name = open_object(source, config)
    async with store:
        artifact = await load_artifact(store, name)
        expected = artifact.sha256 if artifact is not None and artifact.sha256 else None
        if expected is None:
            try:
                expected = await read_checksum_file(store, name)
            except ObjectNotFoundError:
                logger.warning("restore_source_unverified", source=str(source))

        if isinstance(store, LocalStore):
            path = store.root / name
            if not path.is_file():
                raise RestoreError(f"Backup not found: {path}", details={"source": str(source)})
            if expected is not None:
                actual = await sha256_file(path)
                if actual != expected:
                    raise IntegrityError(
                        f"Checksum mismatch for {name}",
                        details={"expected": expected, "actual": actual},
                    )
        else:
            path = workspace / name
            stream = store.open_read(name, config.chunk_size)
            if expected is not None:
                stream = verify_stream(stream, expected)
            try:
                await write_atomic(stream, path)
            except ObjectNotFoundError as e:
                raise RestoreError(f"Backup not found: {source}", details={"source": str(source)}) from e
            logger.info("restore_source_staged", source=str(source), path=str(path))

    return StagedArtifact(path=path, name=name, artifact=artifact, source=str(source))


async def decrypt_if_needed(config: BackupConfig, path: Path, workspace: Path) -> Path:
    """
    Decrypt an encrypted payload into the workspace; plaintext is returned as is.

    Raises:
        IntegrityError: If no key is configured or the key is wrong
    """
    if not await is_encrypted_file(path):
        return path

    key = key_from_config(config, required=False)
    if key is None:
        raise IntegrityError(
            f"{path.name} is encrypted but no decryption key was provided",
            details={"path": str(path)},
        )

    decrypted_dir = workspace / "decrypted"
    decrypted_dir.mkdir(exist_ok=True)
    dest = decrypted_dir / path.name
    await run_restore_to_file(iter_file(path, config.chunk_size), dest, key=key, decompress=False)
    logger.info("payload_decrypted", name=path.name)
    return dest


# ============================================================================
# Running a restore tool
# ============================================================================

async def _until_fatal(work: Awaitable[T], fatal_seen: asyncio.Event, database: str, counter: DiagnosticCounter) -> T:
    """Await work, but stop with FatalError as soon as a FATAL line is seen."""
    work_task = asyncio.ensure_future(work)
    watch_task = asyncio.create_task(fatal_seen.wait())
    try:
        done, _ = await asyncio.wait({work_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
        if work_task in done:
            return work_task.result()
        raise FatalError(
            f"Fatal error while restoring {database}",
            details={"database": database, "samples": counter.samples.get("corruption", [])},
        )
    finally:
        for task in (work_task, watch_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(work_task, watch_task, return_exceptions=True)


async def _feed_and_wait(tool: ToolProcess, path: Path, chunk_size: int) -> ToolResult:
    try:
        await run_restore_to_process(iter_file(path, chunk_size), tool.stdin, decompress=True)
    except (BrokenPipeError, ConnectionResetError) as e:
        # The tool exited early; its exit status and stderr tell why
        logger.warning("restore_tool_closed_stdin", program=tool.program, error=str(e))
    return await tool.wait()


async def restore_payload(
    engine: EngineAdapter,
    config: BackupConfig,
    database: str,
    path: Path,
    fmt: ArchiveFormat,
    options: RestoreOptions,
    workspace: Path,
) -> DatabaseRestoreReport:
    """
    Restore one local, decrypted payload into an existing database.

    Custom dumps go to pg_restore by path (so parallel jobs work); SQL
    scripts are streamed, decompressing on the fly, into the SQL client.

    Raises:
        FatalError: As soon as the tool reports a FATAL diagnostic
    """
    started = time.monotonic()
    counter = DiagnosticCounter()
    fatal_seen = asyncio.Event()

    def _on_line(line: str) -> None:
        result = classify(line)
        if result.error_class == ErrorClass.FATAL:
            fatal_seen.set()
        elif result.error_class == ErrorClass.CRITICAL:
            logger.error("restore_diagnostic", database=database, category=result.category, line=line[:500])
        elif result.error_class == ErrorClass.WARNING:
            logger.warning("restore_diagnostic", database=database, category=result.category, line=line[:500])

    if fmt.is_custom_dump:
        if fmt == ArchiveFormat.POSTGRES_DUMP_GZ:
            plain = workspace / f"{path.name}.raw"
            await run_restore_to_file(iter_file(path, config.chunk_size), plain, decompress=True)
            path = plain
        tool = await engine.start_restore(
            database, replace(options, format=DumpFormat.CUSTOM), path, counter, _on_line
        )
        work: Awaitable[ToolResult] = tool.wait()
    else:
        tool = await engine.start_restore(
            database, replace(options, format=DumpFormat.PLAIN), None, counter, _on_line
        )
        work = _feed_and_wait(tool, path, config.chunk_size)

    result = await with_tool_cleanup(tool, _until_fatal(work, fatal_seen, database, counter))
    if counter.has_fatal:
        raise FatalError(
            f"Fatal error while restoring {database}",
            details={"database": database, "summary": summarize(counter)},
        )

    report = DatabaseRestoreReport.from_counter(
        database, counter, result, config.strict, time.monotonic() - started
    )
    log = logger.info if report.success else logger.error
    log(
        "database_restore_finished",
        database=database,
        success=report.success,
        ignorable=report.ignorable,
        warnings=report.warnings,
        critical=report.critical,
        returncode=report.returncode,
    )
    return report


# ============================================================================
# Cluster restore
# ============================================================================

def _database_from_member(path: Path, root: Path) -> str | None:
    """db_<name>.dump / db_<name>.sql[.gz|.zst] at the root, or legacy dumps/<name>.dump."""
    name = path.name
    for suffix in (".dump", ".sql.gz", ".sql.zst", ".sql"):
        if name.endswith(suffix):
            stem = name[: -len(suffix)]
            break
    else:
        return None

    if path.parent == root and stem.startswith("db_"):
        return stem[len("db_"):]
    if path.parent == root / LEGACY_DUMPS_DIR:
        return stem
    return None


async def build_restore_plan(engine: EngineAdapter, extract_dir: Path, config: BackupConfig) -> RestorePlan:
    """
    Derive the restore plan from an extracted cluster archive.

    Custom-format dumps have their table of contents scanned for large
    objects.
    """
    plan = RestorePlan()
    globals_path = extract_dir / GLOBALS_FILE
    if globals_path.is_file():
        plan.globals_files.append(globals_path)

    manifest: Dict[str, Any] = {}
    manifest_path = extract_dir / CLUSTER_MANIFEST
    if manifest_path.is_file():
        try:
            manifest = json.loads(manifest_path.read_text()).get("databases") or {}
        except (ValueError, AttributeError) as e:
            logger.warning("cluster_manifest_unreadable", error=str(e))

    candidates = sorted(extract_dir.iterdir())
    legacy_dir = extract_dir / LEGACY_DUMPS_DIR
    if legacy_dir.is_dir():
        candidates += sorted(legacy_dir.iterdir())

    seen = set()
    for path in candidates:
        if not path.is_file():
            continue
        database = _database_from_member(path, extract_dir)
        if database is None or database in seen:
            continue
        seen.add(database)

        fmt = detect_archive_format(path, config.engine)
        entry = PlanEntry(
            database=database,
            path=path,
            format=DumpFormat.CUSTOM if fmt.is_custom_dump else DumpFormat.PLAIN,
            declared_size=int((manifest.get(database) or {}).get("database_size_bytes") or path.stat().st_size),
        )
        if fmt == ArchiveFormat.POSTGRES_DUMP:
            entry.toc = await engine.inspect_dump_toc(path)
            if entry.contains_large_objects:
                logger.info(
                    "large_objects_found",
                    database=database,
                    large_objects=entry.toc.large_object_count,
                )
        plan.entries.append(entry)

    # Keep the order the backup recorded
    if manifest:
        order = {name: i for i, name in enumerate(manifest)}
        plan.entries.sort(key=lambda e: order.get(e.database, len(order)))

    if not plan.entries:
        raise RestoreError(
            "Cluster archive contains no database dumps",
            details={"files": [p.name for p in candidates]},
        )
    return plan


async def restore_globals(
    engine: EngineAdapter,
    path: Path,
    superuser: bool,
    config: BackupConfig,
) -> DatabaseRestoreReport:
    """
    Run the globals script.

    Every stderr line goes through the classifier. A FATAL diagnostic fails
    the restore; any other non-zero exit is only a warning.
    """
    started = time.monotonic()
    counter = DiagnosticCounter()
    result = await engine.run_sql_script(path, None, counter)

    if counter.has_fatal:
        raise FatalError(
            "Fatal error while restoring globals",
            details={"stderr": result.stderr_tail[-10:], "summary": summarize(counter)},
        )

    if result.returncode != 0:
        logger.warning(
            "globals_restore_partial",
            returncode=result.returncode,
            superuser=superuser,
            summary=summarize(counter),
        )

    report = DatabaseRestoreReport.from_counter("globals", counter, None, False, time.monotonic() - started)
    report.returncode = result.returncode
    logger.info("globals_restored", ignorable=report.ignorable, warnings=report.warnings)
    return report


async def restore_database(
    engine: EngineAdapter,
    config: BackupConfig,
    entry: PlanEntry,
    options: RestoreOptions,
    workspace: Path,
) -> DatabaseRestoreReport:
    """Terminate, drop, create, restore. System databases are never dropped."""
    database = entry.database
    logger.info("database_restore_started", database=database, format=entry.format.value)

    await engine.terminate_other_connections(database)
    await cancellable_sleep(TERMINATE_SETTLE_SECONDS)

    if engine.is_system_database(database):
        logger.info("system_database_preserved", database=database)
    else:
        await engine.drop_database(database)
        await engine.create_database(database, template_empty=True)

    fmt = detect_archive_format(entry.path, config.engine)
    return await restore_payload(engine, config, database, entry.path, fmt, options, workspace)


async def restore_cluster(
    config: BackupConfig,
    source: str | Path,
    engine: EngineAdapter | None = None,
    dry_run: bool = False,
) -> ClusterRestoreResult:
    """
    Restore every database in a cluster archive.

    Args:
        config: Configuration (jobs, timeouts, strict mode, key sources)
        source: Local path or cloud URI of the cluster archive
        engine: Engine adapter (defaults to the one for config.engine)
        dry_run: Validate and plan only; nothing is dropped or restored

    Returns:
        ClusterRestoreResult with one report per database

    Raises:
        FatalError: If the globals or any database report a FATAL diagnostic
        RestoreError: If the archive is invalid
    """
    engine = engine or get_engine(config)

    async def _work() -> ClusterRestoreResult:
        return await _restore_cluster(config, source, engine, dry_run)

    return await _track_restore(config, "restore_cluster", str(source), _work)


async def _restore_cluster(
    config: BackupConfig,
    source: str | Path,
    engine: EngineAdapter,
    dry_run: bool,
) -> ClusterRestoreResult:
    started = time.monotonic()

    # PreFlight
    superuser = await engine.is_superuser()
    options = RestoreOptions(jobs=config.dump_jobs)
    if not superuser:
        options = replace(options, no_owner=True, no_privileges=True)
        logger.warning(
            "ownership_will_be_reassigned",
            user=config.user,
            hint=explain_non_superuser_restore(config.user),
        )

    with backup_workspace(config) as workspace_name:
        workspace = Path(workspace_name)
        staged = await stage_artifact(config, source, workspace)
        await check_version_compatible(staged.artifact, engine)
        archive = await decrypt_if_needed(config, staged.path, workspace)

        fmt = validate_archive(archive, config.engine)
        if not fmt.is_cluster:
            raise RestoreError(
                f"{staged.name} is not a cluster archive ({fmt.value})",
                details={"format": fmt.value},
            )

        extract_dir = workspace / "cluster"
        await extract_archive(archive, extract_dir)
        if archive != staged.path:
            archive.unlink()

        plan = await build_restore_plan(engine, extract_dir, config)
        effective_jobs = plan.effective_jobs(config.jobs)
        if plan.has_large_objects:
            logger.warning(
                "large_objects_detected_sequential_restore",
                databases=plan.large_object_databases,
                configured_jobs=config.jobs,
                hint=explain_large_objects_sequential(plan.large_object_databases),
            )

        result = ClusterRestoreResult(
            archive=staged.source,
            plan=plan,
            superuser=superuser,
            effective_jobs=effective_jobs,
            dry_run=dry_run,
        )
        logger.info(
            "cluster_restore_planned",
            databases=[e.database for e in plan.entries],
            globals=len(plan.globals_files),
            effective_jobs=effective_jobs,
            dry_run=dry_run,
        )
        if dry_run:
            result.duration_seconds = time.monotonic() - started
            return result

        # Globals finish before any database is touched
        for globals_path in plan.globals_files:
            result.globals_report = await restore_globals(engine, globals_path, superuser, config)

        # PerDatabase
        def _job(entry: PlanEntry) -> Callable[[], Awaitable[DatabaseRestoreReport]]:
            return lambda: with_timeout(
                restore_database(engine, config, entry, options, workspace),
                config.operation_timeout_minutes,
                f"restore {entry.database}",
            )

        outcomes = await run_bounded({e.database: _job(e) for e in plan.entries}, effective_jobs)

        # Report
        for entry in plan.entries:
            outcome = outcomes.get(entry.database)
            if isinstance(outcome, BaseException):
                logger.error("database_restore_failed", database=entry.database, error=str(outcome))
                result.databases.append(DatabaseRestoreReport.failed(entry.database, outcome))
            elif outcome is not None:
                result.databases.append(outcome)

    result.duration_seconds = time.monotonic() - started
    log = logger.info if result.success else logger.error
    log(
        "cluster_restore_complete",
        success=result.success,
        databases=len(result.databases),
        failed=result.failed_databases,
        duration_seconds=round(result.duration_seconds, 2),
    )
    return result


# ============================================================================
# Single database
# ============================================================================

def _check_engine_compatible(artifact: BackupArtifact | None, config: BackupConfig) -> None:
    if artifact is None or artifact.engine == config.engine:
        return
    if artifact.engine.is_mysql_family and config.engine.is_mysql_family:
        logger.warning(
            "engine_compatibility_warning",
            backup_engine=artifact.engine.value,
            target_engine=config.engine.value,
        )
        return
    raise RestoreError(
        f"Backup was taken from {artifact.engine.value}; cannot restore into {config.engine.value}",
        details={"backup_engine": artifact.engine.value, "target_engine": config.engine.value},
    )


_VERSION_PATTERN = re.compile(r"(\d+)\.(\d+)")


def source_server_version(artifact: BackupArtifact | None) -> Tuple[int, int] | None:
    """(major, minor) of the server a backup came from, if recorded."""
    if artifact is None:
        return None
    for text in (artifact.server_version, artifact.tool_version):
        match = _VERSION_PATTERN.search(text or "")
        if match is not None:
            return int(match.group(1)), int(match.group(2))
    return None


async def check_version_compatible(artifact: BackupArtifact | None, engine: EngineAdapter) -> str:
    """
    Compare the backup's server version with the target server.

    Only warnings are given; the restore itself always proceeds.

    Returns:
        One of "unknown", "same", "upgrade", "large_upgrade", "downgrade"
    """
    source = source_server_version(artifact)
    if source is None:
        return "unknown"
    target = await engine.get_version()

    if source[0] == target[0]:
        return "same"
    if source[0] > target[0]:
        logger.warning(
            "version_downgrade_warning",
            source_version=f"{source[0]}.{source[1]}",
            target_version=f"{target[0]}.{target[1]}",
            hint=explain_version_downgrade(source[0], target[0]),
        )
        return "downgrade"
    if target[0] - source[0] > MAX_SAFE_MAJOR_JUMP:
        logger.warning(
            "version_jump_warning",
            source_version=f"{source[0]}.{source[1]}",
            target_version=f"{target[0]}.{target[1]}",
            majors=target[0] - source[0],
        )
        return "large_upgrade"
    logger.info("version_upgrade", source_major=source[0], target_major=target[0])
    return "upgrade"


async def restore_single(
    config: BackupConfig,
    source: str | Path,
    target_db: str | None = None,
    create: bool = False,
    engine: EngineAdapter | None = None,
    clean: bool = False,
    target_dir: Path | None = None,
) -> RestoreResult:
    """
    Restore one backup into one database, or an incremental chain into a directory.

    Args:
        config: Configuration
        source: Local path or cloud URI of the payload
        target_db: Database to restore into (defaults to the backed-up name)
        create: Create the target database if it does not exist
        engine: Engine adapter (defaults to the one for config.engine)
        clean: Drop existing objects before recreating them (custom dumps)
        target_dir: Destination directory for incremental archives

    Raises:
        RestoreError: If the target database is missing and create is False
        IntegrityError: On checksum mismatch or wrong decryption key
    """

    async def _work() -> RestoreResult:
        return await _restore_single(config, source, target_db, create, engine, clean, target_dir)

    return await _track_restore(config, "restore_single", target_db or str(source), _work)


async def _restore_incremental(config: BackupConfig, source: str | Path, target_dir: Path | None) -> RestoreResult:
    started = time.monotonic()
    if target_dir is None:
        raise RestoreError(
            "Incremental archives restore into a directory; pass target_dir",
            details={"source": str(source)},
        )
    store, name = open_object(source, config)
    async with store:
        chain = await resolve_chain(store, name)
        encrypted = any(a.is_encrypted for a in chain)
        key = key_from_config(config, required=False) if encrypted else None
        if encrypted and key is None:
            raise IntegrityError("Backup chain is encrypted but no decryption key was provided")
        applied = await apply_incremental_chain(
            store, chain, target_dir, key=key, work_dir=config.temp_dir, chunk_size=config.chunk_size
        )
    return RestoreResult(
        source=str(source),
        database=chain[-1].database,
        chain=applied,
        duration_seconds=time.monotonic() - started,
    )


async def _restore_single(
    config: BackupConfig,
    source: str | Path,
    target_db: str | None,
    create: bool,
    engine: EngineAdapter | None,
    clean: bool,
    target_dir: Path | None,
) -> RestoreResult:
    started = time.monotonic()

    store, name = open_object(source, config)
    async with store:
        artifact = await load_artifact(store, name)

    if artifact is not None and (
        artifact.parent_ref is not None
        or artifact.scope == BackupScope.INCREMENTAL
        or artifact.backup_type != BackupType.FULL
    ):
        return await _restore_incremental(config, source, target_dir)

    _check_engine_compatible(artifact, config)
    if artifact is not None and artifact.scope == BackupScope.CLUSTER:
        raise RestoreError(f"{name} is a cluster archive; use a cluster restore", details={"source": str(source)})

    database = target_db or (artifact.database if artifact is not None else None)
    if not database:
        raise RestoreError("No target database given", details={"source": str(source)})

    engine = engine or get_engine(config)
    await check_version_compatible(artifact, engine)
    created = False
    if not await engine.database_exists(database):
        if not create:
            raise RestoreError(explain_target_database_missing(database), details={"database": database})
        await engine.create_database(database, template_empty=True)
        created = True

    superuser = await engine.is_superuser()
    options = RestoreOptions(jobs=config.dump_jobs, clean=clean)
    if not superuser:
        options = replace(options, no_owner=True, no_privileges=True)
        logger.warning(
            "ownership_will_be_reassigned",
            user=config.user,
            hint=explain_non_superuser_restore(config.user),
        )

    with backup_workspace(config) as workspace_name:
        workspace = Path(workspace_name)
        staged = await stage_artifact(config, source, workspace)
        payload = await decrypt_if_needed(config, staged.path, workspace)

        hint: EngineType = artifact.engine if artifact is not None else config.engine
        fmt = validate_archive(payload, hint)
        if fmt.is_cluster:
            raise RestoreError(f"{name} is a cluster archive; use a cluster restore", details={"source": str(source)})

        logger.info("single_restore_started", source=str(source), database=database, format=fmt.value)
        report = await restore_payload(engine, config, database, payload, fmt, options, workspace)

    result = RestoreResult(
        source=str(source),
        database=database,
        format=fmt,
        report=report,
        created=created,
        duration_seconds=time.monotonic() - started,
    )
    log = logger.info if result.success else logger.error
    log(
        "single_restore_complete",
        database=database,
        success=result.success,
        duration_seconds=round(result.duration_seconds, 2),
    )
    return result


# ============================================================================
# Bookkeeping
# ============================================================================

async def _track_restore(
    config: BackupConfig,
    operation: str,
    target: str,
    work: Callable[[], Awaitable[T]],
) -> T:
    mark = session_metrics.start()
    async with maybe_audit(config.audit_db_path, "restore", target, {"operation": operation}) as handle:
        try:
            result = await work()
        except (asyncio.CancelledError, CancelledOperation) as e:
            session_metrics.record(operation, target, mark, aborted=True)
            logger.warning("restore_aborted", operation=operation, target=target, reason=str(e) or "cancelled")
            raise
        except Exception as e:
            session_metrics.record(operation, target, mark, success=False, error_count=1)
            logger.error("restore_failed", operation=operation, target=target, error=str(e))
            raise

        success = getattr(result, "success", True)
        failed = getattr(result, "failed_databases", [])
        session_metrics.record(operation, target, mark, success=success, error_count=len(failed) or int(not success))
        if handle is not None:
            handle.details.update(success=success, failed_databases=failed)
    return result
