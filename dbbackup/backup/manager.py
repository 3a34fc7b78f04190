# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Backup Manager - Single, sample, and cluster backups.

Each backup streams the dump tool's stdout through the pipeline into a
scoped temp workspace, publishes the finished triple to the local backup
directory (and the cloud mirror when configured), then applies retention.
"""

import asyncio
import json
import re
import tarfile
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List

import structlog

from dbbackup.audit import maybe_audit
from dbbackup.classifier import DiagnosticCounter, summarize
from dbbackup.config import (
    BackupConfig,
    BackupScope,
    CompressionAlgo,
    DumpFormat,
    EncryptionAlgo,
    SampleStrategy,
)
from dbbackup.crypto import HEADER_SIZE, KeyMaterial, key_from_config
from dbbackup.engines import DumpOptions, EngineAdapter, get_engine, iter_tool_output
from dbbackup.exceptions import BackupError, CancelledOperation, StorageError
from dbbackup.metadata import BackupArtifact, publish_artifact
from dbbackup.metrics import session_metrics
from dbbackup.pipeline import (
    PipelineResult,
    iter_file,
    run_backup_pipeline,
    with_tool_cleanup,
    write_atomic,
)
from dbbackup.retention import RetentionResult, apply_retention
from dbbackup.scheduling import run_bounded, with_timeout
from dbbackup.storage import ObjectStore, ProgressCallback, open_store
from dbbackup.storage.local import LocalStore

logger = structlog.get_logger()

_executor = ThreadPoolExecutor(max_workers=2)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
_TS_PATTERN = r"\d{8}_\d{6}"

CLUSTER_MANIFEST = "metadata.json"
GLOBALS_FILE = "globals.sql"


@dataclass
class BackupResult:
    """Result of one backup run."""

    artifact: BackupArtifact
    local_path: Path | None
    locations: List[str] = field(default_factory=list)
    pipeline: PipelineResult | None = None
    database_errors: Dict[str, str] = field(default_factory=dict)
    retention: List[RetentionResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def name(self) -> str:
        return self.artifact.name


# ============================================================================
# Naming
# ============================================================================

def backup_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now(UTC)).strftime(TIMESTAMP_FORMAT)


def compression_suffix(algo: CompressionAlgo) -> str:
    return {CompressionAlgo.GZIP: ".gz", CompressionAlgo.ZSTD: ".zst"}.get(algo, "")


def single_backup_name(database: str, fmt: DumpFormat, algo: CompressionAlgo, ts: str) -> str:
    """
    db_<name>_<ts>.dump for custom dumps, db_<name>_<ts>.sql[.gz|.zst] otherwise.

    Custom dumps keep the .dump name whatever the pipeline compression; the
    .info records it.
    """
    if fmt == DumpFormat.CUSTOM:
        return f"db_{database}_{ts}.dump"
    return f"db_{database}_{ts}.sql{compression_suffix(algo)}"


def _format_value(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def sample_backup_name(
    database: str,
    strategy: SampleStrategy,
    value: float,
    algo: CompressionAlgo,
    ts: str,
) -> str:
    return f"sample_{database}_{strategy.value}{_format_value(value)}_{ts}.sql{compression_suffix(algo)}"


def cluster_backup_name(ts: str) -> str:
    return f"cluster_{ts}.tar.gz"


def retention_pattern(scope: BackupScope, database: str | None = None) -> re.Pattern:
    """
    Name pattern retention uses to group artifacts of one series.

    Single backups of "app" must not be swept together with "app_archive".
    """
    if scope == BackupScope.CLUSTER:
        return re.compile(rf"^cluster_{_TS_PATTERN}\.")
    name = re.escape(database or "")
    if scope == BackupScope.SAMPLE:
        return re.compile(rf"^sample_{name}_[a-z]+[\d.]+_{_TS_PATTERN}\.")
    return re.compile(rf"^db_{name}_{_TS_PATTERN}\.")


def _retention_prefix(scope: BackupScope, database: str | None) -> str:
    if scope == BackupScope.CLUSTER:
        return "cluster_"
    if scope == BackupScope.SAMPLE:
        return f"sample_{database}_"
    return f"db_{database}_"


# ============================================================================
# Shared steps
# ============================================================================

def encryption_key_for(config: BackupConfig) -> KeyMaterial | None:
    return key_from_config(config) if config.encrypt else None


@asynccontextmanager
async def _primary_store(config: BackupConfig, store: ObjectStore | None) -> AsyncIterator[ObjectStore]:
    """The caller's store if given (left open), otherwise the local backup directory."""
    if store is not None:
        yield store
        return
    async with LocalStore(config.backup_dir) as local:
        yield local


def backup_workspace(config: BackupConfig) -> tempfile.TemporaryDirectory:
    config.temp_dir.mkdir(parents=True, exist_ok=True)
    return tempfile.TemporaryDirectory(dir=config.temp_dir, prefix="dbbackup-")


async def _tool_version(engine: EngineAdapter) -> str | None:
    try:
        return await engine.get_tool_version()
    except Exception as e:
        logger.warning("tool_version_unavailable", engine=engine.name, error=str(e))
        return None


async def _server_version(engine: EngineAdapter) -> str | None:
    try:
        major, minor = await engine.get_version()
    except Exception as e:
        logger.warning("server_version_unavailable", engine=engine.name, error=str(e))
        return None
    return f"{major}.{minor}"


def artifact_common_fields(
    config: BackupConfig,
    pipeline: PipelineResult,
    key: KeyMaterial | None,
    compression: CompressionAlgo,
) -> Dict[str, Any]:
    return {
        "engine": config.engine,
        "size_bytes": pipeline.bytes_out,
        "size_bytes_plaintext": pipeline.bytes_in,
        "sha256": pipeline.sha256,
        "compression": compression,
        "compression_level": config.compression_level,
        "encryption": EncryptionAlgo.AES_256_GCM if key is not None else EncryptionAlgo.NONE,
        "encryption_header_offset": HEADER_SIZE if key is not None else 0,
        "host": config.host,
        "port": config.port,
        "user": config.user,
    }


async def publish_everywhere(
    config: BackupConfig,
    payload: Path,
    artifact: BackupArtifact,
    store: ObjectStore | None = None,
    progress: ProgressCallback | None = None,
) -> tuple:
    """
    Publish a finished payload to the primary store and the cloud mirror.

    Returns:
        Tuple of (locations, local path of the published payload or None)
    """
    locations: List[str] = []
    local_path: Path | None = None

    async with _primary_store(config, store) as primary:
        locations.append(await publish_artifact(primary, payload, artifact, progress))
        if isinstance(primary, LocalStore):
            local_path = primary.root / artifact.name

    if config.cloud_uri:
        async with open_store(config.cloud_uri, config) as cloud:
            locations.append(await publish_artifact(cloud, payload, artifact, progress))

    return locations, local_path


async def run_retention(
    config: BackupConfig,
    scope: BackupScope,
    database: str | None,
    store: ObjectStore | None = None,
) -> List[RetentionResult]:
    """
    Apply retention to every store a backup was published to.

    A store that cannot be swept is logged and skipped; the backup itself
    already succeeded.
    """
    if config.retention_days <= 0:
        return []

    pattern = retention_pattern(scope, database)
    prefix = _retention_prefix(scope, database)
    results: List[RetentionResult] = []

    targets = [lambda: _primary_store(config, store)]
    if config.cloud_uri:
        targets.append(lambda: open_store(config.cloud_uri, config))

    for open_target in targets:
        async with open_target() as target:
            try:
                results.append(
                    await apply_retention(
                        target,
                        prefix=prefix,
                        retention_days=config.retention_days,
                        min_backups=config.min_backups,
                        audit_db=config.audit_db_path,
                        match=lambda name: bool(pattern.match(name)),
                    )
                )
            except StorageError as e:
                logger.warning("retention_failed", store=target.location(prefix), error=str(e))
    return results


async def track_backup(
    config: BackupConfig,
    operation: str,
    target: str,
    work: Callable[[], Awaitable[BackupResult]],
    timeout_minutes: float | None,
) -> BackupResult:
    """Run a backup with metrics, audit journaling, and an optional timeout."""
    mark = session_metrics.start()
    async with maybe_audit(config.audit_db_path, "backup", target, {"operation": operation}) as handle:
        try:
            if timeout_minutes:
                result = await with_timeout(work(), timeout_minutes, operation)
            else:
                result = await work()
        except (asyncio.CancelledError, CancelledOperation) as e:
            session_metrics.record(operation, target, mark, aborted=True)
            logger.warning("backup_aborted", operation=operation, target=target, reason=str(e) or "cancelled")
            raise
        except Exception as e:
            session_metrics.record(operation, target, mark, success=False, error_count=1)
            logger.error("backup_failed", operation=operation, target=target, error=str(e))
            raise

        pipeline = result.pipeline
        session_metrics.record(
            operation,
            target,
            mark,
            bytes_in=pipeline.bytes_in if pipeline else 0,
            bytes_out=pipeline.bytes_out if pipeline else 0,
        )
        if handle is not None:
            handle.details.update(
                name=result.name,
                sha256=result.artifact.sha256,
                size_bytes=result.artifact.size_bytes,
                locations=result.locations,
            )

    logger.info(
        "backup_complete",
        operation=operation,
        name=result.name,
        size_bytes=result.artifact.size_bytes,
        duration_seconds=round(result.duration_seconds, 2),
        locations=result.locations,
    )
    return result


# ============================================================================
# Single database
# ============================================================================

async def backup_single(
    config: BackupConfig,
    database: str,
    engine: EngineAdapter | None = None,
    store: ObjectStore | None = None,
    progress: ProgressCallback | None = None,
) -> BackupResult:
    """
    Back up one database.

    PostgreSQL databases under the large-DB threshold use the custom format;
    larger ones and all MySQL databases are plain SQL compressed by the
    pipeline.

    Args:
        config: Backup configuration
        database: Database to dump
        engine: Engine adapter (defaults to the one for config.engine)
        store: Primary store (defaults to the local backup directory)
        progress: Optional upload progress callback

    Returns:
        BackupResult for the published artifact
    """
    engine = engine or get_engine(config)

    async def _work() -> BackupResult:
        return await _backup_single(config, engine, database, store, progress)

    return await track_backup(config, "backup_single", database, _work, config.operation_timeout_minutes)


async def _choose_format(config: BackupConfig, engine: EngineAdapter, database: str) -> tuple:
    size = await engine.get_size(database)
    if not config.is_postgres:
        return DumpFormat.PLAIN, size
    if size >= config.large_db_threshold_bytes:
        logger.info(
            "large_database_plain_format",
            database=database,
            size_bytes=size,
            threshold_bytes=config.large_db_threshold_bytes,
        )
        return DumpFormat.PLAIN, size
    return DumpFormat.CUSTOM, size


async def _backup_single(
    config: BackupConfig,
    engine: EngineAdapter,
    database: str,
    store: ObjectStore | None,
    progress: ProgressCallback | None,
) -> BackupResult:
    started = time.monotonic()
    now = datetime.now(UTC)
    fmt, db_size = await _choose_format(config, engine, database)
    algo = config.compression_algo
    name = single_backup_name(database, fmt, algo, backup_timestamp(now))
    key = encryption_key_for(config)
    tool_version = await _tool_version(engine)
    server_version = await _server_version(engine)

    logger.info("backup_started", database=database, name=name, format=fmt.value, encrypted=key is not None)

    with backup_workspace(config) as workspace:
        payload = Path(workspace) / name
        options = DumpOptions(
            format=fmt,
            jobs=config.dump_jobs,
            exclude_table_data=list(config.exclude_table_data),
        )
        tool = await engine.start_dump(database, options)
        pipeline = await with_tool_cleanup(
            tool,
            run_backup_pipeline(
                iter_tool_output(tool, config.chunk_size),
                payload,
                algo,
                config.compression_level,
                key,
                config.use_parallel_gzip,
            ),
        )

        artifact = BackupArtifact(
            name=name,
            database=database,
            scope=BackupScope.SINGLE,
            format=fmt,
            created_at=now,
            databases=[database],
            tool_version=tool_version,
            server_version=server_version,
            duration_seconds=time.monotonic() - started,
            extra={
                "database_size_bytes": db_size,
                "plaintext_sha256": pipeline.plaintext_sha256,
            },
            **artifact_common_fields(config, pipeline, key, algo),
        )
        locations, local_path = await publish_everywhere(config, payload, artifact, store, progress)

    database_errors: Dict[str, str] = {}
    if tool.diagnostics.warnings or tool.diagnostics.critical:
        database_errors[database] = summarize(tool.diagnostics)

    retention = await run_retention(config, BackupScope.SINGLE, database, store)
    return BackupResult(
        artifact=artifact,
        local_path=local_path,
        locations=locations,
        pipeline=pipeline,
        database_errors=database_errors,
        retention=retention,
        duration_seconds=time.monotonic() - started,
    )


# ============================================================================
# Sample
# ============================================================================

async def backup_sample(
    config: BackupConfig,
    database: str,
    strategy: SampleStrategy,
    value: float,
    engine: EngineAdapter | None = None,
    store: ObjectStore | None = None,
    progress: ProgressCallback | None = None,
) -> BackupResult:
    """
    Back up the schema of a database plus a subset of its rows.

    Args:
        strategy: ratio (every Nth row), percent (random P%), or count (first N)
        value: N or P for the strategy
    """
    if value <= 0:
        raise BackupError(f"Sample value must be positive, got {value}")
    if strategy == SampleStrategy.PERCENT and value > 100:
        raise BackupError(f"Sample percent must be at most 100, got {value}")

    engine = engine or get_engine(config)

    async def _work() -> BackupResult:
        started = time.monotonic()
        now = datetime.now(UTC)
        algo = config.compression_algo
        name = sample_backup_name(database, strategy, value, algo, backup_timestamp(now))
        key = encryption_key_for(config)
        tool_version = await _tool_version(engine)
        server_version = await _server_version(engine)

        logger.info("sample_backup_started", database=database, name=name, strategy=strategy.value, value=value)

        with backup_workspace(config) as workspace:
            payload = Path(workspace) / name
            pipeline = await run_backup_pipeline(
                engine.sample_stream(database, strategy, value, config.chunk_size),
                payload,
                algo,
                config.compression_level,
                key,
                config.use_parallel_gzip,
            )
            artifact = BackupArtifact(
                name=name,
                database=database,
                scope=BackupScope.SAMPLE,
                format=DumpFormat.PLAIN,
                created_at=now,
                databases=[database],
                tool_version=tool_version,
                server_version=server_version,
                sample_strategy=strategy,
                sample_value=value,
                duration_seconds=time.monotonic() - started,
                extra={"plaintext_sha256": pipeline.plaintext_sha256},
                **artifact_common_fields(config, pipeline, key, algo),
            )
            locations, local_path = await publish_everywhere(config, payload, artifact, store, progress)

        retention = await run_retention(config, BackupScope.SAMPLE, database, store)
        return BackupResult(
            artifact=artifact,
            local_path=local_path,
            locations=locations,
            pipeline=pipeline,
            retention=retention,
            duration_seconds=time.monotonic() - started,
        )

    return await track_backup(config, "backup_sample", database, _work, config.operation_timeout_minutes)


# ============================================================================
# Cluster
# ============================================================================

@dataclass
class ClusterMember:
    """One database dump inside a cluster archive."""

    database: str
    file: str
    format: DumpFormat
    size_bytes: int
    sha256: str
    database_size_bytes: int
    diagnostics: DiagnosticCounter = field(default_factory=DiagnosticCounter)

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "file": self.file,
            "format": self.format.value,
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
            "database_size_bytes": self.database_size_bytes,
        }


async def _dump_cluster_member(
    config: BackupConfig,
    engine: EngineAdapter,
    database: str,
    staging: Path,
) -> ClusterMember:
    fmt, db_size = await _choose_format(config, engine, database)
    if fmt == DumpFormat.CUSTOM:
        # The outer tarball is gzipped; the member stays uncompressed
        file_name = f"db_{database}.dump"
        algo = CompressionAlgo.NONE
    else:
        file_name = f"db_{database}.sql.gz"
        algo = CompressionAlgo.GZIP

    tool = await engine.start_dump(
        database,
        DumpOptions(format=fmt, jobs=config.dump_jobs, exclude_table_data=list(config.exclude_table_data)),
    )
    pipeline = await with_tool_cleanup(
        tool,
        run_backup_pipeline(
            iter_tool_output(tool, config.chunk_size),
            staging / file_name,
            algo,
            config.compression_level,
            None,
            config.use_parallel_gzip,
        ),
    )
    logger.info("cluster_member_dumped", database=database, file=file_name, size_bytes=pipeline.bytes_out)
    return ClusterMember(
        database=database,
        file=file_name,
        format=fmt,
        size_bytes=pipeline.bytes_out,
        sha256=pipeline.sha256,
        database_size_bytes=db_size,
        diagnostics=tool.diagnostics,
    )


def _create_tar(staging: Path, tar_path: Path) -> None:
    with tarfile.open(tar_path, "w") as tar:
        for item in sorted(staging.iterdir()):
            tar.add(item, arcname=item.name)


async def backup_cluster(
    config: BackupConfig,
    engine: EngineAdapter | None = None,
    store: ObjectStore | None = None,
    progress: ProgressCallback | None = None,
) -> BackupResult:
    """
    Back up every database of the server into one archive.

    Globals are dumped first (PostgreSQL only). Databases are then dumped in
    parallel up to config.jobs, each under the per-database timeout. Any
    failed database fails the whole archive.

    Returns:
        BackupResult; database_errors holds warning summaries per database
    """
    engine = engine or get_engine(config)

    async def _work() -> BackupResult:
        return await _backup_cluster(config, engine, store, progress)

    return await track_backup(config, "backup_cluster", "cluster", _work, None)


async def _backup_cluster(
    config: BackupConfig,
    engine: EngineAdapter,
    store: ObjectStore | None,
    progress: ProgressCallback | None,
) -> BackupResult:
    started = time.monotonic()
    now = datetime.now(UTC)
    name = cluster_backup_name(backup_timestamp(now))
    key = encryption_key_for(config)
    tool_version = await _tool_version(engine)
    server_version = await _server_version(engine)
    databases = await engine.list_databases()

    logger.info("cluster_backup_started", name=name, databases=len(databases), jobs=config.jobs)

    with backup_workspace(config) as workspace:
        staging = Path(workspace) / "cluster"
        staging.mkdir()

        has_globals = False
        if config.is_postgres:
            globals_tool = await engine.dump_globals()
            await with_tool_cleanup(
                globals_tool,
                write_atomic(iter_tool_output(globals_tool, config.chunk_size), staging / GLOBALS_FILE),
            )
            has_globals = True
            logger.info("cluster_globals_dumped")

        def _job(database: str) -> Callable[[], Awaitable[ClusterMember]]:
            return lambda: with_timeout(
                _dump_cluster_member(config, engine, database, staging),
                config.operation_timeout_minutes,
                f"dump {database}",
            )

        results = await run_bounded({db: _job(db) for db in databases}, config.jobs)

        failures = {db: str(r) for db, r in results.items() if isinstance(r, BaseException)}
        if failures:
            for db, error in failures.items():
                logger.error("cluster_member_failed", database=db, error=error)
            raise BackupError(
                f"Cluster backup failed for {len(failures)} of {len(databases)} databases",
                details={"database_errors": failures},
            )

        members: List[ClusterMember] = [results[db] for db in databases]
        manifest = {
            "version": "2.0",
            "engine": config.engine.value,
            "created_at": now.isoformat(),
            "globals": GLOBALS_FILE if has_globals else None,
            "tool_version": tool_version,
            "databases": {m.database: m.to_manifest() for m in members},
        }
        (staging / CLUSTER_MANIFEST).write_text(json.dumps(manifest, indent=2))

        tar_path = Path(workspace) / f"{name[:-len('.gz')]}"
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(_executor, _create_tar, staging, tar_path)

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
            database="cluster",
            scope=BackupScope.CLUSTER,
            format=DumpFormat.TAR,
            created_at=now,
            databases=list(databases),
            tool_version=tool_version,
            server_version=server_version,
            duration_seconds=time.monotonic() - started,
            extra={"members": manifest["databases"], "globals": has_globals},
            **artifact_common_fields(config, pipeline, key, CompressionAlgo.GZIP),
        )
        locations, local_path = await publish_everywhere(config, payload, artifact, store, progress)

    database_errors = {
        m.database: summarize(m.diagnostics)
        for m in members
        if m.diagnostics.warnings or m.diagnostics.critical
    }
    retention = await run_retention(config, BackupScope.CLUSTER, None, store)
    return BackupResult(
        artifact=artifact,
        local_path=local_path,
        locations=locations,
        pipeline=pipeline,
        database_errors=database_errors,
        retention=retention,
        duration_seconds=time.monotonic() - started,
    )
