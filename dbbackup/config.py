# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation so that concurrent
backup and restore tasks never observe a half-updated setting.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List
import os
import tempfile


class EngineType(str, Enum):
    """Database engine family."""

    POSTGRES = "postgres"
    MYSQL = "mysql"
    MARIADB = "mariadb"

    @property
    def is_mysql_family(self) -> bool:
        return self in (EngineType.MYSQL, EngineType.MARIADB)


class BackupScope(str, Enum):
    """What a backup artifact covers."""

    SINGLE = "single"
    SAMPLE = "sample"
    CLUSTER = "cluster"
    INCREMENTAL = "incremental"


class DumpFormat(str, Enum):
    """Payload format of a backup artifact."""

    CUSTOM = "custom"  # pg_dump custom archive
    PLAIN = "plain"  # SQL text, compressed by the pipeline
    TAR = "tar"  # tar + gzip bundle


class CompressionAlgo(str, Enum):
    """Stream compressor used by the pipeline."""

    NONE = "none"
    GZIP = "gzip"
    ZSTD = "zstd"


class SampleStrategy(str, Enum):
    """Row selection strategy for sample backups."""

    RATIO = "ratio"  # every Nth row
    PERCENT = "percent"  # random N percent
    COUNT = "count"  # first N rows


class BackupType(str, Enum):
    """Full or incremental lineage of an artifact."""

    FULL = "full"
    INCREMENTAL_BASE = "incremental-base"
    INCREMENTAL_DELTA = "incremental-delta"


class EncryptionAlgo(str, Enum):
    """Encryption applied to the payload on disk."""

    NONE = "none"
    AES_256_GCM = "aes-256-gcm"


DEFAULT_PORTS = {
    EngineType.POSTGRES: 5432,
    EngineType.MYSQL: 3306,
    EngineType.MARIADB: 3306,
}

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024

MIN_CHUNK_SIZE = 64 * 1024
MAX_CHUNK_SIZE = 16 * MIB


def _default_backup_dir() -> Path:
    return Path(os.getenv("BACKUP_DIR", "./backups"))


def _default_temp_dir() -> Path:
    return Path(tempfile.gettempdir())


@dataclass(frozen=True)
class BackupConfig:
    """
    Immutable configuration for backup, restore, and retention runs.

    Passwords live here only for the lifetime of the process; they are never
    written to the config file, metadata documents, or logs.
    """

    # Engine and connection
    engine: EngineType = EngineType.POSTGRES
    host: str = "localhost"
    port: int | None = None
    user: str = "postgres"
    password: str | None = None
    database: str | None = None
    ssl_mode: str = "prefer"

    # Local backup directory (always receives the triple)
    backup_dir: Path = field(default_factory=_default_backup_dir)

    # Scratch space for staging and extraction
    temp_dir: Path = field(default_factory=_default_temp_dir)

    # Compression
    compression_level: int = 6
    compression_algo: CompressionAlgo = CompressionAlgo.GZIP
    use_parallel_gzip: bool = True

    # Parallelism
    jobs: int = 4
    dump_jobs: int = 4

    # Retention
    retention_days: int = 30
    min_backups: int = 5

    # Optional cloud mirror, e.g. s3://bucket/prefix
    cloud_uri: str | None = None

    # Encryption
    encrypt: bool = False
    encryption_key_file: Path | None = None
    encryption_key_env: str = "DBBACKUP_ENCRYPTION_KEY"
    encryption_passphrase: str | None = None

    # Databases at or above this size are dumped as plain SQL + compressor
    large_db_threshold_bytes: int = 5 * GIB

    # Per-database operation timeout
    operation_timeout_minutes: int = 240

    # Upload and connection retries
    max_retries: int = 3

    # Pipeline chunk size
    chunk_size: int = 4 * MIB

    # Tables whose data is skipped, e.g. ["audit_*"]
    exclude_table_data: List[str] = field(default_factory=list)

    # Optional aiosqlite audit journal
    audit_db_path: Path | None = None

    # Treat warnings as failures
    strict: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not isinstance(self.engine, EngineType):
            try:
                object.__setattr__(self, "engine", EngineType(self.engine))
            except ValueError:
                from dbbackup.errors import explain_invalid_engine

                errors.append(explain_invalid_engine(str(self.engine)))

        if not isinstance(self.compression_algo, CompressionAlgo):
            try:
                object.__setattr__(
                    self, "compression_algo", CompressionAlgo(self.compression_algo)
                )
            except ValueError:
                errors.append(f"Invalid compression algorithm: {self.compression_algo}")

        # Normalize paths given as strings
        for name in ("backup_dir", "temp_dir", "encryption_key_file", "audit_db_path"):
            value = getattr(self, name)
            if isinstance(value, str):
                object.__setattr__(self, name, Path(value))

        if self.port is None and isinstance(self.engine, EngineType):
            object.__setattr__(self, "port", DEFAULT_PORTS[self.engine])

        if self.port is not None and not (0 < self.port < 65536):
            errors.append(f"port must be 1-65535, got {self.port}")

        if not (0 <= self.compression_level <= 9):
            from dbbackup.errors import explain_invalid_compression_level

            errors.append(explain_invalid_compression_level(self.compression_level))

        if self.jobs < 1:
            errors.append(f"jobs must be >= 1, got {self.jobs}")

        if self.dump_jobs < 1:
            errors.append(f"dump_jobs must be >= 1, got {self.dump_jobs}")

        if self.retention_days < 0:
            errors.append(f"retention_days must be >= 0, got {self.retention_days}")

        if self.min_backups < 0:
            errors.append(f"min_backups must be >= 0, got {self.min_backups}")

        if self.operation_timeout_minutes < 1:
            errors.append(
                f"operation_timeout_minutes must be >= 1, got {self.operation_timeout_minutes}"
            )

        if self.max_retries < 0:
            errors.append(f"max_retries must be >= 0, got {self.max_retries}")

        if not (MIN_CHUNK_SIZE <= self.chunk_size <= MAX_CHUNK_SIZE):
            errors.append(
                f"chunk_size must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE}, "
                f"got {self.chunk_size}"
            )

        if self.large_db_threshold_bytes < 0:
            errors.append("large_db_threshold_bytes must be >= 0")

        # Raise all errors at once
        if errors:
            from dbbackup.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def is_postgres(self) -> bool:
        return self.engine == EngineType.POSTGRES

    def with_updates(self, **kwargs) -> "BackupConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance. Changing the
        engine without an explicit port resets the port to the engine default.
        """
        from dataclasses import fields

        current = {f.name: getattr(self, f.name) for f in fields(self)}
        if "engine" in kwargs and "port" not in kwargs:
            current["port"] = None
        current.update(kwargs)
        return BackupConfig(**current)
