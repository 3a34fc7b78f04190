# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment, config-file and flag layering for BackupConfig.

Settings are resolved in a fixed order:

1. Built-in defaults (BackupConfig field defaults)
2. Environment variables (PGHOST, MYSQL_PWD, BACKUP_DIR, ...)
3. The .dbbackup.conf file
4. Command-line flags the user explicitly set

Only flags that were explicitly given are overlaid last, so loading a config
file can never clobber a value typed on the command line.
"""

from __future__ import annotations

import configparser
import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Mapping

import structlog

from dbbackup.config import BackupConfig, CompressionAlgo, EngineType
from dbbackup.errors import explain_invalid_engine, explain_invalid_int_env
from dbbackup.exceptions import ConfigurationError

logger = structlog.get_logger()

CONFIG_FILE_NAME = ".dbbackup.conf"

# section -> file key -> BackupConfig field
_FILE_KEYS: Dict[str, Dict[str, str]] = {
    "database": {
        "type": "engine",
        "host": "host",
        "port": "port",
        "user": "user",
        "database": "database",
        "ssl_mode": "ssl_mode",
    },
    "backup": {
        "backup_dir": "backup_dir",
        "temp_dir": "temp_dir",
        "compression": "compression_level",
        "compression_algo": "compression_algo",
        "parallel_gzip": "use_parallel_gzip",
        "jobs": "jobs",
        "dump_jobs": "dump_jobs",
        "retention_days": "retention_days",
        "min_backups": "min_backups",
        "timeout_minutes": "operation_timeout_minutes",
        "large_db_threshold_bytes": "large_db_threshold_bytes",
        "exclude_table_data": "exclude_table_data",
    },
    "security": {
        "audit_db": "audit_db_path",
        "strict": "strict",
    },
    "cloud": {
        "uri": "cloud_uri",
        "max_retries": "max_retries",
    },
    "encryption": {
        "enabled": "encrypt",
        "key_file": "encryption_key_file",
        "key_env": "encryption_key_env",
    },
}

# Fields that must never be persisted
_SECRET_FIELDS = frozenset({"password", "encryption_passphrase"})

_INT_FIELDS = frozenset(
    {
        "port",
        "compression_level",
        "jobs",
        "dump_jobs",
        "retention_days",
        "min_backups",
        "operation_timeout_minutes",
        "large_db_threshold_bytes",
        "max_retries",
        "chunk_size",
    }
)
_BOOL_FIELDS = frozenset({"use_parallel_gzip", "strict", "encrypt"})
_PATH_FIELDS = frozenset({"backup_dir", "temp_dir", "audit_db_path", "encryption_key_file"})
_LIST_FIELDS = frozenset({"exclude_table_data"})


def _parse_int(name: str, value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value)) from exc
    if number < 0:
        raise ConfigurationError(explain_invalid_int_env(name, value))
    return number


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_engine(value: str | None) -> EngineType | None:
    if not value:
        return None
    try:
        return EngineType(value.lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_engine(value)) from exc


def _coerce(field_name: str, raw: str, source: str) -> Any:
    """Convert a textual setting into the BackupConfig field type."""
    if field_name == "engine":
        return _parse_engine(raw)
    if field_name == "compression_algo":
        try:
            return CompressionAlgo(raw.lower())
        except ValueError as exc:
            raise ConfigurationError(
                f"Invalid compression_algo in {source}: {raw!r}",
                details={"expected": [a.value for a in CompressionAlgo]},
            ) from exc
    if field_name in _INT_FIELDS:
        return _parse_int(f"{source}:{field_name}", raw)
    if field_name in _BOOL_FIELDS:
        return _parse_bool(raw)
    if field_name in _PATH_FIELDS:
        return Path(raw).expanduser() if raw else None
    if field_name in _LIST_FIELDS:
        return [p.strip() for p in raw.split(",") if p.strip()]
    return raw


def env_values(
    environ: Mapping[str, str] | None = None,
    engine: EngineType | None = None,
) -> Dict[str, Any]:
    """
    Read BackupConfig values from environment variables.

    Recognized variables:
        - DBBACKUP_DB_TYPE: 'postgres' | 'mysql' | 'mariadb'
        - PGHOST, PGPORT, PGUSER, PGPASSWORD, PGDATABASE (postgres)
        - MYSQL_HOST, MYSQL_PORT, MYSQL_USER, MYSQL_PWD (mysql, mariadb)
        - BACKUP_DIR: local backup directory
        - COMPRESS_LEVEL: 0-9
        - DBBACKUP_JOBS, DBBACKUP_RETENTION_DAYS, DBBACKUP_MIN_BACKUPS
        - DBBACKUP_CLOUD: storage URI mirrored after each backup

    Args:
        environ: Environment mapping (defaults to os.environ)
        engine: Engine already chosen by a flag or the config file; picks
            the PG* or MYSQL_* variable family instead of DBBACKUP_DB_TYPE

    Returns:
        Dict of field name to value, containing only variables that are set
    """
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    if engine is None:
        engine = _parse_engine(env.get("DBBACKUP_DB_TYPE"))
    if engine is not None:
        values["engine"] = engine

    if (engine or EngineType.POSTGRES) == EngineType.POSTGRES:
        prefix_map = {
            "host": "PGHOST",
            "port": "PGPORT",
            "user": "PGUSER",
            "password": "PGPASSWORD",
            "database": "PGDATABASE",
        }
    else:
        prefix_map = {
            "host": "MYSQL_HOST",
            "port": "MYSQL_PORT",
            "user": "MYSQL_USER",
            "password": "MYSQL_PWD",
        }

    for field_name, var in prefix_map.items():
        raw = env.get(var)
        if raw:
            values[field_name] = _parse_int(var, raw) if field_name == "port" else raw

    if engine is not None and engine.is_mysql_family and "user" not in values:
        values["user"] = "root"

    if env.get("BACKUP_DIR"):
        values["backup_dir"] = Path(env["BACKUP_DIR"])

    level = _parse_int("COMPRESS_LEVEL", env.get("COMPRESS_LEVEL"))
    if level is not None:
        values["compression_level"] = level

    for var, field_name in (
        ("DBBACKUP_JOBS", "jobs"),
        ("DBBACKUP_RETENTION_DAYS", "retention_days"),
        ("DBBACKUP_MIN_BACKUPS", "min_backups"),
    ):
        number = _parse_int(var, env.get(var))
        if number is not None:
            values[field_name] = number

    if env.get("DBBACKUP_CLOUD"):
        values["cloud_uri"] = env["DBBACKUP_CLOUD"]

    return values


def create_config_from_env(environ: Mapping[str, str] | None = None) -> BackupConfig:
    """
    Create a BackupConfig from environment variables alone.

    See env_values() for the recognized variables.
    """

    return BackupConfig(**env_values(environ))


def load_config_file(path: Path) -> Dict[str, Any]:
    """
    Load settings from an INI-style key=value config file.

    Missing keys are simply absent from the result. Unknown sections or keys
    are logged and ignored.

    Args:
        path: Path to the config file

    Returns:
        Dict of field name to value; empty if the file does not exist
    """
    if not path.exists():
        return {}

    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding="utf-8")
    except configparser.Error as exc:
        raise ConfigurationError(
            f"Failed to parse config file: {exc}",
            details={"path": str(path)},
        ) from exc

    values: Dict[str, Any] = {}
    for section in parser.sections():
        known = _FILE_KEYS.get(section)
        if known is None:
            logger.warning("config_unknown_section", path=str(path), section=section)
            continue
        for key, raw in parser.items(section):
            field_name = known.get(key)
            if field_name is None:
                logger.warning("config_unknown_key", path=str(path), section=section, key=key)
                continue
            value = _coerce(field_name, raw.strip(), str(path))
            if value is not None:
                values[field_name] = value

    logger.debug("config_file_loaded", path=str(path), keys=sorted(values))
    return values


def save_config_file(config: BackupConfig, path: Path) -> Path:
    """
    Persist non-secret settings to an INI-style config file.

    Passwords and passphrases are never written.

    Args:
        config: Configuration to persist
        path: Destination file

    Returns:
        The written path
    """
    parser = configparser.ConfigParser(interpolation=None)
    for section, keys in _FILE_KEYS.items():
        parser.add_section(section)
        for key, field_name in keys.items():
            if field_name in _SECRET_FIELDS:
                continue
            value = getattr(config, field_name)
            if value is None or value == []:
                continue
            if isinstance(value, (EngineType, CompressionAlgo)):
                text = value.value
            elif isinstance(value, bool):
                text = "true" if value else "false"
            elif isinstance(value, list):
                text = ",".join(value)
            else:
                text = str(value)
            parser.set(section, key, text)

    temp_path = path.with_suffix(path.suffix + ".tmp")
    with open(temp_path, "w", encoding="utf-8") as f:
        f.write("# dbbackup configuration\n# Passwords are never stored here.\n\n")
        parser.write(f)
    temp_path.replace(path)

    logger.info("config_file_saved", path=str(path))
    return path


def resolve_config(
    explicit: Mapping[str, Any] | None = None,
    config_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BackupConfig:
    """
    Build the effective configuration from all sources.

    Args:
        explicit: Values for flags the user explicitly set on the command line
        config_file: Config file to overlay, or None to skip file loading
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Frozen BackupConfig with flags > file > environment > defaults
    """
    explicit = dict(explicit or {})
    unknown = set(explicit) - {f.name for f in fields(BackupConfig)}
    if unknown:
        raise ConfigurationError(
            "Unknown configuration fields",
            details={"fields": sorted(unknown)},
        )

    file_values = load_config_file(config_file) if config_file is not None else {}

    # The engine decides which PG*/MYSQL_* variables apply
    engine = explicit.get("engine") or file_values.get("engine")
    if isinstance(engine, str):
        engine = _parse_engine(engine)

    values = env_values(environ, engine=engine)
    values.update(file_values)

    # Explicit flags are reapplied last so the file cannot override them
    values.update(explicit)

    if "engine" in values and "port" not in values:
        values["port"] = None

    logger.debug(
        "config_resolved",
        explicit_flags=sorted(explicit),
        config_file=str(config_file) if config_file else None,
    )
    return BackupConfig(**values)


# ============================================================================
# Profiles
# ============================================================================

def fast_profile(config: BackupConfig) -> BackupConfig:
    """
    Favor speed over size.

    - Compression level 1
    - Jobs raised to the CPU count
    """

    cpus = os.cpu_count() or 1
    return config.with_updates(
        compression_level=1,
        jobs=max(config.jobs, cpus),
        dump_jobs=max(config.dump_jobs, cpus),
    )


def archival_profile(config: BackupConfig) -> BackupConfig:
    """
    Favor small, long-lived artifacts.

    - zstd at the highest level
    - At least 90 days retention and 7 kept backups
    """

    return config.with_updates(
        compression_level=9,
        compression_algo=CompressionAlgo.ZSTD,
        retention_days=max(config.retention_days, 90),
        min_backups=max(config.min_backups, 7),
    )
