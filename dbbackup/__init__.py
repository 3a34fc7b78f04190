# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup - Backup and restore for PostgreSQL, MySQL and MariaDB.

Streams native dumps through compression and optional AES-256-GCM
encryption into local and cloud storage, writes every artifact with its
checksum and metadata side by side, restores single databases and whole
clusters with classified diagnostics, and prepares PostgreSQL data
directories for point-in-time recovery.
"""

__version__ = "0.1.0"

# Configuration
from dbbackup.config import BackupConfig, EngineType, CompressionAlgo, SampleStrategy

# Environment-based configuration and profiles
from dbbackup.env import (
    create_config_from_env,
    resolve_config,
    fast_profile,
    archival_profile,
)

# Backup and restore orchestration
from dbbackup.backup import (
    backup_single,
    backup_sample,
    backup_cluster,
    backup_incremental,
    restore_single,
    restore_cluster,
)

# Artifacts and retention
from dbbackup.metadata import BackupArtifact, verify_artifact
from dbbackup.retention import apply_retention

__all__ = [
    # Version
    "__version__",
    # Configuration
    "BackupConfig",
    "EngineType",
    "CompressionAlgo",
    "SampleStrategy",
    "create_config_from_env",
    "resolve_config",
    "fast_profile",
    "archival_profile",
    # Orchestration
    "backup_single",
    "backup_sample",
    "backup_cluster",
    "backup_incremental",
    "restore_single",
    "restore_cluster",
    # Artifacts
    "BackupArtifact",
    "verify_artifact",
    "apply_retention",
]
