# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - Backup and restore orchestration.
"""

from dbbackup.backup.manager import (
    backup_single,
    backup_sample,
    backup_cluster,
    BackupResult,
)

from dbbackup.backup.incremental import (
    backup_incremental,
    resolve_chain,
    apply_incremental_chain,
)

from dbbackup.backup.restore import (
    restore_single,
    restore_cluster,
    build_restore_plan,
    RestorePlan,
    RestoreResult,
    ClusterRestoreResult,
    DatabaseRestoreReport,
)

from dbbackup.backup.formats import (
    ArchiveFormat,
    detect_archive_format,
    validate_archive,
)

__all__ = [
    # Manager
    "backup_single",
    "backup_sample",
    "backup_cluster",
    "BackupResult",
    # Incremental
    "backup_incremental",
    "resolve_chain",
    "apply_incremental_chain",
    # Restore
    "restore_single",
    "restore_cluster",
    "build_restore_plan",
    "RestorePlan",
    "RestoreResult",
    "ClusterRestoreResult",
    "DatabaseRestoreReport",
    # Formats
    "ArchiveFormat",
    "detect_archive_format",
    "validate_archive",
]
