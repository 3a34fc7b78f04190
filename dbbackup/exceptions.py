# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Exceptions - Custom exceptions for the dbbackup package.
"""


class DBBackupError(Exception):
    """Base exception for all dbbackup errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DBBackupError):
    """Raised when configuration is invalid."""

    pass


class EngineError(DBBackupError):
    """Raised when a database engine or one of its tools fails."""

    pass


class PipelineError(DBBackupError):
    """Raised when a streaming pipeline stage fails."""

    pass


class BackupError(DBBackupError):
    """Raised when backup operations fail."""

    pass


class RestoreError(DBBackupError):
    """Raised when restore operations fail."""

    pass


class StorageError(DBBackupError):
    """Raised when object storage operations fail."""

    pass


class ObjectNotFoundError(StorageError):
    """Raised when an object does not exist in the store."""

    pass


class EncryptionError(DBBackupError):
    """Raised when encryption setup or key handling fails."""

    pass


class RetentionError(DBBackupError):
    """Raised when a retention sweep cannot run at all."""

    pass


class PITRError(DBBackupError):
    """Raised when point-in-time recovery operations fail."""

    pass


class FatalError(DBBackupError):
    """
    Raised when an operation must stop immediately.

    Sibling tasks are cancelled when this propagates out of a bounded run.
    """

    pass


class IntegrityError(FatalError):
    """Raised on checksum mismatch or authentication tag failure."""

    pass


class CancelledOperation(DBBackupError):
    """Raised when an operation was cancelled before completion."""

    pass


class OperationTimeout(CancelledOperation):
    """Raised when an operation exceeded its timeout."""

    pass
