# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Audit Journal - Append-only record of operations and deletions.

Every backup, restore, and retention run can be journaled to a local SQLite
database. Records are never deleted; operations are only updated once, when
they complete. This is a journal, not a catalog: nothing reads it to decide
what to back up or restore.
"""

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, TypedDict

import aiosqlite
import structlog

from dbbackup.exceptions import DBBackupError

logger = structlog.get_logger()


class OperationRecord(TypedDict):
    """Record of one backup, restore, or retention run."""

    id: str  # ULID
    kind: str  # backup, restore, retention
    target: str  # database name or store location
    started_at: str  # ISO 8601
    details: dict
    completed_at: str | None
    error: str | None


class RetentionDeletionRecord(TypedDict):
    """Record of an artifact removed (or selected in dry-run) by retention."""

    id: int
    operation_id: str
    name: str
    location: str
    size_bytes: int
    created_at: str | None
    deleted_at: str
    dry_run: bool


def new_operation_id() -> str:
    from ulid import ULID

    return str(ULID())


async def init_audit_db(db_path: Path) -> None:
    """
    Create the journal schema if needed. Idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS operations (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    target TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    details TEXT NOT NULL,
                    completed_at TEXT,
                    error TEXT
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS retention_deletions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    operation_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    location TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    created_at TEXT,
                    deleted_at TEXT NOT NULL,
                    dry_run INTEGER NOT NULL,
                    FOREIGN KEY (operation_id) REFERENCES operations(id)
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_started_at
                ON operations(started_at)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_retention_deletions_operation_id
                ON retention_deletions(operation_id)
            """)

            await db.commit()

        logger.debug("audit_db_initialized", db_path=str(db_path))

    except (aiosqlite.Error, OSError) as e:
        raise DBBackupError(
            f"Failed to initialize audit database: {e}",
            details={"db_path": str(db_path)},
        ) from e


async def record_operation(
    db: aiosqlite.Connection,
    operation_id: str,
    kind: str,
    target: str,
    details: dict | None = None,
) -> None:
    """Record the start of an operation."""
    now = datetime.now(UTC).isoformat()

    await db.execute(
        """
        INSERT INTO operations (id, kind, target, started_at, details)
        VALUES (?, ?, ?, ?, ?)
        """,
        (operation_id, kind, target, now, json.dumps(details or {}, default=str)),
    )
    await db.commit()

    logger.debug("audit_operation_recorded", operation_id=operation_id, kind=kind, target=target)


async def complete_operation(
    db: aiosqlite.Connection,
    operation_id: str,
    details: dict,
    error: str | None = None,
) -> None:
    """Mark an operation as completed, with its final details."""
    now = datetime.now(UTC).isoformat()

    await db.execute(
        """
        UPDATE operations
        SET details = ?, completed_at = ?, error = ?
        WHERE id = ?
        """,
        (json.dumps(details, default=str), now, error, operation_id),
    )
    await db.commit()


async def record_retention_deletion(
    db: aiosqlite.Connection,
    operation_id: str,
    name: str,
    location: str,
    size_bytes: int,
    created_at: datetime | None,
    dry_run: bool,
) -> int:
    """
    Record an artifact removed by retention.

    Called before the store delete, so a deletion that succeeds is always
    journaled.

    Returns:
        Deletion record ID
    """
    now = datetime.now(UTC).isoformat()

    cursor = await db.execute(
        """
        INSERT INTO retention_deletions
        (operation_id, name, location, size_bytes, created_at, deleted_at, dry_run)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            operation_id,
            name,
            location,
            size_bytes,
            created_at.isoformat() if created_at else None,
            now,
            int(dry_run),
        ),
    )
    await db.commit()
    return cursor.lastrowid


async def get_operation(db: aiosqlite.Connection, operation_id: str) -> OperationRecord | None:
    async with db.execute(
        """
        SELECT id, kind, target, started_at, details, completed_at, error
        FROM operations WHERE id = ?
        """,
        (operation_id,),
    ) as cursor:
        row = await cursor.fetchone()

    if row is None:
        return None
    return OperationRecord(
        id=row[0],
        kind=row[1],
        target=row[2],
        started_at=row[3],
        details=json.loads(row[4]),
        completed_at=row[5],
        error=row[6],
    )


async def list_operations(
    db: aiosqlite.Connection,
    limit: int = 50,
    kind: str | None = None,
) -> List[OperationRecord]:
    """List operations, newest first."""
    query = """
        SELECT id, kind, target, started_at, details, completed_at, error
        FROM operations
    """
    params: tuple = ()
    if kind:
        query += " WHERE kind = ?"
        params = (kind,)
    query += " ORDER BY started_at DESC, id DESC LIMIT ?"
    params = params + (limit,)

    records: List[OperationRecord] = []
    async with db.execute(query, params) as cursor:
        async for row in cursor:
            records.append(
                OperationRecord(
                    id=row[0],
                    kind=row[1],
                    target=row[2],
                    started_at=row[3],
                    details=json.loads(row[4]),
                    completed_at=row[5],
                    error=row[6],
                )
            )
    return records


async def get_retention_deletions(
    db: aiosqlite.Connection,
    operation_id: str,
) -> List[RetentionDeletionRecord]:
    records: List[RetentionDeletionRecord] = []
    async with db.execute(
        """
        SELECT id, operation_id, name, location, size_bytes, created_at, deleted_at, dry_run
        FROM retention_deletions
        WHERE operation_id = ?
        ORDER BY id
        """,
        (operation_id,),
    ) as cursor:
        async for row in cursor:
            records.append(
                RetentionDeletionRecord(
                    id=row[0],
                    operation_id=row[1],
                    name=row[2],
                    location=row[3],
                    size_bytes=row[4],
                    created_at=row[5],
                    deleted_at=row[6],
                    dry_run=bool(row[7]),
                )
            )
    return records


@dataclass
class AuditHandle:
    """Open journal entry for a running operation."""

    db: aiosqlite.Connection
    operation_id: str
    details: Dict[str, Any] = field(default_factory=dict)


@asynccontextmanager
async def audit_operation(
    db_path: Path,
    kind: str,
    target: str,
    details: dict | None = None,
) -> AsyncIterator[AuditHandle]:
    """
    Journal one operation for the duration of the block.

    The entry is completed with the handle's details, and with the error
    message if the block raises (including cancellation).
    """
    await init_audit_db(db_path)
    operation_id = new_operation_id()
    async with aiosqlite.connect(db_path) as db:
        await record_operation(db, operation_id, kind, target, details)
        handle = AuditHandle(db=db, operation_id=operation_id, details=dict(details or {}))
        try:
            yield handle
        except BaseException as e:
            await complete_operation(db, operation_id, handle.details, error=str(e) or type(e).__name__)
            raise
        await complete_operation(db, operation_id, handle.details)


@asynccontextmanager
async def maybe_audit(
    db_path: Path | None,
    kind: str,
    target: str,
    details: dict | None = None,
) -> AsyncIterator[AuditHandle | None]:
    """audit_operation() when a journal is configured, otherwise a no-op."""
    if db_path is None:
        yield None
        return
    async with audit_operation(db_path, kind, target, details) as handle:
        yield handle
