# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Metrics - Process-wide session counters.

SessionMetrics lives for the whole process and is reported once at exit.
It is the only mutable global besides the process registry, and it is
guarded by a short lock because pipeline stages run in worker threads.
"""

import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, List

import structlog

logger = structlog.get_logger()


@dataclass
class OperationMetrics:
    """Metrics for one completed, failed, or aborted operation."""

    operation: str  # backup_single, restore_cluster, cleanup, ...
    database: str
    started_at: datetime
    duration_seconds: float
    bytes_in: int
    bytes_out: int
    success: bool
    aborted: bool = False
    error_count: int = 0
    compression_ratio: float | None = None

    @property
    def throughput_mbps(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return self.bytes_in / self.duration_seconds / 1024 / 1024


@dataclass
class SessionMetrics:
    """Counters for every operation run by this process."""

    started: int = 0
    completed: int = 0
    failed: int = 0
    aborted: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    operations: List[OperationMetrics] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def start(self) -> float:
        """Count an operation start and return a monotonic start mark."""
        with self._lock:
            self.started += 1
        return time.monotonic()

    def record(
        self,
        operation: str,
        database: str,
        start_mark: float,
        bytes_in: int = 0,
        bytes_out: int = 0,
        success: bool = True,
        aborted: bool = False,
        error_count: int = 0,
    ) -> OperationMetrics:
        """
        Record the outcome of an operation started with start().

        Returns:
            The stored OperationMetrics entry
        """
        duration = time.monotonic() - start_mark
        ratio = (bytes_in / bytes_out) if bytes_out else None
        entry = OperationMetrics(
            operation=operation,
            database=database,
            started_at=datetime.now(UTC),
            duration_seconds=duration,
            bytes_in=bytes_in,
            bytes_out=bytes_out,
            success=success and not aborted,
            aborted=aborted,
            error_count=error_count,
            compression_ratio=ratio,
        )

        with self._lock:
            self.operations.append(entry)
            self.bytes_in += bytes_in
            self.bytes_out += bytes_out
            if aborted:
                self.aborted += 1
            elif success:
                self.completed += 1
            else:
                self.failed += 1

        log = logger.info if entry.success else logger.error
        log(
            "operation_metrics",
            operation=operation,
            database=database,
            duration_ms=int(duration * 1000),
            bytes_in=bytes_in,
            bytes_out=bytes_out,
            throughput_mbps=round(entry.throughput_mbps, 2),
            error_count=error_count,
            success=entry.success,
            aborted=aborted,
        )
        return entry

    def averages(self) -> Dict[str, Any]:
        """Average performance across recorded operations."""
        with self._lock:
            ops = list(self.operations)

        if not ops:
            return {}

        count = len(ops)
        return {
            "total_operations": count,
            "success_rate": sum(1 for m in ops if m.success) / count * 100,
            "avg_duration_ms": int(sum(m.duration_seconds for m in ops) / count * 1000),
            "avg_size_mb": sum(m.bytes_in for m in ops) / count / 1024 / 1024,
            "avg_throughput_mbps": sum(m.throughput_mbps for m in ops) / count,
            "total_errors": sum(m.error_count for m in ops),
        }

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "started": self.started,
                "completed": self.completed,
                "failed": self.failed,
                "aborted": self.aborted,
                "bytes_in": self.bytes_in,
                "bytes_out": self.bytes_out,
                "operations": [asdict(m) for m in self.operations],
            }

    def report(self) -> Dict[str, Any]:
        """Log the session summary; called once at process exit."""
        summary = {
            "started": self.started,
            "completed": self.completed,
            "failed": self.failed,
            "aborted": self.aborted,
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
            **self.averages(),
        }
        logger.info("session_summary", **summary)
        return summary

    def reset(self) -> None:
        with self._lock:
            self.started = self.completed = self.failed = self.aborted = 0
            self.bytes_in = self.bytes_out = 0
            self.operations.clear()


# Process-wide instance
session_metrics = SessionMetrics()
