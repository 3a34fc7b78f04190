# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Error Classifier - Maps tool diagnostics to error classes.

pg_restore, psql, and mysql emit one diagnostic per line on stderr. Each
line is classified into {ignorable, warning, critical, fatal} together with
a category and a short remediation. Known categories return shared,
pre-built Classification instances so the per-line path creates no new
result objects.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Pattern, Tuple


class ErrorClass(str, Enum):
    """Severity assigned to a diagnostic line."""

    IGNORABLE = "ignorable"
    WARNING = "warning"
    CRITICAL = "critical"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class Classification:
    """Result of classifying one diagnostic line."""

    error_class: ErrorClass
    category: str
    hint: str
    action: str

    @property
    def is_blocking(self) -> bool:
        """True when this diagnostic fails the enclosing per-database step."""
        if self.error_class == ErrorClass.FATAL:
            return True
        return self.error_class == ErrorClass.CRITICAL and self.category != "duplicate"


DUPLICATE = Classification(
    ErrorClass.IGNORABLE,
    "duplicate",
    "Object already exists in target database - this is normal during restore",
    "No action needed - restore will continue",
)
DISK_SPACE = Classification(
    ErrorClass.CRITICAL,
    "disk_space",
    "Insufficient disk space to complete operation",
    "Free up disk space or increase the storage quota",
)
LOCKS = Classification(
    ErrorClass.CRITICAL,
    "locks",
    "Lock table exhausted - typically caused by large objects in parallel restore",
    "Increase max_locks_per_transaction in postgresql.conf to 512 or higher "
    "and restore with --jobs 1",
)
CORRUPTION = Classification(
    ErrorClass.FATAL,
    "corruption",
    "Syntax error in dump file - backup may be corrupted or incomplete",
    "Re-create backup with: dbbackup backup single <database>",
)
EXCESSIVE_ERRORS = Classification(
    ErrorClass.FATAL,
    "corruption",
    "Excessive error count indicates a severely corrupted dump file",
    "Verify the backup with 'dbbackup verify' and re-create it",
)
PERMISSIONS = Classification(
    ErrorClass.CRITICAL,
    "permissions",
    "Insufficient permissions to perform operation",
    "Run as superuser or restore with --no-owner",
)
NETWORK = Classification(
    ErrorClass.CRITICAL,
    "network",
    "Cannot connect to database server",
    "Check the server is running and pg_hba.conf allows the connection",
)
VERSION = Classification(
    ErrorClass.WARNING,
    "version",
    "Server version differs between backup source and restore target",
    "Use a compatible engine version; review release notes for incompatibilities",
)
UNKNOWN = Classification(
    ErrorClass.WARNING,
    "unknown",
    "Unrecognized diagnostic",
    "Inspect the full log output for details",
)

EXCESSIVE_ERROR_THRESHOLD = 100_000

# Order matters: first match wins
_RULES: Tuple[Tuple[Pattern[str], Classification], ...] = (
    (
        re.compile(
            r"already exists|duplicate key|unique constraint|relation.*exists",
            re.IGNORECASE,
        ),
        DUPLICATE,
    ),
    (re.compile(r"no space left|disk.*full", re.IGNORECASE), DISK_SPACE),
    (
        re.compile(
            r"max_locks_per_transaction|out of shared memory|lock.*exhausted"
            r"|could not open large object",
            re.IGNORECASE,
        ),
        LOCKS,
    ),
    (re.compile(r"syntax error|invalid command \\N", re.IGNORECASE), CORRUPTION),
    (
        re.compile(r"permission denied|must be owner|access denied", re.IGNORECASE),
        PERMISSIONS,
    ),
    (
        re.compile(
            r"connection refused|could not connect|could not translate host name|pg_hba",
            re.IGNORECASE,
        ),
        NETWORK,
    ),
    (
        re.compile(r"version mismatch|incompatible|unsupported version", re.IGNORECASE),
        VERSION,
    ),
)

_TOTAL_ERRORS = re.compile(r"total errors:\s*(\d+)", re.IGNORECASE)


def classify(line: str) -> Classification:
    """
    Classify a single diagnostic line.

    Args:
        line: One line of tool stderr output

    Returns:
        The shared Classification for the first matching rule, or UNKNOWN
    """
    total = _TOTAL_ERRORS.search(line)
    if total is not None and int(total.group(1)) > EXCESSIVE_ERROR_THRESHOLD:
        return EXCESSIVE_ERRORS

    for pattern, classification in _RULES:
        if pattern.search(line):
            return classification

    return UNKNOWN


@dataclass
class DiagnosticCounter:
    """Aggregates classified diagnostics for one database or operation."""

    by_class: Dict[str, int] = field(
        default_factory=lambda: {c.value: 0 for c in ErrorClass}
    )
    by_category: Dict[str, int] = field(default_factory=dict)
    samples: Dict[str, List[str]] = field(default_factory=dict)
    first_blocking: Classification | None = None
    max_samples: int = 10

    def record(self, line: str) -> Classification:
        """Classify and count a line, keeping a few samples per category."""
        result = classify(line)
        self.by_class[result.error_class.value] += 1
        self.by_category[result.category] = self.by_category.get(result.category, 0) + 1

        bucket = self.samples.setdefault(result.category, [])
        if len(bucket) < self.max_samples:
            bucket.append(line.strip())

        if result.is_blocking and self.first_blocking is None:
            self.first_blocking = result

        return result

    @property
    def ignorable(self) -> int:
        return self.by_class[ErrorClass.IGNORABLE.value]

    @property
    def warnings(self) -> int:
        return self.by_class[ErrorClass.WARNING.value]

    @property
    def critical(self) -> int:
        return self.by_class[ErrorClass.CRITICAL.value]

    @property
    def fatal(self) -> int:
        return self.by_class[ErrorClass.FATAL.value]

    @property
    def has_fatal(self) -> bool:
        return self.fatal > 0

    def blocking_critical_count(self) -> int:
        """Critical diagnostics whose category is not 'duplicate'."""
        # duplicate is always IGNORABLE, so every CRITICAL counts
        return self.critical

    def is_success(self, strict: bool = False) -> bool:
        if self.has_fatal or self.blocking_critical_count() > 0:
            return False
        if strict and self.warnings > 0:
            return False
        return True

    def merge(self, other: "DiagnosticCounter") -> None:
        for key, value in other.by_class.items():
            self.by_class[key] = self.by_class.get(key, 0) + value
        for key, value in other.by_category.items():
            self.by_category[key] = self.by_category.get(key, 0) + value
        for key, lines in other.samples.items():
            bucket = self.samples.setdefault(key, [])
            bucket.extend(lines[: max(0, self.max_samples - len(bucket))])
        if self.first_blocking is None:
            self.first_blocking = other.first_blocking


def summarize(counter: DiagnosticCounter) -> str:
    """
    Render a one-line human summary of a counter.

    Example: "ignorable=1200 warning=2 critical=0 fatal=0 (duplicate=1200, unknown=2)"
    """
    parts = " ".join(f"{c.value}={counter.by_class.get(c.value, 0)}" for c in ErrorClass)
    if counter.by_category:
        categories = ", ".join(
            f"{name}={count}" for name, count in sorted(counter.by_category.items())
        )
        parts = f"{parts} ({categories})"
    if counter.first_blocking is not None:
        parts = f"{parts} - {counter.first_blocking.hint}. {counter.first_blocking.action}"
    return parts
