# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Engine Adapters - Drive the vendor dump and restore tools.

PostgreSQL is served by asyncpg plus pg_dump/pg_restore/psql; MySQL and
MariaDB by aiomysql plus mysqldump/mysql. Each adapter implements the
EngineAdapter protocol and is loaded lazily by get_engine().
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncContextManager,
    AsyncIterator,
    Callable,
    Deque,
    List,
    Mapping,
    Protocol,
    Sequence,
    Tuple,
)

import structlog

from dbbackup.classifier import DiagnosticCounter
from dbbackup.config import DumpFormat, SampleStrategy
from dbbackup.exceptions import EngineError
from dbbackup.scheduling import process_registry

if TYPE_CHECKING:
    from dbbackup.config import BackupConfig

logger = structlog.get_logger()

# Lines of stderr kept per tool run for error messages
STDERR_TAIL_LINES = 200


@dataclass
class DumpOptions:
    """Options for one dump run."""

    format: DumpFormat = DumpFormat.CUSTOM
    compression: int = 0  # Always 0: the pipeline compresses
    jobs: int = 1
    single_transaction: bool = False
    exclude_table_data: List[str] = field(default_factory=list)
    sample_strategy: SampleStrategy | None = None
    sample_value: float | None = None
    blobs: bool = True
    schema_only: bool = False
    data_only: bool = False
    no_owner: bool = False
    no_privileges: bool = False


@dataclass
class RestoreOptions:
    """Options for one restore run."""

    format: DumpFormat = DumpFormat.CUSTOM  # CUSTOM -> pg_restore, PLAIN -> psql/mysql
    jobs: int = 1
    no_owner: bool = False
    no_privileges: bool = False
    exit_on_error: bool = False
    single_transaction: bool = False
    stop_on_fatal: bool = True
    clean: bool = False


@dataclass
class DumpToc:
    """Summary of a custom-format dump's table of contents."""

    entries: int = 0
    large_object_count: int = 0

    @property
    def contains_large_objects(self) -> bool:
        return self.large_object_count > 0


@dataclass
class ToolResult:
    """Exit status and diagnostics of a finished tool run."""

    program: str
    returncode: int
    stderr_tail: List[str] = field(default_factory=list)
    diagnostics: DiagnosticCounter = field(default_factory=DiagnosticCounter)

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def raise_for_status(self) -> None:
        if self.returncode != 0:
            raise EngineError(
                f"{self.program} exited with code {self.returncode}",
                details={"stderr": self.stderr_tail[-10:]},
            )


class ToolProcess:
    """
    A running vendor tool.

    stderr is drained continuously in the background: each line is counted
    by the DiagnosticCounter (if given) and the last lines are kept for
    error messages.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        program: str,
        diagnostics: DiagnosticCounter | None = None,
        on_line: Callable[[str], None] | None = None,
    ):
        self.proc = proc
        self.program = program
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticCounter()
        self._on_line = on_line
        self._tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task: asyncio.Task | None = None
        if proc.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr())

    @classmethod
    async def start(
        cls,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        stdin: int | None = None,
        stdout: int | None = asyncio.subprocess.PIPE,
        diagnostics: DiagnosticCounter | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> "ToolProcess":
        """Spawn a tool through the shared process registry."""
        try:
            proc = await process_registry.spawn(
                argv,
                env=env,
                stdin=stdin,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise EngineError(
                f"Required tool not found: {argv[0]}",
                details={"program": argv[0]},
            ) from e
        return cls(proc, Path(argv[0]).name, diagnostics, on_line)

    async def _drain_stderr(self) -> None:
        assert self.proc.stderr is not None
        while True:
            raw = await self.proc.stderr.readline()
            if not raw:
                break
            line = raw.decode("utf-8", "replace").rstrip("\n")
            if not line.strip():
                continue
            self._tail.append(line)
            self.diagnostics.record(line)
            if self._on_line is not None:
                self._on_line(line)

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self.proc.stdout is not None
        return self.proc.stdout

    @property
    def stdin(self) -> asyncio.StreamWriter:
        assert self.proc.stdin is not None
        return self.proc.stdin

    async def wait(self) -> ToolResult:
        """Wait for exit and for stderr to be fully drained."""
        returncode = await process_registry.wait(self.proc)
        if self._stderr_task is not None:
            await self._stderr_task
        return ToolResult(
            program=self.program,
            returncode=returncode,
            stderr_tail=list(self._tail),
            diagnostics=self.diagnostics,
        )

    async def terminate(self) -> None:
        await process_registry.terminate(self.proc)
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
            await asyncio.gather(self._stderr_task, return_exceptions=True)


async def run_tool(
    argv: Sequence[str],
    env: Mapping[str, str] | None = None,
    diagnostics: DiagnosticCounter | None = None,
) -> Tuple[ToolResult, bytes]:
    """Run a tool to completion and return (result, stdout)."""
    tool = await ToolProcess.start(argv, env=env, diagnostics=diagnostics)
    try:
        output = await tool.stdout.read()
        result = await tool.wait()
    except BaseException:
        await tool.terminate()
        raise
    return result, output


async def iter_tool_output(tool: ToolProcess, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
    """
    Yield a tool's stdout until EOF, then require a zero exit status.

    The tool is terminated if the consumer stops early or fails.
    """
    try:
        while True:
            chunk = await tool.stdout.read(chunk_size)
            if not chunk:
                break
            yield chunk
        result = await tool.wait()
    except BaseException:
        await tool.terminate()
        raise
    result.raise_for_status()


# Percent sampling seed; the same seed selects the same rows on every run
SAMPLE_SEED = 1009


def is_local_host(host: str | None) -> bool:
    """True when the tools should use the local socket instead of TCP."""
    return host in (None, "", "localhost", "127.0.0.1")


class EngineAdapter(Protocol):
    """Protocol every database engine adapter implements."""

    name: str

    def connect(self, database: str | None = None) -> AsyncContextManager[Any]:
        """Short-lived driver connection."""
        ...

    async def list_databases(self) -> List[str]:
        ...

    async def get_version(self) -> Tuple[int, int]:
        ...

    async def get_tool_version(self) -> str:
        ...

    async def get_size(self, database: str) -> int:
        ...

    async def is_superuser(self) -> bool:
        ...

    async def database_exists(self, database: str) -> bool:
        ...

    async def start_dump(self, database: str, options: DumpOptions) -> ToolProcess:
        """Start the dump tool; its stdout is the payload stream."""
        ...

    async def start_restore(
        self,
        database: str,
        options: RestoreOptions,
        path: Path | None = None,
        diagnostics: DiagnosticCounter | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> ToolProcess:
        """Start the restore tool; reads stdin when path is None."""
        ...

    async def run_sql_script(
        self,
        path: Path,
        database: str | None = None,
        diagnostics: DiagnosticCounter | None = None,
    ) -> ToolResult:
        ...

    async def terminate_other_connections(self, database: str) -> None:
        ...

    async def drop_database(self, database: str, if_exists: bool = True) -> None:
        ...

    async def create_database(self, database: str, template_empty: bool = True) -> None:
        ...

    async def inspect_dump_toc(self, path: Path) -> DumpToc:
        ...

    async def dump_globals(self) -> ToolProcess:
        ...

    async def list_tables(self, database: str) -> List[str]:
        ...

    def build_sample_query(self, table: str, strategy: SampleStrategy, value: float) -> str:
        ...

    def sample_stream(
        self,
        database: str,
        strategy: SampleStrategy,
        value: float,
        chunk_size: int = ...,
    ) -> AsyncIterator[bytes]:
        """Plain SQL script: schema followed by the sampled rows."""
        ...

    def is_system_database(self, database: str) -> bool:
        ...

    def dump_extension(self, fmt: DumpFormat) -> str:
        ...


def get_engine(config: "BackupConfig") -> EngineAdapter:
    """
    Return the adapter for config.engine.

    Raises:
        EngineError: If the engine is unsupported
    """
    if config.is_postgres:
        from dbbackup.engines.postgres import PostgresEngine

        return PostgresEngine(config)
    elif config.engine.is_mysql_family:
        from dbbackup.engines.mysql import MySQLEngine

        return MySQLEngine(config)
    else:
        raise EngineError(f"Unsupported engine: {config.engine}")


__all__ = [
    "DumpOptions",
    "DumpToc",
    "EngineAdapter",
    "RestoreOptions",
    "ToolProcess",
    "ToolResult",
    "get_engine",
    "is_local_host",
    "iter_tool_output",
    "run_tool",
]
