# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
PostgreSQL adapter: asyncpg for catalog queries, pg_dump / pg_restore /
psql / pg_dumpall for data.

The password reaches the tools only through PGPASSWORD. For local hosts the
--host flag is omitted so the tools (and asyncpg) use the Unix socket,
which lets peer authentication work.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Tuple

import structlog

from dbbackup.classifier import DiagnosticCounter
from dbbackup.config import BackupConfig, DumpFormat, SampleStrategy
from dbbackup.engines import (
    SAMPLE_SEED,
    DumpOptions,
    DumpToc,
    RestoreOptions,
    ToolProcess,
    ToolResult,
    is_local_host,
    iter_tool_output,
    run_tool,
)
from dbbackup.exceptions import EngineError

logger = structlog.get_logger()

SYSTEM_DATABASES = frozenset({"postgres", "template0", "template1"})

# Markers in `pg_restore -l` output that denote large objects
LARGE_OBJECT_MARKERS = ("BLOB", "LARGE OBJECT", " BLOBS ")

# Rows buffered between asyncpg COPY output and the sample stream
COPY_QUEUE_SIZE = 8


def quote_ident(name: str) -> str:
    """Double-quote a PostgreSQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


class PostgresEngine:
    """EngineAdapter for PostgreSQL."""

    name = "postgres"

    def __init__(self, config: BackupConfig):
        self.config = config

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _tool_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.config.password:
            env["PGPASSWORD"] = self.config.password
        if self.config.ssl_mode and not is_local_host(self.config.host):
            env["PGSSLMODE"] = self.config.ssl_mode
        return env

    def _conn_args(self) -> List[str]:
        args: List[str] = []
        if not is_local_host(self.config.host):
            args += [f"--host={self.config.host}", f"--port={self.config.port}"]
        args += [f"--username={self.config.user}", "--no-password"]
        return args

    @asynccontextmanager
    async def connect(self, database: str | None = None) -> AsyncIterator[Any]:
        """Short-lived asyncpg connection."""
        import asyncpg

        params: Dict[str, Any] = {
            "user": self.config.user,
            "password": self.config.password,
            "database": database or self.config.database or "postgres",
            "port": self.config.port,
        }
        if not is_local_host(self.config.host):
            params["host"] = self.config.host
            params["ssl"] = self.config.ssl_mode

        try:
            conn = await asyncpg.connect(**params)
        except Exception as e:
            raise EngineError(
                f"Failed to connect to PostgreSQL: {e}",
                details={
                    "host": self.config.host,
                    "port": self.config.port,
                    "user": self.config.user,
                    "database": params["database"],
                },
            ) from e
        try:
            yield conn
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # Catalog queries
    # ------------------------------------------------------------------

    async def list_databases(self) -> List[str]:
        async with self.connect() as conn:
            rows = await conn.fetch(
                "SELECT datname FROM pg_database WHERE datistemplate = false ORDER BY datname"
            )
        return [row["datname"] for row in rows]

    async def get_version(self) -> Tuple[int, int]:
        async with self.connect() as conn:
            num = int(await conn.fetchval("SHOW server_version_num"))
        if num >= 100000:
            return num // 10000, num % 10000
        return num // 10000, (num // 100) % 100

    async def get_tool_version(self) -> str:
        result, output = await run_tool(["pg_dump", "--version"], env=self._tool_env())
        result.raise_for_status()
        return output.decode("utf-8", "replace").strip()

    async def get_size(self, database: str) -> int:
        async with self.connect() as conn:
            return int(await conn.fetchval("SELECT pg_database_size($1)", database))

    async def is_superuser(self) -> bool:
        async with self.connect() as conn:
            return bool(
                await conn.fetchval("SELECT rolsuper FROM pg_roles WHERE rolname = current_user")
            )

    async def database_exists(self, database: str) -> bool:
        async with self.connect() as conn:
            return bool(
                await conn.fetchval(
                    "SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)", database
                )
            )

    async def list_tables(self, database: str) -> List[str]:
        async with self.connect(database) as conn:
            return await self._list_tables(conn)

    async def _list_tables(self, conn: Any) -> List[str]:
        rows = await conn.fetch(
            """
            SELECT quote_ident(schemaname) || '.' || quote_ident(tablename) AS full_name
            FROM pg_tables
            WHERE schemaname NOT IN ('information_schema', 'pg_catalog', 'pg_toast')
            ORDER BY schemaname, tablename
            """
        )
        return [row["full_name"] for row in rows]

    def is_system_database(self, database: str) -> bool:
        return database in SYSTEM_DATABASES

    def dump_extension(self, fmt: DumpFormat) -> str:
        return ".dump" if fmt == DumpFormat.CUSTOM else ".sql"

    # ------------------------------------------------------------------
    # Dump
    # ------------------------------------------------------------------

    def build_dump_args(self, database: str, options: DumpOptions) -> List[str]:
        fmt = "custom" if options.format == DumpFormat.CUSTOM else "plain"
        argv = ["pg_dump", *self._conn_args(), f"--format={fmt}"]
        if options.format == DumpFormat.CUSTOM:
            argv.append(f"--compress={options.compression}")
        if options.blobs and not options.schema_only:
            argv.append("--blobs")
        if options.schema_only:
            argv.append("--schema-only")
        if options.data_only:
            argv.append("--data-only")
        if options.no_owner:
            argv.append("--no-owner")
        if options.no_privileges:
            argv.append("--no-privileges")
        for pattern in options.exclude_table_data:
            argv.append(f"--exclude-table-data={pattern}")
        argv.append(f"--dbname={database}")
        return argv

    async def start_dump(self, database: str, options: DumpOptions) -> ToolProcess:
        argv = self.build_dump_args(database, options)
        logger.debug("pg_dump_starting", database=database, format=options.format.value)
        return await ToolProcess.start(argv, env=self._tool_env())

    async def dump_globals(self) -> ToolProcess:
        argv = ["pg_dumpall", *self._conn_args(), "--globals-only"]
        return await ToolProcess.start(argv, env=self._tool_env())

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def build_restore_args(
        self,
        database: str,
        options: RestoreOptions,
        path: Path | None = None,
    ) -> List[str]:
        if options.format != DumpFormat.CUSTOM:
            argv = ["psql", *self._conn_args(), "--no-psqlrc", "--quiet", f"--dbname={database}"]
            if options.exit_on_error:
                argv += ["--set", "ON_ERROR_STOP=1"]
            if options.single_transaction:
                argv.append("--single-transaction")
            if path is not None:
                argv.append(f"--file={path}")
            return argv

        argv = ["pg_restore", *self._conn_args()]
        # Parallel restore needs a seekable file
        if options.jobs > 1 and path is not None:
            argv.append(f"--jobs={options.jobs}")
        if options.clean:
            argv += ["--clean", "--if-exists"]
        if options.no_owner:
            argv.append("--no-owner")
        if options.no_privileges:
            argv.append("--no-privileges")
        if options.single_transaction:
            argv.append("--single-transaction")
        if options.exit_on_error:
            argv.append("--exit-on-error")
        argv.append(f"--dbname={database}")
        if path is not None:
            argv.append(str(path))
        return argv

    async def start_restore(
        self,
        database: str,
        options: RestoreOptions,
        path: Path | None = None,
        diagnostics: DiagnosticCounter | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> ToolProcess:
        argv = self.build_restore_args(database, options, path)
        logger.debug("pg_restore_starting", database=database, program=argv[0], jobs=options.jobs)
        return await ToolProcess.start(
            argv,
            env=self._tool_env(),
            stdin=asyncio.subprocess.PIPE if path is None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            diagnostics=diagnostics,
            on_line=on_line,
        )

    async def run_sql_script(
        self,
        path: Path,
        database: str | None = None,
        diagnostics: DiagnosticCounter | None = None,
    ) -> ToolResult:
        argv = [
            "psql",
            *self._conn_args(),
            "--no-psqlrc",
            "--quiet",
            f"--dbname={database or 'postgres'}",
            f"--file={path}",
        ]
        tool = await ToolProcess.start(
            argv,
            env=self._tool_env(),
            stdout=asyncio.subprocess.DEVNULL,
            diagnostics=diagnostics,
        )
        try:
            return await tool.wait()
        except BaseException:
            await tool.terminate()
            raise

    async def inspect_dump_toc(self, path: Path) -> DumpToc:
        """Count TOC entries and large-object entries with `pg_restore -l`."""
        result, output = await run_tool(["pg_restore", "-l", str(path)], env=self._tool_env())
        result.raise_for_status()

        toc = DumpToc()
        for line in output.decode("utf-8", "replace").splitlines():
            if not line or line.startswith(";"):
                continue
            toc.entries += 1
            if any(marker in line for marker in LARGE_OBJECT_MARKERS):
                toc.large_object_count += 1
        return toc

    # ------------------------------------------------------------------
    # Database lifecycle
    # ------------------------------------------------------------------

    async def terminate_other_connections(self, database: str) -> None:
        try:
            async with self.connect() as conn:
                await conn.execute(
                    """
                    SELECT pg_terminate_backend(pid)
                    FROM pg_stat_activity
                    WHERE datname = $1 AND pid <> pg_backend_pid()
                    """,
                    database,
                )
        except Exception as e:
            logger.warning("terminate_connections_failed", database=database, error=str(e))

    async def drop_database(self, database: str, if_exists: bool = True) -> None:
        if self.is_system_database(database):
            logger.info("system_database_drop_skipped", database=database)
            return
        clause = "IF EXISTS " if if_exists else ""
        async with self.connect() as conn:
            await conn.execute(f"DROP DATABASE {clause}{quote_ident(database)}")
        logger.info("database_dropped", database=database)

    async def create_database(self, database: str, template_empty: bool = True) -> None:
        if self.is_system_database(database):
            logger.info("system_database_create_skipped", database=database)
            return
        sql = f"CREATE DATABASE {quote_ident(database)}"
        if template_empty:
            sql += " WITH TEMPLATE template0"
        async with self.connect() as conn:
            await conn.execute(sql)
        logger.info("database_created", database=database)

    # ------------------------------------------------------------------
    # Sample backups
    # ------------------------------------------------------------------

    def build_sample_query(self, table: str, strategy: SampleStrategy, value: float) -> str:
        n = _format_number(value)
        if strategy == SampleStrategy.RATIO:
            return (
                f"SELECT * FROM {table} WHERE ctid IN "
                f"(SELECT ctid FROM (SELECT ctid, row_number() OVER () AS rn FROM {table}) s "
                f"WHERE rn % {n} = 1)"
            )
        if strategy == SampleStrategy.PERCENT:
            return f"SELECT * FROM {table} TABLESAMPLE BERNOULLI({n}) REPEATABLE ({SAMPLE_SEED})"
        return f"SELECT * FROM {table} LIMIT {n}"

    async def sample_stream(
        self,
        database: str,
        strategy: SampleStrategy,
        value: float,
        chunk_size: int = 1024 * 1024,
    ) -> AsyncIterator[bytes]:
        """
        Plain SQL script of the schema and sampled rows.

        Layout: pre-data schema, one COPY block per table, then post-data
        (indexes and constraints) so the script replays with psql.
        """
        pre = await self._start_section_dump(database, "pre-data")
        async for chunk in iter_tool_output(pre, chunk_size):
            yield chunk

        async with self.connect(database) as conn:
            tables = await self._list_tables(conn)
            for table in tables:
                query = self.build_sample_query(table, strategy, value)
                yield f"\nCOPY {table} FROM stdin;\n".encode("utf-8")
                async for chunk in _copy_rows(conn, query):
                    yield chunk
                yield b"\\.\n"

        post = await self._start_section_dump(database, "post-data")
        async for chunk in iter_tool_output(post, chunk_size):
            yield chunk

        logger.info(
            "sample_stream_complete",
            database=database,
            strategy=strategy.value,
            value=value,
            tables=len(tables),
        )

    async def _start_section_dump(self, database: str, section: str) -> ToolProcess:
        argv = [
            "pg_dump",
            *self._conn_args(),
            "--format=plain",
            f"--section={section}",
            f"--dbname={database}",
        ]
        return await ToolProcess.start(argv, env=self._tool_env())


async def _copy_rows(conn: Any, query: str) -> AsyncIterator[bytes]:
    """
    Stream `COPY (query) TO STDOUT` text rows.

    asyncpg pushes output into a callback; a small queue turns that into a
    pull-based iterator so the consumer throttles the COPY.
    """
    queue: asyncio.Queue = asyncio.Queue(maxsize=COPY_QUEUE_SIZE)
    done = object()

    async def _sink(data: bytes) -> None:
        await queue.put(bytes(data))

    async def _copy() -> None:
        try:
            await conn.copy_from_query(query, output=_sink, format="text")
        finally:
            await queue.put(done)

    task = asyncio.create_task(_copy())
    try:
        while True:
            item = await queue.get()
            if item is done:
                break
            yield item
        await task
    finally:
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
