# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
MySQL / MariaDB adapter: aiomysql for catalog queries, mysqldump and the
mysql client for data.

Dumps are always plain SQL; the pipeline compresses them. The password is
passed only through MYSQL_PWD.
"""

import asyncio
import os
import re
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

SYSTEM_DATABASES = frozenset({"information_schema", "performance_schema", "mysql", "sys"})

_VERSION_RE = re.compile(r"(\d+)\.(\d+)")


def quote_ident(name: str) -> str:
    """Backquote a MySQL identifier."""
    return "`" + name.replace("`", "``") + "`"


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


class MySQLEngine:
    """EngineAdapter for MySQL and MariaDB."""

    def __init__(self, config: BackupConfig):
        self.config = config
        self.name = config.engine.value

    def _tool_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.config.password:
            env["MYSQL_PWD"] = self.config.password
        return env

    def _conn_args(self) -> List[str]:
        args: List[str] = []
        if not is_local_host(self.config.host):
            args += [f"--host={self.config.host}", f"--port={self.config.port}"]
        args.append(f"--user={self.config.user}")
        return args

    @asynccontextmanager
    async def connect(self, database: str | None = None) -> AsyncIterator[Any]:
        """Short-lived aiomysql connection in autocommit mode."""
        import aiomysql

        params: Dict[str, Any] = {
            "host": self.config.host or "localhost",
            "port": self.config.port,
            "user": self.config.user,
            "password": self.config.password or "",
            "autocommit": True,
        }
        if database or self.config.database:
            params["db"] = database or self.config.database

        try:
            conn = await aiomysql.connect(**params)
        except Exception as e:
            raise EngineError(
                f"Failed to connect to {self.name}: {e}",
                details={"host": self.config.host, "port": self.config.port, "user": self.config.user},
            ) from e
        try:
            yield conn
        finally:
            conn.close()

    async def _fetchall(self, sql: str, args: Tuple = (), database: str | None = None) -> List[Tuple]:
        async with self.connect(database) as conn:
            async with conn.cursor() as cursor:
                await cursor.execute(sql, args)
                return list(await cursor.fetchall())

    async def _execute(self, sql: str, args: Tuple = ()) -> None:
        async with self.connect() as conn:
            async with conn.cursor() as cursor:
                await cursor.execute(sql, args)

    # ------------------------------------------------------------------
    # Catalog queries
    # ------------------------------------------------------------------

    async def list_databases(self) -> List[str]:
        rows = await self._fetchall("SHOW DATABASES")
        return sorted(row[0] for row in rows if row[0] not in SYSTEM_DATABASES)

    async def get_version(self) -> Tuple[int, int]:
        rows = await self._fetchall("SELECT VERSION()")
        match = _VERSION_RE.search(rows[0][0]) if rows else None
        if not match:
            raise EngineError("Could not determine server version")
        return int(match.group(1)), int(match.group(2))

    async def get_tool_version(self) -> str:
        result, output = await run_tool(["mysqldump", "--version"], env=self._tool_env())
        result.raise_for_status()
        return output.decode("utf-8", "replace").strip()

    async def get_size(self, database: str) -> int:
        rows = await self._fetchall(
            """
            SELECT COALESCE(SUM(data_length + index_length), 0)
            FROM information_schema.tables
            WHERE table_schema = %s
            """,
            (database,),
        )
        return int(rows[0][0]) if rows else 0

    async def is_superuser(self) -> bool:
        rows = await self._fetchall("SHOW GRANTS FOR CURRENT_USER()")
        for (grant,) in rows:
            if "ALL PRIVILEGES ON *.*" in grant.upper():
                return True
        return False

    async def database_exists(self, database: str) -> bool:
        rows = await self._fetchall(
            "SELECT SCHEMA_NAME FROM information_schema.SCHEMATA WHERE SCHEMA_NAME = %s",
            (database,),
        )
        return bool(rows)

    async def list_tables(self, database: str) -> List[str]:
        rows = await self._fetchall(
            "SHOW FULL TABLES WHERE Table_type = 'BASE TABLE'", database=database
        )
        return [row[0] for row in rows]

    def is_system_database(self, database: str) -> bool:
        return database.lower() in SYSTEM_DATABASES

    def dump_extension(self, fmt: DumpFormat) -> str:
        return ".sql"

    # ------------------------------------------------------------------
    # Dump
    # ------------------------------------------------------------------

    def build_dump_args(self, database: str, options: DumpOptions) -> List[str]:
        argv = [
            "mysqldump",
            *self._conn_args(),
            "--single-transaction",
            "--routines",
            "--triggers",
            "--events",
        ]
        if options.schema_only:
            argv.append("--no-data")
        if options.data_only:
            argv.append("--no-create-info")
        if options.sample_strategy is not None and options.sample_value is not None:
            predicate = self.build_sample_query("", options.sample_strategy, options.sample_value)
            argv.append(f"--where={predicate}")
        argv += ["--databases", database]
        return argv

    async def start_dump(self, database: str, options: DumpOptions) -> ToolProcess:
        if options.exclude_table_data:
            logger.warning(
                "exclude_table_data_unsupported",
                engine=self.name,
                patterns=options.exclude_table_data,
            )
        argv = self.build_dump_args(database, options)
        logger.debug("mysqldump_starting", database=database)
        return await ToolProcess.start(argv, env=self._tool_env())

    async def dump_globals(self) -> ToolProcess:
        raise EngineError(f"Global object dumps are not supported for {self.name}")

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def build_restore_args(self, database: str, options: RestoreOptions) -> List[str]:
        argv = ["mysql", *self._conn_args()]
        if not options.exit_on_error:
            argv.append("--force")
        if database:
            argv.append(database)
        return argv

    async def start_restore(
        self,
        database: str,
        options: RestoreOptions,
        path: Path | None = None,
        diagnostics: DiagnosticCounter | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> ToolProcess:
        argv = self.build_restore_args(database, options)

        if path is None:
            return await ToolProcess.start(
                argv,
                env=self._tool_env(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                diagnostics=diagnostics,
                on_line=on_line,
            )
        with open(path, "rb") as f:
            return await ToolProcess.start(
                argv,
                env=self._tool_env(),
                stdin=f.fileno(),
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
        options = RestoreOptions(format=DumpFormat.PLAIN)
        tool = await self.start_restore(database or "", options, path, diagnostics)
        try:
            return await tool.wait()
        except BaseException:
            await tool.terminate()
            raise

    async def inspect_dump_toc(self, path: Path) -> DumpToc:
        # Plain SQL has no table of contents
        return DumpToc()

    # ------------------------------------------------------------------
    # Database lifecycle
    # ------------------------------------------------------------------

    async def terminate_other_connections(self, database: str) -> None:
        try:
            async with self.connect() as conn:
                async with conn.cursor() as cursor:
                    await cursor.execute(
                        """
                        SELECT id FROM information_schema.PROCESSLIST
                        WHERE db = %s AND id <> CONNECTION_ID()
                        """,
                        (database,),
                    )
                    for (pid,) in await cursor.fetchall():
                        await cursor.execute(f"KILL {int(pid)}")
        except Exception as e:
            logger.warning("terminate_connections_failed", database=database, error=str(e))

    async def drop_database(self, database: str, if_exists: bool = True) -> None:
        if self.is_system_database(database):
            logger.info("system_database_drop_skipped", database=database)
            return
        clause = "IF EXISTS " if if_exists else ""
        await self._execute(f"DROP DATABASE {clause}{quote_ident(database)}")
        logger.info("database_dropped", database=database)

    async def create_database(self, database: str, template_empty: bool = True) -> None:
        if self.is_system_database(database):
            logger.info("system_database_create_skipped", database=database)
            return
        await self._execute(f"CREATE DATABASE {quote_ident(database)}")
        logger.info("database_created", database=database)

    # ------------------------------------------------------------------
    # Sample backups
    # ------------------------------------------------------------------

    def build_sample_query(self, table: str, strategy: SampleStrategy, value: float) -> str:
        """Return the mysqldump --where predicate for a strategy."""
        n = _format_number(value)
        if strategy == SampleStrategy.RATIO:
            return f"(@dbbackup_rn:=IFNULL(@dbbackup_rn,0)+1) % {n} = 1"
        if strategy == SampleStrategy.PERCENT:
            return f"RAND({SAMPLE_SEED}) <= {n}/100"
        return f"1 LIMIT {n}"

    async def sample_stream(
        self,
        database: str,
        strategy: SampleStrategy,
        value: float,
        chunk_size: int = 1024 * 1024,
    ) -> AsyncIterator[bytes]:
        """Schema from `mysqldump --no-data`, then rows filtered by --where."""
        schema = await self.start_dump(database, DumpOptions(format=DumpFormat.PLAIN, schema_only=True))
        async for chunk in iter_tool_output(schema, chunk_size):
            yield chunk

        data = await self.start_dump(
            database,
            DumpOptions(
                format=DumpFormat.PLAIN,
                data_only=True,
                sample_strategy=strategy,
                sample_value=value,
            ),
        )
        async for chunk in iter_tool_output(data, chunk_size):
            yield chunk

        logger.info("sample_stream_complete", database=database, strategy=strategy.value, value=value)
