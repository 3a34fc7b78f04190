# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for dbbackup tests.

Provides a fake engine adapter backed by real subprocesses, local and
mock S3 stores, and test configuration helpers.
"""

import asyncio
import hashlib
import os
import shlex
import tempfile
import urllib.request
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Dict, Generator, List, Tuple

import pytest
import pytest_asyncio
import structlog

from dbbackup.classifier import DiagnosticCounter
from dbbackup.config import BackupConfig, DumpFormat, SampleStrategy
from dbbackup.engines import DumpOptions, DumpToc, RestoreOptions, ToolProcess, ToolResult, run_tool

# Keep real credentials out of the tests
for _name in ("DBBACKUP_ENCRYPTION_KEY", "BACKUP_DIR", "PGPASSWORD", "MYSQL_PWD"):
    os.environ.pop(_name, None)


def sql_payload(database: str, rows: int = 200) -> bytes:
    """A plain SQL script large enough to survive archive validation."""
    lines = [f"-- dump of {database}", "CREATE TABLE items (id int, digest text);"]
    for i in range(rows):
        digest = hashlib.sha256(f"{database}:{i}".encode()).hexdigest()
        lines.append(f"INSERT INTO items VALUES ({i}, '{digest}');")
    return ("\n".join(lines) + "\n").encode()


def custom_payload(database: str, rows: int = 200) -> bytes:
    """Bytes shaped like a pg_dump custom archive (PGDMP signature first)."""
    return b"PGDMP\x01\x0e\x00" + sql_payload(database, rows)


class FakeEngine:
    """
    EngineAdapter stand-in.

    Dumps are `cat` of in-memory payloads and restores are `sh` scripts that
    copy their input to a file and print configured stderr lines, so the
    real pipeline, process registry and diagnostics paths all run.
    """

    name = "fake"

    def __init__(
        self,
        work_dir: Path,
        databases: Dict[str, bytes] | None = None,
        system_databases: Tuple[str, ...] = ("postgres", "template0", "template1"),
        large_objects: Dict[str, int] | None = None,
        restore_stderr: Dict[str, List[str]] | None = None,
        restore_exit: Dict[str, int] | None = None,
        globals_sql: str = "CREATE ROLE app_owner;\n",
        globals_stderr: List[str] | None = None,
        globals_exit: int = 0,
        superuser: bool = True,
        version: Tuple[int, int] = (16, 0),
    ):
        self.work_dir = work_dir
        self.work_dir.mkdir(parents=True, exist_ok=True)
        (self.work_dir / "restored").mkdir(exist_ok=True)
        self.databases: Dict[str, bytes] = dict(databases or {})
        self.system_databases = system_databases
        self.large_objects = dict(large_objects or {})
        self.restore_stderr = dict(restore_stderr or {})
        self.restore_exit = dict(restore_exit or {})
        self.globals_sql = globals_sql
        self.globals_stderr = list(globals_stderr or [])
        self.globals_exit = globals_exit
        self.superuser = superuser
        self.version = version
        self.existing = set(self.databases)
        self.events: List[Tuple[str, str]] = []
        self.restore_options: Dict[str, RestoreOptions] = {}
        self.on_dump: Callable[[str], None] | None = None

    @asynccontextmanager
    async def connect(self, database: str | None = None):
        yield None

    async def list_databases(self) -> List[str]:
        return list(self.databases)

    async def get_version(self) -> Tuple[int, int]:
        return self.version

    async def get_tool_version(self) -> str:
        return "fake_dump 1.0"

    async def get_size(self, database: str) -> int:
        return len(self.databases.get(database, b""))

    async def is_superuser(self) -> bool:
        return self.superuser

    async def database_exists(self, database: str) -> bool:
        return database in self.existing

    async def start_dump(self, database: str, options: DumpOptions) -> ToolProcess:
        self.events.append(("dump", database))
        if self.on_dump is not None:
            self.on_dump(database)
        source = self.work_dir / f"source_{database}"
        source.write_bytes(self.databases[database])
        return await ToolProcess.start(["cat", str(source)])

    def restored_path(self, database: str) -> Path:
        return self.work_dir / "restored" / database

    def restored(self, database: str) -> bytes:
        return self.restored_path(database).read_bytes()

    def _script(self, source: str, code: int) -> List[str]:
        body = f'cat {source} > "$0"; for l in "$@"; do printf "%s\\n" "$l" >&2; done; exit {code}'
        return ["sh", "-c", body]

    async def start_restore(
        self,
        database: str,
        options: RestoreOptions,
        path: Path | None = None,
        diagnostics: DiagnosticCounter | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> ToolProcess:
        self.events.append(("restore", database))
        self.restore_options[database] = options
        lines = self.restore_stderr.get(database, [])
        code = self.restore_exit.get(database, 0)
        source = shlex.quote(str(path)) if path is not None else ""
        argv = self._script(source, code) + [str(self.restored_path(database)), *lines]
        return await ToolProcess.start(
            argv,
            stdin=asyncio.subprocess.PIPE if path is None else None,
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
        self.events.append(("globals", database or ""))
        argv = self._script(shlex.quote(str(path)), self.globals_exit)
        argv += [str(self.restored_path("__globals__")), *self.globals_stderr]
        result, _ = await run_tool(argv, diagnostics=diagnostics)
        return result

    async def terminate_other_connections(self, database: str) -> None:
        self.events.append(("terminate", database))

    async def drop_database(self, database: str, if_exists: bool = True) -> None:
        self.events.append(("drop", database))
        self.existing.discard(database)

    async def create_database(self, database: str, template_empty: bool = True) -> None:
        self.events.append(("create", database))
        self.existing.add(database)

    async def inspect_dump_toc(self, path: Path) -> DumpToc:
        database = path.name[: -len(".dump")].removeprefix("db_")
        count = self.large_objects.get(database, 0)
        return DumpToc(entries=10 + count, large_object_count=count)

    async def dump_globals(self) -> ToolProcess:
        self.events.append(("dump_globals", ""))
        return await ToolProcess.start(["printf", "%s", self.globals_sql])

    async def list_tables(self, database: str) -> List[str]:
        return ["items"]

    def build_sample_query(self, table: str, strategy: SampleStrategy, value: float) -> str:
        return f"SELECT * FROM {table} LIMIT {int(value)}"

    async def sample_stream(self, database: str, strategy: SampleStrategy, value: float, chunk_size: int = 65536):
        self.events.append(("sample", database))
        lines = sql_payload(database, rows=int(value) if strategy == SampleStrategy.COUNT else 50)
        for i in range(0, len(lines), 1024):
            yield lines[i:i + 1024]

    def is_system_database(self, database: str) -> bool:
        return database in self.system_databases

    def dump_extension(self, fmt: DumpFormat) -> str:
        return ".dump" if fmt == DumpFormat.CUSTOM else ".sql"

    def steps_for(self, database: str) -> List[str]:
        return [kind for kind, name in self.events if name == database]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def key_file(temp_dir: Path) -> Path:
    """A raw 32-byte encryption key on disk."""
    path = temp_dir / "backup.key"
    path.write_bytes(bytes(range(32)))
    return path


@pytest.fixture
def test_config(temp_dir: Path) -> BackupConfig:
    """Configuration rooted in the temp dir with retention disabled."""
    return BackupConfig(
        backup_dir=temp_dir / "backups",
        temp_dir=temp_dir / "tmp",
        use_parallel_gzip=False,
        retention_days=0,
        jobs=4,
        dump_jobs=1,
    )


@pytest.fixture
def fake_engine(temp_dir: Path) -> FakeEngine:
    """Engine with one application database and the postgres system database."""
    return FakeEngine(
        temp_dir / "engine",
        databases={"app": custom_payload("app"), "postgres": custom_payload("postgres", rows=20)},
    )


@pytest.fixture(autouse=True)
def restore_structlog_config():
    """Undo configure_logging() calls so no test logs to a closed capture stream."""
    saved = structlog.get_config()
    yield
    structlog.configure(**saved)


@pytest.fixture(autouse=True)
def fast_restore_settle(monkeypatch):
    """No pause between terminating connections and dropping a database."""
    monkeypatch.setattr("dbbackup.backup.restore.TERMINATE_SETTLE_SECONDS", 0)


@pytest_asyncio.fixture
async def local_store(temp_dir: Path):
    """Local store over temp_dir/backups."""
    from dbbackup.storage.local import LocalStore

    async with LocalStore(temp_dir / "backups") as store:
        yield store


@pytest_asyncio.fixture
async def mock_s3_client(temp_dir: Path, monkeypatch):
    """
    Create a mock S3 client using moto.

    This provides a fully functional S3 mock for testing.
    """
    from aiobotocore.session import get_session
    from moto.server import ThreadedMotoServer

    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

    # aiobotocore cannot await moto's in-process responses, so run moto as a server
    server = ThreadedMotoServer(ip_address="127.0.0.1", port=0)
    server.start()
    try:
        host, port = server.get_host_and_port()
        # Start from an empty account, as mock_aws() would
        urllib.request.urlopen(urllib.request.Request(f"http://{host}:{port}/moto-api/reset", method="POST")).close()
        # Clients the code under test creates itself must reach the same server
        monkeypatch.setenv("AWS_ENDPOINT_URL", f"http://{host}:{port}")
        session = get_session()

        async with session.create_client(
            "s3",
            region_name="us-east-1",
            endpoint_url=f"http://{host}:{port}",
        ) as client:
            await client.create_bucket(Bucket="test-bucket")
            yield client
    finally:
        server.stop()


@pytest_asyncio.fixture
async def s3_store(mock_s3_client):
    """S3Store over s3://test-bucket/backups using the moto client."""
    from dbbackup.storage.s3 import S3Store
    from dbbackup.storage.uri import parse_cloud_uri

    store = S3Store(parse_cloud_uri("s3://test-bucket/backups"), client=mock_s3_client)
    yield store


async def s3_object_exists(s3_client, bucket: str, key: str) -> bool:
    """Check if an S3 object exists."""
    try:
        await s3_client.head_object(Bucket=bucket, Key=key)
        return True
    except Exception:
        return False
