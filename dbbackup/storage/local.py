# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Local directory store.

Writes go to a hidden `.<name>.partial` file that is fsynced and then
renamed into place, so a listed object is always complete.
"""

import asyncio
import os
from datetime import datetime, UTC
from pathlib import Path
from typing import AsyncIterator, Dict

import aiofiles
import aiofiles.os
import structlog

from dbbackup.exceptions import ObjectNotFoundError, StorageError
from dbbackup.storage import ObjectInfo, ProgressCallback, ProgressReporter

logger = structlog.get_logger()

COPY_CHUNK_SIZE = 4 * 1024 * 1024
PARTIAL_SUFFIX = ".partial"


def partial_path(final_path: Path) -> Path:
    return final_path.with_name(f".{final_path.name}{PARTIAL_SUFFIX}")


async def fsync_path(path: Path) -> None:
    """fsync a file by path in the default executor."""

    def _sync() -> None:
        fd = os.open(path, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    await asyncio.get_running_loop().run_in_executor(None, _sync)


class LocalStore:
    """ObjectStore over a local directory."""

    name = "local"

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, name: str) -> Path:
        if not name or name.startswith("/") or ".." in Path(name).parts:
            raise StorageError(f"Invalid object name: {name!r}")
        return self.root / name

    def location(self, name: str) -> str:
        return str(self._path(name))

    async def put(
        self,
        name: str,
        source_path: Path,
        size_hint: int | None = None,
        metadata: Dict[str, str] | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        """
        Copy a file into the store atomically.

        Args:
            name: Object name
            source_path: Local file to copy
            size_hint: Expected size, used for progress only
            metadata: Ignored; the sidecar files carry metadata locally
            progress: Optional progress callback
        """
        dest = self._path(name)
        temp = partial_path(dest)
        reporter = ProgressReporter(progress, size_hint or 0)

        await aiofiles.os.makedirs(dest.parent, exist_ok=True)
        try:
            async with aiofiles.open(source_path, "rb") as src, aiofiles.open(temp, "wb") as dst:
                while True:
                    chunk = await src.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    await dst.write(chunk)
                    reporter.advance(len(chunk))
                await dst.flush()
            await fsync_path(temp)
            await aiofiles.os.replace(temp, dest)
        except BaseException:
            await _remove_quietly(temp)
            raise

        reporter.finish()
        logger.debug("local_object_written", path=str(dest), size=reporter.done)

    async def put_bytes(self, name: str, data: bytes) -> None:
        dest = self._path(name)
        temp = partial_path(dest)
        await aiofiles.os.makedirs(dest.parent, exist_ok=True)
        try:
            async with aiofiles.open(temp, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(temp, dest)
        except BaseException:
            await _remove_quietly(temp)
            raise

    async def get(
        self,
        name: str,
        dest_path: Path,
        progress: ProgressCallback | None = None,
    ) -> None:
        source = self._path(name)
        if not source.exists():
            raise ObjectNotFoundError(f"Object not found: {source}", details={"name": name})

        reporter = ProgressReporter(progress, source.stat().st_size)
        async with aiofiles.open(source, "rb") as src, aiofiles.open(dest_path, "wb") as dst:
            while True:
                chunk = await src.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                await dst.write(chunk)
                reporter.advance(len(chunk))
        reporter.finish()

    async def get_bytes(self, name: str) -> bytes:
        path = self._path(name)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"Object not found: {path}", details={"name": name}) from e

    async def open_read(self, name: str, chunk_size: int = COPY_CHUNK_SIZE) -> AsyncIterator[bytes]:
        path = self._path(name)
        try:
            f = await aiofiles.open(path, "rb")
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"Object not found: {path}", details={"name": name}) from e
        try:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            await f.close()

    async def list(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        if not self.root.is_dir():
            return
        for entry in sorted(await aiofiles.os.listdir(self.root)):
            if entry.startswith(".") or not entry.startswith(prefix):
                continue
            path = self.root / entry
            stat = await aiofiles.os.stat(path)
            if not path.is_file():
                continue
            yield ObjectInfo(
                name=entry,
                size=stat.st_size,
                modified=datetime.fromtimestamp(stat.st_mtime, UTC),
            )

    async def delete(self, name: str) -> None:
        path = self._path(name)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"Object not found: {path}", details={"name": name}) from e

    async def exists(self, name: str) -> bool:
        """True if present, False only when not found; other OS errors raise."""
        path = self._path(name)
        try:
            await aiofiles.os.stat(path)
        except (FileNotFoundError, NotADirectoryError):
            return False
        except OSError as e:
            raise StorageError(f"Cannot check {path}: {e}", details={"name": name, "errno": e.errno}) from e
        return True

    async def get_size(self, name: str) -> int:
        path = self._path(name)
        try:
            return (await aiofiles.os.stat(path)).st_size
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"Object not found: {path}", details={"name": name}) from e

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "LocalStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"LocalStore({str(self.root)!r})"


async def _remove_quietly(path: Path) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
