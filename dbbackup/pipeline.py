# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Pipeline - Bounded-memory streaming between tools and files.

Backup:  producer -> compressor -> plaintext hasher -> encryptor
         -> on-disk hasher -> atomic file sink
Restore: reader -> on-disk hasher -> decryptor (auto-detected)
         -> decompressor -> consumer (file or tool stdin)

Every stage is an async generator over byte chunks. A stage pulls the next
chunk only after the downstream write (file write or stdin.drain()) has
completed, so a slow sink throttles the producer. CPU-heavy work
(deflate, zstd) runs in a module-level thread pool.
"""

import asyncio
import hashlib
import os
import shutil
import time
import zlib
from concurrent.futures import ThreadPoolExecutor
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Tuple

import aiofiles
import aiofiles.os
import structlog
import zstandard as zstd

from dbbackup.config import CompressionAlgo
from dbbackup.crypto import (
    MAGIC,
    MAGIC_SIZE,
    KeyMaterial,
    decrypt_stream,
    encrypt_stream,
)
from dbbackup.exceptions import IntegrityError, PipelineError
from dbbackup.scheduling import process_registry

logger = structlog.get_logger()

# Thread pool for CPU-bound compression
_executor = ThreadPoolExecutor(max_workers=4)

DEFAULT_CHUNK_SIZE = 4 * 1024 * 1024

GZIP_MAGIC = b"\x1f\x8b"
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"

# Chunks below this size are compressed inline
_INLINE_LIMIT = 64 * 1024


@dataclass
class PipelineResult:
    """Byte counts and digests of one pipeline run."""

    bytes_in: int = 0
    bytes_out: int = 0
    sha256: str = ""  # Of the bytes written to disk
    plaintext_sha256: str = ""  # Of the compressed stream before encryption
    duration_seconds: float = 0.0
    encrypted: bool = False
    compression: CompressionAlgo = CompressionAlgo.NONE

    @property
    def compression_ratio(self) -> float:
        return self.bytes_in / self.bytes_out if self.bytes_out else 0.0


class StreamHasher:
    """SHA-256 and byte counter fed by hash_stream()."""

    def __init__(self) -> None:
        self._hash = hashlib.sha256()
        self.count = 0

    def update(self, chunk: bytes) -> None:
        self._hash.update(chunk)
        self.count += len(chunk)

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


async def _aclose(source: AsyncIterator[bytes]) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()


async def _offload(fn: Callable[..., Any], *args: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, fn, *args)


# ============================================================================
# Sources
# ============================================================================

async def iter_file(path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Read a file in fixed-size chunks."""
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            yield chunk


async def iter_reader(
    reader: asyncio.StreamReader,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[bytes]:
    """Read a subprocess stdout pipe in chunks until EOF."""
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        yield chunk


async def peek(
    source: AsyncIterator[bytes],
    size: int,
) -> Tuple[bytes, AsyncIterator[bytes]]:
    """
    Look at the first `size` bytes of a stream without consuming them.

    Returns:
        (prefix, stream) where stream yields the full original content
    """
    buffered = bytearray()
    it = source.__aiter__()
    exhausted = False
    while len(buffered) < size:
        try:
            buffered += await it.__anext__()
        except StopAsyncIteration:
            exhausted = True
            break

    head = bytes(buffered)

    async def _replay() -> AsyncIterator[bytes]:
        try:
            if head:
                yield head
            if not exhausted:
                async for chunk in it:
                    yield chunk
        finally:
            await _aclose(it)

    return head[:size], _replay()


# ============================================================================
# Stages
# ============================================================================

async def hash_stream(source: AsyncIterator[bytes], hasher: StreamHasher) -> AsyncIterator[bytes]:
    """Pass chunks through unchanged while feeding a hasher."""
    try:
        async for chunk in source:
            hasher.update(chunk)
            yield chunk
    finally:
        await _aclose(source)


async def verify_stream(
    source: AsyncIterator[bytes],
    expected_sha256: str,
) -> AsyncIterator[bytes]:
    """
    Pass chunks through and compare the digest at end of stream.

    Raises:
        IntegrityError: If the digest differs from expected_sha256
    """
    hasher = StreamHasher()
    async for chunk in hash_stream(source, hasher):
        yield chunk
    actual = hasher.hexdigest()
    if actual != expected_sha256.lower():
        raise IntegrityError(
            "Checksum mismatch while streaming backup",
            details={"expected": expected_sha256, "actual": actual},
        )


def _zstd_level(level: int) -> int:
    """Map the 0-9 gzip-style level onto zstd's 1-19 range."""
    return max(1, min(19, level * 2 + 1))


async def compress_stream(
    source: AsyncIterator[bytes],
    algo: CompressionAlgo,
    level: int = 6,
) -> AsyncIterator[bytes]:
    """Compress a stream with gzip (zlib, wbits=31) or zstd."""
    if algo == CompressionAlgo.NONE:
        async for chunk in hash_stream(source, StreamHasher()):
            yield chunk
        return

    if algo == CompressionAlgo.GZIP:
        compressor = zlib.compressobj(level, zlib.DEFLATED, 31)
    else:
        compressor = zstd.ZstdCompressor(level=_zstd_level(level)).compressobj()

    try:
        async for chunk in source:
            if len(chunk) > _INLINE_LIMIT:
                out = await _offload(compressor.compress, chunk)
            else:
                out = compressor.compress(chunk)
            if out:
                yield out
        tail = compressor.flush()
        if tail:
            yield tail
    finally:
        await _aclose(source)


def pigz_available() -> bool:
    return shutil.which("pigz") is not None


async def pigz_compress_stream(
    source: AsyncIterator[bytes],
    level: int = 6,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[bytes]:
    """
    Compress through a parallel `pigz` subprocess.

    A feeder task writes into pigz stdin while this generator reads its
    stdout. The child is terminated if the stream is abandoned.
    """
    proc = await process_registry.spawn(
        ["pigz", f"-{level}", "-c"],
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    assert proc.stdin is not None and proc.stdout is not None

    async def _feed() -> None:
        try:
            async for chunk in source:
                proc.stdin.write(chunk)
                await proc.stdin.drain()
        finally:
            proc.stdin.close()
            await _aclose(source)

    feeder = asyncio.create_task(_feed())
    try:
        while True:
            chunk = await proc.stdout.read(chunk_size)
            if not chunk:
                break
            yield chunk
        await feeder
        returncode = await process_registry.wait(proc)
        if returncode != 0:
            raise PipelineError(f"pigz exited with code {returncode}")
    except BaseException:
        feeder.cancel()
        await asyncio.gather(feeder, return_exceptions=True)
        await process_registry.terminate(proc)
        raise


def detect_compression(prefix: bytes) -> CompressionAlgo:
    """Identify gzip or zstd from the leading magic bytes."""
    if prefix.startswith(GZIP_MAGIC):
        return CompressionAlgo.GZIP
    if prefix.startswith(ZSTD_MAGIC):
        return CompressionAlgo.ZSTD
    return CompressionAlgo.NONE


async def decompress_stream(
    source: AsyncIterator[bytes],
    algo: CompressionAlgo,
) -> AsyncIterator[bytes]:
    """
    Decompress gzip (including concatenated members) or zstd.

    Raises:
        PipelineError: If the stream is not valid compressed data
    """
    if algo == CompressionAlgo.NONE:
        async for chunk in hash_stream(source, StreamHasher()):
            yield chunk
        return

    try:
        if algo == CompressionAlgo.GZIP:
            decompressor = zlib.decompressobj(47)
            pending = False
            async for chunk in source:
                data = chunk
                while data:
                    pending = True
                    out = await _offload(decompressor.decompress, data)
                    if out:
                        yield out
                    if decompressor.eof:
                        pending = False
                        data = decompressor.unused_data
                        decompressor = zlib.decompressobj(47)
                    else:
                        data = b""
            if pending:
                raise PipelineError("gzip stream is truncated")
            tail = decompressor.flush()
            if tail:
                yield tail
        else:
            decompressor = zstd.ZstdDecompressor().decompressobj()
            pending = False
            async for chunk in source:
                data = chunk
                while data:
                    pending = True
                    out = await _offload(decompressor.decompress, data)
                    if out:
                        yield out
                    if decompressor.eof:
                        pending = False
                        data = decompressor.unused_data
                        decompressor = zstd.ZstdDecompressor().decompressobj()
                    else:
                        data = b""
            if pending:
                raise PipelineError("zstd stream is truncated")
    except (zlib.error, zstd.ZstdError) as e:
        raise PipelineError(f"Invalid {algo.value} data: {e}") from e
    finally:
        await _aclose(source)


# ============================================================================
# Sinks
# ============================================================================

def partial_path(dest: Path) -> Path:
    return dest.with_name(f".{dest.name}.partial")


async def write_atomic(source: AsyncIterator[bytes], dest: Path) -> int:
    """
    Write a stream to `dest` via a hidden partial file, fsync, then rename.

    The partial file is removed on any failure or cancellation.

    Returns:
        Number of bytes written
    """
    temp = partial_path(dest)
    written = 0
    try:
        async with aclosing(source) as stream, aiofiles.open(temp, "wb") as f:
            async for chunk in stream:
                await f.write(chunk)
                written += len(chunk)
            await f.flush()
            await _offload(os.fsync, f.fileno())
        await aiofiles.os.replace(temp, dest)
    except BaseException:
        try:
            await aiofiles.os.remove(temp)
        except FileNotFoundError:
            pass
        raise
    return written


async def feed_stdin(source: AsyncIterator[bytes], writer: asyncio.StreamWriter) -> int:
    """
    Write a stream into a subprocess stdin, awaiting drain() per chunk.

    stdin is closed at the end so the tool sees EOF.
    """
    written = 0
    try:
        async with aclosing(source) as stream:
            async for chunk in stream:
                writer.write(chunk)
                await writer.drain()
                written += len(chunk)
    finally:
        writer.close()
    return written


# ============================================================================
# Assembled pipelines
# ============================================================================

async def run_backup_pipeline(
    producer: AsyncIterator[bytes],
    dest: Path,
    compression: CompressionAlgo = CompressionAlgo.GZIP,
    level: int = 6,
    key: KeyMaterial | None = None,
    use_pigz: bool = False,
) -> PipelineResult:
    """
    Stream producer output through compression, hashing and encryption
    into `dest`.

    Args:
        producer: Raw payload chunks (dump tool stdout or a file)
        dest: Final file path; written atomically
        compression: Stream compressor; NONE for already-compressed formats
        level: Compression level 0-9
        key: Encrypt with this key when given
        use_pigz: Use a pigz subprocess for gzip when available

    Returns:
        PipelineResult with sizes and digests
    """
    started = time.monotonic()
    raw = StreamHasher()
    plain = StreamHasher()
    disk = StreamHasher()

    stream: AsyncIterator[bytes] = hash_stream(producer, raw)

    if compression == CompressionAlgo.GZIP and use_pigz and pigz_available():
        stream = pigz_compress_stream(stream, level)
    else:
        stream = compress_stream(stream, compression, level)

    stream = hash_stream(stream, plain)
    if key is not None:
        stream = encrypt_stream(stream, key)
    stream = hash_stream(stream, disk)

    try:
        await write_atomic(stream, dest)
    except (IntegrityError, PipelineError):
        raise
    except OSError as e:
        raise PipelineError(f"Failed to write {dest.name}: {e}", details={"path": str(dest)}) from e

    result = PipelineResult(
        bytes_in=raw.count,
        bytes_out=disk.count,
        sha256=disk.hexdigest(),
        plaintext_sha256=plain.hexdigest(),
        duration_seconds=time.monotonic() - started,
        encrypted=key is not None,
        compression=compression,
    )
    logger.debug(
        "backup_pipeline_complete",
        dest=str(dest),
        bytes_in=result.bytes_in,
        bytes_out=result.bytes_out,
        encrypted=result.encrypted,
    )
    return result


async def open_restore_stream(
    source: AsyncIterator[bytes],
    key: KeyMaterial | None = None,
    expected_sha256: str | None = None,
    decompress: bool = True,
    hasher: StreamHasher | None = None,
) -> AsyncIterator[bytes]:
    """
    Build the restore side of the pipeline.

    Verification runs on the bytes as stored. Decryption is engaged when the
    stream starts with the encryption magic. Decompression is detected from
    the gzip or zstd magic when `decompress` is set.

    Raises:
        IntegrityError: If the data is encrypted but no key was given
    """
    stream = source
    if hasher is not None:
        stream = hash_stream(stream, hasher)
    if expected_sha256:
        stream = verify_stream(stream, expected_sha256)

    prefix, stream = await peek(stream, MAGIC_SIZE)
    if prefix == MAGIC:
        if key is None:
            await _aclose(stream)
            raise IntegrityError("Backup is encrypted but no decryption key was provided")
        stream = decrypt_stream(stream, key)

    if decompress:
        prefix, stream = await peek(stream, len(ZSTD_MAGIC))
        algo = detect_compression(prefix)
        if algo != CompressionAlgo.NONE:
            stream = decompress_stream(stream, algo)

    return stream


async def run_restore_to_file(
    source: AsyncIterator[bytes],
    dest: Path,
    key: KeyMaterial | None = None,
    expected_sha256: str | None = None,
    decompress: bool = False,
) -> PipelineResult:
    """Decrypt (and optionally decompress) a stored payload into a file."""
    started = time.monotonic()
    stored = StreamHasher()
    stream = await open_restore_stream(source, key, expected_sha256, decompress, stored)
    written = await write_atomic(stream, dest)
    return PipelineResult(
        bytes_in=stored.count,
        bytes_out=written,
        sha256=stored.hexdigest(),
        duration_seconds=time.monotonic() - started,
        encrypted=key is not None,
    )


async def run_restore_to_process(
    source: AsyncIterator[bytes],
    writer: asyncio.StreamWriter,
    key: KeyMaterial | None = None,
    expected_sha256: str | None = None,
    decompress: bool = True,
) -> PipelineResult:
    """Stream a stored payload into a restore tool's stdin."""
    started = time.monotonic()
    stored = StreamHasher()
    try:
        stream = await open_restore_stream(source, key, expected_sha256, decompress, stored)
    except BaseException:
        writer.close()
        raise
    written = await feed_stdin(stream, writer)
    return PipelineResult(
        bytes_in=stored.count,
        bytes_out=written,
        sha256=stored.hexdigest(),
        duration_seconds=time.monotonic() - started,
        encrypted=key is not None,
    )


async def with_tool_cleanup(tool: Any, work: Awaitable[Any]) -> Any:
    """
    Await `work`; on any failure terminate the tool process and re-raise.
    """
    try:
        return await work
    except BaseException:
        await tool.terminate()
        raise
