# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Encryption - Chunked AES-256-GCM stream encryption.

On-disk layout (all offsets fixed):

    offset  size  field
    0       16    magic            b"DBBACKUP_STREAM1"
    16      16    algorithm id     b"AES256GCM-PBKDF2" or b"AES256GCM-RAWKEY"
    32      12    base nonce
    44      32    salt             (zero bytes when a raw key is used)
    76      ...   frames

Each frame is a 4-byte big-endian length followed by ciphertext+tag for one
plaintext chunk. Chunk i is sealed with nonce = base_nonce XOR i and with
associated data (i, is_final), so frames cannot be reordered, dropped, or
truncated without failing authentication.
"""

import asyncio
import base64
import binascii
import os
import struct
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import aiofiles
import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from dbbackup.errors import explain_invalid_key_length, explain_missing_encryption_key
from dbbackup.exceptions import EncryptionError, IntegrityError

logger = structlog.get_logger()

# Thread pool for KDF and AES work
_executor = ThreadPoolExecutor(max_workers=4)

MAGIC = b"DBBACKUP_STREAM1"
ALGO_PBKDF2 = b"AES256GCM-PBKDF2"
ALGO_RAWKEY = b"AES256GCM-RAWKEY"

MAGIC_SIZE = 16
ALGO_SIZE = 16
NONCE_SIZE = 12
SALT_SIZE = 32
HEADER_SIZE = MAGIC_SIZE + ALGO_SIZE + NONCE_SIZE + SALT_SIZE  # 76
KEY_SIZE = 32
TAG_SIZE = 16
FRAME_PREFIX_SIZE = 4

PBKDF2_ITERATIONS = 600_000
DEFAULT_CHUNK_SIZE = 1024 * 1024
MAX_CHUNK_SIZE = 16 * 1024 * 1024

_ZERO_SALT = bytes(SALT_SIZE)


@dataclass(frozen=True)
class KeyMaterial:
    """
    Secret used to encrypt or decrypt.

    Either a raw 32-byte key (used directly) or a passphrase (run through
    PBKDF2 with a per-file salt). Where the secret came from is never stored.
    """

    secret: bytes
    is_raw: bool

    def __repr__(self) -> str:
        return f"KeyMaterial(is_raw={self.is_raw})"


@dataclass(frozen=True)
class EncryptionHeader:
    """Parsed fixed-size header of an encrypted payload."""

    algorithm: bytes
    nonce: bytes
    salt: bytes

    @property
    def uses_raw_key(self) -> bool:
        return self.algorithm == ALGO_RAWKEY

    def to_bytes(self) -> bytes:
        return MAGIC + self.algorithm + self.nonce + self.salt


def derive_key(passphrase: bytes, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive a 32-byte key with PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase)


def _decode_raw_key(data: bytes) -> bytes | None:
    """Return 32 raw key bytes from raw or base64 input, or None."""
    if len(data) == KEY_SIZE:
        return data
    text = data.strip()
    try:
        decoded = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None
    return decoded if len(decoded) == KEY_SIZE else None


def key_from_bytes(data: bytes) -> KeyMaterial:
    """
    Build key material that must be a raw key (32 bytes or base64 of 32 bytes).

    Raises:
        EncryptionError: If the data is not a valid raw key
    """
    raw = _decode_raw_key(data)
    if raw is None:
        raise EncryptionError(explain_invalid_key_length(len(data)))
    return KeyMaterial(secret=raw, is_raw=True)


def key_from_passphrase(passphrase: str | bytes) -> KeyMaterial:
    if isinstance(passphrase, str):
        passphrase = passphrase.encode("utf-8")
    if not passphrase:
        raise EncryptionError("Encryption passphrase must not be empty")
    return KeyMaterial(secret=passphrase, is_raw=False)


def resolve_key(
    key_file: Path | None = None,
    key_env: str | None = "DBBACKUP_ENCRYPTION_KEY",
    passphrase: str | None = None,
) -> KeyMaterial:
    """
    Resolve key material from the configured source.

    Sources are checked in order: key file, passphrase, environment variable.
    A key file must hold a raw key. An environment value that decodes to a
    32-byte key is used raw; anything else is treated as a passphrase.

    Raises:
        EncryptionError: If no source yields a key
    """
    if key_file is not None:
        try:
            data = key_file.read_bytes()
        except OSError as e:
            raise EncryptionError(
                f"Cannot read encryption key file: {e}",
                details={"key_file": str(key_file)},
            ) from e
        return key_from_bytes(data)

    if passphrase:
        return key_from_passphrase(passphrase)

    if key_env:
        value = os.environ.get(key_env)
        if value:
            raw = _decode_raw_key(value.encode("utf-8"))
            if raw is not None:
                return KeyMaterial(secret=raw, is_raw=True)
            return key_from_passphrase(value)

    raise EncryptionError(explain_missing_encryption_key())


def key_from_config(config, required: bool = True) -> KeyMaterial | None:
    """
    Resolve the key configured on a BackupConfig.

    With required=False, having no key source at all returns None instead of
    raising, so restore can decide once it knows the payload is encrypted.
    A configured source that is unreadable or malformed always raises.
    """
    has_source = bool(
        config.encryption_key_file
        or config.encryption_passphrase
        or (config.encryption_key_env and os.environ.get(config.encryption_key_env))
    )
    if not has_source and not required:
        return None
    return resolve_key(
        key_file=config.encryption_key_file,
        key_env=config.encryption_key_env,
        passphrase=config.encryption_passphrase,
    )


def parse_header(data: bytes) -> EncryptionHeader:
    """
    Parse and validate a 76-byte header.

    Raises:
        IntegrityError: On short input, bad magic, or unknown algorithm
    """
    if len(data) < HEADER_SIZE:
        raise IntegrityError(
            "Encrypted payload is truncated before end of header",
            details={"bytes": len(data)},
        )
    if data[:MAGIC_SIZE] != MAGIC:
        raise IntegrityError("Encrypted payload has an invalid magic")

    algorithm = data[MAGIC_SIZE:MAGIC_SIZE + ALGO_SIZE]
    if algorithm not in (ALGO_PBKDF2, ALGO_RAWKEY):
        raise IntegrityError(
            "Unsupported encryption algorithm",
            details={"algorithm": algorithm.decode("ascii", "replace")},
        )

    offset = MAGIC_SIZE + ALGO_SIZE
    nonce = data[offset:offset + NONCE_SIZE]
    salt = data[offset + NONCE_SIZE:HEADER_SIZE]
    return EncryptionHeader(algorithm=algorithm, nonce=nonce, salt=salt)


def is_encrypted_prefix(prefix: bytes) -> bool:
    return prefix[:MAGIC_SIZE] == MAGIC


async def is_encrypted_file(path: Path) -> bool:
    """True when the file starts with the encryption magic."""
    async with aiofiles.open(path, "rb") as f:
        prefix = await f.read(MAGIC_SIZE)
    return is_encrypted_prefix(prefix)


def _chunk_nonce(base_nonce: bytes, index: int) -> bytes:
    counter = struct.unpack(">Q", base_nonce[4:])[0] ^ index
    return base_nonce[:4] + struct.pack(">Q", counter)


def _chunk_aad(index: int, is_final: bool) -> bytes:
    return struct.pack(">QB", index, 1 if is_final else 0)


def _key_for_header(material: KeyMaterial, header: EncryptionHeader) -> bytes:
    if header.uses_raw_key:
        if not material.is_raw:
            # Passphrase given for a raw-key file: derive anyway so the tag check fails
            return derive_key(material.secret, _ZERO_SALT)
        return material.secret
    if material.is_raw:
        # Raw key given for a passphrase file: treat key bytes as the passphrase
        return derive_key(material.secret, header.salt)
    return derive_key(material.secret, header.salt)


class StreamEncryptor:
    """Seals plaintext chunks into frames for one payload."""

    def __init__(self, key: bytes, header: EncryptionHeader):
        self._aead = AESGCM(key)
        self._nonce = header.nonce
        self.header = header
        self._index = 0

    @classmethod
    def create(cls, material: KeyMaterial) -> "StreamEncryptor":
        """New encryptor with a random nonce, and a random salt for passphrases."""
        nonce = os.urandom(NONCE_SIZE)
        if material.is_raw:
            header = EncryptionHeader(ALGO_RAWKEY, nonce, _ZERO_SALT)
            key = material.secret
        else:
            salt = os.urandom(SALT_SIZE)
            header = EncryptionHeader(ALGO_PBKDF2, nonce, salt)
            key = derive_key(material.secret, salt)
        return cls(key, header)

    def seal(self, plaintext: bytes, is_final: bool) -> bytes:
        index = self._index
        ciphertext = self._aead.encrypt(
            _chunk_nonce(self._nonce, index), plaintext, _chunk_aad(index, is_final)
        )
        self._index += 1
        return struct.pack(">I", len(ciphertext)) + ciphertext


class StreamDecryptor:
    """Opens frames produced by StreamEncryptor, in order."""

    def __init__(self, key: bytes, header: EncryptionHeader):
        self._aead = AESGCM(key)
        self._nonce = header.nonce
        self._index = 0

    def open(self, ciphertext: bytes, is_final: bool) -> bytes:
        index = self._index
        try:
            plaintext = self._aead.decrypt(
                _chunk_nonce(self._nonce, index), ciphertext, _chunk_aad(index, is_final)
            )
        except InvalidTag as e:
            raise IntegrityError(
                "Authentication failed: wrong key or tampered backup",
                details={"chunk": index, "final": is_final},
            ) from e
        self._index += 1
        return plaintext


class _ByteReader:
    """Exact-size reads over an async iterator of byte chunks."""

    def __init__(self, source: AsyncIterator[bytes]):
        self._it = source.__aiter__()
        self._buffer = bytearray()
        self._eof = False

    async def _fill(self, size: int) -> None:
        while len(self._buffer) < size and not self._eof:
            try:
                chunk = await self._it.__anext__()
            except StopAsyncIteration:
                self._eof = True
            else:
                self._buffer += chunk

    async def read_exact(self, size: int) -> bytes:
        await self._fill(size)
        if len(self._buffer) < size:
            raise IntegrityError(
                "Encrypted payload is truncated",
                details={"wanted": size, "available": len(self._buffer)},
            )
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    async def at_eof(self) -> bool:
        await self._fill(1)
        return not self._buffer


async def encrypt_stream(
    source: AsyncIterator[bytes],
    material: KeyMaterial,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[bytes]:
    """
    Encrypt a byte stream, yielding the header and then one frame per chunk.

    The last frame is always marked final; an empty input yields a single
    empty final frame.
    """
    if not (0 < chunk_size <= MAX_CHUNK_SIZE):
        raise EncryptionError(f"Invalid encryption chunk size: {chunk_size}")

    loop = asyncio.get_running_loop()
    encryptor = await loop.run_in_executor(_executor, StreamEncryptor.create, material)
    yield encryptor.header.to_bytes()

    buffer = bytearray()
    pending: bytes | None = None
    async for data in source:
        buffer += data
        while len(buffer) >= chunk_size:
            chunk = bytes(buffer[:chunk_size])
            del buffer[:chunk_size]
            if pending is not None:
                yield await loop.run_in_executor(_executor, encryptor.seal, pending, False)
            pending = chunk

    if buffer:
        if pending is not None:
            yield await loop.run_in_executor(_executor, encryptor.seal, pending, False)
        pending = bytes(buffer)

    yield await loop.run_in_executor(
        _executor, encryptor.seal, pending if pending is not None else b"", True
    )


async def decrypt_stream(
    source: AsyncIterator[bytes],
    material: KeyMaterial,
) -> AsyncIterator[bytes]:
    """
    Decrypt a stream produced by encrypt_stream.

    Raises:
        IntegrityError: On bad header, failed tag, missing final frame,
            or data after the final frame
    """
    loop = asyncio.get_running_loop()
    reader = _ByteReader(source)

    header = parse_header(await reader.read_exact(HEADER_SIZE))
    key = await loop.run_in_executor(_executor, _key_for_header, material, header)
    decryptor = StreamDecryptor(key, header)

    saw_final = False
    while not await reader.at_eof():
        if saw_final:
            raise IntegrityError("Unexpected data after final encrypted chunk")

        (length,) = struct.unpack(">I", await reader.read_exact(FRAME_PREFIX_SIZE))
        if length < TAG_SIZE or length > MAX_CHUNK_SIZE + TAG_SIZE:
            raise IntegrityError(
                "Encrypted frame has an invalid length",
                details={"length": length},
            )
        frame = await reader.read_exact(length)
        is_final = await reader.at_eof()
        yield await loop.run_in_executor(_executor, decryptor.open, frame, is_final)
        saw_final = is_final

    if not saw_final:
        raise IntegrityError("Encrypted payload is truncated: final chunk missing")


def encrypt_bytes(data: bytes, material: KeyMaterial, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bytes:
    """Synchronous helper for small payloads."""
    encryptor = StreamEncryptor.create(material)
    out = bytearray(encryptor.header.to_bytes())
    chunks = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)] or [b""]
    for i, chunk in enumerate(chunks):
        out += encryptor.seal(chunk, i == len(chunks) - 1)
    return bytes(out)


def decrypt_bytes(data: bytes, material: KeyMaterial) -> bytes:
    """Synchronous helper for small payloads."""
    header = parse_header(data[:HEADER_SIZE])
    decryptor = StreamDecryptor(_key_for_header(material, header), header)
    offset = HEADER_SIZE
    out = bytearray()
    saw_final = False
    while offset < len(data):
        if saw_final:
            raise IntegrityError("Unexpected data after final encrypted chunk")
        if offset + FRAME_PREFIX_SIZE > len(data):
            raise IntegrityError("Encrypted payload is truncated")
        (length,) = struct.unpack(">I", data[offset:offset + FRAME_PREFIX_SIZE])
        offset += FRAME_PREFIX_SIZE
        frame = data[offset:offset + length]
        if len(frame) != length:
            raise IntegrityError("Encrypted payload is truncated")
        offset += length
        saw_final = offset == len(data)
        out += decryptor.open(frame, saw_final)
    if not saw_final:
        raise IntegrityError("Encrypted payload is truncated: final chunk missing")
    return bytes(out)
