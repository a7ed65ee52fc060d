"""Content hashing: SHA-256 over streamed file bytes."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, BinaryIO

if TYPE_CHECKING:
    from pathlib import Path

CHUNK_SIZE = 64 * 1024
DIGEST_SIZE = hashlib.sha256().digest_size


def hash_bytes(data: bytes) -> bytes:
    """Compute the SHA-256 digest of in-memory bytes."""
    return hashlib.sha256(data).digest()


def hash_stream(stream: BinaryIO) -> bytes:
    """Compute the SHA-256 digest of a binary stream, reading it in chunks."""
    sha = hashlib.sha256()
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        sha.update(chunk)
    return sha.digest()


def hash_file(file_path: Path) -> bytes:
    """Compute the SHA-256 digest of a file.

    ``OSError`` from opening or reading the file propagates to the caller.
    """
    with open(file_path, "rb") as f:
        return hash_stream(f)
