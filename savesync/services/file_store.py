"""Content-addressed blob store.

Layout::

    store/
    +-- objects/
        +-- 2c/
        |   +-- 2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824
        +-- ...

Blobs are keyed only by the SHA-256 digest of their uncompressed content, so
identical content from any save, path or version is stored once. Each blob
is one zstd frame; it is compressed on the way in and decompressed on the
way out. Writes go to a temporary file in the destination directory and are
renamed into place, so a blob path either holds complete content or does not
exist. Nothing here deletes blobs; reclaiming unreferenced digests is left to
a separate maintenance pass that consults the catalog first.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

import zstandard as zstd

from savesync.exceptions import (
    BlobNotFoundError,
    DigestMismatchError,
    FileReadError,
    FileStoreError,
)
from savesync.services.hasher import CHUNK_SIZE, DIGEST_SIZE, hash_bytes

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

DEFAULT_COMPRESSION_LEVEL = 3


def _read_source(stream: BinaryIO, source: str) -> Iterator[bytes]:
    while True:
        try:
            chunk = stream.read(CHUNK_SIZE)
        except OSError as exc:
            raise FileReadError(source, exc.strerror or str(exc)) from exc
        if not chunk:
            return
        yield chunk


class FileStore:
    """Deduplicating, zstd-compressed blob storage rooted at a directory."""

    def __init__(
        self,
        root: Path,
        *,
        verify_existing: bool = False,
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
    ) -> None:
        self.root = Path(root)
        self.objects_dir = self.root / "objects"
        self.verify_existing = verify_existing
        self.compression_level = compression_level
        self.objects_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, digest: bytes) -> Path:
        """Return where the blob for ``digest`` lives (whether or not it exists)."""
        if len(digest) != DIGEST_SIZE:
            raise ValueError(f"Expected a {DIGEST_SIZE}-byte digest, got {len(digest)} bytes")
        hex_digest = digest.hex()
        return self.objects_dir / hex_digest[:2] / hex_digest

    def exists(self, digest: bytes) -> bool:
        return self.path_for(digest).is_file()

    def verify(self, digest: bytes) -> bool:
        """Decompress and re-hash a stored blob; report whether it still matches its key."""
        sha = hashlib.sha256()
        try:
            for chunk in self.iter_chunks(digest):
                sha.update(chunk)
        except DigestMismatchError:
            return False
        return sha.digest() == digest

    def put(
        self,
        digest: bytes,
        data: bytes | BinaryIO,
        *,
        source: str = "<bytes>",
    ) -> bool:
        """Compress and store ``data`` under ``digest``.

        Returns True if a new blob was written, False if the digest was
        already present. With ``verify_existing`` set, a present blob whose
        content no longer hashes to its key is rewritten from ``data``.

        Raises ``FileReadError`` if reading ``data`` fails (``source`` names
        it in the error), ``DigestMismatchError`` if ``data`` does not hash to
        ``digest``, and ``FileStoreError`` if the blob cannot be written.
        """
        target = self.path_for(digest)
        if target.is_file():
            if not self.verify_existing or self.verify(digest):
                logger.debug("Blob %s already stored", digest.hex()[:12])
                return False
            logger.warning("Stored blob %s is corrupt, rewriting it", digest.hex()[:12])

        stream: BinaryIO = io.BytesIO(data) if isinstance(data, bytes) else data
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        except OSError as exc:
            raise FileStoreError(digest, f"cannot create blob: {exc}") from exc

        tmp_path = Path(tmp_name)
        try:
            sha = hashlib.sha256()
            compressor = zstd.ZstdCompressor(level=self.compression_level)
            with os.fdopen(fd, "wb") as out:
                try:
                    with compressor.stream_writer(out, closefd=False) as writer:
                        for chunk in _read_source(stream, source):
                            sha.update(chunk)
                            writer.write(chunk)
                    out.flush()
                    os.fsync(out.fileno())
                except (OSError, zstd.ZstdError) as exc:
                    raise FileStoreError(digest, f"cannot write blob: {exc}") from exc

            if sha.digest() != digest:
                raise DigestMismatchError(
                    digest, f"content of {source} changed since it was hashed"
                )
            try:
                os.replace(tmp_path, target)
            except OSError as exc:
                raise FileStoreError(digest, f"cannot move blob into place: {exc}") from exc
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.debug("Stored blob %s from %s", digest.hex()[:12], source)
        return True

    def iter_chunks(self, digest: bytes) -> Iterator[bytes]:
        """Stream a stored blob's uncompressed content.

        Raises ``BlobNotFoundError`` for an unknown digest and
        ``DigestMismatchError`` when the blob cannot be decompressed.
        """
        try:
            f = open(self.path_for(digest), "rb")
        except FileNotFoundError as exc:
            raise BlobNotFoundError(digest, "blob not found") from exc
        except OSError as exc:
            raise FileStoreError(digest, f"cannot read blob: {exc}") from exc

        with f, zstd.ZstdDecompressor().stream_reader(f, closefd=False) as reader:
            while True:
                try:
                    chunk = reader.read(CHUNK_SIZE)
                except zstd.ZstdError as exc:
                    raise DigestMismatchError(digest, "stored blob is corrupt") from exc
                except OSError as exc:
                    raise FileStoreError(digest, f"cannot read blob: {exc}") from exc
                if not chunk:
                    return
                yield chunk

    def get(self, digest: bytes) -> bytes:
        """Return a stored blob's uncompressed bytes."""
        data = b"".join(self.iter_chunks(digest))
        if hash_bytes(data) != digest:
            raise DigestMismatchError(digest, "stored blob is corrupt")
        return data

    def iter_digests(self) -> Iterator[bytes]:
        """Yield the digest of every stored blob, for maintenance tooling."""
        for path in self.objects_dir.glob("??/*"):
            if path.is_file() and not path.name.startswith("."):
                yield bytes.fromhex(path.name)
