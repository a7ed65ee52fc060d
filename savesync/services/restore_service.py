"""Restore a save's files from the content store."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from savesync.exceptions import DigestMismatchError, FileStoreError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from savesync.models.save import Save
    from savesync.services.catalog_service import CatalogRepository
    from savesync.services.file_store import FileStore
    from savesync.services.manifest_service import RunManifest

logger = logging.getLogger(__name__)


@dataclass
class RestoreReport:
    target_dir: Path
    restored: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def _safe_target(target_dir: Path, file_path: str) -> Path | None:
    """Resolve a catalog path within target_dir, returning None on traversal."""
    dest = (target_dir / file_path.lstrip("/")).resolve()
    if not dest.is_relative_to(target_dir.resolve()):
        return None
    return dest


def _restore_blob(store: FileStore, digest: bytes, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=".tmp-")
    try:
        sha = hashlib.sha256()
        with os.fdopen(fd, "wb") as out:
            for chunk in store.iter_chunks(digest):
                sha.update(chunk)
                out.write(chunk)
        if sha.digest() != digest:
            raise DigestMismatchError(digest, "stored blob is corrupt")
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def restore_files(
    store: FileStore,
    entries: Mapping[str, bytes],
    target_dir: Path,
    *,
    overwrite: bool = False,
) -> RestoreReport:
    """Write each ``path -> digest`` entry from the store into ``target_dir``.

    Existing files are left alone unless ``overwrite`` is set. Missing or
    corrupt blobs and write failures are recorded per path.
    """
    target_dir.mkdir(parents=True, exist_ok=True)
    report = RestoreReport(target_dir=target_dir)
    for path in sorted(entries):
        dest = _safe_target(target_dir, path)
        if dest is None:
            report.failed[path] = "path escapes the target directory"
            continue
        if dest.exists() and not overwrite:
            report.skipped.append(path)
            continue
        try:
            _restore_blob(store, entries[path], dest)
        except (FileStoreError, OSError) as exc:
            logger.warning("Could not restore %s: %s", path, exc)
            report.failed[path] = str(exc)
            continue
        report.restored.append(path)

    logger.info(
        "Restored %d file(s) into %s (%d skipped, %d failed)",
        len(report.restored),
        target_dir,
        len(report.skipped),
        len(report.failed),
    )
    return report


async def restore_save(
    catalog: CatalogRepository,
    store: FileStore,
    save: Save,
    target_dir: Path | str,
    *,
    overwrite: bool = False,
    manifest: RunManifest | None = None,
) -> RestoreReport:
    """Restore a save's latest catalog state, or the state recorded in ``manifest``."""
    if manifest is None:
        files = await catalog.list_files(save.id)
        entries = {f.file_path: f.file_hash for f in files}
    else:
        if manifest.save_id != save.id:
            raise ValueError(
                f"Manifest {manifest.run_id} belongs to save {manifest.save_id}, not {save.id}"
            )
        entries = {path: entry.digest_bytes for path, entry in manifest.files.items()}
    return await asyncio.to_thread(
        restore_files, store, entries, Path(target_dir), overwrite=overwrite
    )
