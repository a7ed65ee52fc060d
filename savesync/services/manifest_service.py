"""Per-run manifests written into a save's backup path.

The catalog only records each save's latest state. After every committed
run a JSON manifest of the live files (path -> digest, uuid, size) is
written to ``<backup_path>/manifests/<run_id>.json`` so earlier versions can
still be located in the file store.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from savesync.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from savesync.models.save import File, Save

logger = logging.getLogger(__name__)

MANIFESTS_DIR = "manifests"
MANIFEST_VERSION = 1


@dataclass
class ManifestEntry:
    digest: str
    uuid: str
    size: int | None = None

    @property
    def digest_bytes(self) -> bytes:
        return bytes.fromhex(self.digest)


@dataclass
class RunManifest:
    """Snapshot of a save's committed state after one run."""

    run_id: str
    save_id: int
    friendly_name: str
    created_at: str
    files: dict[str, ManifestEntry] = field(default_factory=dict)
    version: int = MANIFEST_VERSION


def build_manifest(
    save: Save,
    run_id: str,
    files: Iterable[File],
    sizes: Mapping[str, int] | None = None,
) -> RunManifest:
    """Describe the live catalog files of ``save`` as a manifest."""
    sizes = sizes or {}
    return RunManifest(
        run_id=run_id,
        save_id=save.id,
        friendly_name=save.friendly_name,
        created_at=format_iso(now_utc()),
        files={
            f.file_path: ManifestEntry(
                digest=f.file_hash.hex(),
                uuid=f.uuid,
                size=sizes.get(f.file_path),
            )
            for f in files
            if not f.is_deleted
        },
    )


def manifests_dir(backup_path: Path | str) -> Path:
    return Path(backup_path) / MANIFESTS_DIR


def write_manifest(backup_path: Path | str, manifest: RunManifest) -> Path:
    """Atomically write ``manifest`` and return its path."""
    directory = manifests_dir(backup_path)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / f"{manifest.run_id}.json"
    fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(asdict(manifest), f, indent=2, sort_keys=True)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("Wrote manifest %s", target)
    return target


def load_manifest(path: Path | str) -> RunManifest:
    """Parse a manifest file. Raises ``ValueError`` on malformed content."""
    try:
        data: dict[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))
        files = {k: ManifestEntry(**v) for k, v in data.pop("files").items()}
        return RunManifest(files=files, **data)
    except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as exc:
        raise ValueError(f"Malformed manifest {path}: {exc}") from exc


def list_manifests(backup_path: Path | str) -> list[Path]:
    """Return manifest paths for a save, newest first."""
    directory = manifests_dir(backup_path)
    if not directory.is_dir():
        return []
    return sorted(
        (p for p in directory.glob("*.json") if not p.name.startswith(".")),
        reverse=True,
    )
