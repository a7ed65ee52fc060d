"""Diff engine: classify a fresh scan against the catalog's last known state."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from savesync.services.scanner import ScanEntry, ScanError, ScanSkip

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from savesync.models.save import File
    from savesync.services.scanner import ScanResult

logger = logging.getLogger(__name__)


class ChangeType(StrEnum):
    """Per-path outcome of comparing the current scan to the catalog."""

    UNCHANGED = "unchanged"
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    UNSCANNABLE = "unscannable"


@dataclass
class DiffResult:
    """The computed classification. Every list is sorted by path."""

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unscannable: list[str] = field(default_factory=list)
    current: dict[str, ScanEntry] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    skipped: list[ScanSkip] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        """True when the catalog already matches the disk exactly."""
        return not (self.added or self.modified or self.deleted or self.unscannable)

    def to_store(self) -> list[ScanEntry]:
        """Scan entries whose content must be in the store before committing."""
        return [self.current[p] for p in sorted(self.added + self.modified)]


def previous_hashes(files: Iterable[File]) -> dict[str, bytes]:
    """Build the path -> digest map of a save's live catalog records."""
    return {f.file_path: f.file_hash for f in files if not f.is_deleted}


def _under_unscannable(path: str, error_paths: Iterable[str]) -> bool:
    return any(path == e or path.startswith(e + "/") for e in error_paths)


def compute_diff(
    current: Iterable[ScanResult],
    previous: Mapping[str, bytes],
) -> DiffResult:
    """Classify every path as added, modified, unchanged, deleted or unscannable.

    Content hashes are the only basis for "unchanged". A path whose scan
    failed, or that lives under a directory that could not be listed, is
    unscannable rather than deleted. Renames are not detected: a moved file
    is one deletion plus one addition.
    """
    result = DiffResult()

    for item in current:
        if isinstance(item, ScanEntry):
            result.current[item.path] = item
        elif isinstance(item, ScanError):
            result.errors[item.path] = item.message
        else:
            result.skipped.append(item)

    unscannable: set[str] = set(result.errors)
    for path in previous:
        if path not in result.current and _under_unscannable(path, result.errors):
            unscannable.add(path)

    for path in sorted(set(result.current) | set(previous)):
        if path in unscannable:
            continue
        entry = result.current.get(path)
        old_hash = previous.get(path)
        if entry is None:
            result.deleted.append(path)
        elif old_hash is None:
            result.added.append(path)
        elif entry.digest == old_hash:
            result.unchanged.append(path)
        else:
            result.modified.append(path)

    result.unscannable = sorted(unscannable)
    logger.debug(
        "Diff: %d added, %d modified, %d unchanged, %d deleted, %d unscannable",
        len(result.added),
        len(result.modified),
        len(result.unchanged),
        len(result.deleted),
        len(result.unscannable),
    )
    return result
