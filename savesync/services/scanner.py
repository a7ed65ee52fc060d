"""Tree scanner: walk a save directory and hash every regular file in it.

Symbolic links are never followed. A link is reported as a ``ScanSkip``
with the reason it was refused: it points outside the save root, it points
back at one of its own ancestors, it aliases a path that is scanned under
its real name, or it dangles. Directories are tracked by (device, inode) so
bind-mount loops are also reported instead of walked forever.

Paths in scan results are relative to the save root and always use ``/``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from savesync.exceptions import SaveUnavailableError
from savesync.services.hasher import hash_stream

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)


class SkipReason(StrEnum):
    """Why a directory entry was not scanned."""

    LINK_OUTSIDE_ROOT = "link_outside_root"
    LINK_CYCLE = "link_cycle"
    LINK_ALIAS = "link_alias"
    BROKEN_LINK = "broken_link"
    SPECIAL_FILE = "special_file"


@dataclass(frozen=True)
class ScanEntry:
    """A regular file that was read and hashed."""

    path: str
    size: int
    digest: bytes


@dataclass(frozen=True)
class ScanError:
    """A file or directory that could not be read during this scan."""

    path: str
    message: str


@dataclass(frozen=True)
class ScanSkip:
    """An entry deliberately left out of the scan."""

    path: str
    reason: SkipReason
    target: str | None = None


@dataclass(frozen=True)
class Candidate:
    """A regular file found by the walk, not hashed yet."""

    path: str
    full_path: Path


ScanResult = ScanEntry | ScanError | ScanSkip


def _describe(exc: OSError) -> str:
    return exc.strerror or str(exc)


def _relative(root: Path, full: Path) -> str:
    return full.relative_to(root).as_posix()


def _is_utf8(path: str) -> bool:
    try:
        path.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def check_save_root(save_path: Path | str) -> Path:
    """Resolve a save root, raising ``SaveUnavailableError`` if it cannot be scanned."""
    path = Path(save_path)
    try:
        root = path.resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise SaveUnavailableError(f"Save path does not exist: {path}") from exc
    if not root.is_dir():
        raise SaveUnavailableError(f"Save path is not a directory: {root}")
    if not os.access(root, os.R_OK | os.X_OK):
        raise SaveUnavailableError(f"Save path is not readable: {root}")
    return root


def _classify_link(root: Path, link: Path, rel: str) -> ScanSkip:
    try:
        target = link.resolve(strict=True)
    except (OSError, RuntimeError):
        return ScanSkip(rel, SkipReason.BROKEN_LINK)
    if not target.is_relative_to(root):
        return ScanSkip(rel, SkipReason.LINK_OUTSIDE_ROOT, str(target))
    if target.is_dir() and link.parent.resolve().is_relative_to(target):
        return ScanSkip(rel, SkipReason.LINK_CYCLE, _relative(root, target))
    return ScanSkip(rel, SkipReason.LINK_ALIAS, _relative(root, target))


def _walk_dir(
    root: Path, directory: Path, visited: set[tuple[int, int]]
) -> Iterator[Candidate | ScanError | ScanSkip]:
    rel_dir = _relative(root, directory)
    try:
        st = directory.stat()
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as exc:
        if directory == root:
            raise SaveUnavailableError(f"Save path is not readable: {root}") from exc
        logger.warning("Cannot list %s: %s", directory, exc)
        yield ScanError(rel_dir, f"cannot list directory: {_describe(exc)}")
        return

    key = (st.st_dev, st.st_ino)
    if key in visited:
        yield ScanSkip(rel_dir, SkipReason.LINK_CYCLE)
        return
    visited.add(key)

    for entry in entries:
        full = Path(entry.path)
        rel = _relative(root, full)
        if not _is_utf8(rel):
            # The catalog stores paths as UTF-8 text.
            logger.warning("Cannot back up %s: name is not valid UTF-8", full)
            yield ScanError(rel, "file name is not valid UTF-8")
            continue
        try:
            if entry.is_symlink():
                skip = _classify_link(root, full, rel)
                logger.debug("Skipping link %s (%s)", rel, skip.reason)
                yield skip
            elif entry.is_dir(follow_symlinks=False):
                yield from _walk_dir(root, full, visited)
            elif entry.is_file(follow_symlinks=False):
                yield Candidate(rel, full)
            else:
                yield ScanSkip(rel, SkipReason.SPECIAL_FILE)
        except OSError as exc:
            yield ScanError(rel, _describe(exc))


def walk_save(save_path: Path | str) -> Iterator[Candidate | ScanError | ScanSkip]:
    """Lazily walk a save root in sorted order without reading file contents.

    Raises ``SaveUnavailableError`` on first iteration if the root is missing
    or unreadable.
    """
    root = check_save_root(save_path)
    yield from _walk_dir(root, root, set())


def scan_candidate(candidate: Candidate) -> ScanEntry | ScanError:
    """Hash one walked file. Read failures become a ``ScanError``."""
    try:
        with open(candidate.full_path, "rb") as f:
            size = os.fstat(f.fileno()).st_size
            digest = hash_stream(f)
    except OSError as exc:
        logger.warning("Cannot read %s: %s", candidate.full_path, exc)
        return ScanError(candidate.path, _describe(exc))
    return ScanEntry(path=candidate.path, size=size, digest=digest)


def scan_save(save_path: Path | str) -> Iterator[ScanResult]:
    """Lazily scan a save root, yielding one result per file, link or unreadable entry.

    Each call starts a fresh walk, so re-scanning is always safe.
    """
    for item in walk_save(save_path):
        if isinstance(item, Candidate):
            yield scan_candidate(item)
        else:
            yield item
