"""Backup orchestrator: one incremental backup run for one save.

A run moves through ``scanning -> diffing -> storing -> committing -> done``
and ends in ``failed`` if a save-level or catalog-level error occurs. The
catalog is only written in the committing stage, in one transaction, after
every blob it will reference is in the file store. A run that stops before
that point (crash, cancellation, fatal error) leaves the catalog exactly as
it was; blobs already stored stay behind as unreferenced content.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, TypeVar

from savesync.exceptions import (
    FileReadError,
    FileStoreError,
    RunCancelledError,
    SaveSyncError,
)
from savesync.services.catalog_service import FileChange
from savesync.services.datetime_service import format_run_id, now_utc
from savesync.services.diff_service import ChangeType, DiffResult, compute_diff, previous_hashes
from savesync.services.lock_service import SaveLockRegistry
from savesync.services.manifest_service import build_manifest, write_manifest
from savesync.services.scanner import Candidate, ScanEntry, scan_candidate, walk_save

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence
    from datetime import datetime
    from pathlib import Path

    from savesync.models.save import Save
    from savesync.services.catalog_service import CatalogRepository, CommitResult
    from savesync.services.file_store import FileStore
    from savesync.services.lock_service import SaveLockToken
    from savesync.services.scanner import ScanResult

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class RunState(StrEnum):
    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    STORING = "storing"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


class RunStatus(StrEnum):
    """Overall outcome of a run."""

    DONE = "done"
    DONE_WITH_WARNINGS = "done_with_warnings"
    FAILED = "failed"


class PathStatus(StrEnum):
    """What a run did with one path."""

    COMMITTED = "committed"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class PathOutcome:
    path: str
    change: ChangeType | None
    status: PathStatus
    error_kind: str | None = None
    message: str | None = None


@dataclass
class RunReport:
    """Per-path outcomes plus the overall outcome of one run."""

    save_id: int
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    state: RunState = RunState.IDLE
    status: RunStatus | None = None
    failed_stage: RunState | None = None
    failure_kind: str | None = None
    failure_message: str | None = None
    outcomes: list[PathOutcome] = field(default_factory=list)
    commit: CommitResult | None = None
    manifest_path: Path | None = None
    error: SaveSyncError | None = field(default=None, repr=False)

    @property
    def warnings(self) -> list[PathOutcome]:
        """Paths that could not be backed up this run."""
        return [o for o in self.outcomes if o.status is PathStatus.FAILED]

    @property
    def skipped(self) -> list[PathOutcome]:
        return [o for o in self.outcomes if o.status is PathStatus.SKIPPED]

    @property
    def changed(self) -> bool:
        return self.commit is not None and self.commit.total > 0

    def outcome_for(self, path: str) -> PathOutcome | None:
        for outcome in self.outcomes:
            if outcome.path == path:
                return outcome
        return None

    def raise_for_status(self) -> None:
        """Re-raise the fatal error of a failed run."""
        if self.status is RunStatus.FAILED and self.error is not None:
            raise self.error


@dataclass(frozen=True)
class _CancelCheck:
    event: asyncio.Event | None
    deadline: float | None

    def __call__(self) -> None:
        if self.event is not None and self.event.is_set():
            raise RunCancelledError("Backup run was cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise RunCancelledError("Backup run deadline passed")


class BackupOrchestrator:
    """Drives backup runs against one catalog and one file store.

    File-level work (hashing, storing) runs in worker threads, at most
    ``max_workers`` at a time. Stages never overlap: the whole tree is hashed
    before diffing, and the diff is complete before anything is stored.
    """

    def __init__(
        self,
        catalog: CatalogRepository,
        store: FileStore,
        *,
        locks: SaveLockRegistry | None = None,
        max_workers: int = 4,
        write_manifests: bool = True,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.catalog = catalog
        self.store = store
        self.locks = locks or SaveLockRegistry()
        self.max_workers = max_workers
        self.write_manifests = write_manifests

    async def run(
        self,
        save_id: int,
        *,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
    ) -> RunReport:
        """Back up one save and report what happened.

        ``cancel_event`` and ``deadline`` (a ``time.monotonic()`` value) are
        checked between file-level operations and before committing. Fatal
        errors are returned on the report, not raised; use
        ``RunReport.raise_for_status`` to re-raise them.
        """
        started = now_utc()
        report = RunReport(save_id=save_id, run_id=format_run_id(started), started_at=started)
        cancel = _CancelCheck(cancel_event, deadline)
        try:
            async with self.locks.acquire(save_id) as token:
                await self._run_locked(token, report, cancel)
        except SaveSyncError as exc:
            report.failed_stage = report.state
            report.state = RunState.FAILED
            report.status = RunStatus.FAILED
            report.failure_kind = exc.kind
            report.failure_message = str(exc)
            report.error = exc
            report.outcomes = []
            logger.error(
                "Backup of save %d failed while %s: %s (%s)",
                save_id,
                report.failed_stage,
                exc,
                exc.kind,
            )
        report.finished_at = now_utc()
        return report

    async def run_all(self, save_ids: Iterable[int]) -> list[RunReport]:
        """Run backups for several saves concurrently."""
        return list(await asyncio.gather(*(self.run(save_id) for save_id in save_ids)))

    async def status(self, save_id: int) -> DiffResult:
        """Scan and diff a save without storing or committing anything."""
        save = await self.catalog.get_save(save_id)
        results, _ = await self._scan(save, _CancelCheck(None, None))
        files = await self.catalog.list_files(save.id)
        return compute_diff(results, previous_hashes(files))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run_locked(
        self, token: SaveLockToken, report: RunReport, cancel: _CancelCheck
    ) -> None:
        save = await self.catalog.get_save(token.save_id)
        logger.info("Starting backup run %s for save %d (%s)", report.run_id, save.id, save.save_path)

        self._enter(token, report, RunState.SCANNING)
        results, full_paths = await self._scan(save, cancel)

        self._enter(token, report, RunState.DIFFING)
        files = await self.catalog.list_files(save.id)
        diff = compute_diff(results, previous_hashes(files))

        self._enter(token, report, RunState.STORING)
        store_errors = await self._store(diff.to_store(), full_paths, cancel)

        self._enter(token, report, RunState.COMMITTING)
        cancel()
        added = [
            FileChange(p, diff.current[p].digest) for p in diff.added if p not in store_errors
        ]
        modified = [
            FileChange(p, diff.current[p].digest) for p in diff.modified if p not in store_errors
        ]
        report.commit = await self.catalog.commit_file_changes(
            save.id, added, modified, diff.deleted, timestamp=now_utc()
        )

        self._enter(token, report, RunState.DONE)
        report.outcomes = self._outcomes(diff, store_errors)
        report.status = RunStatus.DONE_WITH_WARNINGS if report.warnings else RunStatus.DONE
        if report.changed and self.write_manifests:
            await self._write_manifest(save, report, diff)

        logger.info(
            "Backup run %s for save %d %s: %d added, %d modified, %d deleted, %d unchanged, "
            "%d failed",
            report.run_id,
            save.id,
            report.status,
            len(added),
            len(modified),
            len(diff.deleted),
            len(diff.unchanged),
            len(report.warnings),
        )

    def _enter(self, token: SaveLockToken, report: RunReport, state: RunState) -> None:
        self.locks.check(token)
        logger.debug("Save %d run %s: %s -> %s", token.save_id, report.run_id, report.state, state)
        report.state = state

    async def _scan(
        self, save: Save, cancel: _CancelCheck
    ) -> tuple[list[ScanResult], dict[str, Path]]:
        walked = await asyncio.to_thread(list, walk_save(save.save_path))
        candidates = [item for item in walked if isinstance(item, Candidate)]
        hashed = iter(await self._map_bounded(scan_candidate, candidates, cancel))
        results: list[ScanResult] = [
            next(hashed) if isinstance(item, Candidate) else item for item in walked
        ]
        full_paths = {c.path: c.full_path for c in candidates}
        return results, full_paths

    async def _store(
        self,
        entries: Sequence[ScanEntry],
        full_paths: dict[str, Path],
        cancel: _CancelCheck,
    ) -> dict[str, SaveSyncError]:
        """Put every needed blob into the store; return per-path failures."""
        by_digest: dict[bytes, list[str]] = defaultdict(list)
        for entry in entries:
            by_digest[entry.digest].append(entry.path)

        def store_digest(item: tuple[bytes, list[str]]) -> dict[str, SaveSyncError]:
            digest, paths = item
            errors: dict[str, SaveSyncError] = {}
            for path in paths:
                try:
                    self._put_file(digest, path, full_paths[path])
                except (FileReadError, FileStoreError) as exc:
                    logger.warning("Could not store %s: %s", path, exc)
                    errors[path] = exc
                    continue
                # Any path with this digest can be committed once the blob is stored.
                return {}
            return errors

        results = await self._map_bounded(store_digest, list(by_digest.items()), cancel)
        failures: dict[str, SaveSyncError] = {}
        for errors in results:
            failures.update(errors)
        return failures

    def _put_file(self, digest: bytes, path: str, full_path: Path) -> None:
        try:
            f = open(full_path, "rb")
        except OSError as exc:
            raise FileReadError(path, exc.strerror or str(exc)) from exc
        with f:
            self.store.put(digest, f, source=path)

    async def _map_bounded(
        self, func: Callable[[T], R], items: Sequence[T], cancel: _CancelCheck
    ) -> list[R]:
        """Run ``func`` over ``items`` in worker threads, ``max_workers`` at a time."""
        semaphore = asyncio.Semaphore(self.max_workers)

        async def worker(item: T) -> R:
            async with semaphore:
                cancel()
                return await asyncio.to_thread(func, item)

        tasks = [asyncio.ensure_future(worker(item)) for item in items]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _write_manifest(self, save: Save, report: RunReport, diff: DiffResult) -> None:
        files = await self.catalog.list_files(save.id)
        sizes = {path: entry.size for path, entry in diff.current.items()}
        manifest = build_manifest(save, report.run_id, files, sizes)
        try:
            report.manifest_path = await asyncio.to_thread(
                write_manifest, save.backup_path, manifest
            )
        except OSError as exc:
            logger.warning("Could not write manifest for save %d: %s", save.id, exc)

    @staticmethod
    def _outcomes(diff: DiffResult, store_errors: dict[str, SaveSyncError]) -> list[PathOutcome]:
        outcomes: list[PathOutcome] = []
        for change, paths in ((ChangeType.ADDED, diff.added), (ChangeType.MODIFIED, diff.modified)):
            for path in paths:
                error = store_errors.get(path)
                if error is None:
                    outcomes.append(PathOutcome(path, change, PathStatus.COMMITTED))
                else:
                    outcomes.append(
                        PathOutcome(path, change, PathStatus.FAILED, error.kind, str(error))
                    )
        # A tracked file replaced by a link or special file is reported once, as deleted.
        skips = {skip.path: skip for skip in diff.skipped}
        for path in diff.deleted:
            skip = skips.pop(path, None)
            message = f"replaced by a skipped entry ({skip.reason})" if skip else None
            outcomes.append(
                PathOutcome(path, ChangeType.DELETED, PathStatus.COMMITTED, message=message)
            )
        for path in diff.unchanged:
            outcomes.append(PathOutcome(path, ChangeType.UNCHANGED, PathStatus.UNCHANGED))
        for path in diff.unscannable:
            outcomes.append(
                PathOutcome(
                    path,
                    ChangeType.UNSCANNABLE,
                    PathStatus.FAILED,
                    FileReadError.kind,
                    diff.errors.get(path, "parent directory could not be read"),
                )
            )
        for skip in skips.values():
            outcomes.append(
                PathOutcome(skip.path, None, PathStatus.SKIPPED, "Skipped", str(skip.reason))
            )
        outcomes.sort(key=lambda o: o.path)
        return outcomes
