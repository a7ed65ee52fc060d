"""Tests for the backup orchestrator."""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from savesync.config import ConflictPolicy
from savesync.exceptions import (
    CatalogTransactionError,
    FileStoreError,
    SaveNotFoundError,
)
from savesync.services.backup_service import (
    BackupOrchestrator,
    PathStatus,
    RunState,
    RunStatus,
)
from savesync.services.diff_service import ChangeType
from savesync.services.hasher import hash_bytes
from savesync.services.lock_service import SaveLockRegistry
from savesync.services.manifest_service import list_manifests, load_manifest
from savesync.services.save_service import register_save

if TYPE_CHECKING:
    from savesync.config import Settings
    from savesync.models.save import File, Save
    from savesync.models.user import User
    from savesync.services.catalog_service import CatalogRepository
    from savesync.services.file_store import FileStore


def _by_path(files: list[File]) -> dict[str, File]:
    return {f.file_path: f for f in files}


def _blob_count(store: FileStore) -> int:
    return len(list(store.iter_digests()))


def _deny_reading(name: str):  # type: ignore[no-untyped-def]
    """Patch the scanner so that opening files called ``name`` fails."""
    real_open = open

    def fake_open(file, *args, **kwargs):  # type: ignore[no-untyped-def]
        if Path(file).name == name:
            raise PermissionError(13, "Permission denied")
        return real_open(file, *args, **kwargs)

    return patch("savesync.services.scanner.open", fake_open, create=True)


class TestBackupRun:
    async def test_first_then_modified_run(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        file_store: FileStore,
        save: Save,
        save_dir: Path,
    ) -> None:
        first = await orchestrator.run(save.id)
        assert first.status is RunStatus.DONE
        assert first.state is RunState.DONE
        assert first.commit is not None and first.commit.inserted == 2
        assert [o.change for o in first.outcomes] == [ChangeType.ADDED, ChangeType.ADDED]
        files = _by_path(await catalog.list_files(save.id))
        assert set(files) == {"a.txt", "b.txt"}
        assert files["a.txt"].uuid != files["b.txt"].uuid
        assert _blob_count(file_store) == 2

        (save_dir / "a.txt").write_bytes(b"HELLO")
        second = await orchestrator.run(save.id)
        assert second.status is RunStatus.DONE
        a_outcome = second.outcome_for("a.txt")
        b_outcome = second.outcome_for("b.txt")
        assert a_outcome is not None and a_outcome.change is ChangeType.MODIFIED
        assert b_outcome is not None and b_outcome.change is ChangeType.UNCHANGED

        after = _by_path(await catalog.list_files(save.id))
        assert after["a.txt"].file_hash == hash_bytes(b"HELLO")
        assert after["a.txt"].uuid == files["a.txt"].uuid
        assert after["a.txt"].modified_at > files["a.txt"].modified_at
        assert after["b.txt"].modified_at == files["b.txt"].modified_at
        assert _blob_count(file_store) == 3
        assert file_store.exists(hash_bytes(b"hello"))

    async def test_second_run_without_changes_is_a_no_op(
        self, orchestrator: BackupOrchestrator, catalog: CatalogRepository, save: Save
    ) -> None:
        await orchestrator.run(save.id)
        saved = await catalog.get_save(save.id)

        with patch.object(catalog, "commit_file_changes", wraps=catalog.commit_file_changes) as spy:
            report = await orchestrator.run(save.id)

        assert report.status is RunStatus.DONE
        assert report.commit is not None and report.commit.total == 0
        assert not report.changed
        assert all(o.status is PathStatus.UNCHANGED for o in report.outcomes)
        spy.assert_awaited_once()
        assert (await catalog.get_save(save.id)).modified_at == saved.modified_at

    async def test_uuid_stable_across_many_runs(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
        save_dir: Path,
    ) -> None:
        await orchestrator.run(save.id)
        uuid = _by_path(await catalog.list_files(save.id))["a.txt"].uuid
        for i in range(3):
            (save_dir / "a.txt").write_bytes(f"version {i}".encode())
            await orchestrator.run(save.id)
            row = _by_path(await catalog.list_files(save.id))["a.txt"]
            assert row.uuid == uuid
            assert row.file_hash == hash_bytes(f"version {i}".encode())

    async def test_deleted_file(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
        save_dir: Path,
    ) -> None:
        await orchestrator.run(save.id)
        (save_dir / "b.txt").unlink()
        report = await orchestrator.run(save.id)
        outcome = report.outcome_for("b.txt")
        assert outcome is not None
        assert outcome.change is ChangeType.DELETED
        assert outcome.status is PathStatus.COMMITTED
        assert [f.file_path for f in await catalog.list_files(save.id)] == ["a.txt"]

    async def test_soft_delete_reappearance_reuses_uuid(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
        save_dir: Path,
    ) -> None:
        await orchestrator.run(save.id)
        uuid = _by_path(await catalog.list_files(save.id))["b.txt"].uuid
        (save_dir / "b.txt").unlink()
        await orchestrator.run(save.id)
        (save_dir / "b.txt").write_bytes(b"different")
        report = await orchestrator.run(save.id)

        assert report.commit is not None and report.commit.revived == 1
        row = _by_path(await catalog.list_files(save.id))["b.txt"]
        assert row.uuid == uuid
        assert row.file_hash == hash_bytes(b"different")

    async def test_hard_delete_reappearance_mints_uuid(
        self,
        hard_catalog: CatalogRepository,
        file_store: FileStore,
        save: Save,
        save_dir: Path,
    ) -> None:
        orchestrator = BackupOrchestrator(hard_catalog, file_store, max_workers=2)
        await orchestrator.run(save.id)
        uuid = _by_path(await hard_catalog.list_files(save.id))["b.txt"].uuid
        (save_dir / "b.txt").unlink()
        await orchestrator.run(save.id)
        (save_dir / "b.txt").write_bytes(b"different")
        report = await orchestrator.run(save.id)

        assert report.commit is not None and report.commit.inserted == 1
        assert _by_path(await hard_catalog.list_files(save.id))["b.txt"].uuid != uuid

    async def test_nested_directories(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
        save_dir: Path,
    ) -> None:
        (save_dir / "slots" / "1").mkdir(parents=True)
        (save_dir / "slots" / "1" / "game.sav").write_bytes(b"progress")
        await orchestrator.run(save.id)
        paths = [f.file_path for f in await catalog.list_files(save.id)]
        assert paths == ["a.txt", "b.txt", "slots/1/game.sav"]


class TestDeduplication:
    async def test_identical_files_in_one_save(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        file_store: FileStore,
        save: Save,
        save_dir: Path,
    ) -> None:
        (save_dir / "copy.txt").write_bytes(b"hello")
        await orchestrator.run(save.id)
        files = _by_path(await catalog.list_files(save.id))
        assert files["a.txt"].file_hash == files["copy.txt"].file_hash
        assert _blob_count(file_store) == 2

    async def test_identical_files_across_saves(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        file_store: FileStore,
        test_settings: Settings,
        user: User,
        save: Save,
        tmp_path: Path,
    ) -> None:
        other_dir = tmp_path / "other_save"
        other_dir.mkdir()
        (other_dir / "same.txt").write_bytes(b"hello")
        other = await register_save(catalog, test_settings, user, other_dir, "Other")

        reports = await orchestrator.run_all([save.id, other.id])
        assert [r.status for r in reports] == [RunStatus.DONE, RunStatus.DONE]
        assert _blob_count(file_store) == 2
        mine = _by_path(await catalog.list_files(save.id))["a.txt"]
        theirs = _by_path(await catalog.list_files(other.id))["same.txt"]
        assert mine.file_hash == theirs.file_hash


class TestPartialFailure:
    async def test_unreadable_file_is_a_warning(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
        save_dir: Path,
    ) -> None:
        (save_dir / "c.txt").write_bytes(b"c")
        with _deny_reading("b.txt"):
            report = await orchestrator.run(save.id)

        assert report.status is RunStatus.DONE_WITH_WARNINGS
        assert [f.file_path for f in await catalog.list_files(save.id)] == ["a.txt", "c.txt"]
        [warning] = report.warnings
        assert warning.path == "b.txt"
        assert warning.change is ChangeType.UNSCANNABLE
        assert warning.error_kind == "FileReadError"
        assert "Permission denied" in (warning.message or "")

    async def test_unreadable_tracked_file_is_not_deleted(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
    ) -> None:
        await orchestrator.run(save.id)
        with _deny_reading("b.txt"):
            report = await orchestrator.run(save.id)
        assert report.status is RunStatus.DONE_WITH_WARNINGS
        assert report.commit is not None and report.commit.deleted == 0
        assert len(await catalog.list_files(save.id)) == 2

    async def test_unlistable_directory_keeps_its_files(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
        save_dir: Path,
    ) -> None:
        (save_dir / "slot").mkdir()
        (save_dir / "slot" / "x.sav").write_bytes(b"x")
        await orchestrator.run(save.id)

        real_scandir = os.scandir

        def fake_scandir(path):  # type: ignore[no-untyped-def]
            if Path(path).name == "slot":
                raise PermissionError(13, "Permission denied")
            return real_scandir(path)

        with patch("savesync.services.scanner.os.scandir", fake_scandir):
            report = await orchestrator.run(save.id)

        assert report.status is RunStatus.DONE_WITH_WARNINGS
        assert {o.path for o in report.warnings} == {"slot", "slot/x.sav"}
        assert "slot/x.sav" in _by_path(await catalog.list_files(save.id))

    async def test_store_failure_is_retried_next_run(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        file_store: FileStore,
        save: Save,
    ) -> None:
        real_put = file_store.put
        bad = hash_bytes(b"world")

        def failing_put(digest: bytes, data, *, source: str = "<bytes>") -> bool:  # type: ignore[no-untyped-def]
            if digest == bad:
                raise FileStoreError(digest, "disk full")
            return real_put(digest, data, source=source)

        with patch.object(file_store, "put", failing_put):
            report = await orchestrator.run(save.id)

        assert report.status is RunStatus.DONE_WITH_WARNINGS
        [warning] = report.warnings
        assert warning.path == "b.txt"
        assert warning.change is ChangeType.ADDED
        assert warning.error_kind == "FileStoreError"
        assert [f.file_path for f in await catalog.list_files(save.id)] == ["a.txt"]

        retry = await orchestrator.run(save.id)
        assert retry.status is RunStatus.DONE
        b_outcome = retry.outcome_for("b.txt")
        assert b_outcome is not None and b_outcome.change is ChangeType.ADDED
        assert len(await catalog.list_files(save.id)) == 2

    async def test_content_changed_during_run(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
        save_dir: Path,
    ) -> None:
        real_put = orchestrator._put_file

        def mutate_then_put(digest: bytes, path: str, full_path: Path) -> None:
            if path == "a.txt":
                full_path.write_bytes(b"rewritten mid-run")
            real_put(digest, path, full_path)

        with patch.object(orchestrator, "_put_file", mutate_then_put):
            report = await orchestrator.run(save.id)

        outcome = report.outcome_for("a.txt")
        assert outcome is not None
        assert outcome.status is PathStatus.FAILED
        assert outcome.error_kind == "DigestMismatch"
        assert [f.file_path for f in await catalog.list_files(save.id)] == ["b.txt"]

    async def test_links_are_skipped_without_warnings(
        self, orchestrator: BackupOrchestrator, save: Save, save_dir: Path
    ) -> None:
        (save_dir / "alias.txt").symlink_to(save_dir / "a.txt")
        report = await orchestrator.run(save.id)
        assert report.status is RunStatus.DONE
        [skipped] = report.skipped
        assert skipped.path == "alias.txt"
        assert skipped.message == "link_alias"

    async def test_file_replaced_by_link_has_one_outcome(
        self, orchestrator: BackupOrchestrator, save: Save, save_dir: Path
    ) -> None:
        await orchestrator.run(save.id)
        (save_dir / "b.txt").unlink()
        (save_dir / "b.txt").symlink_to(save_dir / "a.txt")

        report = await orchestrator.run(save.id)

        assert [o.path for o in report.outcomes] == ["a.txt", "b.txt"]
        outcome = report.outcome_for("b.txt")
        assert outcome is not None
        assert outcome.change is ChangeType.DELETED
        assert outcome.status is PathStatus.COMMITTED
        assert outcome.message == "replaced by a skipped entry (link_alias)"
        assert report.skipped == []

    @pytest.mark.skipif(sys.platform != "linux", reason="needs byte file names")
    async def test_non_utf8_name_does_not_block_the_save(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
        save_dir: Path,
    ) -> None:
        bad_name = os.fsdecode(b"bad\xff.sav")
        (save_dir / bad_name).write_bytes(b"x")

        for _ in range(2):
            report = await orchestrator.run(save.id)
            assert report.status is RunStatus.DONE_WITH_WARNINGS
            [warning] = report.warnings
            assert warning.path == bad_name
            assert warning.change is ChangeType.UNSCANNABLE
            assert warning.message == "file name is not valid UTF-8"

        assert [f.file_path for f in await catalog.list_files(save.id)] == ["a.txt", "b.txt"]

class TestFatalErrors:
    async def test_missing_save(self, orchestrator: BackupOrchestrator) -> None:
        report = await orchestrator.run(999)
        assert report.status is RunStatus.FAILED
        assert report.state is RunState.FAILED
        assert report.failure_kind == "SaveNotFound"
        assert report.finished_at is not None
        with pytest.raises(SaveNotFoundError):
            report.raise_for_status()

    async def test_save_root_removed(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
        save_dir: Path,
    ) -> None:
        await orchestrator.run(save.id)
        shutil.rmtree(save_dir)
        report = await orchestrator.run(save.id)
        assert report.status is RunStatus.FAILED
        assert report.failed_stage is RunState.SCANNING
        assert report.failure_kind == "SaveUnavailable"
        assert report.outcomes == []
        assert len(await catalog.list_files(save.id)) == 2

    async def test_catalog_failure_aborts(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
    ) -> None:
        with patch.object(
            catalog,
            "commit_file_changes",
            side_effect=CatalogTransactionError("database is locked"),
        ):
            report = await orchestrator.run(save.id)
        assert report.status is RunStatus.FAILED
        assert report.failed_stage is RunState.COMMITTING
        assert report.failure_kind == "CatalogTransactionError"
        assert await catalog.list_files(save.id) == []

    async def test_crash_before_commit_leaves_catalog_untouched(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        file_store: FileStore,
        save: Save,
    ) -> None:
        with (
            patch.object(catalog, "commit_file_changes", side_effect=RuntimeError("power cut")),
            pytest.raises(RuntimeError, match="power cut"),
        ):
            await orchestrator.run(save.id)

        assert await catalog.list_files(save.id) == []
        assert _blob_count(file_store) == 2
        assert not orchestrator.locks.is_locked(save.id)

        report = await orchestrator.run(save.id)
        assert report.status is RunStatus.DONE
        assert report.commit is not None and report.commit.inserted == 2


class TestConcurrency:
    async def test_second_run_rejected(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
    ) -> None:
        async with orchestrator.locks.acquire(save.id):
            report = await orchestrator.run(save.id)
        assert report.status is RunStatus.FAILED
        assert report.failure_kind == "ConcurrentRunConflict"
        assert report.failed_stage is RunState.IDLE
        assert await catalog.list_files(save.id) == []

    async def test_wait_policy_serializes_runs(
        self,
        catalog: CatalogRepository,
        file_store: FileStore,
        save: Save,
    ) -> None:
        orchestrator = BackupOrchestrator(
            catalog, file_store, locks=SaveLockRegistry(ConflictPolicy.WAIT), max_workers=2
        )
        first, second = await asyncio.gather(orchestrator.run(save.id), orchestrator.run(save.id))
        assert first.status is RunStatus.DONE
        assert second.status is RunStatus.DONE
        assert first.commit is not None and first.commit.inserted == 2
        assert second.commit is not None and second.commit.total == 0

    def test_max_workers_must_be_positive(
        self, catalog: CatalogRepository, file_store: FileStore
    ) -> None:
        with pytest.raises(ValueError, match="max_workers"):
            BackupOrchestrator(catalog, file_store, max_workers=0)


class TestCancellation:
    async def test_cancel_before_start(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
    ) -> None:
        event = asyncio.Event()
        event.set()
        report = await orchestrator.run(save.id, cancel_event=event)
        assert report.status is RunStatus.FAILED
        assert report.failure_kind == "Cancelled"
        assert report.failed_stage is RunState.SCANNING
        assert await catalog.list_files(save.id) == []

    async def test_cancel_during_storing(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        file_store: FileStore,
        save: Save,
    ) -> None:
        event = asyncio.Event()
        real_put = file_store.put

        def put_then_cancel(digest: bytes, data, *, source: str = "<bytes>") -> bool:  # type: ignore[no-untyped-def]
            stored = real_put(digest, data, source=source)
            event.set()
            return stored

        with patch.object(file_store, "put", put_then_cancel):
            report = await orchestrator.run(save.id, cancel_event=event)

        assert report.status is RunStatus.FAILED
        assert report.failure_kind == "Cancelled"
        assert report.failed_stage in (RunState.STORING, RunState.COMMITTING)
        assert await catalog.list_files(save.id) == []
        assert _blob_count(file_store) >= 1

    async def test_deadline_passed(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        save: Save,
    ) -> None:
        report = await orchestrator.run(save.id, deadline=time.monotonic() - 1)
        assert report.failure_kind == "Cancelled"
        assert "deadline" in (report.failure_message or "")
        assert await catalog.list_files(save.id) == []


class TestStatusAndManifests:
    async def test_status_is_a_dry_run(
        self,
        orchestrator: BackupOrchestrator,
        catalog: CatalogRepository,
        file_store: FileStore,
        save: Save,
    ) -> None:
        diff = await orchestrator.status(save.id)
        assert diff.added == ["a.txt", "b.txt"]
        assert await catalog.list_files(save.id) == []
        assert _blob_count(file_store) == 0

        await orchestrator.run(save.id)
        assert (await orchestrator.status(save.id)).is_clean

    async def test_manifest_written_only_when_changed(
        self, orchestrator: BackupOrchestrator, save: Save, save_dir: Path
    ) -> None:
        first = await orchestrator.run(save.id)
        assert first.manifest_path is not None
        manifest = load_manifest(first.manifest_path)
        assert manifest.run_id == first.run_id
        assert set(manifest.files) == {"a.txt", "b.txt"}
        assert manifest.files["a.txt"].size == 5

        second = await orchestrator.run(save.id)
        assert second.manifest_path is None
        assert len(list_manifests(save.backup_path)) == 1

    async def test_manifests_can_be_disabled(
        self, catalog: CatalogRepository, file_store: FileStore, save: Save
    ) -> None:
        orchestrator = BackupOrchestrator(catalog, file_store, write_manifests=False)
        report = await orchestrator.run(save.id)
        assert report.status is RunStatus.DONE
        assert report.manifest_path is None
        assert list_manifests(save.backup_path) == []
