"""Catalog repository: saves, users and tracked-file records."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.exc import MultipleResultsFound, SQLAlchemyError

from savesync.config import DeletePolicy
from savesync.exceptions import CatalogTransactionError, InvalidSaveError, SaveNotFoundError
from savesync.models.save import File, Save
from savesync.models.user import User
from savesync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileChange:
    """New content for one path, already present in the file store."""

    path: str
    digest: bytes


@dataclass
class CommitResult:
    """Row counts written by one ``commit_file_changes`` transaction."""

    inserted: int = 0
    revived: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.revived + self.updated + self.deleted


def _paths_overlap(a: Path, b: Path) -> bool:
    return a == b or a.is_relative_to(b) or b.is_relative_to(a)


class CatalogRepository:
    """CRUD over the ``users``, ``saves`` and ``files`` tables.

    Each public method runs in its own session. ``commit_file_changes``
    applies a whole run's changes in one transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        delete_policy: DeletePolicy = DeletePolicy.SOFT,
    ) -> None:
        self._session_factory = session_factory
        self.delete_policy = delete_policy

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def ensure_user(self, username: str) -> User:
        """Return the user named ``username``, creating it on first use."""
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            if user is not None:
                return user
            now = now_utc()
            user = User(username=username, created_at=now, modified_at=now)
            session.add(user)
            await session.commit()
            logger.info("Created local user %s", username)
            return user

    # ------------------------------------------------------------------
    # Saves
    # ------------------------------------------------------------------

    async def create_save(
        self,
        name: str,
        save_path: Path | str,
        backup_path: Path | str,
        user_id: int,
    ) -> Save:
        """Register a new save target."""
        name = name.strip()
        if not name:
            raise InvalidSaveError("Save name must not be empty")
        save_dir = Path(save_path)
        backup_dir = Path(backup_path)
        if not save_dir.is_absolute() or not backup_dir.is_absolute():
            raise InvalidSaveError("Save and backup paths must be absolute")
        if _paths_overlap(save_dir, backup_dir):
            raise InvalidSaveError(
                f"Save path {save_dir} and backup path {backup_dir} must not overlap"
            )

        async with self._session_factory() as session:
            existing = await session.execute(select(Save).where(Save.save_path == str(save_dir)))
            if existing.scalar_one_or_none() is not None:
                raise InvalidSaveError(f"{save_dir} is already a tracked save")

            now = now_utc()
            save = Save(
                friendly_name=name,
                save_path=str(save_dir),
                backup_path=str(backup_dir),
                user_id=user_id,
                created_at=now,
                modified_at=now,
            )
            session.add(save)
            try:
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise CatalogTransactionError(f"Failed to create save {name!r}: {exc}") from exc
            logger.info("Registered save %r (%s) as id %d", name, save_dir, save.id)
            return save

    async def get_save(self, save_id: int) -> Save:
        async with self._session_factory() as session:
            save = await session.get(Save, save_id)
            if save is None:
                raise SaveNotFoundError(f"No save with id {save_id}")
            return save

    async def find_save(
        self,
        *,
        friendly_name: str | None = None,
        save_path: Path | str | None = None,
    ) -> Save | None:
        """Look a save up by friendly name or by its save path."""
        stmt = select(Save)
        if friendly_name is not None:
            stmt = stmt.where(Save.friendly_name == friendly_name)
        elif save_path is not None:
            stmt = stmt.where(Save.save_path == str(save_path))
        else:
            raise ValueError("find_save needs a friendly_name or a save_path")

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            try:
                return result.scalar_one_or_none()
            except MultipleResultsFound as exc:
                raise InvalidSaveError(
                    f"More than one save is named {friendly_name!r}; select it by path"
                ) from exc

    async def list_saves(self, user_id: int | None = None) -> list[Save]:
        stmt = select(Save).order_by(Save.id)
        if user_id is not None:
            stmt = stmt.where(Save.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def touch_save_modified(self, save_id: int, timestamp: datetime) -> None:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(
                        update(Save).where(Save.id == save_id).values(modified_at=timestamp)
                    )
                    if result.rowcount == 0:
                        raise SaveNotFoundError(f"No save with id {save_id}")
            except SQLAlchemyError as exc:
                raise CatalogTransactionError(
                    f"Failed to update save {save_id}: {exc}"
                ) from exc

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def list_files(self, save_id: int, *, include_deleted: bool = False) -> list[File]:
        """Return the save's tracked files ordered by path."""
        stmt = select(File).where(File.save_id == save_id).order_by(File.file_path)
        if not include_deleted:
            stmt = stmt.where(File.deleted_at.is_(None))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def commit_file_changes(
        self,
        save_id: int,
        added: Sequence[FileChange],
        modified: Sequence[FileChange],
        deleted: Sequence[str],
        *,
        timestamp: datetime | None = None,
    ) -> CommitResult:
        """Apply one run's classified changes atomically.

        Added paths get a fresh uuid, unless the soft-delete policy left a
        tombstone for the same path, in which case that row and its uuid
        come back. Modified paths keep their uuid. Deleted paths become
        tombstones or are removed, depending on ``delete_policy``. The save's
        ``modified_at`` moves to ``timestamp`` when anything changed.

        Either every change is written or none is; any database failure
        surfaces as ``CatalogTransactionError``.
        """
        commit = CommitResult()
        if not (added or modified or deleted):
            return commit
        ts = timestamp or now_utc()

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    save = await session.get(Save, save_id)
                    if save is None:
                        raise SaveNotFoundError(f"No save with id {save_id}")

                    result = await session.execute(select(File).where(File.save_id == save_id))
                    rows = {row.file_path: row for row in result.scalars()}

                    for change in added:
                        row = rows.get(change.path)
                        if row is None:
                            session.add(
                                File(
                                    file_path=change.path,
                                    file_hash=change.digest,
                                    uuid=str(uuid.uuid4()),
                                    save_id=save_id,
                                    created_at=ts,
                                    modified_at=ts,
                                )
                            )
                            commit.inserted += 1
                        elif row.is_deleted:
                            row.file_hash = change.digest
                            row.modified_at = ts
                            row.deleted_at = None
                            commit.revived += 1
                        else:
                            raise CatalogTransactionError(
                                f"{change.path} is already tracked; catalog changed during the run"
                            )

                    for change in modified:
                        row = rows.get(change.path)
                        if row is None or row.is_deleted:
                            raise CatalogTransactionError(
                                f"{change.path} is no longer tracked; catalog changed during the run"
                            )
                        row.file_hash = change.digest
                        row.modified_at = ts
                        commit.updated += 1

                    for path in deleted:
                        row = rows.get(path)
                        if row is None or row.is_deleted:
                            continue
                        if self.delete_policy is DeletePolicy.HARD:
                            await session.delete(row)
                        else:
                            row.deleted_at = ts
                        commit.deleted += 1

                    if commit.total:
                        save.modified_at = ts
            except (SQLAlchemyError, UnicodeEncodeError) as exc:
                logger.error("Catalog commit for save %d rolled back: %s", save_id, exc)
                raise CatalogTransactionError(
                    f"Catalog commit for save {save_id} failed: {exc}"
                ) from exc

        logger.info(
            "Committed save %d: %d inserted, %d revived, %d updated, %d deleted",
            save_id,
            commit.inserted,
            commit.revived,
            commit.updated,
            commit.deleted,
        )
        return commit
