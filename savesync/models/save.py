"""Save and tracked-file models."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    CHAR,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from savesync.models.base import Base

if TYPE_CHECKING:
    from savesync.models.user import User


class Save(Base):
    """A named backup target: one directory tree on disk."""

    __tablename__ = "saves"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    friendly_name: Mapped[str] = mapped_column(Text, nullable=False)
    save_path: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    backup_path: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    user: Mapped[User] = relationship(back_populates="saves")
    files: Mapped[list[File]] = relationship(back_populates="save")


class File(Base):
    """One path within a save's latest tracked state.

    ``uuid`` is the stable identity of the logical path across content
    changes; ``id`` is only the row key. ``deleted_at`` marks a tombstone
    left behind by the soft-delete policy.
    """

    __tablename__ = "files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_hash: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    uuid: Mapped[str] = mapped_column(CHAR(36), nullable=False)
    save_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("saves.id", ondelete="RESTRICT"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    save: Mapped[Save] = relationship(back_populates="files")

    __table_args__ = (
        UniqueConstraint("save_id", "file_path", name="uq_files_save_path"),
        Index("idx_files_hash", "file_hash"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
