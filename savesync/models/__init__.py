"""SQLAlchemy ORM models for save-sync."""

from savesync.models.base import Base
from savesync.models.save import File, Save
from savesync.models.user import User

__all__ = [
    "Base",
    "File",
    "Save",
    "User",
]
