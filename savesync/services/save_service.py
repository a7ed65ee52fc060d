"""Save registration."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from savesync.exceptions import InvalidSaveError
from savesync.services.scanner import check_save_root

if TYPE_CHECKING:
    from pathlib import Path

    from savesync.config import Settings
    from savesync.models.save import Save
    from savesync.models.user import User
    from savesync.services.catalog_service import CatalogRepository

logger = logging.getLogger(__name__)


async def register_save(
    catalog: CatalogRepository,
    settings: Settings,
    user: User,
    save_path: Path | str,
    friendly_name: str | None = None,
) -> Save:
    """Track a new save directory for ``user``.

    The directory must exist and be readable. Its backup path is a fresh
    directory under the configured saves directory, and the friendly name
    defaults to the directory's base name.
    """
    root = check_save_root(save_path)
    try:
        str(root).encode("utf-8")
    except UnicodeEncodeError as exc:
        raise InvalidSaveError(f"{root!r} is not a valid UTF-8 path") from exc
    data_dir = settings.data_dir.resolve()
    if root == data_dir or root.is_relative_to(data_dir) or data_dir.is_relative_to(root):
        raise InvalidSaveError(f"{root} overlaps the save-sync data directory {data_dir}")

    backup_path = settings.saves_dir().resolve() / str(uuid.uuid4())
    save = await catalog.create_save(friendly_name or root.name, root, backup_path, user.id)
    backup_path.mkdir(parents=True, exist_ok=True)
    logger.debug("Allocated backup path %s for save %d", backup_path, save.id)
    return save
