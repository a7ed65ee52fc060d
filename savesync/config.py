"""Application configuration loaded from a TOML file and environment variables."""

from __future__ import annotations

import logging
import os
import tomllib
from enum import StrEnum
from pathlib import Path
from typing import Any

from platformdirs import user_data_path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

APP_NAME = "save-sync"
CONFIG_PATH_ENV = "SAVE_SYNC_CONFIG_PATH"


class DeletePolicy(StrEnum):
    """What happens to a catalog row when its path disappears from disk."""

    SOFT = "soft"  # keep the row as a tombstone; a reappearing path reuses its uuid
    HARD = "hard"  # remove the row; a reappearing path gets a new uuid


class ConflictPolicy(StrEnum):
    """What a second run on an already-running save does."""

    REJECT = "reject"
    WAIT = "wait"


def default_data_dir() -> Path:
    """Return the platform user data directory for save-sync."""
    return user_data_path(APP_NAME, appauthor=False)


class Settings(BaseSettings):
    """save-sync settings."""

    model_config = SettingsConfigDict(
        env_prefix="SAVE_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False

    # Paths
    data_dir: Path = Field(default_factory=default_data_dir)
    database_url: str | None = None
    store_dir: Path | None = None

    # Catalog
    local_username: str = Field(default="Default", min_length=1)
    delete_policy: DeletePolicy = DeletePolicy.SOFT

    # Runs
    run_conflict_policy: ConflictPolicy = ConflictPolicy.REJECT
    max_workers: int = Field(default=4, ge=1, le=64)
    verify_existing_blobs: bool = False
    compression_level: int = Field(default=3, ge=1, le=22)

    def resolved_database_url(self) -> str:
        """Return the configured database URL or the default SQLite file under data_dir."""
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.data_dir / 'saves.db'}"

    def resolved_store_dir(self) -> Path:
        """Return the content store root."""
        return self.store_dir if self.store_dir is not None else self.data_dir / "store"

    def saves_dir(self) -> Path:
        """Return the directory under which per-save backup paths are allocated."""
        return self.data_dir / "saves"

    def validate_paths(self) -> None:
        """Reject store locations that collide with the data or saves directories."""
        store = self.resolved_store_dir().resolve()
        if store == self.data_dir.resolve():
            raise ValueError("store_dir must not be the data directory itself")
        if store.is_relative_to(self.saves_dir().resolve()):
            raise ValueError("store_dir must not live inside the saves directory")


def load_settings(config_path: Path | None = None, **overrides: Any) -> Settings:
    """Build settings from an optional TOML file plus environment variables.

    The file is looked up in ``config_path`` or the ``SAVE_SYNC_CONFIG_PATH``
    environment variable. Keys in the file take precedence over the
    environment; ``overrides`` take precedence over both.
    """
    if config_path is None and os.environ.get(CONFIG_PATH_ENV):
        config_path = Path(os.environ[CONFIG_PATH_ENV])

    values: dict[str, Any] = {}
    if config_path is not None:
        if config_path.is_file():
            with open(config_path, "rb") as f:
                values = tomllib.load(f)
            logger.debug("Loaded configuration from %s", config_path)
        else:
            logger.debug("No configuration file at %s, using defaults", config_path)

    values.update(overrides)
    return Settings(**values)
