"""Service wiring: build the catalog, store and orchestrator from settings."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from savesync.database import create_engine, init_db
from savesync.services.backup_service import BackupOrchestrator
from savesync.services.catalog_service import CatalogRepository
from savesync.services.file_store import FileStore
from savesync.services.lock_service import SaveLockRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from savesync.config import Settings

logger = logging.getLogger(__name__)


def configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stderr,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


@dataclass
class Services:
    settings: Settings
    catalog: CatalogRepository
    store: FileStore
    orchestrator: BackupOrchestrator


@asynccontextmanager
async def open_services(settings: Settings) -> AsyncGenerator[Services]:
    """Create the database schema if needed and yield wired-up services."""
    settings.validate_paths()
    engine, session_factory = create_engine(settings)
    try:
        await init_db(engine)
        catalog = CatalogRepository(session_factory, delete_policy=settings.delete_policy)
        store = FileStore(
            settings.resolved_store_dir(),
            verify_existing=settings.verify_existing_blobs,
            compression_level=settings.compression_level,
        )
        orchestrator = BackupOrchestrator(
            catalog,
            store,
            locks=SaveLockRegistry(settings.run_conflict_policy),
            max_workers=settings.max_workers,
        )
        logger.debug("Catalog at %s, store at %s", settings.resolved_database_url(), store.root)
        yield Services(settings, catalog, store, orchestrator)
    finally:
        await engine.dispose()
