"""Shared test fixtures for save-sync."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from savesync.config import DeletePolicy, Settings
from savesync.database import create_engine, init_db
from savesync.services.backup_service import BackupOrchestrator
from savesync.services.catalog_service import CatalogRepository
from savesync.services.file_store import FileStore
from savesync.services.save_service import register_save

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from savesync.models.save import Save
    from savesync.models.user import User


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    return Settings(
        _env_file=None,
        data_dir=tmp_path / "data",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        max_workers=2,
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the catalog schema in place."""
    engine, _ = create_engine(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def catalog(session_factory: async_sessionmaker[AsyncSession]) -> CatalogRepository:
    return CatalogRepository(session_factory, delete_policy=DeletePolicy.SOFT)


@pytest.fixture
def hard_catalog(session_factory: async_sessionmaker[AsyncSession]) -> CatalogRepository:
    return CatalogRepository(session_factory, delete_policy=DeletePolicy.HARD)


@pytest.fixture
def file_store(test_settings: Settings) -> FileStore:
    return FileStore(test_settings.resolved_store_dir())


@pytest.fixture
def orchestrator(catalog: CatalogRepository, file_store: FileStore) -> BackupOrchestrator:
    return BackupOrchestrator(catalog, file_store, max_workers=2)


@pytest.fixture
def save_dir(tmp_path: Path) -> Path:
    """Create a save directory holding a.txt ("hello") and b.txt ("world")."""
    root = tmp_path / "game_save"
    root.mkdir()
    (root / "a.txt").write_bytes(b"hello")
    (root / "b.txt").write_bytes(b"world")
    return root


@pytest.fixture
async def user(catalog: CatalogRepository) -> User:
    return await catalog.ensure_user("tester")


@pytest.fixture
async def save(
    catalog: CatalogRepository,
    test_settings: Settings,
    user: User,
    save_dir: Path,
) -> Save:
    """Register ``save_dir`` as a save named "S"."""
    return await register_save(catalog, test_settings, user, save_dir, "S")

