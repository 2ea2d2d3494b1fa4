"""Shared test fixtures for datavault."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from datavault.db.engine import create_async_engine, create_session_factory, create_tables
from datavault.repository.backend import FilesystemRepositoryBackend
from datavault.repository.manager import VersionRepositoryManager
from datavault.service import DatasetVersioningService
from datavault.settings import DatavaultSettings, TransferConfig
from datavault.storage.backends import FilesystemObjectStorage
from datavault.storage.cache import SignedUrlCache
from datavault.storage.client import ContentStorageClient

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


class FakeClock:
    """Manually advanced clock shared by the URL cache and the signer."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transfer() -> TransferConfig:
    """Tiny chunks and no backoff so transfer tests stay fast."""
    return TransferConfig(
        chunk_size_bytes=4,
        max_concurrency=2,
        max_attempts=3,
        initial_delay_seconds=0.0,
        max_delay_seconds=0.0,
        cleanup_attempts=2,
        batch_concurrency=2,
    )


@pytest.fixture
def object_store(tmp_path: Path, clock: FakeClock) -> FilesystemObjectStorage:
    """Filesystem object storage rooted in tmp_path."""
    return FilesystemObjectStorage(
        str(tmp_path / "objects"),
        base_url="http://files.test/objects",
        signing_secret="test-secret",
        now=clock,
    )


@pytest.fixture
def storage_client(
    object_store: FilesystemObjectStorage, transfer: TransferConfig, clock: FakeClock
) -> ContentStorageClient:
    return ContentStorageClient(object_store, transfer=transfer, cache=SignedUrlCache(clock))


@pytest.fixture
def repo_backend(tmp_path: Path) -> FilesystemRepositoryBackend:
    return FilesystemRepositoryBackend(str(tmp_path / "repos"))


@pytest.fixture
def repository(repo_backend: FilesystemRepositoryBackend) -> VersionRepositoryManager:
    return VersionRepositoryManager(repo_backend)


@pytest.fixture
def settings(tmp_path: Path) -> DatavaultSettings:
    """Settings with a file-backed aiosqlite database under tmp_path."""
    return DatavaultSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        storage={"local_dir": str(tmp_path / "objects"), "signing_secret": "test-secret"},
        repository={"base_dir": str(tmp_path / "repos")},
        transfer={
            "chunk_size_bytes": 4,
            "initial_delay_seconds": 0.0,
            "max_delay_seconds": 0.0,
        },
    )


@pytest.fixture
async def engine(settings: DatavaultSettings) -> AsyncGenerator[AsyncEngine, None]:
    e = create_async_engine(settings.database_url)
    await create_tables(e)
    yield e
    await e.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def service(
    session_factory: async_sessionmaker[AsyncSession],
    repository: VersionRepositoryManager,
    storage_client: ContentStorageClient,
    settings: DatavaultSettings,
) -> DatasetVersioningService:
    """Service wired to tmp_path storage, repositories and database."""
    return DatasetVersioningService(session_factory, repository, storage_client, settings)
