"""Assemble a ready-to-use versioning service from settings."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from datavault.db.engine import create_async_engine, create_session_factory, create_tables
from datavault.repository.backend import FilesystemRepositoryBackend
from datavault.repository.manager import VersionRepositoryManager
from datavault.service import DatasetVersioningService
from datavault.storage.backends import (
    FilesystemObjectStorage,
    ObjectStorageBackend,
    S3ObjectStorage,
)
from datavault.storage.client import ContentStorageClient

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from datavault.settings import DatavaultSettings

logger = logging.getLogger(__name__)


def build_object_storage(settings: DatavaultSettings) -> ObjectStorageBackend:
    """Create the object-storage backend based on configuration."""
    storage = settings.storage
    if storage.backend == "filesystem":
        return FilesystemObjectStorage(
            base_dir=storage.local_dir,
            base_url=storage.public_base_url,
            signing_secret=storage.signing_secret,
        )
    if storage.backend == "s3":
        return S3ObjectStorage(
            bucket=storage.bucket,
            prefix=storage.prefix,
            endpoint_url=storage.endpoint_url,
            access_key=storage.access_key,
            secret_key=storage.secret_key,
            region=storage.region,
        )
    msg = f"Unknown object storage backend: {storage.backend}"
    raise ValueError(msg)


def build_storage_client(settings: DatavaultSettings) -> ContentStorageClient:
    return ContentStorageClient(
        build_object_storage(settings),
        transfer=settings.transfer,
        signed_urls=settings.signed_urls,
    )


def build_repository_manager(settings: DatavaultSettings) -> VersionRepositoryManager:
    return VersionRepositoryManager(
        FilesystemRepositoryBackend(settings.repository.base_dir),
        tracked_extensions=settings.repository.tracked_extensions,
    )


def _redact(database_url: str) -> str:
    if "@" not in database_url:
        return database_url
    credentials, host = database_url.split("@", 1)
    return credentials.rsplit(":", 1)[0] + ":***@" + host


@asynccontextmanager
async def open_service(
    settings: DatavaultSettings,
    *,
    create_schema: bool = True,
) -> AsyncGenerator[DatasetVersioningService, None]:
    """Yield a service wired to the configured store, repository and storage.

    The database engine is disposed on exit.
    """
    engine = create_async_engine(settings.database_url)
    try:
        if create_schema:
            await create_tables(engine)
        service = DatasetVersioningService(
            create_session_factory(engine),
            build_repository_manager(settings),
            build_storage_client(settings),
            settings,
        )
        logger.info(
            "datavault ready (database=%s, storage=%s)",
            _redact(settings.database_url),
            settings.storage.backend,
        )
        yield service
    finally:
        await engine.dispose()
