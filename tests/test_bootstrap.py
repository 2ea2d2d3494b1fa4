"""Tests for datavault.bootstrap."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from datavault.bootstrap import (
    _redact,
    build_object_storage,
    build_repository_manager,
    build_storage_client,
    open_service,
)
from datavault.service import DatasetVersioningService
from datavault.storage.backends import FilesystemObjectStorage, S3ObjectStorage

if TYPE_CHECKING:
    from datavault.settings import DatavaultSettings


class TestBuildObjectStorage:
    def test_filesystem(self, settings: DatavaultSettings) -> None:
        assert isinstance(build_object_storage(settings), FilesystemObjectStorage)

    def test_s3(self, settings: DatavaultSettings) -> None:
        s3 = settings.model_copy(
            update={"storage": settings.storage.model_copy(update={"backend": "s3", "bucket": "b"})}
        )
        backend = build_object_storage(s3)
        assert isinstance(backend, S3ObjectStorage)
        assert backend.bucket == "b"

    def test_unknown(self, settings: DatavaultSettings) -> None:
        bad = settings.model_copy(
            update={"storage": settings.storage.model_copy(update={"backend": "ftp"})}
        )
        with pytest.raises(ValueError, match="Unknown object storage backend"):
            build_object_storage(bad)


class TestBuilders:
    def test_storage_client(self, settings: DatavaultSettings) -> None:
        client = build_storage_client(settings)
        assert client.backend.provider_name == "filesystem"

    def test_repository_manager(self, settings: DatavaultSettings) -> None:
        assert build_repository_manager(settings).backend.provider_name == "filesystem"


class TestRedact:
    def test_hides_password(self) -> None:
        assert _redact("postgresql+asyncpg://user:pw@db:5432/dv") == (
            "postgresql+asyncpg://user:***@db:5432/dv"
        )

    def test_no_credentials(self) -> None:
        assert _redact("sqlite+aiosqlite:///data/dv.db") == "sqlite+aiosqlite:///data/dv.db"


class TestOpenService:
    async def test_yields_ready_service(self, settings: DatavaultSettings) -> None:
        async with open_service(settings) as service:
            assert isinstance(service, DatasetVersioningService)
            assert await service.count_pending_operations() == 0
