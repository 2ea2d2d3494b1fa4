"""Tests for datavault.service: datasets, versions, diffs, rollback, fork, validation."""

from __future__ import annotations

import asyncio
import gc
import hashlib
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy import func, select, text

from datavault.db.models import (
    DATASET_FAILED,
    INTENT_FAILED,
    DatasetFileRecord,
    DatasetRecord,
    OperationIntentRecord,
)
from datavault.exceptions import (
    AccessDeniedError,
    DatasetNotFoundError,
    ForkSourceNotFoundError,
    InvalidInputError,
    InvalidVersionError,
    MetadataStoreError,
    RepositoryInitError,
    ValidationFailed,
    VersionConflictError,
    VersionNotFoundError,
)
from datavault.schemas import CreateDatasetResult, CreateVersionResult, ValidationOptions
from datavault.service import DatasetVersioningService, pending_checksum
from datavault.settings import DatasetLimits

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from datavault.repository.backend import FilesystemRepositoryBackend
    from datavault.repository.manager import VersionRepositoryManager
    from datavault.settings import DatavaultSettings
    from datavault.storage.backends import FilesystemObjectStorage


# ======================================================================
# Helpers
# ======================================================================


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


A1 = b"id,value\n1,10\n"
A2 = b"id,value\n1,10\n2,20\n"
B1 = b"id,label\n1,x\n"


def _dataset(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "title": "t",
        "description": "Test dataset",
        "tags": ["weather"],
        "files": [{"name": "a.csv", "size_bytes": len(A1), "checksum": _sha(A1)}],
        "metadata": {"rows": 1},
    }
    data.update(overrides)
    return data


async def _create(
    service: DatasetVersioningService, owner: str = "alice", **overrides: Any
) -> CreateDatasetResult:
    return await service.create_dataset(owner, _dataset(**overrides))


async def _create_v110(service: DatasetVersioningService, dataset_id: str) -> CreateVersionResult:
    """1.1.0 modifies a.csv and adds b.csv."""
    return await service.create_version(
        "alice",
        dataset_id,
        {
            "version": "1.1.0",
            "description": "More rows, labels",
            "files": [
                {"name": "a.csv", "size_bytes": len(A2), "checksum": _sha(A2)},
                {"name": "b.csv", "size_bytes": len(B1), "checksum": _sha(B1)},
            ],
        },
    )


async def _count(factory: async_sessionmaker[AsyncSession], model: Any) -> int:
    async with factory() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return int(result.scalar_one())


# ======================================================================
# createDataset
# ======================================================================


class TestCreateDataset:
    async def test_returns_root_version_and_upload_url(
        self, service: DatasetVersioningService
    ) -> None:
        result = await service.create_dataset(
            "alice",
            {"title": "t", "files": [{"name": "a.csv", "size_bytes": 100}], "is_private": False},
        )
        assert result.dataset.current_version == "1.0.0"
        assert result.dataset.status == "active"
        assert result.dataset.accessibility == "public"
        assert [t.file_name for t in result.file_upload_urls] == ["a.csv"]
        assert result.file_upload_urls[0].storage_key.startswith("public/alice/")

    async def test_persisted_and_visible(self, service: DatasetVersioningService) -> None:
        created = await _create(service)
        fetched = await service.get_dataset("bob", created.dataset.id)
        assert fetched.title == "t"
        assert fetched.tags == ["weather"]
        assert fetched.current_version == "1.0.0"

    async def test_missing_checksum_recorded_as_pending(
        self, service: DatasetVersioningService
    ) -> None:
        result = await _create(service, files=[{"name": "a.csv", "size_bytes": 3}])
        files = await service.get_dataset_files("alice", result.dataset.id)
        key = result.file_upload_urls[0].storage_key
        assert files[0].checksum == pending_checksum(key)

    async def test_manifest_rows_written(
        self,
        service: DatasetVersioningService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await _create(service)
        assert await _count(session_factory, DatasetFileRecord) == 1

    @pytest.mark.parametrize(
        "overrides",
        [
            {"title": ""},
            {"title": "x" * 101},
            {"description": "d" * 1001},
            {"tags": [f"t{i}" for i in range(11)]},
            {"tags": ["has space"]},
            {"tags": ["x" * 31]},
            {"files": [{"name": "../evil.csv", "size_bytes": 1}]},
            {"files": [{"name": "a.csv", "size_bytes": -1}]},
            {"files": [{"name": "a.csv", "size_bytes": 1, "checksum": "nothex"}]},
        ],
    )
    async def test_invalid_input(
        self,
        service: DatasetVersioningService,
        session_factory: async_sessionmaker[AsyncSession],
        overrides: dict[str, Any],
    ) -> None:
        with pytest.raises(InvalidInputError):
            await _create(service, **overrides)
        assert await _count(session_factory, DatasetRecord) == 0

    async def test_file_over_limit(self, service: DatasetVersioningService) -> None:
        with pytest.raises(InvalidInputError):
            await _create(
                service, files=[{"name": "huge.bin", "size_bytes": 5 * 1024**3 + 1}]
            )

    async def test_configured_limits_applied(
        self,
        service: DatasetVersioningService,
        session_factory: async_sessionmaker[AsyncSession],
        settings: DatavaultSettings,
    ) -> None:
        strict = DatasetVersioningService(
            session_factory,
            service._repository,
            service._storage,
            settings.model_copy(update={"limits": DatasetLimits(max_tags=1, max_title_length=3)}),
        )
        with pytest.raises(InvalidInputError) as exc_info:
            await _create(strict, title="a long title", tags=["a", "b", "c"])
        assert exc_info.value.details == {"max_title_length": 3, "max_tags": 1}
        assert await _count(session_factory, DatasetRecord) == 0

    async def test_raised_limits_accept_more(
        self,
        service: DatasetVersioningService,
        session_factory: async_sessionmaker[AsyncSession],
        settings: DatavaultSettings,
    ) -> None:
        lenient = DatasetVersioningService(
            session_factory,
            service._repository,
            service._storage,
            settings.model_copy(update={"limits": DatasetLimits(max_tags=20)}),
        )
        created = await _create(lenient, tags=[f"t{i}" for i in range(15)])
        assert len(created.dataset.tags) == 15

    async def test_version_description_limit(
        self,
        service: DatasetVersioningService,
        session_factory: async_sessionmaker[AsyncSession],
        settings: DatavaultSettings,
    ) -> None:
        created = await _create(service)
        strict = DatasetVersioningService(
            session_factory,
            service._repository,
            service._storage,
            settings.model_copy(update={"limits": DatasetLimits(max_description_length=5)}),
        )
        with pytest.raises(InvalidInputError, match="configured limits"):
            await strict.create_version(
                "alice", created.dataset.id, {"version": "1.1.0", "description": "too long"}
            )
        assert (await service.get_dataset("alice", created.dataset.id)).current_version == "1.0.0"

    async def test_duplicate_file_names(self, service: DatasetVersioningService) -> None:
        with pytest.raises(InvalidInputError, match="Duplicate"):
            await _create(
                service,
                files=[{"name": "a.csv", "size_bytes": 1}, {"name": "a.csv", "size_bytes": 2}],
            )

    async def test_private_hidden_from_others(self, service: DatasetVersioningService) -> None:
        created = await _create(service, is_private=True)
        assert created.file_upload_urls[0].storage_key.startswith("private/alice/")
        with pytest.raises(DatasetNotFoundError):
            await service.get_dataset("bob", created.dataset.id)
        assert (await service.get_dataset("alice", created.dataset.id)).accessibility == "private"

    async def test_idempotency_key_replays(
        self,
        service: DatasetVersioningService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        first = await service.create_dataset("alice", _dataset(), idempotency_key="req-1")
        second = await service.create_dataset("alice", _dataset(), idempotency_key="req-1")
        assert second.dataset.id == first.dataset.id
        assert second.file_upload_urls[0].storage_key == first.file_upload_urls[0].storage_key
        assert await _count(session_factory, DatasetRecord) == 1

    async def test_failed_creation_is_compensated(
        self,
        service: DatasetVersioningService,
        repo_backend: FilesystemRepositoryBackend,
        session_factory: async_sessionmaker[AsyncSession],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def _broken_commit(*args: Any, **kwargs: Any) -> Any:
            raise RepositoryInitError("disk full")

        monkeypatch.setattr(repo_backend, "commit", _broken_commit)
        with pytest.raises(RepositoryInitError):
            await _create(service)

        async with session_factory() as session:
            record = (await session.execute(select(DatasetRecord))).scalar_one()
            intent = (await session.execute(select(OperationIntentRecord))).scalar_one()
        assert record.status == DATASET_FAILED
        assert intent.status == INTENT_FAILED
        assert await repo_backend.exists("alice", record.id) is False
        assert await service.count_pending_operations() == 0


# ======================================================================
# createVersion
# ======================================================================


class TestCreateVersion:
    async def test_parent_linkage(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        v110 = await _create_v110(service, ds)
        assert v110.parent_version == "1.0.0"
        assert [t.file_name for t in v110.file_upload_urls] == ["a.csv", "b.csv"]
        v120 = await service.create_version("alice", ds, {"version": "1.2.0", "description": "x"})
        assert v120.parent_version == "1.1.0"
        history = await service.list_versions("alice", ds)
        assert [(v.version, v.parent_version) for v in history] == [
            ("1.0.0", None),
            ("1.1.0", "1.0.0"),
            ("1.2.0", "1.1.0"),
        ]
        assert (await service.get_dataset("alice", ds)).current_version == "1.2.0"

    async def test_unchanged_files_carried_forward(
        self, service: DatasetVersioningService
    ) -> None:
        ds = (await _create(service)).dataset.id
        await service.create_version(
            "alice",
            ds,
            {"version": "1.1.0", "files": [{"name": "b.csv", "size_bytes": 1}]},
        )
        files = await service.get_dataset_files("alice", ds, "1.1.0")
        assert [f.name for f in files] == ["a.csv", "b.csv"]

    async def test_removed_files(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        await _create_v110(service, ds)
        await service.create_version(
            "alice", ds, {"version": "1.2.0", "description": "drop a", "removed": ["a.csv"]}
        )
        files = await service.get_dataset_files("alice", ds)
        assert [f.name for f in files] == ["b.csv"]

    async def test_removing_unknown_file(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        with pytest.raises(InvalidInputError):
            await service.create_version(
                "alice", ds, {"version": "1.1.0", "removed": ["nope.csv"]}
            )
        assert (await service.get_dataset("alice", ds)).current_version == "1.0.0"
        assert await service.count_pending_operations() == 0

    async def test_metadata_inherited_when_omitted(
        self, service: DatasetVersioningService
    ) -> None:
        ds = (await _create(service)).dataset.id
        await service.create_version("alice", ds, {"version": "1.1.0", "description": "x"})
        details = await service.get_version_metadata("alice", ds, "1.1.0")
        assert details.metadata == {"rows": 1}

    @pytest.mark.parametrize("label", ["1.2", "1.1.0+build.1"])
    async def test_malformed_label_mutates_nothing(
        self,
        service: DatasetVersioningService,
        session_factory: async_sessionmaker[AsyncSession],
        label: str,
    ) -> None:
        ds = (await _create(service)).dataset.id
        intents = await _count(session_factory, OperationIntentRecord)
        with pytest.raises(InvalidVersionError):
            await service.create_version("alice", ds, {"version": label})
        assert await _count(session_factory, OperationIntentRecord) == intents
        assert [v.version for v in await service.list_versions("alice", ds)] == ["1.0.0"]

    async def test_lower_label_conflicts(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        await _create_v110(service, ds)
        with pytest.raises(VersionConflictError):
            await service.create_version("alice", ds, {"version": "1.0.1"})

    async def test_existing_label_conflicts(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        with pytest.raises(VersionConflictError):
            await service.create_version("alice", ds, {"version": "1.0.0"})

    async def test_only_owner_may_version(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        with pytest.raises(AccessDeniedError):
            await service.create_version("bob", ds, {"version": "1.1.0"})

    async def test_unknown_dataset(self, service: DatasetVersioningService) -> None:
        with pytest.raises(DatasetNotFoundError):
            await service.create_version("alice", "missing", {"version": "1.1.0"})

    async def test_concurrent_same_label_one_wins(
        self, service: DatasetVersioningService
    ) -> None:
        ds = (await _create(service)).dataset.id
        results = await asyncio.gather(
            service.create_version("alice", ds, {"version": "1.1.0", "description": "one"}),
            service.create_version("alice", ds, {"version": "1.1.0", "description": "two"}),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, CreateVersionResult)]
        losers = [r for r in results if isinstance(r, VersionConflictError)]
        assert len(winners) == 1
        assert len(losers) == 1
        history = await service.list_versions("alice", ds)
        assert [v.version for v in history] == ["1.0.0", "1.1.0"]

    async def test_dataset_locks_released_after_writes(
        self, service: DatasetVersioningService
    ) -> None:
        for _ in range(3):
            ds = (await _create(service)).dataset.id
            await _create_v110(service, ds)
        gc.collect()
        assert len(service._locks) == 0


# ======================================================================
# Reads / compareVersions
# ======================================================================


class TestCompareVersions:
    async def test_added_modified_removed(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        await _create_v110(service, ds)
        diff = await service.compare_versions("alice", ds, "1.0.0", "1.1.0")
        assert [f.name for f in diff.added] == ["b.csv"]
        assert [m.name for m in diff.modified] == ["a.csv"]
        assert diff.removed == []
        assert sorted(diff.download_urls) == ["a.csv", "b.csv"]
        assert diff.statistics.size_impact == len(B1) + len(A2) - len(A1)

    async def test_reverse_lists_removed(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        await _create_v110(service, ds)
        diff = await service.compare_versions("alice", ds, "1.1.0", "1.0.0")
        assert [f.name for f in diff.removed] == ["b.csv"]
        assert "b.csv" in diff.download_urls

    async def test_unknown_version(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        with pytest.raises(VersionNotFoundError):
            await service.compare_versions("alice", ds, "1.0.0", "2.0.0")

    async def test_download_urls_are_stable(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        await _create_v110(service, ds)
        first = await service.compare_versions("alice", ds, "1.0.0", "1.1.0")
        second = await service.compare_versions("alice", ds, "1.0.0", "1.1.0")
        assert first.download_urls == second.download_urls


class TestVersionMetadata:
    async def test_changes_and_urls(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        await _create_v110(service, ds)
        details = await service.get_version_metadata("alice", ds, "1.1.0")
        assert details.parent_version == "1.0.0"
        assert details.changes.added == ["b.csv"]
        assert details.changes.modified == ["a.csv"]
        assert details.stats.file_count == 2
        assert sorted(f.name for f in details.files) == ["a.csv", "b.csv"]
        assert all(f.download_url for f in details.files)

    async def test_private_readable_by_owner(
        self, service: DatasetVersioningService, object_store: FilesystemObjectStorage
    ) -> None:
        ds = (await _create(service, is_private=True)).dataset.id
        details = await service.get_version_metadata("alice", ds, "1.0.0")
        key = details.files[0].storage_key
        assert object_store.verify_url(details.files[0].download_url, "GET") == key

    async def test_private_hidden_from_others(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service, is_private=True)).dataset.id
        with pytest.raises(DatasetNotFoundError):
            await service.get_version_metadata("bob", ds, "1.0.0")
        with pytest.raises(DatasetNotFoundError):
            await service.list_versions("bob", ds)


# ======================================================================
# rollbackVersion
# ======================================================================


class TestRollbackVersion:
    async def test_appends_patch_bump(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        await _create_v110(service, ds)
        details = await service.rollback_version("alice", ds, "1.0.0")
        assert details.version == "1.1.1"
        assert details.parent_version == "1.1.0"
        assert details.description == "Rollback to version 1.0.0"
        assert details.changes.modified == ["a.csv"]
        assert details.changes.removed == ["b.csv"]

        files = await service.get_dataset_files("alice", ds)
        assert [(f.name, f.checksum) for f in files] == [("a.csv", _sha(A1))]
        assert (await service.get_dataset("alice", ds)).current_version == "1.1.1"
        history = [v.version for v in await service.list_versions("alice", ds)]
        assert history == ["1.0.0", "1.1.0", "1.1.1"]

    async def test_explicit_label(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        await _create_v110(service, ds)
        details = await service.rollback_version("alice", ds, "1.0.0", new_version="2.0.0")
        assert details.version == "2.0.0"

    async def test_rollback_reuses_stored_objects(
        self, service: DatasetVersioningService
    ) -> None:
        ds = (await _create(service)).dataset.id
        root_key = (await service.get_dataset_files("alice", ds, "1.0.0"))[0].storage_key
        await _create_v110(service, ds)
        await service.rollback_version("alice", ds, "1.0.0")
        files = await service.get_dataset_files("alice", ds)
        assert files[0].storage_key == root_key

    async def test_unknown_target(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        with pytest.raises(VersionNotFoundError):
            await service.rollback_version("alice", ds, "0.5.0")

    async def test_only_owner(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        with pytest.raises(AccessDeniedError):
            await service.rollback_version("bob", ds, "1.0.0")


# ======================================================================
# forkDataset
# ======================================================================


class TestForkDataset:
    async def test_independent_history(self, service: DatasetVersioningService) -> None:
        src = (await _create(service)).dataset.id
        await _create_v110(service, src)
        fork = await service.fork_dataset("bob", src, "1.1.0")
        assert fork.owner_id == "bob"
        assert fork.title == "t-fork"
        assert fork.current_version == "1.0.0"
        assert fork.forked_from_dataset_id == src
        assert fork.forked_from_version == "1.1.0"

        source_files = await service.get_dataset_files("alice", src, "1.1.0")
        fork_files = await service.get_dataset_files("bob", fork.id)
        assert [(f.name, f.storage_key) for f in fork_files] == [
            (f.name, f.storage_key) for f in source_files
        ]
        assert [v.version for v in await service.list_versions("bob", fork.id)] == ["1.0.0"]

        await service.create_version("bob", fork.id, {"version": "1.1.0", "removed": ["a.csv"]})
        assert [f.name for f in await service.get_dataset_files("alice", src)] == [
            "a.csv",
            "b.csv",
        ]

    async def test_missing_version(self, service: DatasetVersioningService) -> None:
        src = (await _create(service)).dataset.id
        with pytest.raises(ForkSourceNotFoundError):
            await service.fork_dataset("bob", src, "4.0.0")

    async def test_private_source_invisible(self, service: DatasetVersioningService) -> None:
        src = (await _create(service, is_private=True)).dataset.id
        with pytest.raises(DatasetNotFoundError):
            await service.fork_dataset("bob", src, "1.0.0")


# ======================================================================
# deleteDataset
# ======================================================================


class TestDeleteDataset:
    async def test_removes_everything(
        self,
        service: DatasetVersioningService,
        object_store: FilesystemObjectStorage,
        repo_backend: FilesystemRepositoryBackend,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        created = await _create(service)
        ds = created.dataset.id
        key = created.file_upload_urls[0].storage_key
        await object_store.put_object(key, A1)

        await service.delete_dataset("alice", ds)
        with pytest.raises(DatasetNotFoundError):
            await service.get_dataset("alice", ds)
        assert await object_store.exists(key) is False
        assert await repo_backend.exists("alice", ds) is False
        assert await _count(session_factory, DatasetFileRecord) == 0

    async def test_shared_objects_survive(
        self, service: DatasetVersioningService, object_store: FilesystemObjectStorage
    ) -> None:
        created = await _create(service)
        src = created.dataset.id
        key = created.file_upload_urls[0].storage_key
        await object_store.put_object(key, A1)
        fork = await service.fork_dataset("bob", src, "1.0.0")

        await service.delete_dataset("bob", fork.id)
        assert await object_store.exists(key) is True
        await service.delete_dataset("alice", src)
        assert await object_store.exists(key) is False

    async def test_only_owner(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        with pytest.raises(AccessDeniedError):
            await service.delete_dataset("bob", ds)


# ======================================================================
# tagVersion
# ======================================================================


class TestTagVersion:
    async def test_named_tag(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        tag = await service.tag_version("alice", ds, "1.0.0", "baseline", description="first")
        assert tag.version == "1.0.0"
        assert tag.created_by == "alice"
        details = await service.get_version_metadata("alice", ds, "1.0.0")
        assert "baseline" in details.tags

    async def test_only_owner(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        with pytest.raises(AccessDeniedError):
            await service.tag_version("bob", ds, "1.0.0", "mine")


# ======================================================================
# validateVersion
# ======================================================================


class TestValidateVersion:
    async def test_metrics(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        await _create_v110(service, ds)
        result = await service.validate_version(ds, "1.1.0")
        assert result.is_valid is True
        assert result.metrics["total_files"] == 2
        assert result.metrics["total_size"] == len(A2) + len(B1)
        assert result.metrics["average_file_size"] == (len(A2) + len(B1)) / 2
        assert result.metrics["ext.csv"] == 2

    async def test_checksums_verified(
        self, service: DatasetVersioningService, object_store: FilesystemObjectStorage
    ) -> None:
        created = await _create(service)
        await object_store.put_object(created.file_upload_urls[0].storage_key, A1)
        result = await service.validate_version(
            created.dataset.id, "1.0.0", ValidationOptions(checksums=True)
        )
        assert result.is_valid is True
        assert result.errors == []

    async def test_corrupted_object(
        self, service: DatasetVersioningService, object_store: FilesystemObjectStorage
    ) -> None:
        created = await _create(service)
        await object_store.put_object(created.file_upload_urls[0].storage_key, A1 + b"x")
        result = await service.validate_version(created.dataset.id, "1.0.0", {"checksums": True})
        assert result.is_valid is False
        assert [e.code for e in result.errors] == ["INVALID_CHECKSUM"]
        with pytest.raises(ValidationFailed):
            result.raise_for_errors()

    async def test_missing_object(self, service: DatasetVersioningService) -> None:
        created = await _create(service)
        result = await service.validate_version(created.dataset.id, "1.0.0", {"checksums": True})
        assert result.is_valid is False
        assert result.errors[0].code == "MISSING_OBJECT"
        assert result.errors[0].path == "a.csv"

    async def test_pending_checksum_is_warning(self, service: DatasetVersioningService) -> None:
        created = await _create(service, files=[{"name": "a.csv", "size_bytes": 3}])
        result = await service.validate_version(created.dataset.id, "1.0.0", {"checksums": True})
        assert result.is_valid is True
        assert [(e.code, e.severity) for e in result.errors] == [("CHECKSUM_PENDING", "warning")]

    async def test_missing_description_warning(self, service: DatasetVersioningService) -> None:
        ds = (await _create(service)).dataset.id
        await service.create_version("alice", ds, {"version": "1.1.0"})
        result = await service.validate_version(ds, "1.1.0")
        assert result.is_valid is True
        assert [e.code for e in result.errors] == ["MISSING_DESCRIPTION"]
        result.raise_for_errors()

    async def test_unknown_dataset(self, service: DatasetVersioningService) -> None:
        with pytest.raises(DatasetNotFoundError):
            await service.validate_version("missing", "1.0.0")


# ======================================================================
# Reconciliation
# ======================================================================


class TestReconcile:
    async def test_rolls_forward_committed_version(
        self,
        service: DatasetVersioningService,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        ds = (await _create(service)).dataset.id
        original = service._finalize

        async def _store_down(*args: Any, **kwargs: Any) -> None:
            raise MetadataStoreError("store went away")

        monkeypatch.setattr(service, "_finalize", _store_down)
        with pytest.raises(MetadataStoreError):
            await _create_v110(service, ds)
        monkeypatch.setattr(service, "_finalize", original)

        assert (await service.get_dataset("alice", ds)).current_version == "1.0.0"
        assert await service.count_pending_operations() == 1

        report = await service.reconcile_pending_operations(older_than=0)
        assert len(report.rolled_forward) == 1
        assert report.failed == []
        assert (await service.get_dataset("alice", ds)).current_version == "1.1.0"
        assert await service.count_pending_operations() == 0

    async def test_store_failure_surfaces_as_metadata_error(
        self, service: DatasetVersioningService, engine: AsyncEngine
    ) -> None:
        ds = (await _create(service)).dataset.id
        async with engine.begin() as conn:
            await conn.execute(text("DROP TABLE dataset_files"))
        with pytest.raises(MetadataStoreError):
            await _create_v110(service, ds)
        assert (await service.get_dataset("alice", ds)).current_version == "1.0.0"
        assert await service.count_pending_operations() == 1

    async def test_repairs_missing_tag(
        self,
        service: DatasetVersioningService,
        repo_backend: FilesystemRepositoryBackend,
        session_factory: async_sessionmaker[AsyncSession],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original_tag = repo_backend.tag

        async def _tag_fails(*args: Any, **kwargs: Any) -> Any:
            raise RepositoryInitError("crashed before tagging")

        monkeypatch.setattr(repo_backend, "tag", _tag_fails)
        with pytest.raises(RepositoryInitError):
            await _create(service)
        monkeypatch.setattr(repo_backend, "tag", original_tag)
        assert await service.count_pending_operations() == 1

        report = await service.reconcile_pending_operations(older_than=0)
        assert len(report.rolled_forward) == 1
        async with session_factory() as session:
            record = (await session.execute(select(DatasetRecord))).scalar_one()
        assert record.status == "active"
        assert record.current_version == "1.0.0"

    async def test_fails_interrupted_provisioning(
        self,
        service: DatasetVersioningService,
        repository: VersionRepositoryManager,
        session_factory: async_sessionmaker[AsyncSession],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def _interrupted(*args: Any, **kwargs: Any) -> Any:
            raise asyncio.CancelledError

        monkeypatch.setattr(repository, "initialize_repository", _interrupted)
        with pytest.raises(asyncio.CancelledError):
            await _create(service)

        report = await service.reconcile_pending_operations(older_than=0)
        assert report.rolled_forward == []
        assert len(report.failed) == 1
        async with session_factory() as session:
            record = (await session.execute(select(DatasetRecord))).scalar_one()
        assert record.status == DATASET_FAILED
        assert await service.count_pending_operations() == 0

    async def test_recent_intents_are_left_alone(
        self,
        service: DatasetVersioningService,
        repository: VersionRepositoryManager,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def _interrupted(*args: Any, **kwargs: Any) -> Any:
            raise asyncio.CancelledError

        monkeypatch.setattr(repository, "initialize_repository", _interrupted)
        with pytest.raises(asyncio.CancelledError):
            await _create(service)

        report = await service.reconcile_pending_operations(older_than=3600)
        assert report.rolled_forward == report.failed == []
        assert await service.count_pending_operations() == 1
