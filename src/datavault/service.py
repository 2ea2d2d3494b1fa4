"""Dataset versioning service: datasets, versions, diffs, rollback, fork, validation.

Every public operation composes three independent systems: the metadata
store (one transaction per step), the version repository and object
storage.  Operations that touch more than one of them follow an
outbox/saga sequence:

1. write an ``OperationIntentRecord`` (and, for new datasets, a
   ``pending`` dataset record) in one transaction;
2. perform repository and storage side effects;
3. in a second transaction write manifest entries, move the dataset
   head, activate the dataset and complete the intent.

A failure before the repository reaches the intended version marks the
intent failed and compensates; a failure after leaves the intent
pending for :meth:`DatasetVersioningService.reconcile_pending_operations`
to roll forward.  Readers only ever see ``active`` datasets.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from datavault.db.models import (
    DATASET_ACTIVE,
    DATASET_FAILED,
    DATASET_PENDING,
    INTENT_COMPLETED,
    INTENT_FAILED,
    INTENT_PENDING,
    DatasetFileRecord,
    DatasetRecord,
    OperationIntentRecord,
)
from datavault.exceptions import (
    AccessDeniedError,
    DatasetNotFoundError,
    ForkSourceNotFoundError,
    InvalidInputError,
    MetadataStoreError,
    ObjectNotFoundError,
    VersionConflictError,
    VersionNotFoundError,
)
from datavault.log import operation_scope
from datavault.repository.diff import compute_delta
from datavault.repository.schemas import FileManifestEntry
from datavault.repository.semver import ROOT_VERSION, SemVer, ensure_successor
from datavault.schemas import (
    CreateDatasetInput,
    CreateDatasetResult,
    CreateVersionInput,
    CreateVersionResult,
    DatasetDescriptor,
    DownloadableFile,
    ReconcileReport,
    ValidationIssue,
    ValidationOptions,
    ValidationResult,
    VersionComparison,
    VersionDetails,
    VersionSummary,
)
from datavault.settings import DatavaultSettings
from datavault.storage.classification import classify, extension_of

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from datavault.repository.manager import VersionRepositoryManager
    from datavault.repository.schemas import CommitRecord, VersionTag
    from datavault.storage.client import ContentStorageClient
    from datavault.storage.schemas import UploadTicket

    BuiltFiles = tuple[list[FileManifestEntry], list[UploadTicket], dict[str, Any]]

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

PUBLIC = "public"
PRIVATE = "private"
PENDING_CHECKSUM_PREFIX = "pending:"

# Intent kinds
CREATE_DATASET = "create_dataset"
CREATE_VERSION = "create_version"
ROLLBACK_VERSION = "rollback_version"
FORK_DATASET = "fork_dataset"

# Kinds whose dataset record and repository only exist because of the intent.
_PROVISIONING_KINDS = frozenset({CREATE_DATASET, FORK_DATASET})


def _parse(model: type[M], data: M | Mapping[str, Any]) -> M:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise InvalidInputError(
            f"Invalid {model.__name__}: {exc.error_count()} error(s)",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def pending_checksum(storage_key: str) -> str:
    """Placeholder for a file whose uploader did not declare a checksum."""
    return PENDING_CHECKSUM_PREFIX + hashlib.sha256(storage_key.encode()).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DatasetVersioningService:
    """Orchestrates the metadata store, version repository and content storage."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        repository: VersionRepositoryManager,
        storage: ContentStorageClient,
        settings: DatavaultSettings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._repository = repository
        self._storage = storage
        self._settings = settings if settings is not None else DatavaultSettings()
        # Held locks stay alive through their holders and waiters.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, dataset_id: str) -> asyncio.Lock:
        """Per-dataset mutex serializing writes to one version history."""
        lock = self._locks.get(dataset_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[dataset_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    async def _load(session: AsyncSession, dataset_id: str) -> DatasetRecord | None:
        result = await session.execute(
            select(DatasetRecord).where(
                DatasetRecord.id == dataset_id,
                DatasetRecord.status == DATASET_ACTIVE,
            )
        )
        return result.scalar_one_or_none()

    async def _get_visible(
        self, session: AsyncSession, owner_id: str, dataset_id: str
    ) -> DatasetRecord:
        """An active dataset the caller owns or that is public."""
        record = await self._load(session, dataset_id)
        if record is None or (record.accessibility == PRIVATE and record.owner_id != owner_id):
            raise DatasetNotFoundError(
                "Dataset not found or access denied", details={"dataset_id": dataset_id}
            )
        return record

    async def _get_owned(
        self, session: AsyncSession, owner_id: str, dataset_id: str
    ) -> DatasetRecord:
        record = await self._get_visible(session, owner_id, dataset_id)
        if record.owner_id != owner_id:
            raise AccessDeniedError(
                "Only the dataset owner can modify it",
                details={"dataset_id": dataset_id, "owner_id": owner_id},
            )
        return record

    async def get_dataset(self, owner_id: str, dataset_id: str) -> DatasetDescriptor:
        with operation_scope("get_dataset"):
            async with self._session_factory() as session:
                record = await self._get_visible(session, owner_id, dataset_id)
                return DatasetDescriptor.model_validate(record)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_limits(
        self,
        sizes: Mapping[str, int],
        *,
        title: str | None = None,
        description: str = "",
        tags: Sequence[str] = (),
    ) -> None:
        """Apply the configured ``DatasetLimits`` to a declaration."""
        limits = self._settings.limits
        cap = limits.max_file_size_bytes
        too_large = sorted(name for name, size in sizes.items() if size > cap)
        if too_large:
            raise InvalidInputError(
                "File size exceeds the configured maximum",
                details={"files": too_large, "max_file_size_bytes": cap},
            )
        violations: dict[str, int] = {}
        if title is not None and len(title) > limits.max_title_length:
            violations["max_title_length"] = limits.max_title_length
        if len(description) > limits.max_description_length:
            violations["max_description_length"] = limits.max_description_length
        if len(tags) > limits.max_tags:
            violations["max_tags"] = limits.max_tags
        if any(len(t) > limits.max_tag_length for t in tags):
            violations["max_tag_length"] = limits.max_tag_length
        if violations:
            raise InvalidInputError("Dataset exceeds the configured limits", details=violations)

    async def _issue_tickets(
        self, owner_id: str, dataset_id: str, files: Sequence[Any], is_private: bool
    ) -> list[UploadTicket]:
        return list(
            await asyncio.gather(
                *(
                    self._storage.get_upload_url(owner_id, dataset_id, f.name, is_private)
                    for f in files
                )
            )
        )

    @staticmethod
    def _entries(files: Sequence[Any], tickets: Sequence[UploadTicket]) -> list[FileManifestEntry]:
        entries = []
        for declared, ticket in zip(files, tickets, strict=True):
            entries.append(
                FileManifestEntry(
                    name=declared.name,
                    size_bytes=declared.size_bytes,
                    content_type=declared.content_type or ticket.content_type,
                    storage_key=ticket.storage_key,
                    checksum=(
                        declared.checksum.lower()
                        if declared.checksum
                        else pending_checksum(ticket.storage_key)
                    ),
                )
            )
        return entries

    async def _with_urls(
        self, entries: Sequence[FileManifestEntry], token: str | None
    ) -> list[DownloadableFile]:
        urls = await asyncio.gather(
            *(self._storage.get_download_url(e.storage_key, token) for e in entries)
        )
        return [
            DownloadableFile(**e.model_dump(), download_url=url)
            for e, url in zip(entries, urls, strict=True)
        ]

    @staticmethod
    def _token_for(record: DatasetRecord) -> str | None:
        return record.owner_id if record.accessibility == PRIVATE else None

    # ------------------------------------------------------------------
    # Saga plumbing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _store_transaction(self) -> AsyncIterator[AsyncSession]:
        """A metadata-store transaction whose driver failures raise ``MetadataStoreError``."""
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as exc:
            raise MetadataStoreError(
                f"Metadata store write failed: {exc.__class__.__name__}"
            ) from exc

    @staticmethod
    def _new_intent(
        kind: str,
        dataset_id: str,
        owner_id: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> OperationIntentRecord:
        return OperationIntentRecord(
            id=str(uuid.uuid4()),
            kind=kind,
            dataset_id=dataset_id,
            owner_id=owner_id,
            idempotency_key=idempotency_key,
            payload=payload,
            status=INTENT_PENDING,
            attempts=1,
        )

    async def _finalize(
        self,
        intent_id: str,
        owner_id: str,
        dataset_id: str,
        commit: CommitRecord,
        expected_head: str | None,
        result: dict[str, Any] | None = None,
    ) -> None:
        """Second saga transaction: manifest rows, head move, intent completion."""
        parent_files: Sequence[FileManifestEntry] = ()
        if commit.parent_version is not None:
            parent = await self._repository.resolve(owner_id, dataset_id, commit.parent_version)
            parent_files = parent.files
        delta = compute_delta(parent_files, commit.files)
        changed = set(delta.added) | set(delta.modified)

        async with self._store_transaction() as session:
            head_matches = (
                DatasetRecord.current_version.is_(None)
                if expected_head is None
                else DatasetRecord.current_version == expected_head
            )
            moved = await session.execute(
                update(DatasetRecord)
                .where(DatasetRecord.id == dataset_id, head_matches)
                .values(
                    current_version=commit.version,
                    status=DATASET_ACTIVE,
                    updated_at=_utcnow(),
                )
            )
            if moved.rowcount == 0:
                raise VersionConflictError(
                    "Dataset head moved concurrently",
                    details={"dataset_id": dataset_id, "expected_head": expected_head},
                )
            for entry in commit.files:
                if entry.name not in changed:
                    continue
                session.add(
                    DatasetFileRecord(
                        dataset_id=dataset_id,
                        version=commit.version,
                        name=entry.name,
                        size_bytes=entry.size_bytes,
                        content_type=entry.content_type,
                        storage_key=entry.storage_key,
                        checksum=entry.checksum,
                        tracked=classify(entry.name).tracked,
                    )
                )
            intent = await session.get(OperationIntentRecord, intent_id)
            if intent is not None:
                intent.status = INTENT_COMPLETED
                intent.error = None
                if result is not None:
                    intent.payload = {**intent.payload, "result": result}

    async def _fail_intent(self, intent_id: str, error: BaseException | str) -> None:
        async with self._store_transaction() as session:
            intent = await session.get(OperationIntentRecord, intent_id)
            if intent is None:
                return
            intent.status = INTENT_FAILED
            intent.error = str(error)
            if intent.kind in _PROVISIONING_KINDS:
                await session.execute(
                    update(DatasetRecord)
                    .where(
                        DatasetRecord.id == intent.dataset_id,
                        DatasetRecord.status == DATASET_PENDING,
                    )
                    .values(status=DATASET_FAILED, updated_at=_utcnow())
                )

    async def _compensate(self, kind: str, owner_id: str, dataset_id: str) -> None:
        if kind not in _PROVISIONING_KINDS:
            return
        try:
            await self._repository.delete_repository(owner_id, dataset_id)
        except Exception:
            logger.exception("Compensation failed for %s %s", kind, dataset_id)

    async def _abort(
        self,
        intent_id: str,
        kind: str,
        owner_id: str,
        dataset_id: str,
        target_version: str,
        error: BaseException,
    ) -> None:
        """Settle an intent whose side effects failed.

        Never raises; the caller re-raises the original error.
        """
        try:
            reached = (
                await self._repository.head_version(owner_id, dataset_id)
            ) == target_version
        except Exception:
            logger.exception("Cannot inspect repository of %s; leaving intent pending", dataset_id)
            return
        if reached:
            logger.error(
                "%s of %s reached the repository but not the metadata store; "
                "left pending for reconciliation: %s",
                kind,
                dataset_id,
                error,
            )
            return
        try:
            await self._fail_intent(intent_id, error)
        except Exception:
            logger.exception("Cannot mark intent %s failed", intent_id)
            return
        await self._compensate(kind, owner_id, dataset_id)
        logger.warning("%s of %s failed and was compensated: %s", kind, dataset_id, error)

    # ------------------------------------------------------------------
    # createDataset
    # ------------------------------------------------------------------

    async def _replay(self, idempotency_key: str) -> CreateDatasetResult | None:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                select(OperationIntentRecord).where(
                    OperationIntentRecord.idempotency_key == idempotency_key
                )
            )
            intent = result.scalar_one_or_none()
            if intent is None:
                return None
            if intent.status == INTENT_COMPLETED and "result" in intent.payload:
                logger.info("Replaying create_dataset for idempotency key %s", idempotency_key)
                return CreateDatasetResult.model_validate(intent.payload["result"])
            if intent.status == INTENT_PENDING:
                raise VersionConflictError(
                    "An operation with this idempotency key is still in progress",
                    details={"idempotency_key": idempotency_key, "dataset_id": intent.dataset_id},
                )
            # A failed attempt releases its key for a fresh one.
            intent.idempotency_key = None
            return None

    async def create_dataset(
        self,
        owner_id: str,
        data: CreateDatasetInput | Mapping[str, Any],
        *,
        idempotency_key: str | None = None,
    ) -> CreateDatasetResult:
        """Create a dataset and its root version ``1.0.0``.

        Returns the dataset plus one upload URL per declared file.  With an
        *idempotency_key*, replays of a completed call return the original
        result instead of creating a second dataset.
        """
        with operation_scope("create_dataset"):
            payload = _parse(CreateDatasetInput, data)
            self._check_limits(
                {f.name: f.size_bytes for f in payload.files},
                title=payload.title,
                description=payload.description,
                tags=payload.tags,
            )
            names = [f.name for f in payload.files]
            if len(set(names)) != len(names):
                raise InvalidInputError("Duplicate file names", details={"files": names})

            if idempotency_key is not None:
                replay = await self._replay(idempotency_key)
                if replay is not None:
                    return replay

            dataset_id = str(uuid.uuid4())
            record = DatasetRecord(
                id=dataset_id,
                owner_id=owner_id,
                title=payload.title,
                description=payload.description,
                tags=list(payload.tags),
                accessibility=PRIVATE if payload.is_private else PUBLIC,
                current_version=None,
                status=DATASET_PENDING,
            )
            intent = self._new_intent(
                CREATE_DATASET,
                dataset_id,
                owner_id,
                {"version": ROOT_VERSION, "expected_head": None},
                idempotency_key,
            )
            try:
                async with self._session_factory() as session, session.begin():
                    session.add(record)
                    session.add(intent)
            except IntegrityError:
                if idempotency_key is not None:
                    replay = await self._replay(idempotency_key)
                    if replay is not None:
                        return replay
                raise

            try:
                tickets = await self._issue_tickets(
                    owner_id, dataset_id, payload.files, payload.is_private
                )
                entries = self._entries(payload.files, tickets)
                root = await self._repository.initialize_repository(
                    owner_id,
                    dataset_id,
                    {
                        "title": payload.title,
                        "description": payload.description,
                        "tags": list(payload.tags),
                        "creator": owner_id,
                        "license": payload.license,
                        "version": ROOT_VERSION,
                        "accessibility": record.accessibility,
                    },
                    files=entries,
                    metadata=payload.metadata,
                    author=owner_id,
                )
            except Exception as exc:
                await self._abort(
                    intent.id, CREATE_DATASET, owner_id, dataset_id, ROOT_VERSION, exc
                )
                raise

            descriptor = DatasetDescriptor.model_validate(record).model_copy(
                update={"current_version": ROOT_VERSION, "status": DATASET_ACTIVE}
            )
            result = CreateDatasetResult(dataset=descriptor, file_upload_urls=tickets)
            await self._finalize(
                intent.id, owner_id, dataset_id, root, None, result.model_dump(mode="json")
            )
            logger.info(
                "Created dataset %s for %s with %d file(s)", dataset_id, owner_id, len(tickets)
            )
            return result

    # ------------------------------------------------------------------
    # createVersion / rollbackVersion
    # ------------------------------------------------------------------

    async def _commit_version(
        self,
        kind: str,
        record: DatasetRecord,
        version: str,
        description: str,
        build_files: Callable[[], Awaitable[BuiltFiles]],
        metadata: Mapping[str, Any] | None,
    ) -> tuple[CommitRecord, list[UploadTicket]]:
        """Intent, repository commit, finalize; caller holds the dataset lock."""
        head = record.current_version
        intent = self._new_intent(
            kind, record.id, record.owner_id, {"version": version, "expected_head": head}
        )
        async with self._store_transaction() as session:
            session.add(intent)

        try:
            files, tickets, inherited = await build_files()
            commit = await self._repository.create_version(
                record.owner_id,
                record.id,
                version,
                description,
                files=files,
                metadata=metadata if metadata is not None else inherited,
                author=record.owner_id,
            )
        except Exception as exc:
            await self._abort(intent.id, kind, record.owner_id, record.id, version, exc)
            raise

        await self._finalize(intent.id, record.owner_id, record.id, commit, head)
        return commit, tickets

    async def create_version(
        self,
        owner_id: str,
        dataset_id: str,
        data: CreateVersionInput | Mapping[str, Any],
    ) -> CreateVersionResult:
        """Append a version on top of the current head.

        The new file set is the parent's, minus ``removed``, with the
        declared files added or replaced.  Upload URLs are issued for the
        declared files.
        """
        with operation_scope("create_version"):
            payload = _parse(CreateVersionInput, data)
            SemVer.parse(payload.version)
            self._check_limits(
                {f.name: f.size_bytes for f in payload.files}, description=payload.description
            )

            async with self._lock_for(dataset_id):
                async with self._session_factory() as session:
                    record = await self._get_owned(session, owner_id, dataset_id)
                if await self._repository.has_version(owner_id, dataset_id, payload.version):
                    raise VersionConflictError(
                        f"Version {payload.version} already exists",
                        details={"dataset_id": dataset_id, "version": payload.version},
                    )
                ensure_successor(payload.version, record.current_version)
                head = record.current_version or ROOT_VERSION

                async def _build() -> BuiltFiles:
                    parent = await self._repository.resolve(owner_id, dataset_id, head)
                    current = {f.name: f for f in parent.files}
                    missing = sorted(set(payload.removed) - set(current))
                    if missing:
                        raise InvalidInputError(
                            "Removed files are not part of the parent version",
                            details={"files": missing, "parent_version": head},
                        )
                    for name in payload.removed:
                        current.pop(name)
                    tickets = await self._issue_tickets(
                        owner_id, dataset_id, payload.files, record.accessibility == PRIVATE
                    )
                    for entry in self._entries(payload.files, tickets):
                        current[entry.name] = entry
                    return list(current.values()), tickets, parent.metadata

                commit, tickets = await self._commit_version(
                    CREATE_VERSION,
                    record,
                    payload.version,
                    payload.description,
                    _build,
                    payload.metadata,
                )

            logger.info("Created version %s of dataset %s", commit.version, dataset_id)
            return CreateVersionResult(
                dataset_id=dataset_id,
                version=commit.version,
                parent_version=commit.parent_version,
                commit_id=commit.commit_id,
                file_upload_urls=tickets,
            )

    async def rollback_version(
        self,
        owner_id: str,
        dataset_id: str,
        target_version: str,
        *,
        new_version: str | None = None,
    ) -> VersionDetails:
        """Append a version whose files are exactly those of *target_version*.

        The new label defaults to a patch bump of the current head.  History
        is never rewritten.
        """
        with operation_scope("rollback_version"):
            SemVer.parse(target_version)
            async with self._lock_for(dataset_id):
                async with self._session_factory() as session:
                    record = await self._get_owned(session, owner_id, dataset_id)
                head = record.current_version or ROOT_VERSION
                target = await self._repository.resolve(owner_id, dataset_id, target_version)
                label = new_version or str(SemVer.parse(head).bump_patch())
                if await self._repository.has_version(owner_id, dataset_id, label):
                    raise VersionConflictError(
                        f"Version {label} already exists",
                        details={"dataset_id": dataset_id, "version": label},
                    )
                ensure_successor(label, head)

                async def _build() -> BuiltFiles:
                    return list(target.files), [], target.metadata

                await self._commit_version(
                    ROLLBACK_VERSION,
                    record,
                    label,
                    f"Rollback to version {target_version}",
                    _build,
                    target.metadata,
                )

            logger.info("Rolled %s back to %s as %s", dataset_id, target_version, label)
            return await self._details(record, label)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _details(self, record: DatasetRecord, version: str) -> VersionDetails:
        meta = await self._repository.get_version_metadata(record.owner_id, record.id, version)
        commit = await self._repository.resolve(record.owner_id, record.id, version)
        changed = set(meta.changes.added) | set(meta.changes.modified)
        entries = [f for f in commit.files if f.name in changed]
        files = await self._with_urls(entries, self._token_for(record))
        return VersionDetails(**meta.model_dump(), files=files)

    async def get_version_metadata(
        self, owner_id: str, dataset_id: str, version: str
    ) -> VersionDetails:
        """Version record with delta, statistics and URLs for changed files."""
        with operation_scope("get_version_metadata"):
            SemVer.parse(version)
            async with self._session_factory() as session:
                record = await self._get_visible(session, owner_id, dataset_id)
            return await self._details(record, version)

    async def compare_versions(
        self, owner_id: str, dataset_id: str, from_version: str, to_version: str
    ) -> VersionComparison:
        """Diff two versions; changed files carry fresh download URLs."""
        with operation_scope("compare_versions"):
            async with self._session_factory() as session:
                record = await self._get_visible(session, owner_id, dataset_id)
            diff = await self._repository.get_diff(
                record.owner_id, dataset_id, from_version, to_version
            )
            token = self._token_for(record)
            keys = {f.name: f.storage_key for f in diff.added}
            keys.update({m.name: m.storage_key for m in diff.modified})
            keys.update({f.name: f.storage_key for f in diff.removed})
            names = sorted(keys)
            urls = await asyncio.gather(
                *(self._storage.get_download_url(keys[n], token) for n in names)
            )
            return VersionComparison(
                **diff.model_dump(), download_urls=dict(zip(names, urls, strict=True))
            )

    async def list_versions(self, owner_id: str, dataset_id: str) -> list[VersionSummary]:
        with operation_scope("list_versions"):
            async with self._session_factory() as session:
                record = await self._get_visible(session, owner_id, dataset_id)
            history = await self._repository.list_versions(record.owner_id, dataset_id)
            return [
                VersionSummary(
                    version=c.version,
                    parent_version=c.parent_version,
                    commit_id=c.commit_id,
                    description=c.description,
                    author=c.author,
                    file_count=len(c.files),
                    created_at=c.created_at,
                )
                for c in history
            ]

    async def get_dataset_files(
        self, owner_id: str, dataset_id: str, version: str | None = None
    ) -> list[DownloadableFile]:
        """All files of *version* (default: current) with download URLs."""
        with operation_scope("get_dataset_files"):
            async with self._session_factory() as session:
                record = await self._get_visible(session, owner_id, dataset_id)
            target = version or record.current_version or ROOT_VERSION
            entries = await self._repository.get_file_list(record.owner_id, dataset_id, target)
            return await self._with_urls(entries, self._token_for(record))

    async def tag_version(
        self,
        owner_id: str,
        dataset_id: str,
        version: str,
        name: str,
        *,
        description: str = "",
    ) -> VersionTag:
        with operation_scope("tag_version"):
            async with self._lock_for(dataset_id):
                async with self._session_factory() as session:
                    await self._get_owned(session, owner_id, dataset_id)
                return await self._repository.tag_version(
                    owner_id,
                    dataset_id,
                    version,
                    name,
                    description=description,
                    created_by=owner_id,
                )

    # ------------------------------------------------------------------
    # forkDataset
    # ------------------------------------------------------------------

    async def fork_dataset(
        self, owner_id: str, source_dataset_id: str, target_version: str
    ) -> DatasetDescriptor:
        """Create a new dataset seeded from *target_version* of a visible source.

        The fork gets its own root ``1.0.0`` and independent history; its
        manifest references the source's stored objects.
        """
        with operation_scope("fork_dataset"):
            SemVer.parse(target_version)
            async with self._session_factory() as session:
                source = await self._get_visible(session, owner_id, source_dataset_id)
            if not await self._repository.has_version(
                source.owner_id, source_dataset_id, target_version
            ):
                raise ForkSourceNotFoundError(
                    f"Version {target_version} not found in dataset {source_dataset_id}",
                    details={"dataset_id": source_dataset_id, "version": target_version},
                )

            dataset_id = str(uuid.uuid4())
            record = DatasetRecord(
                id=dataset_id,
                owner_id=owner_id,
                title=f"{source.title}-fork",
                description=source.description,
                tags=list(source.tags),
                accessibility=source.accessibility,
                current_version=None,
                status=DATASET_PENDING,
                forked_from_dataset_id=source_dataset_id,
                forked_from_version=target_version,
            )
            intent = self._new_intent(
                FORK_DATASET,
                dataset_id,
                owner_id,
                {
                    "version": ROOT_VERSION,
                    "expected_head": None,
                    "source_dataset_id": source_dataset_id,
                    "source_version": target_version,
                },
            )
            async with self._session_factory() as session, session.begin():
                session.add(record)
                session.add(intent)

            try:
                root = await self._repository.fork_repository(
                    source.owner_id,
                    source_dataset_id,
                    target_version,
                    owner_id,
                    dataset_id,
                    {
                        "title": record.title,
                        "description": record.description,
                        "tags": list(record.tags),
                        "creator": owner_id,
                        "version": ROOT_VERSION,
                        "accessibility": record.accessibility,
                        "forked_from": f"{source_dataset_id}@{target_version}",
                    },
                    author=owner_id,
                )
            except Exception as exc:
                await self._abort(intent.id, FORK_DATASET, owner_id, dataset_id, ROOT_VERSION, exc)
                raise

            await self._finalize(intent.id, owner_id, dataset_id, root, None)
            logger.info(
                "Forked dataset %s@%s into %s", source_dataset_id, target_version, dataset_id
            )
            return DatasetDescriptor.model_validate(record).model_copy(
                update={"current_version": ROOT_VERSION, "status": DATASET_ACTIVE}
            )

    # ------------------------------------------------------------------
    # deleteDataset
    # ------------------------------------------------------------------

    async def delete_dataset(self, owner_id: str, dataset_id: str) -> None:
        """Remove the dataset record, its manifest and its history.

        Stored objects are deleted unless another dataset's manifest still
        references them.
        """
        with operation_scope("delete_dataset"):
            async with self._lock_for(dataset_id):
                async with self._session_factory() as session, session.begin():
                    record = await self._get_owned(session, owner_id, dataset_id)
                    result = await session.execute(
                        select(DatasetFileRecord.storage_key).where(
                            DatasetFileRecord.dataset_id == dataset_id
                        )
                    )
                    keys = set(result.scalars())
                    await session.execute(
                        delete(DatasetFileRecord).where(DatasetFileRecord.dataset_id == dataset_id)
                    )
                    await session.delete(record)

                await self._repository.delete_repository(owner_id, dataset_id)

                shared: set[str] = set()
                if keys:
                    async with self._session_factory() as session:
                        result = await session.execute(
                            select(DatasetFileRecord.storage_key).where(
                                DatasetFileRecord.storage_key.in_(keys)
                            )
                        )
                        shared = set(result.scalars())
                orphaned = sorted(keys - shared)
                for key in orphaned:
                    await self._storage.delete_content(key)

            logger.info(
                "Deleted dataset %s (%d object(s) removed, %d shared)",
                dataset_id,
                len(orphaned),
                len(shared),
            )

    # ------------------------------------------------------------------
    # validateVersion
    # ------------------------------------------------------------------

    async def validate_version(
        self,
        dataset_id: str,
        version: str,
        options: ValidationOptions | Mapping[str, Any] | None = None,
    ) -> ValidationResult:
        """Compute metrics and integrity issues for one version.

        Validation problems are returned in the result; only infrastructure
        failures raise.
        """
        with operation_scope("validate_version"):
            opts = _parse(ValidationOptions, options or {})
            async with self._session_factory() as session:
                record = await self._load(session, dataset_id)
            if record is None:
                raise DatasetNotFoundError(
                    "Dataset not found", details={"dataset_id": dataset_id}
                )
            meta = await self._repository.get_version_metadata(record.owner_id, dataset_id, version)
            files = await self._repository.get_file_list(record.owner_id, dataset_id, version)

            total = sum(f.size_bytes for f in files)
            metrics: dict[str, float] = {
                "total_files": len(files),
                "total_size": total,
                "average_file_size": total / len(files) if files else 0,
            }
            for f in files:
                key = f"ext.{extension_of(f.name).lstrip('.') or 'none'}"
                metrics[key] = metrics.get(key, 0) + 1

            issues: list[ValidationIssue] = []
            limit = self._settings.limits.max_file_size_bytes
            for f in files:
                if f.size_bytes > limit:
                    issues.append(
                        ValidationIssue(
                            code="FILE_TOO_LARGE",
                            message=f"File {f.name} exceeds {limit} bytes",
                            path=f.name,
                        )
                    )
            if opts.metadata and not meta.description.strip():
                issues.append(
                    ValidationIssue(
                        code="MISSING_DESCRIPTION",
                        severity="warning",
                        message="Version has no change description",
                        path="description",
                    )
                )
            if opts.checksums:
                issues.extend(await self._check_integrity(files))

            is_valid = not any(i.severity == "error" for i in issues)
            logger.info(
                "Validated %s@%s: valid=%s, %d issue(s)", dataset_id, version, is_valid, len(issues)
            )
            return ValidationResult(is_valid=is_valid, errors=issues, metrics=metrics)

    async def _check_integrity(self, files: Sequence[FileManifestEntry]) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        for f in files:
            if f.checksum.startswith(PENDING_CHECKSUM_PREFIX):
                issues.append(
                    ValidationIssue(
                        code="CHECKSUM_PENDING",
                        severity="warning",
                        message=f"No checksum was recorded for {f.name}",
                        path=f.name,
                    )
                )
                continue
            try:
                ok = await self._storage.validate_checksum(f.storage_key, f.checksum)
            except ObjectNotFoundError:
                issues.append(
                    ValidationIssue(
                        code="MISSING_OBJECT",
                        message=f"Stored object missing for file: {f.name}",
                        path=f.name,
                    )
                )
                continue
            if not ok:
                issues.append(
                    ValidationIssue(
                        code="INVALID_CHECKSUM",
                        message=f"Invalid checksum for file: {f.name}",
                        path=f.name,
                    )
                )
        return issues

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_pending_operations(
        self, older_than: float | None = None
    ) -> ReconcileReport:
        """Settle intents left pending by interrupted operations.

        An intent whose repository already holds the intended version is
        rolled forward; any other is marked failed and compensated.
        """
        with operation_scope("reconcile"):
            age = self._settings.reconcile_after_seconds if older_than is None else older_than
            cutoff = _utcnow() - timedelta(seconds=age)
            async with self._session_factory() as session:
                result = await session.execute(
                    select(OperationIntentRecord)
                    .where(
                        OperationIntentRecord.status == INTENT_PENDING,
                        OperationIntentRecord.created_at <= cutoff,
                    )
                    .order_by(OperationIntentRecord.created_at)
                )
                intents = list(result.scalars().all())

            report = ReconcileReport()
            for intent in intents:
                async with self._lock_for(intent.dataset_id):
                    if await self._reconcile_one(intent):
                        report.rolled_forward.append(intent.id)
                    else:
                        report.failed.append(intent.id)
            logger.info(
                "Reconciled %d intent(s): %d rolled forward, %d failed",
                len(intents),
                len(report.rolled_forward),
                len(report.failed),
            )
            return report

    async def _reconcile_one(self, intent: OperationIntentRecord) -> bool:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(OperationIntentRecord)
                .where(OperationIntentRecord.id == intent.id)
                .values(attempts=OperationIntentRecord.attempts + 1)
            )
        target = intent.payload.get("version")
        head = await self._repository.ensure_head_tagged(intent.owner_id, intent.dataset_id)
        if head is not None and head.version == target:
            try:
                await self._finalize(
                    intent.id,
                    intent.owner_id,
                    intent.dataset_id,
                    head,
                    intent.payload.get("expected_head"),
                )
            except VersionConflictError as exc:
                await self._fail_intent(intent.id, exc)
                return False
            logger.info("Rolled forward %s of %s to %s", intent.kind, intent.dataset_id, target)
            return True

        await self._fail_intent(intent.id, "Interrupted before the repository was updated")
        await self._compensate(intent.kind, intent.owner_id, intent.dataset_id)
        logger.warning("Marked %s of %s failed", intent.kind, intent.dataset_id)
        return False

    async def count_pending_operations(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(OperationIntentRecord)
                .where(OperationIntentRecord.status == INTENT_PENDING)
            )
            return int(result.scalar_one())
