"""Version-repository backends.

Provides an abstract ``VersionRepositoryBackend`` and a concrete
implementation:

* **FilesystemRepositoryBackend**: default, keeps one working tree per
  dataset under ``{base_dir}/{owner}/{dataset}/`` and an embedded,
  content-addressed commit store in ``.dvrepo/`` beside it.

The rest of the engine only talks to the abstract interface; a backend
wrapping a real version-control toolchain or a commit graph kept in the
metadata store can be dropped in without touching callers.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import shutil
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from datavault.exceptions import (
    InvalidInputError,
    RepositoryInitError,
    VersionConflictError,
    VersionNotFoundError,
)
from datavault.repository.diff import compute_file_diff
from datavault.repository.schemas import CommitRecord, FileManifestEntry, VersionTag

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from datavault.repository.schemas import VersionDiff

logger = logging.getLogger(__name__)

SKELETON_DIRS = (
    "data",
    "metadata/versions",
    "metadata/stats",
    "metadata/schema",
    "scripts",
    "docs",
)

_SEGMENT_RE = re.compile(r"^[\w.\-]+$")


def _check_segment(value: str, what: str) -> str:
    if not _SEGMENT_RE.match(value) or value in (".", ".."):
        raise InvalidInputError(f"Invalid {what}: {value!r}", details={what: value})
    return value


def compute_commit_id(
    *,
    parent_commit: str | None,
    version: str,
    files: Sequence[FileManifestEntry],
    metadata: Mapping[str, Any],
) -> str:
    """Deterministic identifier of a snapshot.

    Only the parent, version label, file set and metadata feed the
    digest; timestamps and authorship do not, so the same inputs always
    yield the same identifier.
    """
    payload = {
        "parent": parent_commit,
        "version": version,
        "files": [f.model_dump() for f in sorted(files, key=lambda f: f.name)],
        "metadata": dict(metadata),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class VersionRepositoryBackend(ABC):
    """Abstract base for per-dataset commit/tag stores."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short identifier for this backend."""

    @abstractmethod
    async def init(
        self, owner_id: str, dataset_id: str, artifacts: Mapping[str, str]
    ) -> None:
        """Provision an empty repository and write its descriptive *artifacts*."""

    @abstractmethod
    async def exists(self, owner_id: str, dataset_id: str) -> bool:
        """Return ``True`` if a repository has been provisioned."""

    @abstractmethod
    async def commit(
        self,
        owner_id: str,
        dataset_id: str,
        *,
        version: str,
        files: Sequence[FileManifestEntry],
        metadata: Mapping[str, Any] | None = None,
        description: str = "",
        author: str = "",
        artifacts: Mapping[str, str] | None = None,
    ) -> CommitRecord:
        """Record a snapshot whose parent is the current head, and advance the head."""

    @abstractmethod
    async def tag(
        self,
        owner_id: str,
        dataset_id: str,
        name: str,
        commit_id: str,
        *,
        description: str = "",
        created_by: str = "",
    ) -> VersionTag:
        """Create an immutable tag; fails if it exists or the commit does not."""

    @abstractmethod
    async def get_tag(self, owner_id: str, dataset_id: str, name: str) -> VersionTag:
        """Return the tag *name*; raises :class:`VersionNotFoundError` if absent."""

    @abstractmethod
    async def read_commit(self, owner_id: str, dataset_id: str, commit_id: str) -> CommitRecord:
        """Return a stored snapshot; raises :class:`VersionNotFoundError` if absent."""

    @abstractmethod
    async def head(self, owner_id: str, dataset_id: str) -> CommitRecord | None:
        """Return the newest snapshot, or ``None`` for an empty repository."""

    @abstractmethod
    async def list_tags(self, owner_id: str, dataset_id: str) -> list[VersionTag]:
        """All tags of a repository, oldest first."""

    @abstractmethod
    async def delete(self, owner_id: str, dataset_id: str) -> None:
        """Remove a repository and its history (no error if absent)."""

    # Derived operations -------------------------------------------------

    async def resolve_tag(self, owner_id: str, dataset_id: str, name: str) -> CommitRecord:
        tag = await self.get_tag(owner_id, dataset_id, name)
        return await self.read_commit(owner_id, dataset_id, tag.commit_id)

    async def list_files(
        self, owner_id: str, dataset_id: str, name: str
    ) -> list[FileManifestEntry]:
        commit = await self.resolve_tag(owner_id, dataset_id, name)
        return sorted(commit.files, key=lambda f: f.name)

    async def diff(
        self, owner_id: str, dataset_id: str, from_tag: str, to_tag: str
    ) -> VersionDiff:
        old, new = await asyncio.gather(
            self.resolve_tag(owner_id, dataset_id, from_tag),
            self.resolve_tag(owner_id, dataset_id, to_tag),
        )
        return compute_file_diff(
            old.files,
            new.files,
            from_version=old.version,
            to_version=new.version,
            old_metadata=old.metadata,
            new_metadata=new.metadata,
        )

    async def fork(
        self,
        source_owner_id: str,
        source_dataset_id: str,
        source_tag: str,
        target_owner_id: str,
        target_dataset_id: str,
        *,
        version: str,
        description: str,
        author: str,
        artifacts: Mapping[str, str],
    ) -> CommitRecord:
        """Seed a new repository with the snapshot behind *source_tag*.

        The new history starts at a fresh root; nothing links it back to
        the source repository afterwards.
        """
        source = await self.resolve_tag(source_owner_id, source_dataset_id, source_tag)
        await self.init(target_owner_id, target_dataset_id, artifacts)
        return await self.commit(
            target_owner_id,
            target_dataset_id,
            version=version,
            files=source.files,
            metadata=source.metadata,
            description=description,
            author=author,
        )


# ======================================================================
# Filesystem (default)
# ======================================================================


class FilesystemRepositoryBackend(VersionRepositoryBackend):
    """Working trees plus a JSON commit store on the local filesystem.

    Layout of one repository::

        data/  metadata/{versions,stats,schema}/  scripts/  docs/
        dataset_info.json  README.md  .dvtrack
        .dvrepo/HEAD
        .dvrepo/objects/<commit_id>.json
        .dvrepo/refs/tags/<name>.json
    """

    @property
    def provider_name(self) -> str:
        return "filesystem"

    def __init__(
        self,
        base_dir: str = "data/repositories",
        *,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._base = Path(base_dir)
        self._now = now

    def repo_path(self, owner_id: str, dataset_id: str) -> Path:
        return (
            self._base
            / _check_segment(owner_id, "owner_id")
            / _check_segment(dataset_id, "dataset_id")
        )

    def _store(self, owner_id: str, dataset_id: str) -> Path:
        return self.repo_path(owner_id, dataset_id) / ".dvrepo"

    @staticmethod
    def _write_atomic(path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)

    def _write_artifacts(self, root: Path, artifacts: Mapping[str, str]) -> None:
        for relative, text in artifacts.items():
            target = (root / relative).resolve()
            if not target.is_relative_to(root.resolve()):
                msg = f"Path traversal detected: {relative}"
                raise ValueError(msg)
            self._write_atomic(target, text)

    # -- lifecycle -------------------------------------------------------

    async def init(
        self, owner_id: str, dataset_id: str, artifacts: Mapping[str, str]
    ) -> None:
        root = self.repo_path(owner_id, dataset_id)

        def _init() -> None:
            for directory in SKELETON_DIRS:
                (root / directory).mkdir(parents=True, exist_ok=True)
            for directory in ("objects", "refs/tags"):
                (root / ".dvrepo" / directory).mkdir(parents=True, exist_ok=True)
            self._write_artifacts(root, artifacts)

        try:
            await asyncio.to_thread(_init)
        except OSError as exc:
            raise RepositoryInitError(
                f"Cannot initialize repository at {root}: {exc}",
                details={"owner_id": owner_id, "dataset_id": dataset_id},
            ) from exc
        logger.info("Initialized repository %s/%s", owner_id, dataset_id)

    async def exists(self, owner_id: str, dataset_id: str) -> bool:
        return self._store(owner_id, dataset_id).is_dir()

    async def delete(self, owner_id: str, dataset_id: str) -> None:
        root = self.repo_path(owner_id, dataset_id)
        if not root.exists():
            return
        await asyncio.to_thread(shutil.rmtree, root)
        logger.info("Deleted repository %s/%s", owner_id, dataset_id)

    # -- commits ---------------------------------------------------------

    def _read_json(self, path: Path) -> dict[str, Any]:
        return json.loads(path.read_text(encoding="utf-8"))

    async def read_commit(self, owner_id: str, dataset_id: str, commit_id: str) -> CommitRecord:
        path = self._store(owner_id, dataset_id) / "objects" / f"{commit_id}.json"
        if not path.is_file():
            raise VersionNotFoundError(
                f"Commit not found: {commit_id}",
                details={"dataset_id": dataset_id, "commit_id": commit_id},
            )
        data = await asyncio.to_thread(self._read_json, path)
        return CommitRecord.model_validate(data)

    async def head(self, owner_id: str, dataset_id: str) -> CommitRecord | None:
        head_file = self._store(owner_id, dataset_id) / "HEAD"
        if not head_file.is_file():
            return None
        commit_id = (await asyncio.to_thread(head_file.read_text, "utf-8")).strip()
        if not commit_id:
            return None
        return await self.read_commit(owner_id, dataset_id, commit_id)

    async def commit(
        self,
        owner_id: str,
        dataset_id: str,
        *,
        version: str,
        files: Sequence[FileManifestEntry],
        metadata: Mapping[str, Any] | None = None,
        description: str = "",
        author: str = "",
        artifacts: Mapping[str, str] | None = None,
    ) -> CommitRecord:
        if not await self.exists(owner_id, dataset_id):
            raise VersionNotFoundError(
                f"Repository not found: {owner_id}/{dataset_id}",
                details={"owner_id": owner_id, "dataset_id": dataset_id},
            )
        parent = await self.head(owner_id, dataset_id)
        metadata = dict(metadata or {})
        ordered = sorted(files, key=lambda f: f.name)
        commit_id = compute_commit_id(
            parent_commit=parent.commit_id if parent else None,
            version=version,
            files=ordered,
            metadata=metadata,
        )
        record = CommitRecord(
            commit_id=commit_id,
            version=version,
            parent_version=parent.version if parent else None,
            parent_commit=parent.commit_id if parent else None,
            description=description,
            author=author,
            files=ordered,
            metadata=metadata,
            created_at=self._now(),
        )
        root = self.repo_path(owner_id, dataset_id)
        store = root / ".dvrepo"

        def _write() -> None:
            if artifacts:
                self._write_artifacts(root, artifacts)
            self._write_atomic(
                store / "objects" / f"{commit_id}.json", record.model_dump_json(indent=2)
            )
            # The head moves last so a crash never leaves it on a missing object.
            self._write_atomic(store / "HEAD", commit_id + "\n")

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise RepositoryInitError(
                f"Cannot write commit for {version}: {exc}",
                details={"dataset_id": dataset_id, "version": version},
            ) from exc
        logger.info("Committed %s/%s %s (%s)", owner_id, dataset_id, version, commit_id[:12])
        return record

    # -- tags ------------------------------------------------------------

    def _tag_path(self, owner_id: str, dataset_id: str, name: str) -> Path:
        tags_dir = self._store(owner_id, dataset_id) / "refs" / "tags"
        return tags_dir / f"{_check_segment(name, 'tag')}.json"

    async def tag(
        self,
        owner_id: str,
        dataset_id: str,
        name: str,
        commit_id: str,
        *,
        description: str = "",
        created_by: str = "",
    ) -> VersionTag:
        path = self._tag_path(owner_id, dataset_id, name)
        if path.exists():
            raise VersionConflictError(
                f"Tag already exists: {name}", details={"dataset_id": dataset_id, "tag": name}
            )
        commit = await self.read_commit(owner_id, dataset_id, commit_id)
        tag = VersionTag(
            name=name,
            version=commit.version,
            commit_id=commit_id,
            description=description,
            created_by=created_by,
            created_at=self._now(),
        )

        def _create() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Exclusive create: a tag never moves.
            with path.open("x", encoding="utf-8") as fh:
                fh.write(tag.model_dump_json(indent=2))

        try:
            await asyncio.to_thread(_create)
        except FileExistsError as exc:
            raise VersionConflictError(
                f"Tag already exists: {name}", details={"dataset_id": dataset_id, "tag": name}
            ) from exc
        logger.info("Tagged %s/%s %s -> %s", owner_id, dataset_id, name, commit.version)
        return tag

    async def get_tag(self, owner_id: str, dataset_id: str, name: str) -> VersionTag:
        path = self._tag_path(owner_id, dataset_id, name)
        if not path.is_file():
            raise VersionNotFoundError(
                f"Version tag not found: {name}", details={"dataset_id": dataset_id, "tag": name}
            )
        return VersionTag.model_validate(await asyncio.to_thread(self._read_json, path))

    async def list_tags(self, owner_id: str, dataset_id: str) -> list[VersionTag]:
        tags_dir = self._store(owner_id, dataset_id) / "refs" / "tags"
        if not tags_dir.is_dir():
            return []

        def _load() -> list[VersionTag]:
            return [
                VersionTag.model_validate(self._read_json(p))
                for p in tags_dir.glob("*.json")
                if not p.name.startswith(".")
            ]

        tags = await asyncio.to_thread(_load)
        return sorted(tags, key=lambda t: (t.created_at, t.name))
