"""Version repository manager: per-dataset commit graph, tags, diffs, forks."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from datavault.exceptions import (
    ForkSourceNotFoundError,
    InvalidInputError,
    VersionConflictError,
    VersionNotFoundError,
)
from datavault.repository.diff import compute_delta
from datavault.repository.schemas import VersionMetadata, VersionStats
from datavault.repository.semver import (
    ROOT_VERSION,
    TAG_PREFIX,
    SemVer,
    ensure_successor,
    is_valid,
    tag_name,
)

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from datavault.repository.backend import VersionRepositoryBackend
    from datavault.repository.schemas import (
        CommitRecord,
        FileManifestEntry,
        VersionDiff,
        VersionTag,
    )

logger = logging.getLogger(__name__)

DEFAULT_TRACKED_EXTENSIONS = ("parquet", "arrow", "bin", "zip", "gz", "tar", "pdf")


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, sort_keys=True, default=str) + "\n"


def render_readme(info: Mapping[str, Any]) -> str:
    tags = "\n".join(f"- {t}" for t in info.get("tags", [])) or "- (none)"
    return (
        f"# {info.get('title', 'Untitled dataset')}\n\n"
        f"{info.get('description', '')}\n\n"
        "## Dataset Information\n"
        f"- Creator: {info.get('creator', '')}\n"
        f"- Version: {info.get('version', ROOT_VERSION)}\n"
        f"- License: {info.get('license', 'unspecified')}\n\n"
        "## Tags\n"
        f"{tags}\n\n"
        "## File Structure\n"
        "```\n"
        "data/       # Dataset files\n"
        "metadata/   # Metadata and versioning information\n"
        "scripts/    # Loading and processing scripts\n"
        "docs/       # Additional documentation\n"
        "```\n"
    )


def render_tracking_rules(extensions: Sequence[str]) -> str:
    """One rule per size-tracked pattern, plus the metadata files."""
    lines = ["# Size-tracked files"]
    lines += [f"*.{ext.lstrip('.')} tracked" for ext in extensions]
    lines += ["", "# Metadata", "dataset_info.json tracked", "metadata/**/* tracked", ""]
    return "\n".join(lines)


def _stats_of(files: Sequence[FileManifestEntry]) -> VersionStats:
    return VersionStats(file_count=len(files), total_size=sum(f.size_bytes for f in files))


class VersionRepositoryManager:
    """Git-like version history per dataset on top of a repository backend.

    History is linear: every version has at most one parent, which must
    be the head at the time it is committed.  Each version is tagged
    ``v<version>`` and tags never move.
    """

    def __init__(
        self,
        backend: VersionRepositoryBackend,
        *,
        tracked_extensions: Sequence[str] = DEFAULT_TRACKED_EXTENSIONS,
    ) -> None:
        self._backend = backend
        self._tracked = tuple(tracked_extensions)

    @property
    def backend(self) -> VersionRepositoryBackend:
        return self._backend

    def _skeleton_artifacts(self, info: Mapping[str, Any]) -> dict[str, str]:
        return {
            "dataset_info.json": _dump(dict(info)),
            "README.md": render_readme(info),
            ".dvtrack": render_tracking_rules(self._tracked),
            "metadata/schema/schema.json": _dump(info.get("schema", {})),
        }

    @staticmethod
    def _version_artifacts(
        version: str,
        description: str,
        parent: str | None,
        files: Sequence[FileManifestEntry],
    ) -> dict[str, str]:
        stats = _stats_of(files)
        return {
            f"metadata/versions/{version}.json": _dump(
                {
                    "version": version,
                    "parent_version": parent,
                    "description": description,
                    "files": sorted(f.name for f in files),
                }
            ),
            "metadata/stats/stats.json": _dump(stats.model_dump()),
            "metadata/files.json": _dump([f.model_dump() for f in files]),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize_repository(
        self,
        owner_id: str,
        dataset_id: str,
        info: Mapping[str, Any],
        *,
        files: Sequence[FileManifestEntry] = (),
        metadata: Mapping[str, Any] | None = None,
        author: str = "",
    ) -> CommitRecord:
        """Provision a repository and commit the root snapshot tagged ``v1.0.0``.

        Replaying initialization of a repository that already holds its
        root returns the existing root instead of failing.
        """
        head = await self._backend.head(owner_id, dataset_id)
        if head is not None:
            if head.version == ROOT_VERSION and head.parent_commit is None:
                return head
            raise VersionConflictError(
                f"Repository {owner_id}/{dataset_id} already has history",
                details={"dataset_id": dataset_id, "head": head.version},
            )

        await self._backend.init(owner_id, dataset_id, self._skeleton_artifacts(info))
        description = "Initial dataset creation"
        root = await self._backend.commit(
            owner_id,
            dataset_id,
            version=ROOT_VERSION,
            files=files,
            metadata=metadata,
            description=description,
            author=author,
            artifacts=self._version_artifacts(ROOT_VERSION, description, None, files),
        )
        await self._backend.tag(
            owner_id,
            dataset_id,
            tag_name(ROOT_VERSION),
            root.commit_id,
            description=description,
            created_by=author,
        )
        return root

    async def create_version(
        self,
        owner_id: str,
        dataset_id: str,
        version: str,
        change_description: str,
        *,
        files: Sequence[FileManifestEntry],
        metadata: Mapping[str, Any] | None = None,
        author: str = "",
    ) -> CommitRecord:
        """Commit the full file set of *version* on top of the current head.

        Every check happens before the repository is touched, so a
        rejected label leaves no trace.
        """
        SemVer.parse(version)
        head = await self.require_head(owner_id, dataset_id)
        if await self.has_version(owner_id, dataset_id, version):
            raise VersionConflictError(
                f"Version {version} already exists",
                details={"dataset_id": dataset_id, "version": version},
            )
        ensure_successor(version, head.version)

        commit = await self._backend.commit(
            owner_id,
            dataset_id,
            version=version,
            files=files,
            metadata=metadata,
            description=change_description,
            author=author,
            artifacts=self._version_artifacts(version, change_description, head.version, files),
        )
        await self._backend.tag(
            owner_id,
            dataset_id,
            tag_name(version),
            commit.commit_id,
            description=change_description,
            created_by=author,
        )
        logger.info("Created version %s of %s (parent %s)", version, dataset_id, head.version)
        return commit

    async def fork_repository(
        self,
        source_owner_id: str,
        source_dataset_id: str,
        source_version: str,
        target_owner_id: str,
        target_dataset_id: str,
        info: Mapping[str, Any],
        *,
        author: str = "",
    ) -> CommitRecord:
        """Start a new repository whose root holds *source_version*'s files."""
        SemVer.parse(source_version)
        if not await self.has_version(source_owner_id, source_dataset_id, source_version):
            raise ForkSourceNotFoundError(
                f"Version {source_version} not found in source dataset",
                details={"dataset_id": source_dataset_id, "version": source_version},
            )
        description = f"Forked from {source_dataset_id}@{source_version}"
        root = await self._backend.fork(
            source_owner_id,
            source_dataset_id,
            tag_name(source_version),
            target_owner_id,
            target_dataset_id,
            version=ROOT_VERSION,
            description=description,
            author=author,
            artifacts=self._skeleton_artifacts(info),
        )
        await self._backend.tag(
            target_owner_id,
            target_dataset_id,
            tag_name(ROOT_VERSION),
            root.commit_id,
            description=description,
            created_by=author,
        )
        logger.info(
            "Forked %s@%s into %s", source_dataset_id, source_version, target_dataset_id
        )
        return root

    async def delete_repository(self, owner_id: str, dataset_id: str) -> None:
        await self._backend.delete(owner_id, dataset_id)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def tag_version(
        self,
        owner_id: str,
        dataset_id: str,
        version: str,
        name: str,
        *,
        description: str = "",
        created_by: str = "",
    ) -> VersionTag:
        """Attach an extra named tag to an existing version.

        Names of the form ``v<semver>`` are reserved for version tags.
        """
        if name.startswith(TAG_PREFIX) and is_valid(name[len(TAG_PREFIX) :]):
            raise InvalidInputError(
                f"Tag name {name} is reserved for versions", details={"tag": name}
            )
        commit = await self.resolve(owner_id, dataset_id, version)
        return await self._backend.tag(
            owner_id,
            dataset_id,
            name,
            commit.commit_id,
            description=description,
            created_by=created_by,
        )

    async def ensure_head_tagged(self, owner_id: str, dataset_id: str) -> CommitRecord | None:
        """Tag the head as ``v<version>`` if an interrupted commit left it bare."""
        head = await self._backend.head(owner_id, dataset_id)
        if head is None or await self.has_version(owner_id, dataset_id, head.version):
            return head
        await self._backend.tag(
            owner_id,
            dataset_id,
            tag_name(head.version),
            head.commit_id,
            description=head.description,
            created_by=head.author,
        )
        logger.warning("Repaired missing tag for %s %s", dataset_id, head.version)
        return head

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def has_version(self, owner_id: str, dataset_id: str, version: str) -> bool:
        SemVer.parse(version)
        try:
            await self._backend.get_tag(owner_id, dataset_id, tag_name(version))
        except VersionNotFoundError:
            return False
        return True

    async def resolve(self, owner_id: str, dataset_id: str, version: str) -> CommitRecord:
        """The commit behind ``v<version>``."""
        SemVer.parse(version)
        return await self._backend.resolve_tag(owner_id, dataset_id, tag_name(version))

    async def require_head(self, owner_id: str, dataset_id: str) -> CommitRecord:
        head = await self._backend.head(owner_id, dataset_id)
        if head is None:
            raise VersionNotFoundError(
                f"Repository {owner_id}/{dataset_id} has no versions",
                details={"dataset_id": dataset_id},
            )
        return head

    async def head_version(self, owner_id: str, dataset_id: str) -> str | None:
        head = await self._backend.head(owner_id, dataset_id)
        return head.version if head else None

    async def get_version_metadata(
        self, owner_id: str, dataset_id: str, version: str
    ) -> VersionMetadata:
        """The version record with its delta against the parent and statistics."""
        commit = await self.resolve(owner_id, dataset_id, version)
        parent_files: Sequence[FileManifestEntry] = ()
        if commit.parent_commit is not None:
            parent = await self._backend.read_commit(owner_id, dataset_id, commit.parent_commit)
            parent_files = parent.files
        tags = [
            t.name
            for t in await self._backend.list_tags(owner_id, dataset_id)
            if t.commit_id == commit.commit_id
        ]
        return VersionMetadata(
            version=commit.version,
            commit_id=commit.commit_id,
            parent_version=commit.parent_version,
            description=commit.description,
            author=commit.author,
            created_at=commit.created_at,
            changes=compute_delta(parent_files, commit.files),
            stats=_stats_of(commit.files),
            metadata=commit.metadata,
            tags=tags,
        )

    async def get_file_list(
        self, owner_id: str, dataset_id: str, version: str
    ) -> list[FileManifestEntry]:
        SemVer.parse(version)
        return await self._backend.list_files(owner_id, dataset_id, tag_name(version))

    async def validate_checksum(
        self,
        owner_id: str,
        dataset_id: str,
        version: str,
        filename: str,
        expected_hash: str,
    ) -> bool:
        """Compare the checksum recorded for *filename* at *version*."""
        for entry in await self.get_file_list(owner_id, dataset_id, version):
            if entry.name == filename:
                return entry.checksum == expected_hash.strip().lower()
        raise VersionNotFoundError(
            f"File {filename} not found in version {version}",
            details={"dataset_id": dataset_id, "version": version, "file": filename},
        )

    async def get_diff(
        self, owner_id: str, dataset_id: str, from_version: str, to_version: str
    ) -> VersionDiff:
        SemVer.parse(from_version)
        SemVer.parse(to_version)
        return await self._backend.diff(
            owner_id, dataset_id, tag_name(from_version), tag_name(to_version)
        )

    async def list_versions(self, owner_id: str, dataset_id: str) -> list[CommitRecord]:
        """The linear history, root first."""
        history: list[CommitRecord] = []
        commit = await self._backend.head(owner_id, dataset_id)
        while commit is not None:
            history.append(commit)
            if commit.parent_commit is None:
                break
            commit = await self._backend.read_commit(owner_id, dataset_id, commit.parent_commit)
        history.reverse()
        return history
