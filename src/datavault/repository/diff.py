"""File-level and metadata diffing between two version manifests.

Equality is decided by checksum alone.  Results are ordered by file
name so the same pair of manifests always renders the same diff.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from datavault.repository.schemas import (
    DiffStatistics,
    MetadataChange,
    ModifiedFile,
    VersionDelta,
    VersionDiff,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from datavault.repository.schemas import FileManifestEntry


def _by_name(files: Iterable[FileManifestEntry]) -> dict[str, FileManifestEntry]:
    return {f.name: f for f in files}


def compare_metadata(
    old: Mapping[str, Any], new: Mapping[str, Any]
) -> dict[str, MetadataChange]:
    """Key-wise inequality over the union of both key sets."""
    changes: dict[str, MetadataChange] = {}
    for key in sorted(set(old) | set(new)):
        if old.get(key) != new.get(key):
            changes[key] = MetadataChange(old=old.get(key), new=new.get(key))
    return changes


def compute_file_diff(
    old_files: Iterable[FileManifestEntry],
    new_files: Iterable[FileManifestEntry],
    *,
    from_version: str,
    to_version: str,
    old_metadata: Mapping[str, Any] | None = None,
    new_metadata: Mapping[str, Any] | None = None,
) -> VersionDiff:
    old = _by_name(old_files)
    new = _by_name(new_files)
    diff = VersionDiff(from_version=from_version, to_version=to_version)

    for name in sorted(set(old) | set(new)):
        before = old.get(name)
        after = new.get(name)
        if before is None and after is not None:
            diff.added.append(after)
        elif after is None and before is not None:
            diff.removed.append(before)
        elif before is not None and after is not None:
            if before.checksum == after.checksum:
                diff.unchanged.append(name)
            else:
                diff.modified.append(
                    ModifiedFile(
                        name=name,
                        storage_key=after.storage_key,
                        old_size=before.size_bytes,
                        new_size=after.size_bytes,
                        size_delta=after.size_bytes - before.size_bytes,
                        old_checksum=before.checksum,
                        new_checksum=after.checksum,
                    )
                )

    diff.metadata_changes = compare_metadata(old_metadata or {}, new_metadata or {})
    diff.statistics = DiffStatistics(
        added=len(diff.added),
        modified=len(diff.modified),
        removed=len(diff.removed),
        unchanged=len(diff.unchanged),
        size_impact=(
            sum(f.size_bytes for f in diff.added)
            - sum(f.size_bytes for f in diff.removed)
            + sum(m.size_delta for m in diff.modified)
        ),
    )
    return diff


def compute_delta(
    parent_files: Iterable[FileManifestEntry], files: Iterable[FileManifestEntry]
) -> VersionDelta:
    """Names added, modified and removed by a version relative to its parent."""
    diff = compute_file_diff(parent_files, files, from_version="", to_version="")
    return VersionDelta(
        added=[f.name for f in diff.added],
        modified=[m.name for m in diff.modified],
        removed=[f.name for f in diff.removed],
    )
