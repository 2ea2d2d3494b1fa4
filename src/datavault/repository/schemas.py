"""Pydantic schemas for version-repository records and diffs."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - pydantic needs runtime access
from typing import Any

from pydantic import BaseModel, Field


class FileManifestEntry(BaseModel):
    """One file frozen into a version's manifest."""

    name: str
    size_bytes: int = Field(ge=0)
    content_type: str = "application/octet-stream"
    storage_key: str
    checksum: str


class CommitRecord(BaseModel):
    """An immutable snapshot as stored by a repository backend."""

    commit_id: str
    version: str
    parent_version: str | None = None
    parent_commit: str | None = None
    description: str = ""
    author: str = ""
    files: list[FileManifestEntry] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class VersionTag(BaseModel):
    """A named, never-moving pointer at one version."""

    name: str
    version: str
    commit_id: str
    description: str = ""
    created_by: str = ""
    created_at: datetime


class VersionDelta(BaseModel):
    """File names changed by a version relative to its parent."""

    added: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)


class VersionStats(BaseModel):
    file_count: int = 0
    total_size: int = 0


class VersionMetadata(BaseModel):
    """A version record enriched with its delta and aggregate statistics."""

    version: str
    commit_id: str
    parent_version: str | None = None
    description: str = ""
    author: str = ""
    created_at: datetime
    changes: VersionDelta = Field(default_factory=VersionDelta)
    stats: VersionStats = Field(default_factory=VersionStats)
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)


class ModifiedFile(BaseModel):
    name: str
    storage_key: str
    old_size: int
    new_size: int
    size_delta: int
    old_checksum: str
    new_checksum: str


class MetadataChange(BaseModel):
    old: Any = None
    new: Any = None


class DiffStatistics(BaseModel):
    added: int = 0
    modified: int = 0
    removed: int = 0
    unchanged: int = 0
    size_impact: int = 0


class VersionDiff(BaseModel):
    """Computed difference between two versions; never stored."""

    from_version: str
    to_version: str
    added: list[FileManifestEntry] = Field(default_factory=list)
    modified: list[ModifiedFile] = Field(default_factory=list)
    removed: list[FileManifestEntry] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    metadata_changes: dict[str, MetadataChange] = Field(default_factory=dict)
    statistics: DiffStatistics = Field(default_factory=DiffStatistics)
