"""Pydantic request and response models for the dataset versioning service."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from datavault.exceptions import ValidationFailed
from datavault.repository.schemas import (  # noqa: TC001 - pydantic needs runtime access
    FileManifestEntry,
    VersionDiff,
    VersionMetadata,
)
from datavault.storage.schemas import UploadTicket  # noqa: TC001

MAX_FILE_SIZE_BYTES = 5 * 1024 * 1024 * 1024

Tag = Annotated[str, StringConstraints(min_length=1, pattern=r"^[\w-]+$")]
FileName = Annotated[
    str, StringConstraints(min_length=1, max_length=255, pattern=r"^[\w\-. ]+$")
]
Checksum = Annotated[str, StringConstraints(pattern=r"^[0-9a-fA-F]{64}$")]


# ------------------------------------------------------------------
# Inputs
# ------------------------------------------------------------------


class FileSpec(BaseModel):
    """A file the caller is about to upload."""

    name: FileName
    size_bytes: int = Field(ge=0, le=MAX_FILE_SIZE_BYTES)
    content_type: str | None = None
    checksum: Checksum | None = Field(
        default=None,
        description="SHA-256 computed by the uploader; recorded as pending when absent.",
    )


class CreateDatasetInput(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    tags: list[Tag] = Field(default_factory=list)
    is_private: bool = False
    license: str = "unspecified"
    files: list[FileSpec] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CreateVersionInput(BaseModel):
    version: str
    description: str = ""
    files: list[FileSpec] = Field(default_factory=list)
    removed: list[str] = Field(
        default_factory=list,
        description="Names dropped from the parent version's file set.",
    )
    metadata: dict[str, Any] | None = Field(
        default=None,
        description="Version metadata; inherited from the parent when omitted.",
    )


class ValidationOptions(BaseModel):
    checksums: bool = False
    metadata: bool = True


# ------------------------------------------------------------------
# Outputs
# ------------------------------------------------------------------


class DatasetDescriptor(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    title: str
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    accessibility: Literal["public", "private"] = "public"
    current_version: str | None = None
    status: str
    forked_from_dataset_id: str | None = None
    forked_from_version: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CreateDatasetResult(BaseModel):
    dataset: DatasetDescriptor
    file_upload_urls: list[UploadTicket] = Field(default_factory=list)


class CreateVersionResult(BaseModel):
    dataset_id: str
    version: str
    parent_version: str | None = None
    commit_id: str
    file_upload_urls: list[UploadTicket] = Field(default_factory=list)


class DownloadableFile(FileManifestEntry):
    download_url: str


class VersionDetails(VersionMetadata):
    """Version metadata plus download URLs for the files it added or changed."""

    files: list[DownloadableFile] = Field(default_factory=list)


class VersionComparison(VersionDiff):
    """A diff whose changed files carry fresh download URLs, keyed by name."""

    download_urls: dict[str, str] = Field(default_factory=dict)


class VersionSummary(BaseModel):
    version: str
    parent_version: str | None = None
    commit_id: str
    description: str = ""
    author: str = ""
    file_count: int = 0
    created_at: datetime


class ValidationIssue(BaseModel):
    code: str
    severity: Literal["error", "warning"] = "error"
    message: str
    path: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ValidationResult(BaseModel):
    """Outcome of validating a version; failures are data, not exceptions."""

    is_valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    metrics: dict[str, float] = Field(default_factory=dict)

    def raise_for_errors(self) -> None:
        """Raise :class:`ValidationFailed` if any issue has error severity."""
        failures = [e for e in self.errors if e.severity == "error"]
        if failures:
            raise ValidationFailed(
                f"{len(failures)} validation error(s)",
                errors=[e.model_dump(mode="json") for e in failures],
            )


class ReconcileReport(BaseModel):
    rolled_forward: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
