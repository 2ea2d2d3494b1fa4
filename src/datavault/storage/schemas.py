"""Pydantic schemas returned by the content storage client."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - pydantic needs runtime access
from pathlib import Path  # noqa: TC003 - pydantic needs runtime access

from pydantic import BaseModel, Field

from datavault.storage.classification import FileTypeBucket  # noqa: TC001


class UploadTicket(BaseModel):
    """A signed PUT URL plus where the bytes will land."""

    file_name: str
    upload_url: str
    storage_key: str
    bucket: FileTypeBucket
    tracked: bool = Field(description="Whether the file goes through the large-file path.")
    content_type: str
    expires_at: datetime


class TransferResult(BaseModel):
    """Outcome of a chunked upload or download."""

    storage_key: str
    size_bytes: int
    checksum: str
    chunks: int


class BatchFile(BaseModel):
    """One local file to upload in a batch."""

    path: Path
    name: str


class BatchUploadResult(BaseModel):
    """Per-file outcome of a batch upload; failures do not abort the batch."""

    file: str
    success: bool
    storage_key: str | None = None
    checksum: str | None = None
    size_bytes: int | None = None
    error: str | None = None
