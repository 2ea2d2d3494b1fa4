"""Content storage: object backends, signed URLs and chunked transfers."""

from __future__ import annotations

from datavault.storage.backends import (
    FilesystemObjectStorage,
    ObjectStorageBackend,
    S3ObjectStorage,
)
from datavault.storage.client import ContentStorageClient

__all__ = [
    "ContentStorageClient",
    "FilesystemObjectStorage",
    "ObjectStorageBackend",
    "S3ObjectStorage",
]
