"""Exception hierarchy for datavault.

All exceptions inherit from DatavaultError so callers can catch
engine-level errors with a single except clause.  Caller/input errors
and infrastructure errors live in separate branches so the error
mapping in :mod:`datavault.errors` can classify them.
"""

from __future__ import annotations

from typing import Any


class DatavaultError(Exception):
    """Base exception for all datavault errors."""

    def __init__(self, message: str = "", *, details: dict[str, Any] | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# =============================================================================
# Caller / input errors
# =============================================================================


class InvalidInputError(DatavaultError):
    """Raised when a request fails input validation (title, tags, files)."""


class DatasetNotFoundError(DatavaultError):
    """Raised when a dataset does not exist or is not visible to the caller."""


class AccessDeniedError(DatavaultError):
    """Raised when the caller may not access a dataset or private object."""


# =============================================================================
# Versioning errors
# =============================================================================


class VersioningError(DatavaultError):
    """Base for version-repository errors."""


class InvalidVersionError(VersioningError):
    """Raised for a malformed or non-monotonic version label."""


class VersionConflictError(VersioningError):
    """Raised when a tag already exists or the head moved concurrently."""


class VersionNotFoundError(VersioningError):
    """Raised when a version tag does not exist in the repository."""


class ForkSourceNotFoundError(VersioningError):
    """Raised when the source version of a fork does not exist."""


class RepositoryInitError(VersioningError):
    """Raised when the repository backing store cannot be written."""


# =============================================================================
# Storage errors
# =============================================================================


class StorageError(DatavaultError):
    """Base for object-storage errors."""


class ObjectNotFoundError(StorageError):
    """Raised when a storage key holds neither an object nor chunks."""


class StorageUnavailableError(StorageError):
    """Raised when the storage backend cannot be reached."""


class KeyAllocationError(StorageError):
    """Raised when no collision-free storage key could be allocated."""


class ChecksumMismatchError(StorageError):
    """Raised when an explicit integrity check fails.

    Diffing never raises this; only callers asking for strict
    validation do.
    """

    def __init__(
        self,
        message: str = "",
        *,
        storage_key: str = "",
        expected: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        self.storage_key = storage_key
        self.expected = expected
        super().__init__(message, details=details)


class TransferExhaustedError(StorageError):
    """Raised when the retry budget of a chunked transfer is spent."""

    def __init__(
        self,
        message: str = "",
        *,
        storage_key: str = "",
        attempts: int = 0,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.storage_key = storage_key
        self.attempts = attempts
        super().__init__(message, details=details)


# =============================================================================
# Metadata store / validation
# =============================================================================


class MetadataStoreError(DatavaultError):
    """Raised when the metadata store rejects or loses a write."""


class ValidationFailed(DatavaultError):  # noqa: N818
    """Aggregated validation failure.

    Normally returned as data inside a ValidationResult; raised only when
    a caller explicitly asks for strict behaviour.
    """

    def __init__(
        self,
        message: str = "",
        *,
        errors: list[Any] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.errors = errors or []
        super().__init__(message, details=details)
