"""Map datavault exceptions to status codes and error payloads.

Callers that expose the engine over a transport (the CLI, an HTTP
layer) use :func:`status_for` and :func:`error_body` so every surface
reports the same machine-readable code for the same failure.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from datavault.exceptions import (
    AccessDeniedError,
    ChecksumMismatchError,
    DatasetNotFoundError,
    DatavaultError,
    ForkSourceNotFoundError,
    InvalidInputError,
    InvalidVersionError,
    KeyAllocationError,
    MetadataStoreError,
    ObjectNotFoundError,
    RepositoryInitError,
    StorageUnavailableError,
    TransferExhaustedError,
    ValidationFailed,
    VersionConflictError,
    VersionNotFoundError,
)
from datavault.log import get_operation_id

logger = logging.getLogger(__name__)

# -- status code mapping --------------------------------------------------

_STATUS_MAP: dict[type[DatavaultError], int] = {
    InvalidInputError: 400,
    InvalidVersionError: 400,
    AccessDeniedError: 403,
    DatasetNotFoundError: 404,
    VersionNotFoundError: 404,
    ForkSourceNotFoundError: 404,
    ObjectNotFoundError: 404,
    VersionConflictError: 409,
    ChecksumMismatchError: 422,
    ValidationFailed: 422,
    RepositoryInitError: 500,
    MetadataStoreError: 500,
    KeyAllocationError: 503,
    StorageUnavailableError: 503,
    TransferExhaustedError: 503,
}

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def error_code_from_class(cls: type[Exception]) -> str:
    """Convert e.g. ``VersionNotFoundError`` to ``VERSION_NOT_FOUND``.

    The trailing ``Error`` suffix is stripped before conversion.
    """
    name = cls.__name__
    if name.endswith("Error"):
        name = name[: -len("Error")]
    return _CAMEL_RE.sub("_", name).upper()


def status_for(exc: BaseException) -> int:
    """Return the status code for *exc*.

    Walks the exception's MRO to find the most specific entry in
    :data:`_STATUS_MAP`; anything unknown is a 500.
    """
    for cls in type(exc).__mro__:
        if cls in _STATUS_MAP:
            return _STATUS_MAP[cls]
    return 500


def is_client_error(exc: BaseException) -> bool:
    """True for caller/input errors that must not be retried."""
    return 400 <= status_for(exc) < 500


def error_body(exc: BaseException) -> dict[str, Any]:
    """Build the standard error payload for *exc*."""
    if isinstance(exc, DatavaultError):
        code = error_code_from_class(type(exc))
        message = str(exc)
        details = exc.details
    else:
        logger.exception("Unhandled exception: %s", exc)
        code = "INTERNAL_SERVER_ERROR"
        message = "An unexpected error occurred."
        details = {}
    return {
        "error": {
            "code": code,
            "message": message,
            "operation_id": get_operation_id(),
            "details": details,
        },
    }
