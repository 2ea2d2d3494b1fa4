"""Structured JSON logging with operation-ID injection.

Call :func:`setup_logging` once at process startup to configure the
root logger with a JSON formatter and a filter that attaches the
current operation ID to every log record.  Public service calls run
inside :func:`operation_scope`, so every line emitted while handling
one logical operation (metadata writes, repository commits, storage
transfers) carries the same ID.
"""

from __future__ import annotations

import datetime
import json
import logging
import sys
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Generator

operation_id_var: ContextVar[str] = ContextVar(
    "operation_id",
    default="",
)
operation_name_var: ContextVar[str] = ContextVar(
    "operation_name",
    default="",
)


def get_operation_id() -> str:
    """Return the current operation ID."""
    return operation_id_var.get()


@contextmanager
def operation_scope(name: str, operation_id: str | None = None) -> Generator[str, None, None]:
    """Bind a fresh operation ID (and name) for the duration of the block.

    Nested scopes keep the outer ID so a composite operation stays
    correlated end to end.
    """
    current = operation_id_var.get()
    op_id = operation_id or current or uuid.uuid4().hex
    id_token = operation_id_var.set(op_id)
    name_token = operation_name_var.set(name)
    try:
        yield op_id
    finally:
        operation_name_var.reset(name_token)
        operation_id_var.reset(id_token)


class OperationIdFilter(logging.Filter):
    """Inject ``operation_id`` and ``operation`` into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.operation_id = operation_id_var.get()
        record.operation = operation_name_var.get()
        return True


class DatavaultJsonFormatter(logging.Formatter):
    """Format log records as single-line JSON objects.

    Output schema::

        {
            "timestamp": "2025-06-15T12:34:56.789012+00:00",
            "level": "INFO",
            "logger": "datavault.service",
            "message": "Created version 1.1.0 for dataset ...",
            "operation": "create_version",
            "operation_id": "3f2a...",
            "exception": null
        }
    """

    def format(self, record: logging.LogRecord) -> str:
        exc_text: str | None = None
        if record.exc_info and record.exc_info[0] is not None:
            exc_text = "".join(
                traceback.format_exception(*record.exc_info),
            )

        payload: dict[str, Any] = {
            "timestamp": (
                datetime.datetime.fromtimestamp(
                    record.created,
                    tz=datetime.UTC,
                ).isoformat()
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "operation": getattr(record, "operation", ""),
            "operation_id": getattr(record, "operation_id", ""),
            "exception": exc_text,
        }
        return json.dumps(payload, default=str)


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure the root logger with JSON formatting.

    Parameters
    ----------
    level:
        Minimum log level (default ``logging.INFO``).
    """
    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers to avoid duplicate output ---------------
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(DatavaultJsonFormatter())
    handler.addFilter(OperationIdFilter())

    root.addHandler(handler)
