"""Static file-type classification by extension.

Every extension maps to exactly one :class:`FileTypeBucket`; each bucket
carries a flag saying whether files in it go through the large-file
tracking path.  The tables are checked for consistency at import time.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import PurePosixPath


class FileTypeBucket(StrEnum):
    """Closed set of storage type buckets (also the key path segment)."""

    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    ARCHIVE = "archive"
    VIDEO = "video"
    BINARY = "binary"
    OTHER = "other"


@dataclass(frozen=True)
class FileClass:
    """Classification result for a single filename."""

    bucket: FileTypeBucket
    tracked: bool
    content_type: str
    extension: str


# Small text stays out of the tracking path; everything binary-ish is tracked.
_TRACKED: dict[FileTypeBucket, bool] = {
    FileTypeBucket.TEXT: False,
    FileTypeBucket.AUDIO: True,
    FileTypeBucket.IMAGE: True,
    FileTypeBucket.ARCHIVE: True,
    FileTypeBucket.VIDEO: True,
    FileTypeBucket.BINARY: True,
    FileTypeBucket.OTHER: True,
}

_EXTENSIONS: dict[str, tuple[FileTypeBucket, str]] = {
    # Text
    ".csv": (FileTypeBucket.TEXT, "text/csv"),
    ".json": (FileTypeBucket.TEXT, "application/json"),
    ".jsonl": (FileTypeBucket.TEXT, "application/x-jsonlines"),
    ".txt": (FileTypeBucket.TEXT, "text/plain"),
    ".tsv": (FileTypeBucket.TEXT, "text/tab-separated-values"),
    ".md": (FileTypeBucket.TEXT, "text/markdown"),
    # Audio
    ".mp3": (FileTypeBucket.AUDIO, "audio/mpeg"),
    ".wav": (FileTypeBucket.AUDIO, "audio/wav"),
    ".flac": (FileTypeBucket.AUDIO, "audio/flac"),
    ".m4a": (FileTypeBucket.AUDIO, "audio/mp4"),
    # Image
    ".jpg": (FileTypeBucket.IMAGE, "image/jpeg"),
    ".jpeg": (FileTypeBucket.IMAGE, "image/jpeg"),
    ".png": (FileTypeBucket.IMAGE, "image/png"),
    ".gif": (FileTypeBucket.IMAGE, "image/gif"),
    ".webp": (FileTypeBucket.IMAGE, "image/webp"),
    # Archive
    ".zip": (FileTypeBucket.ARCHIVE, "application/zip"),
    ".gz": (FileTypeBucket.ARCHIVE, "application/gzip"),
    ".tar": (FileTypeBucket.ARCHIVE, "application/x-tar"),
    ".7z": (FileTypeBucket.ARCHIVE, "application/x-7z-compressed"),
    # Video
    ".mp4": (FileTypeBucket.VIDEO, "video/mp4"),
    ".avi": (FileTypeBucket.VIDEO, "video/x-msvideo"),
    ".mov": (FileTypeBucket.VIDEO, "video/quicktime"),
    ".mkv": (FileTypeBucket.VIDEO, "video/x-matroska"),
    # Binary
    ".parquet": (FileTypeBucket.BINARY, "application/parquet"),
    ".arrow": (FileTypeBucket.BINARY, "application/arrow"),
    ".bin": (FileTypeBucket.BINARY, "application/octet-stream"),
}

_DEFAULT_CONTENT_TYPE = "application/octet-stream"


def _check_tables() -> None:
    missing = set(FileTypeBucket) - set(_TRACKED)
    if missing:
        raise RuntimeError(f"Buckets without a tracking flag: {sorted(missing)}")
    for ext, (bucket, _content_type) in _EXTENSIONS.items():
        if not ext.startswith(".") or ext != ext.lower():
            raise RuntimeError(f"Extension keys must be lower-case with a dot: {ext!r}")
        if bucket is FileTypeBucket.OTHER:
            raise RuntimeError(f"{ext} must not map to the fallback bucket")


_check_tables()


def extension_of(filename: str) -> str:
    """Lower-cased extension including the dot, or ``""``."""
    return PurePosixPath(filename).suffix.lower()


def classify(filename: str) -> FileClass:
    """Classify *filename* into its bucket by a plain table lookup."""
    ext = extension_of(filename)
    bucket, content_type = _EXTENSIONS.get(ext, (FileTypeBucket.OTHER, _DEFAULT_CONTENT_TYPE))
    return FileClass(
        bucket=bucket,
        tracked=_TRACKED[bucket],
        content_type=content_type,
        extension=ext,
    )


def supported_extensions() -> frozenset[str]:
    """All extensions with an explicit bucket."""
    return frozenset(_EXTENSIONS)
