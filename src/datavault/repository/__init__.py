"""Per-dataset version history: commits, tags, diffs and forks."""

from __future__ import annotations

from datavault.repository.backend import FilesystemRepositoryBackend, VersionRepositoryBackend
from datavault.repository.manager import VersionRepositoryManager

__all__ = [
    "FilesystemRepositoryBackend",
    "VersionRepositoryBackend",
    "VersionRepositoryManager",
]
