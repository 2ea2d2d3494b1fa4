"""In-memory TTL cache for signed download URLs."""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class _CacheEntry:
    url: str
    expires_at: float


class SignedUrlCache:
    """Per-client cache of signed URLs keyed by ``(storage_key, has_token)``.

    Each entry carries its own absolute expiry.  Entries are advisory: a
    miss simply re-signs.  Expired entries are swept on insert once the
    earliest expiry has passed, so keys that are never read again do not
    accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: dict[tuple[str, bool], _CacheEntry] = {}
        self._next_expiry = math.inf
        self._lock = threading.Lock()

    def get(self, storage_key: str, has_token: bool) -> str | None:
        """Return the cached URL or *None* if missing / expired."""
        key = (storage_key, has_token)
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._store[key]
                return None
            return entry.url

    def set(self, storage_key: str, has_token: bool, url: str, ttl_seconds: float) -> None:
        """Store *url* for *ttl_seconds*; a non-positive TTL is not cached."""
        if ttl_seconds <= 0:
            return
        now = self._clock()
        with self._lock:
            if now >= self._next_expiry:
                self._sweep(now)
            expires_at = now + ttl_seconds
            self._store[(storage_key, has_token)] = _CacheEntry(url=url, expires_at=expires_at)
            self._next_expiry = min(self._next_expiry, expires_at)

    def _sweep(self, now: float) -> None:
        expired = [k for k, e in self._store.items() if now >= e.expires_at]
        for key in expired:
            del self._store[key]
        self._next_expiry = min((e.expires_at for e in self._store.values()), default=math.inf)

    def invalidate(self, storage_key: str) -> None:
        """Drop both token variants of *storage_key*."""
        with self._lock:
            self._store.pop((storage_key, True), None)
            self._store.pop((storage_key, False), None)

    def clear(self) -> None:
        """Drop all cached entries."""
        with self._lock:
            self._store.clear()
            self._next_expiry = math.inf

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
