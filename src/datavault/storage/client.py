"""Content storage client: signed URLs, chunked transfers, integrity checks.

The client never proxies dataset bytes for normal uploads and downloads;
it hands out time-limited signed URLs.  For server-side transfers
(imports, migrations, repair) it moves files in fixed-size chunks
through a shared, size-limited pool of in-flight operations, each chunk
wrapped in a bounded retry policy.  A transfer whose retry budget is
exhausted is cleaned up before the error propagates.

Storage keys have the layout::

    {visibility}/{owner}/{dataset}/{bucket}/{disambiguator}/{filename}

Chunked objects live under ``{storage_key}/chunk-NNNNNN``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from datavault.exceptions import (
    AccessDeniedError,
    ChecksumMismatchError,
    KeyAllocationError,
    ObjectNotFoundError,
    TransferExhaustedError,
)
from datavault.settings import SignedUrlConfig, TransferConfig
from datavault.storage.cache import SignedUrlCache
from datavault.storage.classification import classify
from datavault.storage.retry import RetryPolicy
from datavault.storage.schemas import (
    BatchFile,
    BatchUploadResult,
    TransferResult,
    UploadTicket,
)

if TYPE_CHECKING:
    from datavault.storage.backends import ObjectStorageBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[float], None]

PUBLIC = "public"
PRIVATE = "private"

_CHUNK_PREFIX = "chunk-"
_KEY_ALLOCATION_ATTEMPTS = 5
_SAFE_SEGMENT_RE = re.compile(r"[^\w\s\-.]", re.ASCII)


def _sanitize_segment(name: str) -> str:
    """Strip path components and dangerous characters from a key segment."""
    name = os.path.basename(name)
    name = _SAFE_SEGMENT_RE.sub("_", name)
    name = re.sub(r"[_\s]+", "_", name).strip("_. ")
    return name or "unnamed"


def chunk_key(storage_key: str, index: int) -> str:
    """Key of the *index*-th chunk of *storage_key*."""
    return f"{storage_key}/{_CHUNK_PREFIX}{index:06d}"


async def _gather_or_cancel(coros: list[Coroutine[Any, Any, T]]) -> list[T]:
    """Gather *coros*; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.create_task(c) for c in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class ContentStorageClient:
    """Signed-URL issuance and resilient chunked transfer over a backend."""

    def __init__(
        self,
        backend: ObjectStorageBackend,
        *,
        transfer: TransferConfig | None = None,
        signed_urls: SignedUrlConfig | None = None,
        cache: SignedUrlCache | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._backend = backend
        self._transfer = transfer if transfer is not None else TransferConfig()
        self._urls = signed_urls if signed_urls is not None else SignedUrlConfig()
        self._cache = cache if cache is not None else SignedUrlCache()
        self._retry = retry if retry is not None else RetryPolicy.from_config(self._transfer)
        self._cleanup_retry = RetryPolicy(
            max_attempts=self._transfer.cleanup_attempts,
            initial_delay=self._retry.initial_delay,
            max_delay=self._retry.max_delay,
            sleep=self._retry.sleep,
        )
        # Shared pool of in-flight chunk operations; callers queue on it.
        self._slots = asyncio.Semaphore(self._transfer.max_concurrency)

    @property
    def backend(self) -> ObjectStorageBackend:
        return self._backend

    @property
    def cache(self) -> SignedUrlCache:
        return self._cache

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def build_storage_key(
        owner_id: str,
        dataset_id: str,
        filename: str,
        *,
        is_private: bool,
        disambiguator: str,
    ) -> str:
        visibility = PRIVATE if is_private else PUBLIC
        bucket = classify(filename).bucket
        return "/".join(
            [
                visibility,
                _sanitize_segment(owner_id),
                _sanitize_segment(dataset_id),
                bucket.value,
                disambiguator,
                _sanitize_segment(filename),
            ]
        )

    @staticmethod
    def visibility_of(storage_key: str) -> str:
        """The visibility segment of *storage_key*."""
        return storage_key.split("/", 1)[0]

    async def _key_in_use(self, storage_key: str) -> bool:
        if await self._backend.exists(storage_key):
            return True
        return bool(await self._backend.list_keys(f"{storage_key}/"))

    async def _allocate_key(
        self, owner_id: str, dataset_id: str, filename: str, is_private: bool
    ) -> str:
        for _ in range(_KEY_ALLOCATION_ATTEMPTS):
            key = self.build_storage_key(
                owner_id,
                dataset_id,
                filename,
                is_private=is_private,
                disambiguator=uuid.uuid4().hex[:16],
            )
            if not await self._key_in_use(key):
                return key
            logger.warning("Storage key collision for %s, drawing a new one", key)
        raise KeyAllocationError(
            f"Could not allocate a free storage key for {filename}",
            details={"attempts": _KEY_ALLOCATION_ATTEMPTS},
        )

    # ------------------------------------------------------------------
    # Signed URLs
    # ------------------------------------------------------------------

    async def get_upload_url(
        self,
        owner_id: str,
        dataset_id: str,
        filename: str,
        is_private: bool = False,
    ) -> UploadTicket:
        """Issue a signed PUT URL for a new object of *filename*."""
        file_class = classify(filename)
        storage_key = await self._retry.run(
            lambda: self._allocate_key(owner_id, dataset_id, filename, is_private),
            context="Allocate storage key",
        )
        expires_in = self._urls.expires_seconds
        upload_url = await self._retry.run(
            lambda: self._backend.presign_url(
                storage_key,
                method="PUT",
                expires_in=expires_in,
                content_type=file_class.content_type,
                metadata={
                    "dataset-id": dataset_id,
                    "owner-id": owner_id,
                    "file-type": file_class.bucket.value,
                    "private": str(is_private).lower(),
                },
            ),
            context="Get upload URL",
        )
        logger.info(
            "Generated upload URL for %s (bucket=%s, tracked=%s, private=%s)",
            storage_key,
            file_class.bucket.value,
            file_class.tracked,
            is_private,
        )
        return UploadTicket(
            file_name=filename,
            upload_url=upload_url,
            storage_key=storage_key,
            bucket=file_class.bucket,
            tracked=file_class.tracked,
            content_type=file_class.content_type,
            expires_at=datetime.now(tz=UTC) + timedelta(seconds=expires_in),
        )

    async def get_download_url(self, storage_key: str, token: str | None = None) -> str:
        """Issue (or reuse) a signed GET URL for *storage_key*.

        Private keys require a caller-supplied token.  Results are cached per
        ``(storage_key, token presence)`` and drop out of the cache shortly
        before the URL itself expires.
        """
        if self.visibility_of(storage_key) == PRIVATE and not token:
            raise AccessDeniedError(
                "Authentication required for private dataset",
                details={"storage_key": storage_key},
            )
        has_token = bool(token)
        cached = self._cache.get(storage_key, has_token)
        if cached is not None:
            return cached

        expires_in = self._urls.expires_seconds
        url = await self._retry.run(
            lambda: self._backend.presign_url(storage_key, method="GET", expires_in=expires_in),
            context="Get download URL",
        )
        self._cache.set(
            storage_key,
            has_token,
            url,
            ttl_seconds=expires_in - self._urls.cache_margin_seconds,
        )
        return url

    # ------------------------------------------------------------------
    # Chunk helpers
    # ------------------------------------------------------------------

    async def list_chunks(self, storage_key: str) -> list[str]:
        """Chunk keys written under *storage_key*, in order."""
        keys = await self._backend.list_keys(f"{storage_key}/")
        return sorted(k for k in keys if k.rsplit("/", 1)[-1].startswith(_CHUNK_PREFIX))

    async def _with_retry_budget(
        self, operation: Callable[[], Awaitable[T]], storage_key: str, context: str
    ) -> T:
        try:
            return await self._retry.run(operation, context=context)
        except self._retry.retry_on as exc:
            raise TransferExhaustedError(
                f"{context} exhausted {self._retry.max_attempts} attempt(s): {exc}",
                storage_key=storage_key,
                attempts=self._retry.max_attempts,
            ) from exc

    async def _put_chunk(self, storage_key: str, index: int, data: bytes) -> int:
        key = chunk_key(storage_key, index)
        await self._with_retry_budget(
            lambda: self._backend.put_object(key, data),
            storage_key,
            f"Upload chunk {index} of {storage_key}",
        )
        return len(data)

    async def _get_chunk(self, storage_key: str, key: str) -> bytes:
        async with self._slots:
            return await self._with_retry_budget(
                lambda: self._backend.get_object(key),
                storage_key,
                f"Download {key}",
            )

    async def iter_content(self, storage_key: str) -> AsyncIterator[bytes]:
        """Stream a stored object, whether written whole or in chunks."""
        chunk_size = self._transfer.chunk_size_bytes
        if await self._backend.exists(storage_key):
            async for piece in self._backend.iter_object(storage_key, chunk_size):
                yield piece
            return
        chunks = await self.list_chunks(storage_key)
        if not chunks:
            raise ObjectNotFoundError(
                f"Object not found: {storage_key}", details={"storage_key": storage_key}
            )
        for key in chunks:
            yield await self._backend.get_object(key)

    # ------------------------------------------------------------------
    # Large-file transfer
    # ------------------------------------------------------------------

    async def upload_large_file(
        self,
        source: str | Path,
        storage_key: str,
        *,
        chunk_size: int | None = None,
        progress: ProgressCallback | None = None,
    ) -> TransferResult:
        """Upload *source* to *storage_key* in fixed-size chunks.

        Chunks are written concurrently through the shared pool.  On failure
        every chunk already written under the key is removed before the
        original error propagates.
        """
        path = Path(source)
        chunk_size = chunk_size or self._transfer.chunk_size_bytes
        total = (await asyncio.to_thread(path.stat)).st_size
        hasher = hashlib.sha256()
        tasks: list[asyncio.Task[int]] = []
        uploaded = 0

        def _on_done(task: asyncio.Task[int]) -> None:
            nonlocal uploaded
            self._slots.release()
            if task.cancelled() or task.exception() is not None:
                return
            uploaded += task.result()
            if progress is not None:
                progress(uploaded / total if total else 1.0)

        def _failed() -> bool:
            return any(t.done() and not t.cancelled() and t.exception() for t in tasks)

        try:
            fh = await asyncio.to_thread(path.open, "rb")
            try:
                index = 0
                while True:
                    await self._slots.acquire()
                    # The slot passes to the chunk task; until then it is ours to release.
                    try:
                        chunk = b"" if _failed() else await asyncio.to_thread(fh.read, chunk_size)
                        finished = not chunk and (index > 0 or _failed())
                        if not finished:
                            task = asyncio.create_task(self._put_chunk(storage_key, index, chunk))
                            task.add_done_callback(_on_done)
                    except BaseException:
                        self._slots.release()
                        raise
                    if finished:
                        self._slots.release()
                        break
                    hasher.update(chunk)
                    tasks.append(task)
                    index += 1
                    if not chunk:
                        break
            finally:
                fh.close()
            await asyncio.gather(*tasks)
        except BaseException as exc:
            if not isinstance(exc, Exception):
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            # In-flight chunks settle first so none lands after the cleanup.
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.error("Upload of %s failed, cleaning up: %s", storage_key, exc)
            await self.cleanup_failed_upload(storage_key)
            raise

        logger.info("Uploaded %s in %d chunk(s) (%d bytes)", storage_key, len(tasks), total)
        return TransferResult(
            storage_key=storage_key,
            size_bytes=total,
            checksum=hasher.hexdigest(),
            chunks=len(tasks),
        )

    async def cleanup_failed_upload(self, storage_key: str) -> int:
        """Best-effort removal of partial chunks; returns how many were deleted.

        Cleanup is itself retried a bounded number of times.  A cleanup
        that still fails is logged and swallowed so it cannot mask the
        transfer error that triggered it.
        """

        async def _cleanup() -> int:
            keys = await self._backend.list_keys(f"{storage_key}/")
            await asyncio.gather(*(self._backend.delete_object(k) for k in keys))
            return len(keys)

        try:
            deleted = await self._cleanup_retry.run(_cleanup, context=f"Cleanup {storage_key}")
        except self._cleanup_retry.retry_on as exc:
            logger.error(
                "Failed to clean up %s after %d attempt(s): %s",
                storage_key,
                self._cleanup_retry.max_attempts,
                exc,
            )
            return 0
        if deleted:
            logger.info("Cleaned up %d partial chunk(s) under %s", deleted, storage_key)
        return deleted

    async def download_large_file(
        self,
        storage_key: str,
        destination: str | Path,
        *,
        chunk_size: int | None = None,
        progress: ProgressCallback | None = None,
        expected_checksum: str | None = None,
    ) -> TransferResult:
        """Download *storage_key* into *destination*.

        Chunked objects are fetched concurrently, a window of
        ``max_concurrency`` chunks at a time, and written in order.  The
        destination only appears once the whole object has been written
        and, with *expected_checksum*, verified; a mismatch raises
        :class:`ChecksumMismatchError` and leaves no file behind.
        """
        dest = Path(destination)
        chunk_size = chunk_size or self._transfer.chunk_size_bytes
        tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.part")
        chunks = await self._with_retry_budget(
            lambda: self.list_chunks(storage_key), storage_key, f"List chunks of {storage_key}"
        )

        try:
            if chunks:
                size, checksum = await self._download_chunks(storage_key, chunks, tmp, progress)
            else:
                size, checksum = await self._with_retry_budget(
                    lambda: self._download_whole(storage_key, tmp, chunk_size),
                    storage_key,
                    f"Download {storage_key}",
                )
                if progress is not None:
                    progress(1.0)
            if expected_checksum is not None and checksum != expected_checksum.strip().lower():
                raise ChecksumMismatchError(
                    f"Checksum mismatch downloading {storage_key}",
                    storage_key=storage_key,
                    expected=expected_checksum,
                    details={"actual": checksum},
                )
            await asyncio.to_thread(os.replace, tmp, dest)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        logger.info("Downloaded %s to %s (%d bytes)", storage_key, dest, size)
        return TransferResult(
            storage_key=storage_key,
            size_bytes=size,
            checksum=checksum,
            chunks=len(chunks),
        )

    async def _download_chunks(
        self,
        storage_key: str,
        chunks: list[str],
        tmp: Path,
        progress: ProgressCallback | None,
    ) -> tuple[int, str]:
        hasher = hashlib.sha256()
        size = 0
        window = self._transfer.max_concurrency
        fh = await asyncio.to_thread(tmp.open, "wb")
        try:
            for start in range(0, len(chunks), window):
                batch = chunks[start : start + window]
                pieces = await _gather_or_cancel([self._get_chunk(storage_key, k) for k in batch])
                for offset, piece in enumerate(pieces, start=1):
                    await asyncio.to_thread(fh.write, piece)
                    hasher.update(piece)
                    size += len(piece)
                    if progress is not None:
                        progress((start + offset) / len(chunks))
        finally:
            fh.close()
        return size, hasher.hexdigest()

    async def _download_whole(
        self, storage_key: str, tmp: Path, chunk_size: int
    ) -> tuple[int, str]:
        hasher = hashlib.sha256()
        size = 0
        async with self._slots:
            fh = await asyncio.to_thread(tmp.open, "wb")
            try:
                async for piece in self._backend.iter_object(storage_key, chunk_size):
                    await asyncio.to_thread(fh.write, piece)
                    hasher.update(piece)
                    size += len(piece)
            finally:
                fh.close()
        return size, hasher.hexdigest()

    async def download_concurrent(
        self, storage_keys: list[str], output_directory: str | Path
    ) -> list[TransferResult]:
        """Download several objects into *output_directory* by basename."""
        out = Path(output_directory)
        limit = asyncio.Semaphore(self._transfer.batch_concurrency)

        async def _one(key: str) -> TransferResult:
            async with limit:
                return await self.download_large_file(key, out / os.path.basename(key))

        return await _gather_or_cancel([_one(k) for k in storage_keys])

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    async def compute_checksum(self, storage_key: str) -> str:
        """SHA-256 of the stored object, computed incrementally."""
        hasher = hashlib.sha256()
        async for piece in self.iter_content(storage_key):
            hasher.update(piece)
        return hasher.hexdigest()

    async def validate_checksum(self, storage_key: str, expected_hash: str) -> bool:
        """Compare the stored object's digest to *expected_hash*.

        A mismatch returns ``False``; only I/O failures raise.
        """
        actual = await self.compute_checksum(storage_key)
        matches = actual == expected_hash.strip().lower()
        if not matches:
            logger.warning("Checksum mismatch for %s", storage_key)
        return matches

    # ------------------------------------------------------------------
    # Batch / housekeeping
    # ------------------------------------------------------------------

    async def batch_upload(
        self,
        files: list[BatchFile],
        owner_id: str,
        dataset_id: str,
        *,
        is_private: bool = False,
        concurrency_limit: int | None = None,
        progress: ProgressCallback | None = None,
    ) -> list[BatchUploadResult]:
        """Upload many files; one file failing never aborts the others."""
        limit = asyncio.Semaphore(concurrency_limit or self._transfer.batch_concurrency)
        total = len(files)
        completed = 0

        async def _one(item: BatchFile) -> BatchUploadResult:
            nonlocal completed
            async with limit:
                try:
                    ticket = await self.get_upload_url(owner_id, dataset_id, item.name, is_private)
                    result = await self.upload_large_file(item.path, ticket.storage_key)
                except Exception as exc:
                    logger.warning("Batch upload of %s failed: %s", item.name, exc)
                    outcome = BatchUploadResult(file=item.name, success=False, error=str(exc))
                else:
                    outcome = BatchUploadResult(
                        file=item.name,
                        success=True,
                        storage_key=result.storage_key,
                        checksum=result.checksum,
                        size_bytes=result.size_bytes,
                    )
            completed += 1
            if progress is not None:
                progress(completed / total)
            return outcome

        return list(await asyncio.gather(*(_one(f) for f in files)))

    async def delete_content(self, storage_key: str) -> None:
        """Remove an object and any chunks stored under its key."""
        self._cache.invalidate(storage_key)
        await self._backend.delete_object(storage_key)
        for key in await self._backend.list_keys(f"{storage_key}/"):
            await self._backend.delete_object(key)
