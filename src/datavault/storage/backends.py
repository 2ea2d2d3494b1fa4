"""Object-storage backends for dataset file bytes.

Provides an abstract ``ObjectStorageBackend`` and concrete implementations:

* **FilesystemObjectStorage**: default, stores objects on local disk and
  issues HMAC-signed URLs that a local file gateway can verify.
* **S3ObjectStorage**: any S3-compatible service via boto3; signed URLs
  are native pre-signed requests.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import os
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any, Literal
from urllib.parse import parse_qs, quote, unquote, urlsplit

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from datavault.exceptions import AccessDeniedError, ObjectNotFoundError, StorageUnavailableError

logger = logging.getLogger(__name__)

HttpMethod = Literal["GET", "PUT"]


class ObjectStorageBackend(ABC):
    """Abstract base for object storage."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short identifier for this backend (e.g. ``filesystem``, ``s3``)."""

    @abstractmethod
    async def presign_url(
        self,
        key: str,
        *,
        method: HttpMethod,
        expires_in: int,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Return a URL granting *method* on *key* for *expires_in* seconds."""

    @abstractmethod
    async def put_object(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str | None = None,
    ) -> None:
        """Persist *data* under *key*, replacing any existing object."""

    @abstractmethod
    async def get_object(self, key: str) -> bytes:
        """Read and return the bytes stored under *key*."""

    @abstractmethod
    def iter_object(self, key: str, chunk_size: int) -> AsyncIterator[bytes]:
        """Stream the object stored under *key* in *chunk_size* pieces."""

    @abstractmethod
    async def delete_object(self, key: str) -> None:
        """Remove the object stored under *key* (no error if absent)."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return ``True`` if an object is stored under *key*."""

    @abstractmethod
    async def list_keys(self, prefix: str) -> list[str]:
        """List all keys that start with *prefix*, sorted."""


# ======================================================================
# Filesystem (default)
# ======================================================================


class FilesystemObjectStorage(ObjectStorageBackend):
    """Store objects on the local filesystem.

    Signed URLs have the form
    ``{base_url}/{key}?method=PUT&expires=<epoch>&signature=<hmac>`` and can
    be checked with :meth:`verify_url`.
    """

    @property
    def provider_name(self) -> str:
        return "filesystem"

    def __init__(
        self,
        base_dir: str = "data/objects",
        *,
        base_url: str = "http://localhost:9000/objects",
        signing_secret: str = "",
        now: Callable[[], float] = time.time,
    ) -> None:
        self._base = Path(base_dir)
        self._base.mkdir(parents=True, exist_ok=True)
        self._base_url = base_url.rstrip("/")
        self._secret = (signing_secret or uuid.uuid4().hex).encode()
        self._now = now

    def _resolve(self, key: str) -> Path:
        target = (self._base / key).resolve()
        base_resolved = self._base.resolve()
        if not target.is_relative_to(base_resolved):
            msg = f"Path traversal detected: {key}"
            raise ValueError(msg)
        return target

    # -- signing ---------------------------------------------------------

    def _signature(self, method: str, key: str, expires: int) -> str:
        payload = f"{method}\n{key}\n{expires}".encode()
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    async def presign_url(
        self,
        key: str,
        *,
        method: HttpMethod,
        expires_in: int,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> str:
        self._resolve(key)
        expires = int(self._now()) + expires_in
        signature = self._signature(method, key, expires)
        return (
            f"{self._base_url}/{quote(key)}"
            f"?method={method}&expires={expires}&signature={signature}"
        )

    def verify_url(self, url: str, method: HttpMethod) -> str:
        """Return the storage key of a valid signed *url*.

        Raises :class:`AccessDeniedError` for a tampered, mismatched or
        expired URL.
        """
        parts = urlsplit(url)
        key = unquote(parts.path[len(urlsplit(self._base_url).path) :].lstrip("/"))
        query = {k: v[0] for k, v in parse_qs(parts.query).items()}
        if query.get("method") != method:
            raise AccessDeniedError("Signed URL was issued for a different method")
        try:
            expires = int(query.get("expires", ""))
        except ValueError as exc:
            raise AccessDeniedError("Signed URL has no valid expiry") from exc
        expected = self._signature(method, key, expires)
        if not hmac.compare_digest(expected, query.get("signature", "")):
            raise AccessDeniedError("Signed URL signature mismatch")
        if self._now() > expires:
            raise AccessDeniedError("Signed URL expired", details={"expires": expires})
        return key

    # -- objects ---------------------------------------------------------

    async def put_object(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str | None = None,
    ) -> None:
        target = self._resolve(key)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
            tmp.write_bytes(data)
            os.replace(tmp, target)

        await asyncio.to_thread(_write)
        logger.debug("Saved %d bytes → %s", len(data), target)

    async def get_object(self, key: str) -> bytes:
        target = self._resolve(key)
        if not target.is_file():
            msg = f"Object not found: {key}"
            raise ObjectNotFoundError(msg, details={"storage_key": key})
        return await asyncio.to_thread(target.read_bytes)

    async def iter_object(self, key: str, chunk_size: int) -> AsyncIterator[bytes]:
        target = self._resolve(key)
        if not target.is_file():
            msg = f"Object not found: {key}"
            raise ObjectNotFoundError(msg, details={"storage_key": key})
        fh = await asyncio.to_thread(target.open, "rb")
        try:
            while chunk := await asyncio.to_thread(fh.read, chunk_size):
                yield chunk
        finally:
            fh.close()

    async def delete_object(self, key: str) -> None:
        target = self._resolve(key)
        if not target.is_file():
            return
        target.unlink()
        logger.debug("Deleted %s", target)
        # Prune now-empty directories so a key can later be reused as a file.
        base_resolved = self._base.resolve()
        parent = target.parent
        while parent != base_resolved and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent

    async def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    async def list_keys(self, prefix: str) -> list[str]:
        search = self._resolve(prefix) if prefix.endswith("/") or not prefix else None
        if search is None:
            candidate = self._resolve(prefix)
            search = candidate if candidate.is_dir() else candidate.parent
        if not search.is_dir():
            return []
        root = self._base.resolve()
        keys = (
            p.relative_to(root).as_posix()
            for p in search.rglob("*")
            if p.is_file() and not p.name.endswith(".tmp")
        )
        return sorted(k for k in keys if k.startswith(prefix))


# ======================================================================
# S3-compatible
# ======================================================================


class S3ObjectStorage(ObjectStorageBackend):
    """S3-compatible storage via boto3.

    boto3 is synchronous; every call is dispatched through
    :func:`asyncio.to_thread` so the backend stays fully async.
    """

    @property
    def provider_name(self) -> str:
        return "s3"

    def __init__(
        self,
        bucket: str,
        prefix: str = "datasets/",
        *,
        endpoint_url: str = "",
        access_key: str = "",
        secret_key: str = "",
        region: str = "",
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.prefix = prefix
        if client is None:
            session = boto3.session.Session(
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
                region_name=region or None,
            )
            client = session.client("s3", endpoint_url=endpoint_url or None)
        self._s3 = client

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _translate(exc: Exception, key: str) -> Exception:
        if isinstance(exc, ClientError):
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in ("NoSuchKey", "404", "NotFound"):
                return ObjectNotFoundError(f"Object not found: {key}", details={"storage_key": key})
        return StorageUnavailableError(
            f"S3 request failed for {key}: {exc}", details={"storage_key": key}
        )

    async def presign_url(
        self,
        key: str,
        *,
        method: HttpMethod,
        expires_in: int,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> str:
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": self._full_key(key)}
        if method == "PUT":
            if content_type:
                params["ContentType"] = content_type
            if metadata:
                params["Metadata"] = metadata
        operation = "put_object" if method == "PUT" else "get_object"
        try:
            return await asyncio.to_thread(
                self._s3.generate_presigned_url,
                operation,
                Params=params,
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, key) from exc

    async def put_object(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "Key": self._full_key(key), "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            await asyncio.to_thread(self._s3.put_object, **kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, key) from exc

    async def get_object(self, key: str) -> bytes:
        try:
            response = await asyncio.to_thread(
                self._s3.get_object, Bucket=self.bucket, Key=self._full_key(key)
            )
            return await asyncio.to_thread(response["Body"].read)
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, key) from exc

    async def iter_object(self, key: str, chunk_size: int) -> AsyncIterator[bytes]:
        try:
            response = await asyncio.to_thread(
                self._s3.get_object, Bucket=self.bucket, Key=self._full_key(key)
            )
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, key) from exc
        body = response["Body"]
        try:
            while chunk := await asyncio.to_thread(body.read, chunk_size):
                yield chunk
        finally:
            body.close()

    async def delete_object(self, key: str) -> None:
        try:
            await asyncio.to_thread(
                self._s3.delete_object, Bucket=self.bucket, Key=self._full_key(key)
            )
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, key) from exc

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(
                self._s3.head_object, Bucket=self.bucket, Key=self._full_key(key)
            )
        except ClientError as exc:
            if isinstance(self._translate(exc, key), ObjectNotFoundError):
                return False
            raise self._translate(exc, key) from exc
        except BotoCoreError as exc:
            raise self._translate(exc, key) from exc
        return True

    async def list_keys(self, prefix: str) -> list[str]:
        full_prefix = self._full_key(prefix)

        def _list() -> list[str]:
            paginator = self._s3.get_paginator("list_objects_v2")
            keys: list[str] = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=full_prefix):
                for obj in page.get("Contents", []):
                    keys.append(obj["Key"][len(self.prefix) :])
            return keys

        try:
            return sorted(await asyncio.to_thread(_list))
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, prefix) from exc
