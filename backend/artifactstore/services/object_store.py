"""Object store abstraction. Local filesystem for dev, S3/MinIO for production.

Every adapter exposes the same bucket-oriented contract:

- ensure_bucket is idempotent
- put writes the full stream or fails (BackendUnavailable, InvalidArgument);
  putting into a bucket that was never provisioned is InvalidArgument
- get raises NotFound for a missing object
- delete of an absent object is a no-op
- stat never transfers the body
- presign raises NotFound if the object is absent at issuance time
"""
import asyncio
import base64
import hashlib
import hmac
import io
import json
import logging
import os
import re
import secrets
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional
from urllib.parse import parse_qs, quote, unquote, urlsplit

import aiofiles
import aiofiles.os

from artifactstore.errors import BackendUnavailable, InvalidArgument, NotFound
from artifactstore.schemas.object import ObjectStat
from artifactstore.services.checksum import CHUNK_SIZE

logger = logging.getLogger(__name__)

DEFAULT_PRESIGN_EXPIRY = 3600
_BUCKET_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9.\-]{1,61}[a-z0-9]$")


def validate_bucket_name(name: str) -> str:
    """S3-compatible bucket naming: 3-63 chars of lowercase letters, digits, dots, hyphens."""
    if not name or not _BUCKET_NAME_RE.match(name) or ".." in name:
        raise InvalidArgument(f"Invalid bucket name: {name!r}")
    return name


def validate_object_key(key: str) -> str:
    if not key or key.startswith("/") or "\\" in key:
        raise InvalidArgument(f"Invalid object key: {key!r}")
    if any(part in ("", ".", "..") for part in key.split("/")):
        raise InvalidArgument(f"Invalid object key: {key!r}")
    return key


class ObjectStoreAdapter(ABC):
    """Uniform async put/get/delete/stat/presign over a bucket-oriented store."""

    backend_name = "object_store"

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    async def _bounded(self, coro, operation: str, bucket: str, key: str = ""):
        """Await ``coro`` under the configured timeout, surfacing expiry as BackendUnavailable."""
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise BackendUnavailable(
                f"Object store {operation} timed out for {bucket}/{key}", backend=self.backend_name
            ) from e

    @abstractmethod
    async def ensure_bucket(self, name: str) -> None:
        ...

    @abstractmethod
    async def put(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        size: int,
        content_type: str,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        ...

    @abstractmethod
    async def get(self, bucket: str, key: str) -> BinaryIO:
        ...

    @abstractmethod
    async def delete(self, bucket: str, key: str) -> None:
        ...

    @abstractmethod
    async def stat(self, bucket: str, key: str) -> ObjectStat:
        ...

    @abstractmethod
    async def presign(self, bucket: str, key: str, ttl: int = DEFAULT_PRESIGN_EXPIRY) -> str:
        ...

    async def exists(self, bucket: str, key: str) -> bool:
        return (await self.stat(bucket, key)).exists


class LocalObjectStore(ObjectStoreAdapter):
    """Filesystem-backed object store.

    Layout::

        {root}/{bucket}/{key}               object body
        {root}/.meta/{bucket}/{key}.json    content type, size and headers

    Presigned links are HMAC-signed URLs under ``base_url``; whatever serves
    them checks the signature with ``resolve_presigned``.
    """

    backend_name = "local_object_store"
    META_DIR = ".meta"

    def __init__(
        self,
        root: str | Path,
        presign_secret: str,
        base_url: str = "http://localhost:8721/objects",
        timeout: Optional[float] = None,
    ):
        super().__init__(timeout=timeout)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._secret = presign_secret.encode("utf-8")
        self.base_url = base_url.rstrip("/")

    # ── Paths ────────────────────────────────────────────────────

    def _bucket_path(self, bucket: str) -> Path:
        validate_bucket_name(bucket)
        return self.root / bucket

    def _object_path(self, bucket: str, key: str) -> Path:
        validate_object_key(key)
        bucket_path = self._bucket_path(bucket)
        path = bucket_path / key
        resolved_bucket = bucket_path.resolve()
        if not str(path.resolve()).startswith(str(resolved_bucket) + os.sep):
            raise InvalidArgument(f"Object key escapes bucket: {key!r}")
        return path

    def _meta_path(self, bucket: str, key: str) -> Path:
        return self.root / self.META_DIR / bucket / f"{key}.json"

    @staticmethod
    def _temp_path(target: Path) -> Path:
        return target.parent / f".{target.name}.{os.getpid()}.{secrets.token_hex(8)}.tmp"

    # ── Buckets ──────────────────────────────────────────────────

    async def ensure_bucket(self, name: str) -> None:
        path = self._bucket_path(name)
        try:
            if await aiofiles.os.path.isdir(path):
                return
            await aiofiles.os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise BackendUnavailable(f"Cannot provision bucket {name}: {e}", backend=self.backend_name) from e
        logger.info(f"Created bucket {name}")

    # ── Objects ──────────────────────────────────────────────────

    async def put(self, bucket, key, stream, size, content_type, headers=None) -> None:
        if size is None or size < 0:
            raise InvalidArgument(f"Invalid object size: {size}")
        path = self._object_path(bucket, key)
        if not await aiofiles.os.path.isdir(self._bucket_path(bucket)):
            raise InvalidArgument(f"Bucket {bucket} does not exist; call ensure_bucket first")
        await self._bounded(
            self._write_object(path, bucket, key, stream, size, content_type, headers or {}),
            "put", bucket, key,
        )

    async def _write_object(self, path, bucket, key, stream, size, content_type, headers) -> None:
        meta_path = self._meta_path(bucket, key)
        body_tmp = self._temp_path(path)
        meta_tmp = self._temp_path(meta_path)
        written = 0
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            await aiofiles.os.makedirs(meta_path.parent, exist_ok=True)
            async with aiofiles.open(body_tmp, "wb") as f:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    await f.write(chunk)
            if written != size:
                raise InvalidArgument(f"Size mismatch for {bucket}/{key}: declared {size}, read {written}")

            meta = {
                "content_type": content_type,
                "size": written,
                "headers": dict(headers),
                "last_modified": datetime.now(timezone.utc).isoformat(),
            }
            async with aiofiles.open(meta_tmp, "w", encoding="utf-8") as f:
                await f.write(json.dumps(meta))
            await aiofiles.os.replace(meta_tmp, meta_path)
            await aiofiles.os.replace(body_tmp, path)
        except OSError as e:
            raise BackendUnavailable(f"Write failed for {bucket}/{key}: {e}", backend=self.backend_name) from e
        finally:
            for leftover in (body_tmp, meta_tmp):
                if leftover.exists():
                    leftover.unlink()

    async def get(self, bucket: str, key: str) -> BinaryIO:
        path = self._object_path(bucket, key)
        return await self._bounded(self._read_object(path, bucket, key), "get", bucket, key)

    async def _read_object(self, path: Path, bucket: str, key: str) -> BinaryIO:
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except FileNotFoundError as e:
            raise NotFound(f"Object {bucket}/{key} not found") from e
        except IsADirectoryError as e:
            raise NotFound(f"Object {bucket}/{key} not found") from e
        except OSError as e:
            raise BackendUnavailable(f"Read failed for {bucket}/{key}: {e}", backend=self.backend_name) from e
        return io.BytesIO(data)

    async def delete(self, bucket: str, key: str) -> None:
        path = self._object_path(bucket, key)
        meta_path = self._meta_path(bucket, key)
        try:
            for target in (path, meta_path):
                if await aiofiles.os.path.isfile(target):
                    await aiofiles.os.remove(target)
        except FileNotFoundError:
            # Removed concurrently; delete is idempotent
            pass
        except OSError as e:
            raise BackendUnavailable(f"Delete failed for {bucket}/{key}: {e}", backend=self.backend_name) from e

    async def stat(self, bucket: str, key: str) -> ObjectStat:
        path = self._object_path(bucket, key)
        try:
            if not await aiofiles.os.path.isfile(path):
                return ObjectStat(bucket=bucket, key=key, exists=False)
            st = await aiofiles.os.stat(path)
            meta = await self._read_meta(bucket, key)
        except OSError as e:
            raise BackendUnavailable(f"Stat failed for {bucket}/{key}: {e}", backend=self.backend_name) from e
        return ObjectStat(
            bucket=bucket,
            key=key,
            exists=True,
            size_bytes=st.st_size,
            content_type=meta.get("content_type"),
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            headers=meta.get("headers", {}),
        )

    async def _read_meta(self, bucket: str, key: str) -> dict:
        meta_path = self._meta_path(bucket, key)
        try:
            async with aiofiles.open(meta_path, "r", encoding="utf-8") as f:
                return json.loads(await f.read())
        except FileNotFoundError:
            return {}
        except ValueError as e:
            raise BackendUnavailable(
                f"Corrupt metadata sidecar for {bucket}/{key}: {e}", backend=self.backend_name
            ) from e

    # ── Presigned links ──────────────────────────────────────────

    def _signature(self, bucket: str, key: str, expires: int) -> str:
        message = f"{bucket}/{key}:{expires}".encode("utf-8")
        digest = hmac.new(self._secret, message, hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    async def presign(self, bucket: str, key: str, ttl: int = DEFAULT_PRESIGN_EXPIRY) -> str:
        if ttl is None or ttl <= 0:
            raise InvalidArgument(f"Presign expiry must be positive, got {ttl}")
        if not await self.exists(bucket, key):
            raise NotFound(f"Object {bucket}/{key} not found")
        expires = int(time.time()) + int(ttl)
        signature = self._signature(bucket, key, expires)
        return f"{self.base_url}/{bucket}/{quote(key)}?expires={expires}&signature={signature}"

    def resolve_presigned(self, url: str, now: Optional[float] = None) -> tuple[str, str]:
        """Verify a link issued by ``presign`` and return its (bucket, key).

        Raises InvalidArgument for foreign, tampered or expired links. The
        object itself may have been deleted since issuance.
        """
        parts = urlsplit(url)
        prefix = urlsplit(self.base_url).path.rstrip("/") + "/"
        if not parts.path.startswith(prefix):
            raise InvalidArgument("Link was not issued by this store")
        bucket, _, quoted_key = parts.path[len(prefix):].partition("/")
        key = unquote(quoted_key)
        query = parse_qs(parts.query)
        try:
            expires = int(query["expires"][0])
            signature = query["signature"][0]
        except (KeyError, IndexError, ValueError) as e:
            raise InvalidArgument("Malformed presigned link") from e
        if not hmac.compare_digest(signature, self._signature(bucket, key, expires)):
            raise InvalidArgument("Presigned link signature mismatch")
        if (now if now is not None else time.time()) > expires:
            raise InvalidArgument("Presigned link has expired")
        return bucket, key
