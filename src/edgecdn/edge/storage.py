"""Object store backends holding the served assets on local disk or S3-compatible storage."""

from __future__ import annotations

import asyncio
import mimetypes
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

import boto3
from botocore.exceptions import ClientError
import structlog

from ..common.settings import EdgeSettings

LOGGER = structlog.get_logger("edgecdn.storage")

MISSING_OBJECT_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
DEFAULT_CHUNK_BYTES = 64 * 1024


class ObjectStoreUnavailable(RuntimeError):
    """The backing store could not answer a lookup."""


@dataclass(frozen=True)
class ObjectMetadata:
    content_type: Optional[str] = None
    content_encoding: Optional[str] = None
    content_language: Optional[str] = None
    content_disposition: Optional[str] = None


@dataclass(frozen=True)
class StoredObject:
    """An object as reported by the store. ``body`` is only set by ``get``."""

    key: str
    http_etag: str
    uploaded: datetime
    size: int
    metadata: ObjectMetadata = field(default_factory=ObjectMetadata)
    body: Optional[AsyncIterator[bytes]] = None


class ObjectStore:
    async def head(self, key: str) -> Optional[StoredObject]:  # pragma: no cover - interface
        raise NotImplementedError

    async def get(self, key: str) -> Optional[StoredObject]:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is None:
            return
        if time.monotonic() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


async def _iter_file(path: Path, chunk_size: int) -> AsyncIterator[bytes]:
    handle = await asyncio.to_thread(path.open, "rb")
    try:
        while True:
            chunk = await asyncio.to_thread(handle.read, chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        handle.close()


async def _iter_stream(stream: Any, chunk_size: int) -> AsyncIterator[bytes]:
    try:
        while True:
            chunk = await asyncio.to_thread(stream.read, chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        stream.close()


def resolve_key(root: Path, key: str) -> Optional[Path]:
    """Map a key onto ``root``; keys escaping the root map to ``None``."""
    root = root.resolve()
    candidate = root.joinpath(*key.split("/")).resolve(strict=False)
    if candidate == root or root not in candidate.parents:
        return None
    return candidate


class LocalObjectStore(ObjectStore):
    """Serves files below a directory. Mostly for development and tests."""

    def __init__(self, root: Path, chunk_size: int = DEFAULT_CHUNK_BYTES):
        self._root = Path(root)
        self._chunk_size = chunk_size

    async def head(self, key: str) -> Optional[StoredObject]:
        path = resolve_key(self._root, key)
        if path is None:
            LOGGER.info("object_key_rejected", key=key)
            return None
        return await asyncio.to_thread(self._describe, key, path)

    async def get(self, key: str) -> Optional[StoredObject]:
        obj = await self.head(key)
        if obj is None:
            return None
        path = resolve_key(self._root, key)
        return replace(obj, body=_iter_file(path, self._chunk_size))

    def status(self) -> dict[str, object]:
        return {"backend": "local", "storage_path": str(self._root), "readable": self._root.is_dir()}

    @staticmethod
    def _describe(key: str, path: Path) -> Optional[StoredObject]:
        if not path.is_file():
            return None
        stat = path.stat()
        content_type, _ = mimetypes.guess_type(path.name)
        return StoredObject(
            key=key,
            http_etag=f'"{stat.st_mtime_ns:x}-{stat.st_size:x}"',
            uploaded=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            size=stat.st_size,
            metadata=ObjectMetadata(content_type=content_type),
        )


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3ObjectStore(ObjectStore):
    def __init__(self, settings: EdgeSettings):
        self._settings = settings
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._chunk_size = max(1, settings.stream_chunk_bytes)
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=settings.s3_circuit_breaker_failures,
            reset_timeout=settings.s3_circuit_breaker_reset_seconds,
        )

    async def head(self, key: str) -> Optional[StoredObject]:
        response = await self._lookup(self._client.head_object, key)
        if response is None:
            return None
        return self._to_object(key, response)

    async def get(self, key: str) -> Optional[StoredObject]:
        response = await self._lookup(self._client.get_object, key)
        if response is None:
            return None
        return replace(self._to_object(key, response), body=_iter_stream(response["Body"], self._chunk_size))

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._settings.s3_endpoint_url,
            "circuit_open": self._breaker.is_open,
        }

    @staticmethod
    def _to_object(key: str, response: dict[str, Any]) -> StoredObject:
        metadata = ObjectMetadata(
            content_type=response.get("ContentType"),
            content_encoding=response.get("ContentEncoding"),
            content_language=response.get("ContentLanguage"),
            content_disposition=response.get("ContentDisposition"),
        )
        return StoredObject(
            key=key,
            http_etag=response.get("ETag", ""),
            uploaded=response.get("LastModified") or datetime.now(timezone.utc),
            size=int(response.get("ContentLength", 0)),
            metadata=metadata,
        )

    async def _lookup(self, func: Callable[..., Any], key: str) -> Optional[dict[str, Any]]:
        try:
            return await self._call_with_retry(func, Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in MISSING_OBJECT_CODES:
                return None
            raise ObjectStoreUnavailable(f"S3 lookup failed for {key}") from exc

    async def _call_with_retry(self, func: Callable[..., Any], **kwargs) -> Any:
        if not self._breaker.allow_request():
            raise ObjectStoreUnavailable("Object store temporarily unavailable")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result
            except ClientError as exc:
                if _error_code(exc) in MISSING_OBJECT_CODES:
                    self._breaker.record_success()
                    raise
                failure: Exception = exc
            except Exception as exc:  # noqa: BLE001
                failure = exc
            attempt += 1
            if attempt > self._max_retries:
                self._breaker.record_failure()
                LOGGER.error("object_store_call_failed", key=kwargs.get("Key"), attempts=attempt, error=str(failure))
                raise ObjectStoreUnavailable("Object store temporarily unavailable") from failure
            delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
            if delay:
                await asyncio.sleep(delay)


def build_object_store(settings: EdgeSettings) -> ObjectStore:
    if settings.s3_bucket:
        if not settings.s3_endpoint_url and not settings.s3_region:
            raise RuntimeError("S3 configuration incomplete for object store")
        return S3ObjectStore(settings)
    return LocalObjectStore(settings.storage_path, chunk_size=max(1, settings.stream_chunk_bytes))
