"""Cache-aside content fetching from the object store."""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import format_datetime
from typing import AsyncIterator, Optional

from fastapi import BackgroundTasks, Request, Response, status
from fastapi.responses import StreamingResponse
from opentelemetry import trace
import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .cors import default_cors_headers, not_found
from .paths import request_resource_key
from .response_cache import CachedResponse, ResponseCache
from .storage import ObjectStore, StoredObject

LOGGER = structlog.get_logger("edgecdn.fetcher")
TRACER = trace.get_tracer("edgecdn.fetcher")

# 31 days at shared caches; stored objects cannot override this yet
CACHE_CONTROL = "s-maxage=2678400"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("edgecdn_cache_hits_total", "Responses served from the response cache"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("edgecdn_cache_misses_total", "Requests that went to the object store"))
NOT_FOUND_COUNTER = GLOBAL_REGISTRY.register(Counter("edgecdn_not_found_total", "Requests for missing objects"))
CACHE_WRITES_COUNTER = GLOBAL_REGISTRY.register(Counter("edgecdn_cache_writes_total", "Responses written to the cache"))


def _or_default(value: Optional[str], default: str) -> str:
    return default if value is None else value


def http_date(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return format_datetime(moment.astimezone(timezone.utc), usegmt=True)


def object_headers(obj: StoredObject) -> dict[str, str]:
    metadata = obj.metadata
    headers = default_cors_headers()
    headers.update(
        {
            "etag": obj.http_etag,
            "cache-control": CACHE_CONTROL,
            "last-modified": http_date(obj.uploaded),
            "content-encoding": _or_default(metadata.content_encoding, ""),
            "content-type": _or_default(metadata.content_type, DEFAULT_CONTENT_TYPE),
            "content-language": _or_default(metadata.content_language, ""),
            "content-disposition": _or_default(metadata.content_disposition, ""),
            "content-length": str(obj.size),
        }
    )
    return headers


class _BodyCapture:
    """Copies chunks as they are streamed so the full body can be cached afterwards."""

    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.complete = False

    async def tee(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        try:
            async for chunk in source:
                self.chunks.append(chunk)
                yield chunk
            self.complete = True
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

    def body(self) -> bytes:
        return b"".join(self.chunks)


async def _empty_body() -> AsyncIterator[bytes]:
    return
    yield b""  # pragma: no cover


class ContentFetcher:
    def __init__(
        self,
        store: ObjectStore,
        cache: ResponseCache,
        *,
        cache_max_object_bytes: Optional[int] = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._cache_max_object_bytes = cache_max_object_bytes

    async def lookup(self, request: Request) -> Optional[CachedResponse]:
        """Return the cached response for ``request`` if it may be served as is."""
        cached = await self._cache.match(request)
        if cached is None:
            return None
        if not cached.usable:
            LOGGER.debug("cache_entry_unusable", status=cached.status_code)
            return None
        return cached

    async def fetch(self, request: Request, background: BackgroundTasks) -> Response:
        cached = await self.lookup(request)
        return await self.respond(request, request_resource_key(request), cached, background)

    async def respond(
        self,
        request: Request,
        key: str,
        cached: Optional[CachedResponse],
        background: BackgroundTasks,
    ) -> Response:
        if cached is not None:
            HIT_COUNTER.inc()
            LOGGER.debug("cache_hit", key=key)
            return cached.to_response()

        MISS_COUNTER.inc()
        LOGGER.info("cache_miss", key=key, method=request.method)
        if not key or key.endswith("/"):
            NOT_FOUND_COUNTER.inc()
            return not_found()

        head_only = request.method == "HEAD"
        with TRACER.start_as_current_span(
            "edge.fetch_origin",
            attributes={"edgecdn.key": key, "http.method": request.method},
        ) as span:
            obj = await (self._store.head(key) if head_only else self._store.get(key))
            if obj is None:
                NOT_FOUND_COUNTER.inc()
                span.set_attribute("edgecdn.found", False)
                return not_found()
            span.set_attribute("edgecdn.found", True)
            span.set_attribute("edgecdn.size", obj.size)

        headers = object_headers(obj)
        if head_only:
            return Response(status_code=status.HTTP_200_OK, headers=headers)

        body = obj.body if obj.body is not None else _empty_body()
        if self._cacheable(obj):
            capture = _BodyCapture()
            body = capture.tee(body)
            background.add_task(self._store_in_cache, request, headers, capture)
        else:
            LOGGER.info("cache_put_skipped", key=key, size=obj.size, reason="object_too_large")
        return StreamingResponse(body, status_code=status.HTTP_200_OK, headers=headers)

    def _cacheable(self, obj: StoredObject) -> bool:
        limit = self._cache_max_object_bytes
        return limit is None or obj.size <= limit

    async def _store_in_cache(self, request: Request, headers: dict[str, str], capture: _BodyCapture) -> None:
        if not capture.complete:
            LOGGER.info("cache_put_skipped", path=request.url.path, reason="incomplete_body")
            return
        response = CachedResponse(
            status_code=status.HTTP_200_OK,
            headers=tuple(headers.items()),
            body=capture.body(),
        )
        try:
            await self._cache.put(request, response)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("cache_put_failed", path=request.url.path, error=str(exc))
            return
        CACHE_WRITES_COUNTER.inc()
