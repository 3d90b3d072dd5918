"""Front-line response cache keyed by request URL."""

from __future__ import annotations

import hashlib
import json
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Optional

from fastapi import Request, Response
from redis.asyncio import Redis
import structlog

from .paths import raw_request_url

LOGGER = structlog.get_logger("edgecdn.response_cache")

_MAX_AGE_PATTERN = r"(?:^|[,\s]){directive}\s*=\s*\"?(\d+)"


@dataclass(frozen=True)
class CachedResponse:
    """A complete response as held by the cache. Replaced wholesale, never edited."""

    status_code: int
    headers: tuple[tuple[str, str], ...]
    body: bytes

    @property
    def usable(self) -> bool:
        return 200 <= self.status_code < 300 or self.status_code == 304

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    def to_response(self) -> Response:
        response = Response(content=self.body, status_code=self.status_code)
        response.raw_headers = [(key.encode("latin-1"), value.encode("latin-1")) for key, value in self.headers]
        return response


def cache_key(request: Request) -> str:
    return raw_request_url(request)


def ttl_from_headers(headers: Iterable[tuple[str, str]], default: int) -> int:
    """Lifetime from ``s-maxage``, else ``max-age``, else ``default``."""
    cache_control = ",".join(value for key, value in headers if key.lower() == "cache-control")
    for directive in ("s-maxage", "max-age"):
        match = re.search(_MAX_AGE_PATTERN.format(directive=directive), cache_control, re.IGNORECASE)
        if match:
            return int(match.group(1))
    return default


class ResponseCache:
    async def match(self, request: Request) -> Optional[CachedResponse]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, request: Request, response: CachedResponse) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class MemoryResponseCache(ResponseCache):
    """Per-process LRU cache bounded by entry count and total body bytes.

    Only GET requests match or get stored.
    """

    def __init__(self, max_entries: int = 1024, default_ttl: int = 3600, max_bytes: Optional[int] = None):
        self._max_entries = max(1, max_entries)
        self._max_bytes = max_bytes
        self._default_ttl = default_ttl
        self._entries: OrderedDict[str, tuple[float, CachedResponse]] = OrderedDict()
        self._size_bytes = 0

    def _discard(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._size_bytes -= len(entry[1].body)

    def _over_budget(self) -> bool:
        if len(self._entries) > self._max_entries:
            return True
        return self._max_bytes is not None and self._size_bytes > self._max_bytes

    async def match(self, request: Request) -> Optional[CachedResponse]:
        if request.method != "GET":
            return None
        key = cache_key(request)
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, response = entry
        if time.monotonic() >= expires_at:
            self._discard(key)
            return None
        self._entries.move_to_end(key)
        return response

    async def put(self, request: Request, response: CachedResponse) -> None:
        if request.method != "GET":
            LOGGER.debug("response_cache_put_skipped", method=request.method)
            return
        ttl = ttl_from_headers(response.headers, self._default_ttl)
        if ttl <= 0:
            return
        key = cache_key(request)
        self._discard(key)
        if self._max_bytes is not None and len(response.body) > self._max_bytes:
            LOGGER.info("response_cache_put_skipped", cache_key=key, size=len(response.body), reason="over_budget")
            return
        self._entries[key] = (time.monotonic() + ttl, response)
        self._size_bytes += len(response.body)
        while self._over_budget():
            evicted = next(iter(self._entries))
            self._discard(evicted)
            LOGGER.debug("response_cache_evicted", cache_key=evicted)

    def status(self) -> dict[str, object]:
        return {
            "backend": "memory",
            "entries": len(self._entries),
            "max_entries": self._max_entries,
            "size_bytes": self._size_bytes,
            "max_bytes": self._max_bytes,
        }

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    def __len__(self) -> int:
        return len(self._entries)


class RedisResponseCache(ResponseCache):
    """Shared cache in Redis hashes. Redis failures degrade to cache misses."""

    def __init__(self, redis: Redis, prefix: str = "edgecdn:response", default_ttl: int = 3600):
        self._redis = redis
        self._prefix = prefix
        self._default_ttl = default_ttl

    def _key(self, request: Request) -> str:
        digest = hashlib.sha256(cache_key(request).encode("utf-8")).hexdigest()
        return f"{self._prefix}:{digest}"

    async def match(self, request: Request) -> Optional[CachedResponse]:
        if request.method != "GET":
            return None
        key = self._key(request)
        try:
            data = await self._redis.hgetall(key)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("response_cache_match_failed", cache_key=key, error=str(exc))
            return None
        if not data or b"status" not in data:
            return None
        headers = tuple((str(name), str(value)) for name, value in json.loads(data[b"headers"]))
        return CachedResponse(status_code=int(data[b"status"]), headers=headers, body=bytes(data.get(b"body", b"")))

    async def put(self, request: Request, response: CachedResponse) -> None:
        if request.method != "GET":
            return
        ttl = ttl_from_headers(response.headers, self._default_ttl)
        if ttl <= 0:
            return
        key = self._key(request)
        try:
            await self._redis.hset(
                key,
                mapping={
                    "status": str(response.status_code),
                    "headers": json.dumps([list(pair) for pair in response.headers]),
                    "body": response.body,
                },
            )
            await self._redis.expire(key, ttl)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("response_cache_put_failed", cache_key=key, error=str(exc))

    def status(self) -> dict[str, object]:
        return {"backend": "redis", "prefix": self._prefix}
