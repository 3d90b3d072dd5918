from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx
import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from edgecdn.common.settings import EdgeSettings
from edgecdn.edge.app import create_app
from edgecdn.edge.response_cache import CachedResponse, MemoryResponseCache
from edgecdn.edge.storage import ObjectMetadata, ObjectStore, ObjectStoreUnavailable, StoredObject

UPLOADED = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


async def iter_chunks(payload: bytes, chunk_size: int = 4) -> AsyncIterator[bytes]:
    for start in range(0, len(payload), chunk_size):
        yield payload[start : start + chunk_size]


class FakeObjectStore(ObjectStore):
    def __init__(self) -> None:
        self._objects: dict[str, tuple[StoredObject, bytes]] = {}
        self.failing_keys: set[str] = set()
        self.head_calls: list[str] = []
        self.get_calls: list[str] = []

    def add(self, key: str, payload: bytes, etag: Optional[str] = None, **metadata: str) -> StoredObject:
        obj = StoredObject(
            key=key,
            http_etag=etag or f'"etag-{len(self._objects)}"',
            uploaded=UPLOADED,
            size=len(payload),
            metadata=ObjectMetadata(**metadata),
        )
        self._objects[key] = (obj, payload)
        return obj

    @property
    def calls(self) -> int:
        return len(self.head_calls) + len(self.get_calls)

    async def head(self, key: str) -> Optional[StoredObject]:
        self.head_calls.append(key)
        if key in self.failing_keys:
            raise ObjectStoreUnavailable("store down")
        entry = self._objects.get(key)
        return entry[0] if entry else None

    async def get(self, key: str) -> Optional[StoredObject]:
        self.get_calls.append(key)
        if key in self.failing_keys:
            raise ObjectStoreUnavailable("store down")
        entry = self._objects.get(key)
        if entry is None:
            return None
        obj, payload = entry
        return replace(obj, body=iter_chunks(payload))

    def status(self) -> dict[str, object]:
        return {"backend": "fake", "objects": len(self._objects)}


class RecordingCache(MemoryResponseCache):
    def __init__(self) -> None:
        super().__init__(max_entries=16, default_ttl=60)
        self.match_calls = 0
        self.put_calls = 0

    async def match(self, request: Request) -> Optional[CachedResponse]:
        self.match_calls += 1
        return await super().match(request)

    async def put(self, request: Request, response: CachedResponse) -> None:
        self.put_calls += 1
        await super().put(request, response)


class AccountingBackend:
    """Collects PATCH calls made by the accounting reporter."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 204
        self.error: Optional[Exception] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, text="ok")

    def payloads(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests]


def build_request(method: str = "GET", path: str = "/", headers: Optional[dict[str, str]] = None) -> Request:
    raw_headers = [(b"host", b"testserver")]
    for name, value in (headers or {}).items():
        raw_headers.append((name.lower().encode("latin-1"), value.encode("latin-1")))
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("utf-8"),
        "root_path": "",
        "query_string": b"",
        "headers": raw_headers,
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 50000),
    }
    return Request(scope)


@pytest.fixture
def make_request():
    return build_request


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def cache() -> RecordingCache:
    return RecordingCache()


@pytest.fixture
def accounting() -> AccountingBackend:
    return AccountingBackend()


@pytest.fixture
def settings(tmp_path: Path) -> EdgeSettings:
    return EdgeSettings(
        labrinth_url="https://api.example.test/v2/",
        labrinth_admin_key="admin-secret",
        rate_limit_ignore_key="ratelimit-secret",
        storage_path=tmp_path / "objects",
        metrics_token="metrics-secret",
        redis_url=None,
    )


@pytest.fixture
def client(settings, store, cache, accounting):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(accounting))
    app = create_app(settings, store=store, cache=cache, http_client=http_client)
    with TestClient(app) as test_client:
        yield test_client
