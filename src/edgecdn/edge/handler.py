"""Request pipeline: method gating, preflight, accounting dispatch, content fetch."""

from __future__ import annotations

from typing import Optional

from fastapi import BackgroundTasks, Request, Response
import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .accounting import AccountingReporter, DownloadEvent
from .cors import is_allowed_method, method_not_allowed, preflight_response
from .fetcher import ContentFetcher
from .paths import parse_resource_identity, request_resource_key

LOGGER = structlog.get_logger("edgecdn.handler")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("edgecdn_requests_total", "Requests handled by the edge"))
REJECTED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgecdn_method_not_allowed_total", "Requests rejected for their method")
)
DOWNLOADS_DISPATCHED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgecdn_downloads_dispatched_total", "Download events queued for accounting")
)


class RequestHandler:
    def __init__(self, fetcher: ContentFetcher, reporter: Optional[AccountingReporter] = None) -> None:
        self._fetcher = fetcher
        self._reporter = reporter

    async def handle(self, request: Request, background: BackgroundTasks) -> Response:
        REQUEST_COUNTER.inc()
        method = request.method
        if not is_allowed_method(method):
            REJECTED_COUNTER.inc()
            return method_not_allowed()
        if method == "OPTIONS":
            return preflight_response()

        # Looked up before accounting so hits and misses are counted alike
        cached = await self._fetcher.lookup(request)
        key = request_resource_key(request)

        event = self._download_event(request, key) if method == "GET" else None
        response = await self._fetcher.respond(request, key, cached, background)
        if event is not None:
            # Accounting runs after the cache fill
            DOWNLOADS_DISPATCHED_COUNTER.inc()
            background.add_task(self._reporter.report, event)
        return response

    def _download_event(self, request: Request, key: str) -> Optional[DownloadEvent]:
        if self._reporter is None:
            return None
        identity = parse_resource_identity(key)
        if identity is None:
            return None
        if not self._reporter.is_counted(identity):
            LOGGER.debug("download_not_counted", file_name=identity.file_name)
            return None
        return self._reporter.build_event(request, identity)
