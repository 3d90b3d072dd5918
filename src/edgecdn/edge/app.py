"""Edge content service serving object store assets behind a response cache."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import PlainTextResponse
from redis.asyncio import Redis, from_url as redis_from_url
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Histogram
from ..common.observability import configure_observability, instrument_fastapi_app
from ..common.settings import EdgeSettings
from .accounting import AccountingReporter, DownloadLimiter
from .cors import make_error, method_not_allowed
from .downloads import InMemoryDownloadLimiter, RedisDownloadLimiter
from .fetcher import ContentFetcher
from .handler import RequestHandler
from .response_cache import MemoryResponseCache, RedisResponseCache, ResponseCache
from .storage import ObjectStore, ObjectStoreUnavailable, build_object_store

LOGGER = structlog.get_logger("edgecdn.app")

# Every verb is routed so the handler, not the router, answers disallowed ones
ROUTED_METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE", "TRACE", "CONNECT"]

REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "edgecdn_request_latency_seconds",
        buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
        description="Edge request latency",
    )
)


class EdgeState:
    def __init__(
        self,
        settings: EdgeSettings,
        store: ObjectStore,
        cache: ResponseCache,
        handler: RequestHandler,
        http_client: Optional[httpx.AsyncClient],
        redis: Optional[Redis],
    ):
        self.settings = settings
        self.store = store
        self.cache = cache
        self.handler = handler
        self.http_client = http_client
        self.redis = redis
        self.logger = structlog.get_logger("edgecdn.edge").bind(backend=store.status().get("backend"))


def get_state(request: Request) -> EdgeState:
    return request.app.state.edge_state  # type: ignore[attr-defined]


def build_cache(settings: EdgeSettings, redis: Optional[Redis]) -> ResponseCache:
    if redis is not None:
        return RedisResponseCache(redis, prefix=settings.cache_key_prefix, default_ttl=settings.cache_default_ttl_seconds)
    return MemoryResponseCache(
        max_entries=settings.cache_max_entries,
        default_ttl=settings.cache_default_ttl_seconds,
        max_bytes=settings.cache_max_bytes,
    )


def build_limiter(settings: EdgeSettings, redis: Optional[Redis]) -> Optional[DownloadLimiter]:
    limit = settings.download_count_limit
    if limit is None:
        return None
    if redis is not None:
        return RedisDownloadLimiter(redis, limit=limit, window_seconds=settings.download_window_seconds)
    return InMemoryDownloadLimiter(limit=limit, window_seconds=settings.download_window_seconds)


def create_app(
    settings: Optional[EdgeSettings] = None,
    *,
    store: Optional[ObjectStore] = None,
    cache: Optional[ResponseCache] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings if settings is not None else EdgeSettings()
    configure_observability("edgecdn.edge", settings)

    redis = redis_from_url(settings.redis_url, decode_responses=False) if settings.redis_url else None
    store = store if store is not None else build_object_store(settings)
    cache = cache if cache is not None else build_cache(settings, redis)

    owns_client = http_client is None and bool(settings.labrinth_url)
    if owns_client:
        http_client = httpx.AsyncClient(timeout=settings.accounting_timeout_seconds)
    reporter = None
    if settings.labrinth_url and http_client is not None:
        reporter = AccountingReporter.from_settings(settings, http_client, limiter=build_limiter(settings, redis))
    else:
        LOGGER.info("download_accounting_disabled")

    fetcher = ContentFetcher(store, cache, cache_max_object_bytes=settings.cache_max_object_bytes)
    state = EdgeState(settings, store, cache, RequestHandler(fetcher, reporter), http_client, redis)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state.logger.info("edge_started", accounting=reporter is not None, cache=cache.status().get("backend"))
        try:
            yield
        finally:
            if owns_client and http_client is not None:
                await http_client.aclose()
            if redis is not None:
                await redis.aclose()

    # Docs routes would shadow object keys
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app)
    app.state.edge_state = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.exception_handler(ObjectStoreUnavailable)
    async def store_unavailable(request: Request, exc: ObjectStoreUnavailable) -> Response:
        state.logger.error("object_store_unavailable", path=request.url.path, error=str(exc))
        return make_error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "service_unavailable",
            "the object store is temporarily unavailable",
        )

    @app.exception_handler(StarletteHTTPException)
    async def router_http_error(request: Request, exc: StarletteHTTPException) -> Response:
        # Non-standard verbs are refused by the router before reaching the handler
        if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            return method_not_allowed()
        return await http_exception_handler(request, exc)

    @app.get("/_edge/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: EdgeState = Depends(get_state)) -> dict:
        """Health check for load balancer probes."""
        health: dict[str, object] = {"status": "healthy", "checks": {}}
        try:
            health["checks"] = {"store": state.store.status(), "cache": state.cache.status()}
        except Exception as exc:  # noqa: BLE001
            health["checks"] = {"store": f"error: {exc}"}
            health["status"] = "unhealthy"
        if health["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get("/_edge/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: EdgeState = Depends(get_state)) -> PlainTextResponse:
        require_metrics_access(request, state.settings)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{resource_path:path}", methods=ROUTED_METHODS, include_in_schema=False)
    async def serve_resource(
        resource_path: str,
        request: Request,
        background_tasks: BackgroundTasks,
        state: EdgeState = Depends(get_state),
    ) -> Response:
        return await state.handler.handle(request, background_tasks)

    return app
