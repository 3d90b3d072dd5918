"""Best-effort download accounting against the labrinth admin API."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterable, Optional, Protocol

import httpx
import structlog
from fastapi import Request
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import EdgeSettings
from .downloads import downloader_key
from .paths import ResourceIdentity, raw_request_url

LOGGER = structlog.get_logger("edgecdn.accounting")
TRACER = trace.get_tracer("edgecdn.accounting")

DEFAULT_CLIENT_IP = "127.0.0.1"
COUNT_DOWNLOAD_PATH = "admin/_count-download"

DOWNLOADS_REPORTED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgecdn_downloads_reported_total", "Download events accepted by the accounting backend")
)
DOWNLOADS_LIMITED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgecdn_downloads_limited_total", "Download events dropped by the per-downloader limit")
)
ACCOUNTING_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgecdn_accounting_failures_total", "Download events the accounting backend did not accept")
)


class DownloadLimiter(Protocol):
    async def check(self, key: str) -> tuple[bool, int]: ...


@dataclass(frozen=True)
class DownloadEvent:
    url: str
    project_id: str
    version_name: str
    ip: str
    headers: dict[str, str] = field(default_factory=dict)

    def payload(self) -> dict[str, object]:
        return {
            "url": self.url,
            "project_id": self.project_id,
            "version_name": self.version_name,
            "ip": self.ip,
            "headers": dict(self.headers),
        }


def flatten_headers(request: Request) -> dict[str, str]:
    flat: dict[str, str] = {}
    for name, value in request.headers.items():
        flat[name] = f"{flat[name]}, {value}" if name in flat else value
    return flat


class AccountingReporter:
    """Sends one PATCH per counted download. Failures are logged and dropped."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        admin_key: str,
        rate_limit_key: str,
        *,
        client_ip_header: str = "CF-Connecting-IP",
        uncounted_extensions: Iterable[str] = ("md", "markdown"),
        limiter: Optional[DownloadLimiter] = None,
    ) -> None:
        self._client = client
        self._endpoint = f"{base_url.rstrip('/')}/{COUNT_DOWNLOAD_PATH}"
        self._admin_key = admin_key
        self._rate_limit_key = rate_limit_key
        self._client_ip_header = client_ip_header
        self._uncounted_extensions = frozenset(ext.lower().lstrip(".") for ext in uncounted_extensions)
        self._limiter = limiter

    @classmethod
    def from_settings(
        cls,
        settings: EdgeSettings,
        client: httpx.AsyncClient,
        limiter: Optional[DownloadLimiter] = None,
    ) -> "AccountingReporter":
        if not settings.labrinth_url:
            raise RuntimeError("Accounting requires EDGECDN_LABRINTH_URL")
        return cls(
            client,
            settings.labrinth_url,
            settings.labrinth_admin_key.get_secret_value(),
            settings.rate_limit_ignore_key.get_secret_value(),
            client_ip_header=settings.client_ip_header,
            uncounted_extensions=settings.uncounted_extension_set,
            limiter=limiter,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def is_counted(self, identity: ResourceIdentity) -> bool:
        if not identity.file_name:
            return False
        suffix = PurePosixPath(identity.file_name).suffix.lower().lstrip(".")
        return suffix not in self._uncounted_extensions

    def build_event(self, request: Request, identity: ResourceIdentity) -> DownloadEvent:
        return DownloadEvent(
            url=raw_request_url(request),
            project_id=identity.project_id,
            version_name=identity.version_id,
            ip=request.headers.get(self._client_ip_header) or DEFAULT_CLIENT_IP,
            headers=flatten_headers(request),
        )

    async def report(self, event: DownloadEvent) -> None:
        log = LOGGER.bind(project_id=event.project_id, version_name=event.version_name)
        if self._limiter is not None:
            try:
                allowed, current = await self._limiter.check(downloader_key(event.project_id, event.ip))
            except Exception as exc:  # noqa: BLE001
                log.error("download_limiter_failed", error=str(exc))
                allowed, current = True, 0
            if not allowed:
                DOWNLOADS_LIMITED_COUNTER.inc()
                log.info("download_count_skipped", downloads=current)
                return

        log.info("download_count_started", url=self._endpoint)
        with TRACER.start_as_current_span(
            "accounting.count_download",
            attributes={"edgecdn.project_id": event.project_id, "edgecdn.version_name": event.version_name},
        ) as span:
            try:
                response = await self._client.patch(
                    self._endpoint,
                    headers={
                        "Modrinth-Admin": self._admin_key,
                        "x-ratelimit-key": self._rate_limit_key,
                        "content-type": "application/json",
                    },
                    json=event.payload(),
                )
            except Exception as exc:  # noqa: BLE001
                ACCOUNTING_FAILURES_COUNTER.inc()
                log.warning("download_count_failed", error=str(exc), error_type=type(exc).__name__)
                return

            span.set_attribute("http.status_code", response.status_code)
            if response.is_success:
                DOWNLOADS_REPORTED_COUNTER.inc()
                log.info("download_count_finished", status=response.status_code, body=response.text)
            else:
                ACCOUNTING_FAILURES_COUNTER.inc()
                log.warning("download_count_rejected", status=response.status_code, body=response.text)
