from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException, Request

from edgecdn.common.http_security import require_metrics_access
from edgecdn.common.settings import EdgeSettings

TOKEN_SETTINGS = EdgeSettings(metrics_token="scrape-secret")
OPEN_SETTINGS = EdgeSettings(metrics_token=None)


def _make_request(*, headers: dict[str, str] | None = None, client_host: str = "127.0.0.1") -> Request:
    app = FastAPI()
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/_edge/metrics",
        "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
        "client": (client_host, 12345),
        "server": ("testserver", 80),
        "http_version": "1.1",
        "scheme": "http",
        "app": app,
    }
    return Request(scope)


@pytest.mark.parametrize(
    "headers",
    [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "Basic scrape-secret"}, {"Authorization": "Bearer "}],
)
def test_metrics_token_rejects_bad_credentials(headers) -> None:
    with pytest.raises(HTTPException) as excinfo:
        require_metrics_access(_make_request(headers=headers), TOKEN_SETTINGS)
    assert excinfo.value.status_code == 401


@pytest.mark.parametrize("scheme", ["Bearer", "bearer"])
def test_metrics_token_allows_remote_clients(scheme: str) -> None:
    request = _make_request(headers={"Authorization": f"{scheme} scrape-secret"}, client_host="203.0.113.5")
    require_metrics_access(request, TOKEN_SETTINGS)


@pytest.mark.parametrize("client_host", ["127.0.0.1", "::1"])
def test_metrics_without_token_allows_loopback(client_host: str) -> None:
    require_metrics_access(_make_request(client_host=client_host), OPEN_SETTINGS)


@pytest.mark.parametrize("client_host", ["203.0.113.5", "not-an-ip"])
def test_metrics_without_token_rejects_remote(client_host: str) -> None:
    with pytest.raises(HTTPException) as excinfo:
        require_metrics_access(_make_request(client_host=client_host), OPEN_SETTINGS)
    assert excinfo.value.status_code == 403
