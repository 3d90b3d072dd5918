"""Access control for the edge's operational routes."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status

from .settings import EdgeSettings


def _bearer_token(request: Request) -> Optional[str]:
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def _is_loopback(host: Optional[str]) -> bool:
    if not host:
        return False
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def require_metrics_access(request: Request, settings: EdgeSettings) -> None:
    """Metrics need ``EDGECDN_METRICS_TOKEN`` as a bearer token when set, else a loopback client."""
    expected = settings.metrics_token.get_secret_value() if settings.metrics_token else ""
    if expected:
        presented = _bearer_token(request)
        if presented is None or not hmac.compare_digest(presented.encode(), expected.encode()):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    if not _is_loopback(request.client.host if request.client else None):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")
