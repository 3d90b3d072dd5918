"""Resource key and download identity extraction from request paths."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request


@dataclass(frozen=True)
class ResourceIdentity:
    """Project and version a download path belongs to."""

    project_id: str
    version_id: str
    file_name: str


def resource_key(path: str) -> str:
    return path[1:] if path.startswith("/") else path


def raw_request_path(request: Request) -> str:
    """The request path as sent, with percent escapes left intact."""
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return request.url.path
    return raw_path.split(b"?", 1)[0].decode("latin-1")


def request_resource_key(request: Request) -> str:
    return resource_key(raw_request_path(request))


def raw_request_url(request: Request) -> str:
    return str(request.url.replace(path=raw_request_path(request)))


def _segment_after(parts: list[str], anchor: str) -> Optional[str]:
    try:
        index = parts.index(anchor)
    except ValueError:
        return None
    if index + 1 >= len(parts) or not parts[index + 1]:
        return None
    return parts[index + 1]


def parse_resource_identity(path: str) -> Optional[ResourceIdentity]:
    """Extract ids from paths shaped like ``data/<project>/versions/<version>/<file>``.

    Each id is the segment following the first ``data`` or ``versions`` segment.
    Returns ``None`` when an anchor is missing or has nothing after it.
    """
    parts = path.split("/")
    project_id = _segment_after(parts, "data")
    version_id = _segment_after(parts, "versions")
    if project_id is None or version_id is None:
        return None
    return ResourceIdentity(project_id=project_id, version_id=version_id, file_name=parts[-1])
