"""CORS header policy and structured error responses."""

from __future__ import annotations

from fastapi import Response, status
from fastapi.responses import JSONResponse

ALLOWED_METHODS = ("GET", "HEAD", "OPTIONS")
ALLOW_HEADER_VALUE = ", ".join(ALLOWED_METHODS)


def default_cors_headers() -> dict[str, str]:
    return {
        "allow": ALLOW_HEADER_VALUE,
        "access-control-allow-headers": "*",
        "access-control-allow-methods": ALLOW_HEADER_VALUE,
        "access-control-allow-origin": "*",
    }


def is_allowed_method(method: str) -> bool:
    return method in ALLOWED_METHODS


def make_error(code: int, error: str, description: str) -> JSONResponse:
    headers = default_cors_headers()
    headers["content-type"] = "application/json"
    return JSONResponse({"error": error, "description": description}, status_code=code, headers=headers)


def method_not_allowed() -> JSONResponse:
    return make_error(status.HTTP_405_METHOD_NOT_ALLOWED, "method_not_allowed", "request method is not allowed")


def not_found() -> JSONResponse:
    return make_error(status.HTTP_404_NOT_FOUND, "not_found", "the requested resource does not exist")


def preflight_response() -> Response:
    # Preflight answers carry Allow only, not the full CORS set
    return Response(status_code=status.HTTP_200_OK, headers={"allow": ALLOW_HEADER_VALUE})
