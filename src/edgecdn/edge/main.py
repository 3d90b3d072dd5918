"""Command-line entrypoint for running the edge content service."""

from __future__ import annotations

import uvicorn

from ..common.settings import EdgeSettings
from .app import create_app


def main() -> None:
    settings = EdgeSettings()
    uvicorn.run(create_app(settings), host=settings.bind_address, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
