from __future__ import annotations

import uvicorn

from esgflow.core.config import get_settings


def main() -> None:
    # Logging is configured by create_app, so uvicorn keeps its own config out of the way.
    settings = get_settings()
    uvicorn.run(
        "esgflow.apps.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
