from __future__ import annotations

import asyncio
from pathlib import Path

import uvicorn

from core.api import create_api_app
from core.app import HelpdeskApp
from core.config import AppConfig, load_config
from core.logging import configure_logging


async def _serve(config: AppConfig) -> None:
    helpdesk = HelpdeskApp(config=config)
    api = create_api_app(helpdesk)
    server = uvicorn.Server(
        uvicorn.Config(
            app=api,
            host=config.api.host,
            port=config.api.port,
            log_level=config.logging.level.lower(),
            log_config=None,
        )
    )
    await server.serve()


def main() -> None:
    root = Path(__file__).resolve().parent
    config = load_config(root / "config" / "config.yaml")
    configure_logging(config.logging)
    asyncio.run(_serve(config))


if __name__ == "__main__":
    main()
