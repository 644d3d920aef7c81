"""Entry point for the Event Bus process: settings, logging, service, HTTP server."""

import asyncio
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from eventbus.api import create_app
from eventbus.logging_config import setup_logging
from eventbus.service import EventBusService
from eventbus.settings import get_setting, load_settings

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _build_server(service: EventBusService, settings: dict) -> uvicorn.Server:
    config = uvicorn.Config(
        create_app(service),
        host=get_setting(settings, "api.host", "0.0.0.0"),
        port=int(get_setting(settings, "api.port", 5007)),
        log_config=None,
    )
    return uvicorn.Server(config)


async def main_async() -> None:
    """Bootstrap: settings -> logging -> service -> serve until shutdown."""
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    service = EventBusService.from_settings(settings, _PROJECT_ROOT)
    server = _build_server(service, settings)
    try:
        await server.serve()
    except asyncio.CancelledError:
        pass


def main() -> None:
    """Synchronous entry for the Event Bus process."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        pass  # uvicorn already ran the lifespan shutdown


__all__ = ["main"]
