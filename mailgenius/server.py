"""ASGI application wiring for uvicorn.

Usage:
    python main.py
    mailgenius serve --port 8000

Configuration is read by :func:`mailgenius.config.load_settings`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Mapping

import uvicorn
from fastapi import FastAPI

from .api import create_app
from .service import MailGeniusService


def configure_logging(level: str | None) -> None:
    """Configure the root logger once for the whole process."""
    logging.basicConfig(
        level=getattr(logging, str(level or "INFO").upper(), logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def build_app(settings: Mapping[str, Any], service: MailGeniusService | None = None) -> FastAPI:
    """Create the service and the FastAPI app whose lifespan starts and stops it."""
    svc = service or MailGeniusService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await svc.start()
        yield
        await svc.stop()

    return create_app(
        svc,
        api_token=settings.get("api_token"),
        lifespan=lifespan,
        cron_secret=settings.get("cron_secret"),
    )


def serve(settings: Mapping[str, Any]) -> None:
    app = build_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
