# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module builds the PortMail service from the configuration file and
the ``PM_*`` environment variables, and exposes the FastAPI application.

Usage:
    uvicorn portmail.server:app --host 0.0.0.0 --port 8000

Environment variables:
    PM_CONFIG: Path to the INI configuration file (default: config.ini)
    PM_LOG_LEVEL: Logging level (default: INFO)
    PM_ENVIRONMENT: ``development`` starts the local self-trigger and
        disables the cron secret check
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import ServiceConfig, load_config
from .core import PortMailService
from .logger import configure_logging, get_logger


def build_app(config: ServiceConfig) -> FastAPI:
    """Create the service and the application bound to its lifecycle."""
    service = PortMailService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the service."""
        await service.start()
        yield
        await service.stop()

    return create_app(
        service,
        api_token=config.api_token,
        cron_secret=config.cron_secret,
        production=config.is_production,
        lifespan=lifespan,
    )


configure_logging()
_config = load_config()
get_logger("PortMail").info(
    "PortMail starting (environment=%s, db=%s, storage=%s)",
    _config.environment,
    _config.storage.db_path,
    _config.storage.backend,
)

# Create the configured application
app = build_app(_config)
