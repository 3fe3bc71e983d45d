# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Usage:
    uvicorn campaign_dispatch.server:app_factory --factory --host 0.0.0.0 --port 8000

Configuration is read by :func:`campaign_dispatch.config_loader.load_config`
(``CDS_CONFIG`` file with ``CDS_*`` environment fallbacks).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import DispatchConfig, load_config
from .core import CampaignDispatcher
from .logger import configure_logging, get_logger

logger = get_logger("DispatchServer")


def build_app(config: DispatchConfig, dispatcher: CampaignDispatcher | None = None) -> FastAPI:
    """FastAPI app whose lifespan opens and closes the dispatcher."""
    dispatcher = dispatcher or CampaignDispatcher(config)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
        await dispatcher.init()
        logger.info("Campaign dispatcher ready (db=%s, worker=%s)", config.db_path, dispatcher.worker_id)
        try:
            yield
        finally:
            await dispatcher.close()
            logger.info("Campaign dispatcher stopped")

    if config.api_token is None:
        logger.warning("No API token configured; the HTTP API is unauthenticated")
    return create_app(dispatcher, api_token=config.api_token, lifespan=lifespan)


def app_factory() -> FastAPI:
    config = load_config()
    configure_logging(config.log_level)
    return build_app(config)


__all__ = ["app_factory", "build_app"]
