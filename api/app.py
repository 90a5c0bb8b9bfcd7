"""
Deployment Controller API application.

Usage:
    from api.app import create_app
    app = create_app()

    # uvicorn api.app:create_app --factory
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from deployctl import __version__
from deployctl.config import AppConfig, get_data_dir, load_config
from deployctl.core.logging_config import setup_logging
from deployctl.deployment.builder import Controller, ControllerBuilder

from .deployment_router import router as deployment_router
from .deployment_router import set_controller

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[AppConfig] = None,
    controller: Optional[Controller] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application around a controller.

    Args:
        config: Application config (loaded from config.yaml and env if None)
        controller: Prebuilt controller (built from config if None)
        configure_logging: Install root log handlers from config
    """
    config = config or load_config()

    if configure_logging:
        deployment_log = None
        if config.controller.persist_sessions:
            deployment_log = str(get_data_dir(config) / "deployments.jsonl")
        setup_logging(
            level=config.general.log_level,
            json_format=config.general.json_logs,
            deployment_log_file=deployment_log,
        )

    controller = controller or ControllerBuilder(config).build()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        set_controller(controller, config)
        await controller.start()
        logger.info("Deployment controller started")
        try:
            yield
        finally:
            await controller.stop()
            set_controller(None)
            logger.info("Deployment controller stopped")

    app = FastAPI(
        title="Deployment Controller API",
        version=__version__,
        description="Progressive traffic shifting with automatic rollback.",
        lifespan=lifespan,
    )
    app.include_router(deployment_router, tags=["deployments"])
    return app
