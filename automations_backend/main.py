from __future__ import annotations

import logging
from typing import Dict

from dotenv import load_dotenv

# Load environment variables from .env at project root
# before settings are read by any downstream module.
load_dotenv()

from fastapi import FastAPI

from automations_backend.config import ConfigurationError, settings
from automations_backend.db import init_db
from automations_backend.routers import automations as automations_router

logger = logging.getLogger("automations.main")


def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, debug=settings.debug)

    # Scheduler trigger + tenant automation API
    app.include_router(automations_router.router)

    @app.on_event("startup")
    async def on_startup() -> None:
        """Initialize resources on startup."""
        logger.info("Starting %s...", settings.app_name)
        try:
            init_db()
        except ConfigurationError as exc:
            # Requests report the configuration error as a JSON 500.
            logger.error("Database not initialized: %s", exc)
        logger.info("%s started.", settings.app_name)

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok", "app": settings.app_name}

    return app


app = create_app()
