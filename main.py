"""
Onboarding OAuth connection service — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.settings import config
from connectors.encryption import is_encryption_enabled
from connectors.registry import ConnectorRegistry
from connectors.routes import router as oauth_router

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "sqlalchemy.engine", "asyncio"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Onboarding OAuth Connection Service",
        version="1.0.0",
        description="OAuth connections and asset sync for Meta, Google, TikTok and Shopify.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(oauth_router, prefix="/api/v1/oauth")

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "platforms": ConnectorRegistry().list_configured()}

    @app.on_event("startup")
    async def on_startup():
        logger.info("Discovering connectors…")
        ConnectorRegistry().discover()

        if not is_encryption_enabled():
            logger.warning("Token encryption disabled; set TOKEN_ENCRYPTION_KEY in production.")

        if config.create_tables_on_startup:
            from database.session import create_tables

            await create_tables()
            logger.info("Database tables ensured.")

        logger.info("Application ready to accept requests.")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
