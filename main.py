"""
Account connectors service — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import get_vault
from api.middleware import register_middleware
from api.routes import router as api_router
from config.settings import config
from connectors.registry import ConnectorRegistry
from connectors.routes import router as connectors_router

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "asyncio"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Account Connectors",
        version="1.0.0",
        description="Link calendar and file-storage accounts and mirror their data.",
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
    app.include_router(connectors_router, prefix="/api/v1/connectors")
    app.include_router(api_router, prefix="/api/v1")

    @app.on_event("startup")
    async def on_startup():
        # Fail fast on a missing or short vault master secret.
        get_vault()
        from database.session import create_tables

        await create_tables()
        logger.info("Discovering connectors…")
        registry = ConnectorRegistry()
        registry.discover()
        configured = [p["provider"] for p in registry.list_providers() if p["configured"]]
        logger.info("Configured providers: %s", ", ".join(configured) or "none")
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        from database.session import engine

        await engine.dispose()

    @app.get("/health", tags=["meta"])
    async def health():
        return {"status": "ok", "providers": len(ConnectorRegistry().list_providers())}

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
