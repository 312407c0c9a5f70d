"""
Integration connection manager — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.catalog import CatalogTables
from config.settings import Settings, config
from connectors.provider import HttpConnectorProvider
from connectors.routes import router as integrations_router
from connectors.service import IntegrationService
from connectors.storage import DatabaseSecureStore
from database.session import dispose_engine, get_engine, get_session_factory, init_models

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "asyncio", "sqlalchemy.engine"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def build_service(settings: Settings) -> IntegrationService:
    """Wire the production service: database-backed vault store + HTTP provider."""
    settings.require("provider_secret_key", "token_encryption_key", "jwt_secret", "database_url")
    engine = get_engine(settings.database_url)
    await init_models(engine)
    store = DatabaseSecureStore(get_session_factory(settings.database_url))
    provider = HttpConnectorProvider(settings)
    tables = CatalogTables(settings.connector_catalog_file)
    return IntegrationService(settings, provider, store, tables=tables)


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[IntegrationService] = None,
) -> FastAPI:
    settings = settings or config
    app = FastAPI(
        title="Integration Connection Manager",
        version="1.0.0",
        description="Connect third-party accounts, manage their credentials and run actions on them.",
    )
    app.state.settings = settings
    app.state.integration_service = service

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(integrations_router, prefix="/api/v1/integrations")

    @app.on_event("startup")
    async def on_startup():
        if app.state.integration_service is None:
            logger.info("Building integration service…")
            app.state.integration_service = await build_service(settings)
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        service = app.state.integration_service
        if service is not None:
            await service.close()
        await dispose_engine()

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
