"""
Integration Gateway — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.settings import config
from connectors.api_connector import ApiConnector
from connectors.encryption import get_cipher
from connectors.events import ALL_EVENTS, EventBus
from connectors.oauth2_manager import OAuth2Manager
from connectors.routes import router as integrations_router
from database.session import build_engine, build_session_factory, create_tables
from database.store import ConnectionStore

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "sqlalchemy.engine", "hpack"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def _log_event(event: str, payload: Dict[str, Any]) -> None:
    logger.debug("event %s %s", event, payload)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Integration Gateway",
        version="1.0.0",
        description="Tenant API connections and OAuth2 integrations.",
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
    app.include_router(integrations_router, prefix="/api/v1/integrations")

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.on_event("startup")
    async def on_startup():
        engine = build_engine()
        await create_tables(engine)
        store = ConnectionStore(build_session_factory(engine))
        cipher = get_cipher()

        events = EventBus()
        events.subscribe(ALL_EVENTS, _log_event)

        api_connector = ApiConnector(store, cipher, events=events)
        oauth2_manager = OAuth2Manager(store, cipher, events=events)

        loaded = await api_connector.load()
        providers = await oauth2_manager.load_providers()
        oauth2_manager.start_sweeper()

        app.state.engine = engine
        app.state.api_connector = api_connector
        app.state.oauth2_manager = oauth2_manager
        logger.info("Gateway ready: %d connections, %d OAuth2 providers.", loaded, providers)

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.oauth2_manager.close()
        await app.state.api_connector.close()
        await app.state.engine.dispose()
        logger.info("Gateway stopped.")

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
