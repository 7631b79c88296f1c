"""FastAPI application hosting the desk/scanner pairing relay."""
from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import Settings, settings
from .routers import desk, meta, relay, scan_sessions
from .services.pairing_store import PairingStore
from .services.relay import RelayServer
from .services.scan_sessions import ScanSessionStore

logger = logging.getLogger(__name__)


def create_app(config: Settings | None = None) -> FastAPI:
    """Build the application with its own pairing store and room registry."""

    config = config or settings
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    application = FastAPI(title="Desk Relay API", version="0.1.0")

    if config.cors_allow_origins or config.cors_allow_origin_regex:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_allow_origins,
            allow_origin_regex=config.cors_allow_origin_regex,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT"],
            allow_headers=["*"],
        )

    application.state.settings = config
    application.state.relay = RelayServer(PairingStore(ttl_seconds=config.pairing_ttl_seconds))
    application.state.scan_sessions = ScanSessionStore(ttl_seconds=config.scan_session_ttl_seconds)

    application.include_router(desk.router, prefix="/api/desk", tags=["desk"])
    application.include_router(scan_sessions.router, prefix="/api/scan-session", tags=["scan-session"])
    application.include_router(relay.router)
    application.add_api_websocket_route(config.relay_path, relay.relay_endpoint, name="relay")
    application.include_router(meta.router, tags=["meta"])

    logger.info("Desk relay initialised (env=%s)", config.app_env)
    return application


app = create_app()
