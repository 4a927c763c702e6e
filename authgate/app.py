"""FastAPI application for the Auth Gateway."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .auth import AuthService, auth_router
from .auth.config import DEFAULT_SESSION_SECRET, AuthSettings
from .auth.oidc import OIDCClient
from .config import API_ALLOWED_ORIGINS, API_HOST, API_PORT, SESSION_PRUNE_ON_STARTUP
from .db import Database
from .error_handling import register_exception_handlers
from .logging_config import configure_logging

configure_logging()
LOGGER = logging.getLogger(__name__)


def create_app(
    settings: Optional[AuthSettings] = None,
    *,
    database: Optional[Database] = None,
    oidc_client: Optional[OIDCClient] = None,
) -> FastAPI:
    """Build the gateway application with its own settings, store, and auth service."""
    settings = settings or AuthSettings.from_env()
    database = database or Database()
    database.init_schema()

    LOGGER.info("Creating Auth Gateway FastAPI application")
    app = FastAPI(
        title="Auth Gateway API",
        version="1.0.0",
        description="Local and OpenID Connect login with server-side sessions.",
    )
    app.state.settings = settings
    app.state.database = database
    app.state.auth_service = AuthService(settings, database, oidc_client=oidc_client)

    # Browsers only send the session cookie cross-origin when credentials are allowed.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=API_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(auth_router)

    @app.on_event("startup")
    def prepare_sessions() -> None:
        if settings.session_secret == DEFAULT_SESSION_SECRET:
            LOGGER.warning("SESSION_SECRET is not set; using the development secret")
        if not settings.federated_enabled and settings.oidc_enabled:
            LOGGER.warning("OIDC_ENABLED is set but issuer, client id, or client secret is missing")
        if SESSION_PRUNE_ON_STARTUP:
            app.state.auth_service.sessions.prune_expired()

    @app.on_event("shutdown")
    def release_database() -> None:
        database.dispose()

    @app.get("/api/health", tags=["health"])
    def healthcheck() -> dict[str, str]:
        """Report a simple OK status used for readiness checks."""
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn

    LOGGER.info("Launching Uvicorn development server on %s:%s", API_HOST, API_PORT)
    uvicorn.run("authgate.app:create_app", host=API_HOST, port=API_PORT, factory=True, reload=True)
