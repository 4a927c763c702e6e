"""Exception handlers that turn auth failures into JSON error bodies."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .auth.cookies import clear_session_cookie
from .auth.errors import AuthError
from .auth.sessions import short_id

LOGGER = logging.getLogger(__name__)


def _error_response(status_code: int, message: str, code: str | None = None) -> JSONResponse:
    content: dict = {"errors": [message]}
    if code:
        content["reason"] = code
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers for auth errors and anything that escapes a route."""

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        auth_service = request.app.state.auth_service
        log_fn = LOGGER.error if exc.status_code >= 500 else LOGGER.info
        log_fn(
            "Auth error on %s %s (session %s): %s (%s)",
            request.method,
            request.url.path,
            short_id(auth_service.request_session_id(request)),
            exc.code,
            exc.detail or exc.message,
        )
        response = _error_response(exc.status_code, exc.message, exc.code)
        if exc.clear_session:
            clear_session_cookie(response, request, auth_service.settings)
        return response

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        LOGGER.exception(
            "Unhandled error on %s %s (session %s)",
            request.method,
            request.url.path,
            short_id(request.app.state.auth_service.request_session_id(request)),
        )
        return _error_response(500, "Internal server error")
