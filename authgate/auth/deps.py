"""FastAPI dependencies for session-aware routes.

Domain routers protect themselves with ``Depends(require_user)``; the
resolved user is also left on ``request.state.current_user``.
"""

from __future__ import annotations

from fastapi import Depends, Request, Response

from .cookies import clear_session_cookie
from .errors import Unauthenticated
from .schemas import SessionUser
from .service import AuthenticatedSession, AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_optional_session(
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> AuthenticatedSession | None:
    principal = auth_service.validate_request(request)
    if principal is not None:
        request.state.current_user = auth_service.serialize_user(principal.user)
    elif request.state.stale_session:
        clear_session_cookie(response, request, auth_service.settings)
    return principal


def get_authenticated_session(
    request: Request,
    principal: AuthenticatedSession | None = Depends(get_optional_session),
) -> AuthenticatedSession:
    if principal is None:
        raise Unauthenticated(clear_session=request.state.stale_session)
    return principal


def require_user(
    request: Request,
    _: AuthenticatedSession = Depends(get_authenticated_session),
) -> SessionUser:
    return request.state.current_user
