"""FastAPI routes that expose session-based authentication flows."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from .config import AuthSettings
from .cookies import attach_session_cookie, clear_session_cookie
from .deps import get_auth_service, get_authenticated_session, get_optional_session
from .errors import AuthError, FederatedDisabled
from .schemas import (
    AuthStatusResponse,
    BootstrapRequest,
    CurrentUserResponse,
    ErrorResponse,
    FederatedConfigResponse,
    FederatedStatusResponse,
    LoginRequest,
    MessageResponse,
    SessionEnvelope,
    SessionMeta,
)
from .service import AuthenticatedSession, AuthService

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])

_LOGGED_OUT = "Logged out successfully"
_CALLBACK_SERVER_ERROR = "server_error"


def _error_redirect(settings: AuthSettings, code: str) -> RedirectResponse:
    query = urlencode({"password": "true", "error": code})
    target = f"{settings.frontend_path(settings.federated_error_path)}?{query}"
    return RedirectResponse(target, status_code=status.HTTP_302_FOUND)


async def _abort_callback(
    request: Request,
    auth_service: AuthService,
    session,
    code: str,
) -> RedirectResponse:
    await run_in_threadpool(auth_service.discard_session, session)
    response = _error_redirect(auth_service.settings, code)
    clear_session_cookie(response, request, auth_service.settings)
    return response


def _establish_response(
    response: Response,
    request: Request,
    auth_service: AuthService,
    session,
) -> None:
    attach_session_cookie(response, request, auth_service.settings, auth_service.sessions.cookie_value(session))
    response.headers["Cache-Control"] = "no-store"


@router.get("/current_user", response_model=CurrentUserResponse)
def current_user(
    principal: Optional[AuthenticatedSession] = Depends(get_optional_session),
    auth_service: AuthService = Depends(get_auth_service),
) -> CurrentUserResponse:
    if principal is None:
        return CurrentUserResponse(user=None)
    return CurrentUserResponse(user=auth_service.serialize_user(principal.user))


@router.post(
    "/login",
    response_model=CurrentUserResponse,
    responses={status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse}},
)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> CurrentUserResponse:
    previous = auth_service.current_session(request)
    user = auth_service.local.authenticate(payload.email, payload.password)
    session = auth_service.establish_session(previous=previous, user=user, federated=False)
    _establish_response(response, request, auth_service, session)
    return CurrentUserResponse(user=auth_service.serialize_user(user))


@router.get("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    auth_service.logout(auth_service.current_session(request))
    clear_session_cookie(response, request, auth_service.settings)
    return MessageResponse(message=_LOGGED_OUT)


@router.get("/auth/status", response_model=AuthStatusResponse)
def auth_status(auth_service: AuthService = Depends(get_auth_service)) -> AuthStatusResponse:
    return AuthStatusResponse(has_users=auth_service.has_any_users())


@router.post("/auth/bootstrap", response_model=CurrentUserResponse, status_code=status.HTTP_201_CREATED)
def bootstrap(
    payload: BootstrapRequest,
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> CurrentUserResponse:
    try:
        user = auth_service.create_initial_user(email=payload.email, password=payload.password, name=payload.name)
    except ValueError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error
    session = auth_service.establish_session(
        previous=auth_service.current_session(request),
        user=user,
        federated=False,
    )
    _establish_response(response, request, auth_service, session)
    return CurrentUserResponse(user=auth_service.serialize_user(user))


@router.get("/auth/session", response_model=SessionEnvelope)
def session_info(
    principal: AuthenticatedSession = Depends(get_authenticated_session),
    auth_service: AuthService = Depends(get_auth_service),
) -> SessionEnvelope:
    return SessionEnvelope(
        user=auth_service.serialize_user(principal.user),
        session=SessionMeta(
            expires_at=principal.session.expires_at,
            federated_login=principal.session.federated_login,
        ),
    )


@router.get("/auth/federated/config", response_model=FederatedConfigResponse)
def federated_config(auth_service: AuthService = Depends(get_auth_service)) -> FederatedConfigResponse:
    return FederatedConfigResponse(enabled=auth_service.federated.enabled)


@router.get("/auth/federated/status", response_model=FederatedStatusResponse)
def federated_status(auth_service: AuthService = Depends(get_auth_service)) -> FederatedStatusResponse:
    federated = auth_service.federated
    return FederatedStatusResponse(
        enabled=federated.enabled,
        configured=federated.configured,
        issuer=auth_service.settings.oidc_issuer if federated.enabled else None,
    )


@router.get("/auth/federated/login")
async def federated_login(request: Request, auth_service: AuthService = Depends(get_auth_service)):
    settings = auth_service.settings
    if not auth_service.federated.enabled:
        raise FederatedDisabled()
    session = await run_in_threadpool(auth_service.current_session, request)
    if session is None:
        session = await run_in_threadpool(auth_service.sessions.create)
    try:
        url = await auth_service.federated.begin_login(session)
    except AuthError as exc:
        LOGGER.warning("Could not start federated login: %s (%s)", exc.code, exc.detail or exc.message)
        return _error_redirect(settings, exc.code)
    response = RedirectResponse(url, status_code=status.HTTP_302_FOUND)
    _establish_response(response, request, auth_service, session)
    return response


@router.get("/auth/federated/callback")
async def federated_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    auth_service: AuthService = Depends(get_auth_service),
):
    settings = auth_service.settings
    if not auth_service.federated.enabled:
        raise FederatedDisabled()
    session = await run_in_threadpool(auth_service.current_session, request)
    try:
        identity = await auth_service.federated.complete_login(session, code=code, state=state, error=error)
        user = await run_in_threadpool(
            auth_service.linker.resolve,
            subject=identity.subject,
            issuer=identity.issuer,
            email=identity.email,
            display_name=identity.name,
        )
        established = await run_in_threadpool(
            auth_service.establish_session,
            previous=session,
            user=user,
            federated=True,
        )
    except AuthError as exc:
        log_fn = LOGGER.error if exc.status_code >= 500 else LOGGER.warning
        log_fn("Federated callback failed: %s (%s)", exc.code, exc.detail or exc.message)
        return await _abort_callback(request, auth_service, session, exc.code)
    except Exception:  # pylint: disable=broad-except
        LOGGER.exception("Federated callback failed unexpectedly")
        return await _abort_callback(request, auth_service, session, _CALLBACK_SERVER_ERROR)

    LOGGER.info("User %s logged in via OIDC", user.id)
    target = f"{settings.frontend_path(settings.federated_success_path)}?{urlencode({'success': 'true'})}"
    response = RedirectResponse(target, status_code=status.HTTP_302_FOUND)
    _establish_response(response, request, auth_service, established)
    return response


@router.get("/auth/federated/logout")
async def federated_logout(request: Request, auth_service: AuthService = Depends(get_auth_service)):
    session = await run_in_threadpool(auth_service.current_session, request)
    await run_in_threadpool(auth_service.logout, session)
    end_session = await auth_service.federated.logout_url()
    if end_session:
        response = RedirectResponse(end_session, status_code=status.HTTP_302_FOUND)
    else:
        response = JSONResponse(MessageResponse(message=_LOGGED_OUT).model_dump())
    clear_session_cookie(response, request, auth_service.settings)
    return response


@router.get("/auth/federated/logout/local")
def federated_logout_local(request: Request, auth_service: AuthService = Depends(get_auth_service)):
    settings = auth_service.settings
    auth_service.logout(auth_service.current_session(request))
    query = urlencode({"password": "true", "logged_out": "true"})
    response = RedirectResponse(
        f"{settings.frontend_path(settings.federated_error_path)}?{query}",
        status_code=status.HTTP_302_FOUND,
    )
    clear_session_cookie(response, request, settings)
    return response
