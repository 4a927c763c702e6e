"""Cookie helpers for session management."""

from __future__ import annotations

from fastapi import Request, Response

from .config import AuthSettings, CookieSecurity
from .consistency import request_from_trusted_proxy


def effective_scheme(request: Request, settings: AuthSettings) -> str:
    """Scheme the browser used, looking through a trusted TLS-terminating proxy."""

    if settings.trust_proxy and request_from_trusted_proxy(request, settings):
        forwarded = request.headers.get("x-forwarded-proto")
        if forwarded:
            return forwarded.split(",", 1)[0].strip().lower()
    return request.url.scheme


def cookie_secure(request: Request, settings: AuthSettings) -> bool:
    if settings.session_cookie_secure == CookieSecurity.ALWAYS:
        return True
    if settings.session_cookie_secure == CookieSecurity.NEVER:
        return False
    return effective_scheme(request, settings) == "https"


def attach_session_cookie(response: Response, request: Request, settings: AuthSettings, value: str) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=value,
        domain=settings.session_cookie_domain,
        path=settings.session_cookie_path,
        httponly=True,
        secure=cookie_secure(request, settings),
        samesite=settings.session_cookie_samesite,
        max_age=settings.session_ttl_seconds,
    )


def clear_session_cookie(response: Response, request: Request, settings: AuthSettings) -> None:
    response.delete_cookie(
        key=settings.session_cookie_name,
        domain=settings.session_cookie_domain,
        path=settings.session_cookie_path,
        httponly=True,
        secure=cookie_secure(request, settings),
        samesite=settings.session_cookie_samesite,
    )
