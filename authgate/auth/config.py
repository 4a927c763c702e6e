"""Configuration helpers for the authentication subsystem."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urlparse

from dotenv import load_dotenv

load_dotenv()

DEFAULT_SESSION_SECRET = "dev-session-secret"


class TokenAuthMethod(str, Enum):
    """How client credentials are presented to the provider's token endpoint."""

    CLIENT_SECRET_BASIC = "client_secret_basic"
    CLIENT_SECRET_POST = "client_secret_post"


class IdentityMatch(str, Enum):
    """Which user attributes an asserted proxy identity may match."""

    ANY = "any"
    EMAIL = "email"


class CookieSecurity(str, Enum):
    AUTO = "auto"
    ALWAYS = "true"
    NEVER = "false"


def _bool_env(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _normalize_base_url(value: Optional[str], fallback: str) -> str:
    candidate = (value or fallback or "").strip()
    if not candidate:
        return fallback
    parsed = urlparse(candidate if "://" in candidate else f"https://{candidate}")
    if not parsed.scheme or not parsed.netloc:
        return fallback
    return f"{parsed.scheme}://{parsed.netloc}"


def _parse_csv(value: Optional[str]) -> Tuple[str, ...]:
    items = [item.strip() for item in (value or "").split(",")]
    return tuple(item for item in items if item)


def _optional(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


def _normalize_path(value: str) -> str:
    value = value.strip() or "/"
    return value if value.startswith("/") else f"/{value}"


@dataclass(frozen=True)
class AuthSettings:
    """Everything the auth components need, resolved once at startup."""

    app_base_url: str = "http://localhost:3002"
    frontend_url: str = "http://localhost:8080"

    session_secret: str = DEFAULT_SESSION_SECRET
    session_cookie_name: str = "authgate.sid"
    session_cookie_domain: Optional[str] = None
    session_cookie_path: str = "/"
    session_cookie_secure: CookieSecurity = CookieSecurity.AUTO
    session_cookie_samesite: str = "lax"
    session_ttl_hours: int = 24 * 30

    # Reverse proxy handling
    trust_proxy: bool = False
    trusted_proxy_ips: Tuple[str, ...] = ()
    trust_proxy_identity_header: bool = False
    proxy_identity_header: str = "Remote-User"
    sso_identity_match: IdentityMatch = IdentityMatch.ANY

    # OIDC provider
    oidc_enabled: bool = False
    oidc_issuer: Optional[str] = None
    oidc_client_id: Optional[str] = None
    oidc_client_secret: Optional[str] = None
    oidc_redirect_uri: Optional[str] = None
    oidc_scopes: str = "openid profile email"
    oidc_token_auth_method: TokenAuthMethod = TokenAuthMethod.CLIENT_SECRET_BASIC
    oidc_authorization_url: Optional[str] = None
    oidc_token_url: Optional[str] = None
    oidc_userinfo_url: Optional[str] = None
    oidc_end_session_url: Optional[str] = None
    oidc_http_timeout_seconds: float = 10.0
    oidc_use_pkce: bool = True
    oidc_link_by_email: bool = True

    federated_success_path: str = "/oidc-callback"
    federated_error_path: str = "/login"

    @property
    def federated_enabled(self) -> bool:
        """Federated login needs the flag plus a complete client registration."""

        return bool(self.oidc_enabled and self.oidc_issuer and self.oidc_client_id and self.oidc_client_secret)

    @property
    def redirect_uri(self) -> str:
        if self.oidc_redirect_uri:
            return self.oidc_redirect_uri
        return f"{self.app_base_url.rstrip('/')}/api/auth/federated/callback"

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_hours * 3600

    def frontend_path(self, path: str) -> str:
        return f"{self.frontend_url.rstrip('/')}{_normalize_path(path)}"

    @classmethod
    def from_env(cls) -> "AuthSettings":
        """Load authentication settings from environment variables."""

        app_base_url = _normalize_base_url(os.getenv("APP_BASE_URL"), "http://localhost:3002")
        return cls(
            app_base_url=app_base_url,
            frontend_url=(os.getenv("FRONTEND_URL") or "http://localhost:8080").rstrip("/"),
            session_secret=os.getenv("SESSION_SECRET", DEFAULT_SESSION_SECRET),
            session_cookie_name=os.getenv("SESSION_COOKIE_NAME", "authgate.sid"),
            session_cookie_domain=_optional("SESSION_COOKIE_DOMAIN"),
            session_cookie_path=os.getenv("SESSION_COOKIE_PATH", "/"),
            session_cookie_secure=CookieSecurity(os.getenv("SESSION_COOKIE_SECURE", "auto").strip().lower()),
            session_ttl_hours=int(os.getenv("SESSION_TTL_HOURS", str(24 * 30))),
            trust_proxy=_bool_env("TRUST_PROXY", default=False),
            trusted_proxy_ips=_parse_csv(os.getenv("TRUSTED_PROXY_IPS")),
            trust_proxy_identity_header=_bool_env("TRUST_PROXY_IDENTITY_HEADER", default=False),
            proxy_identity_header=os.getenv("PROXY_IDENTITY_HEADER", "Remote-User"),
            sso_identity_match=IdentityMatch(os.getenv("SSO_IDENTITY_MATCH", "any").strip().lower()),
            oidc_enabled=_bool_env("OIDC_ENABLED", default=False),
            oidc_issuer=_optional("OIDC_ISSUER"),
            oidc_client_id=_optional("OIDC_CLIENT_ID"),
            oidc_client_secret=_optional("OIDC_CLIENT_SECRET"),
            oidc_redirect_uri=_optional("OIDC_REDIRECT_URI"),
            oidc_scopes=os.getenv("OIDC_SCOPES", "openid profile email"),
            oidc_token_auth_method=TokenAuthMethod(
                os.getenv("OIDC_TOKEN_AUTH_METHOD", TokenAuthMethod.CLIENT_SECRET_BASIC.value).strip().lower()
            ),
            oidc_authorization_url=_optional("OIDC_AUTHORIZATION_URL"),
            oidc_token_url=_optional("OIDC_TOKEN_URL"),
            oidc_userinfo_url=_optional("OIDC_USERINFO_URL"),
            oidc_end_session_url=_optional("OIDC_END_SESSION_URL"),
            oidc_http_timeout_seconds=float(os.getenv("OIDC_HTTP_TIMEOUT_SECONDS", "10")),
            oidc_use_pkce=_bool_env("OIDC_USE_PKCE", default=True),
            oidc_link_by_email=_bool_env("OIDC_LINK_BY_EMAIL", default=True),
            federated_success_path=os.getenv("FEDERATED_SUCCESS_PATH", "/oidc-callback"),
            federated_error_path=os.getenv("FEDERATED_ERROR_PATH", "/login"),
        )
