"""Authentication failures mapped to HTTP responses.

Each class carries a stable ``code`` that is returned to clients as the
``reason`` field and appended to federated error redirects as ``error=<code>``.
"""

from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    """Base class for authentication failures that end the current request."""

    status_code: int = 401
    code: str = "auth_failed"
    message: str = "Authentication failed"
    clear_session: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[str] = None,
        clear_session: Optional[bool] = None,
    ) -> None:
        super().__init__(message or self.message)
        if message is not None:
            self.message = message
        if clear_session is not None:
            self.clear_session = clear_session
        # Operator-facing context, logged but never sent to the client.
        self.detail = detail


class InvalidCredentials(AuthError):
    """Wrong email or password. Deliberately says nothing about which."""

    status_code = 401
    code = "invalid_credentials"
    message = "Invalid credentials"


class Unauthenticated(AuthError):
    status_code = 401
    code = "unauthenticated"
    message = "Authentication required"


class FederatedDisabled(AuthError):
    status_code = 400
    code = "federated_disabled"
    message = "OIDC is not enabled"


class StateMismatch(AuthError):
    """Callback state did not match the session: forged request or lost cookie."""

    status_code = 400
    code = "state_mismatch"
    message = "Invalid state parameter"
    clear_session = True


class MissingEmailClaim(AuthError):
    status_code = 400
    code = "missing_email_claim"
    message = "Email not provided by OIDC provider"
    clear_session = True


class ProviderError(AuthError):
    status_code = 400
    code = "auth_failed"
    message = "OIDC authentication failed"
    clear_session = True


class ProviderUnavailable(AuthError):
    status_code = 503
    code = "provider_unavailable"
    message = "Identity provider is unavailable, please try again"
    clear_session = True


class AccountLinkRefused(AuthError):
    status_code = 409
    code = "account_link_refused"
    message = "An account with this email already exists"
    clear_session = True


class AccountExists(AuthError):
    status_code = 409
    code = "account_exists"
    message = "User already exists"


class SsoUserMismatch(AuthError):
    """The proxy now vouches for someone other than the session's user."""

    status_code = 401
    code = "sso_user_mismatch"
    message = "Authentication required"
    clear_session = True


class SessionPersistenceFailure(AuthError):
    status_code = 500
    code = "session_persistence_failed"
    message = "Internal server error"
    clear_session = True


class CredentialStoreFailure(AuthError):
    """The user table could not be read or written while resolving a login."""

    status_code = 500
    code = "credential_store_failed"
    message = "Internal server error"
    clear_session = True


__all__ = [
    "AccountExists",
    "AccountLinkRefused",
    "AuthError",
    "CredentialStoreFailure",
    "FederatedDisabled",
    "InvalidCredentials",
    "MissingEmailClaim",
    "ProviderError",
    "ProviderUnavailable",
    "SessionPersistenceFailure",
    "SsoUserMismatch",
    "StateMismatch",
    "Unauthenticated",
]
