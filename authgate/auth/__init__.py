"""Authentication package for the Auth Gateway."""

from .deps import get_auth_service, get_authenticated_session, get_optional_session, require_user
from .routes import router as auth_router
from .service import AuthenticatedSession, AuthService

__all__ = [
    "AuthService",
    "AuthenticatedSession",
    "auth_router",
    "get_auth_service",
    "get_authenticated_session",
    "get_optional_session",
    "require_user",
]
