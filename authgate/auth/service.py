"""Authentication service coordinating users, sessions, and providers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from ..db import Database
from .config import AuthSettings
from .consistency import SessionConsistencyValidator
from .errors import AccountExists, SessionPersistenceFailure
from .linker import AccountLinker
from .local import LocalAuthenticator
from .models import AuthSession, AuthUser
from .oidc import FederatedAuthenticator, OIDCClient
from .schemas import SessionUser
from .sessions import SessionManager, short_id

LOGGER = logging.getLogger(__name__)


@dataclass
class AuthenticatedSession:
    user: AuthUser
    session: AuthSession


class AuthService:
    """Central authority for authentication flows.

    Owns one instance of every auth component. The application keeps a single
    service on ``app.state``; nothing here is process-global.
    """

    def __init__(
        self,
        settings: AuthSettings,
        database: Database,
        *,
        oidc_client: Optional[OIDCClient] = None,
    ) -> None:
        self.settings = settings
        self.database = database
        self.sessions = SessionManager(settings, database)
        self.local = LocalAuthenticator(database)
        self.linker = AccountLinker(database, link_by_email=settings.oidc_link_by_email)
        if oidc_client is None and settings.federated_enabled:
            oidc_client = OIDCClient(settings)
        self.federated = FederatedAuthenticator(settings, oidc_client, self.sessions)
        self.consistency = SessionConsistencyValidator(settings, self.sessions)

    def get_user_by_id(self, user_id: int) -> Optional[AuthUser]:
        with self.database.session_scope() as db:
            return db.get(AuthUser, user_id)

    def has_any_users(self) -> bool:
        return self.local.has_any_users()

    def create_initial_user(self, *, email: str, password: str, name: Optional[str] = None) -> AuthUser:
        if self.has_any_users():
            raise AccountExists("Users already provisioned.")
        return self.local.register(email=email, password=password, name=name)

    def current_session(self, request: Request) -> Optional[AuthSession]:
        return self.sessions.load(request.cookies.get(self.settings.session_cookie_name))

    def request_session_id(self, request: Request) -> Optional[str]:
        return self.sessions.session_id_from_cookie(request.cookies.get(self.settings.session_cookie_name))

    def validate_request(self, request: Request) -> Optional[AuthenticatedSession]:
        """Resolve the request's principal, enforcing SSO consistency.

        Returns None for anonymous requests; raises ``SsoUserMismatch`` after
        destroying a session that no longer matches the proxy's user. A cookie
        that no longer leads to a live user sets ``request.state.stale_session``
        so the caller can clear it.
        """

        request.state.stale_session = False
        session = self.current_session(request)
        if session is None:
            request.state.stale_session = self.settings.session_cookie_name in request.cookies
            return None
        if session.user_id is None:
            return None
        user = self.get_user_by_id(session.user_id)
        if user is None:
            LOGGER.warning("Session %s references a missing user, destroying", short_id(session.id))
            self.sessions.destroy(session)
            request.state.stale_session = True
            return None
        self.consistency.validate(
            session=session,
            user=user,
            asserted=self.consistency.asserted_identity(request),
        )
        return AuthenticatedSession(user=user, session=session)

    def establish_session(
        self,
        *,
        previous: Optional[AuthSession],
        user: AuthUser,
        federated: bool,
    ) -> AuthSession:
        """Rotate the browser's session id, then bind ``user`` to it."""

        if previous is not None and previous.user_id is not None and previous.user_id != user.id:
            LOGGER.info(
                "Session switch detected: session %s moves from user %s to user %s",
                short_id(previous.id),
                previous.user_id,
                user.id,
            )
        rotated = self.sessions.regenerate(previous)
        try:
            return self.sessions.attach(rotated, user.id, federated=federated)
        except SessionPersistenceFailure:
            self.discard_session(rotated)
            raise

    def discard_session(self, session: Optional[AuthSession]) -> None:
        """Best-effort destroy used on failure paths that are already raising."""

        try:
            self.sessions.destroy(session)
        except SessionPersistenceFailure:
            LOGGER.exception("Could not discard session %s", short_id(session.id if session else None))

    def logout(self, session: Optional[AuthSession]) -> bool:
        return self.sessions.destroy(session)

    def serialize_user(self, user: AuthUser) -> SessionUser:
        if user.federated_subject and user.password_hash:
            provider = "linked"
        elif user.federated_subject:
            provider = "oidc"
        else:
            provider = "local"
        return SessionUser(
            uid=user.public_id,
            email=user.email,
            name=user.display_name or user.email,
            provider=provider,
        )
