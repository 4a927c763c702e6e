"""Cross-check sessions against the identity a trusted SSO proxy asserts.

A proxy that re-authenticates every request can switch users (provider-side
logout, then a different login) without this application seeing a logout.
The session cookie would then keep serving the previous user's data to the
new browser user, so a federated session whose user no longer matches the
asserted identity is destroyed on the spot.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request

from .config import AuthSettings, IdentityMatch
from .errors import SsoUserMismatch
from .models import AuthSession, AuthUser
from .sessions import SessionManager, short_id

LOGGER = logging.getLogger(__name__)


def request_from_trusted_proxy(request: Request, settings: AuthSettings) -> bool:
    """True when the peer may set forwarded headers for this deployment."""

    if not settings.trusted_proxy_ips:
        return True
    peer = request.client.host if request.client else None
    return peer in settings.trusted_proxy_ips


class SessionConsistencyValidator:
    def __init__(self, settings: AuthSettings, sessions: SessionManager) -> None:
        self._settings = settings
        self._sessions = sessions

    def asserted_identity(self, request: Request) -> Optional[str]:
        """Return the proxy-asserted identity, or None when absent or untrusted."""

        if not self._settings.trust_proxy_identity_header:
            return None
        if not request_from_trusted_proxy(request, self._settings):
            LOGGER.debug("Ignoring %s from untrusted peer", self._settings.proxy_identity_header)
            return None
        value = (request.headers.get(self._settings.proxy_identity_header) or "").strip()
        return value or None

    def identity_matches(self, user: AuthUser, asserted: str) -> bool:
        """Heuristic match: the proxy may send an email or a username."""

        email = user.email or ""
        if asserted == email:
            return True
        if self._settings.sso_identity_match == IdentityMatch.EMAIL:
            return False
        if user.display_name and asserted == user.display_name:
            return True
        local_part = email.split("@", 1)[0]
        return bool(local_part) and asserted == local_part

    def validate(self, *, session: AuthSession, user: AuthUser, asserted: Optional[str]) -> None:
        """Raise :class:`SsoUserMismatch` after destroying ``session`` if it is stale."""

        if not user.is_federated:
            return
        if asserted is None:
            return
        if self.identity_matches(user, asserted):
            return
        LOGGER.info(
            "SSO user switch detected: session %s belongs to user %s but proxy asserts another identity",
            short_id(session.id),
            user.id,
        )
        self._sessions.destroy(session)
        raise SsoUserMismatch()
