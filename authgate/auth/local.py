"""Local email/password authentication."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ..db import Database
from .crypto import hash_password, verify_password
from .errors import AccountExists, InvalidCredentials
from .models import AuthUser

LOGGER = logging.getLogger(__name__)


class LocalAuthenticator:
    """Verifies email + password against the credential store."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def authenticate(self, email: Optional[str], password: Optional[str]) -> AuthUser:
        """Return the matching user or raise :class:`InvalidCredentials`.

        Unknown email, federated-only account and wrong password are
        indistinguishable to the caller, including in timing.
        """

        email = (email or "").strip()
        if not email or not password:
            raise InvalidCredentials()
        with self._database.session_scope() as db:
            user = db.execute(select(AuthUser).where(AuthUser.email == email)).scalar_one_or_none()
            password_hash = user.password_hash if user is not None else None
            if not verify_password(password, password_hash) or user is None:
                LOGGER.info("Local login rejected")
                raise InvalidCredentials()
            user.last_login_at = datetime.now(timezone.utc)
            LOGGER.info("Local login succeeded for user %s", user.id)
            return user

    def has_any_users(self) -> bool:
        with self._database.session_scope() as db:
            count = db.execute(select(func.count()).select_from(AuthUser)).scalar() or 0
        return count > 0

    def register(self, *, email: str, password: str, name: Optional[str] = None) -> AuthUser:
        """Create a password account. Email uniqueness is enforced by the store."""

        email = email.strip()
        if not email or not password:
            raise ValueError("Email and password are required")
        display_name = (name or "").strip() or email
        user = AuthUser(email=email, display_name=display_name, password_hash=hash_password(password))
        try:
            with self._database.session_scope() as db:
                db.add(user)
                db.flush()
        except IntegrityError as exc:
            raise AccountExists() from exc
        LOGGER.info("Registered local user %s", user.id)
        return user
