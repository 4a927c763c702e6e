"""Resolve federated identities to exactly one credential-store row."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import Database
from .errors import AccountLinkRefused, CredentialStoreFailure
from .models import AuthUser

LOGGER = logging.getLogger(__name__)


class AccountLinker:
    """Find, link or create the user behind a federated login.

    Resolution order, first match wins:

    1. a row already linked to ``(subject, issuer)``;
    2. a row with the same email, which gets linked (only while
       ``link_by_email`` is on; any holder of the mailbox at the provider
       takes over the local account);
    3. a new federated-only row.

    Creation never checks-then-inserts on trust: the UNIQUE constraints on
    ``email`` and ``(federated_subject, federated_issuer)`` decide races, and
    the losing request rolls back and resolves again to the winner's row.
    """

    def __init__(self, database: Database, *, link_by_email: bool = True) -> None:
        self._database = database
        self._link_by_email = link_by_email

    def resolve(self, *, subject: str, issuer: str, email: str, display_name: Optional[str] = None) -> AuthUser:
        """Return the user for a federated identity.

        Store faults surface as :class:`CredentialStoreFailure`.
        """

        email = (email or "").strip()
        if not subject or not issuer or not email:
            raise ValueError("subject, issuer and email are required")
        name = (display_name or "").strip() or email
        try:
            return self._resolve(subject=subject, issuer=issuer, email=email, name=name)
        except SQLAlchemyError as exc:
            LOGGER.exception("Credential store failed while resolving federated subject %s", subject)
            raise CredentialStoreFailure(detail=f"account resolution failed: {exc.__class__.__name__}") from exc

    def _resolve(self, *, subject: str, issuer: str, email: str, name: str) -> AuthUser:
        with self._database.session_scope() as db:
            user = self._find_existing(db, subject=subject, issuer=issuer, email=email, name=name)
            if user is not None:
                return user

            user = AuthUser(
                email=email,
                display_name=name,
                password_hash=None,
                federated_subject=subject,
                federated_issuer=issuer,
                last_login_at=datetime.now(timezone.utc),
            )
            db.add(user)
            try:
                db.flush()
            except IntegrityError:
                # Another callback created the row first; use theirs.
                db.rollback()
                LOGGER.info("Concurrent federated signup detected for subject %s, re-reading", subject)
                winner = self._find_existing(db, subject=subject, issuer=issuer, email=email, name=name)
                if winner is None:
                    raise
                return winner
            LOGGER.info("Created new federated user %s", user.id)
            return user

    def _find_existing(
        self,
        db: Session,
        *,
        subject: str,
        issuer: str,
        email: str,
        name: str,
    ) -> Optional[AuthUser]:
        now = datetime.now(timezone.utc)
        user = db.execute(
            select(AuthUser).where(
                AuthUser.federated_subject == subject,
                AuthUser.federated_issuer == issuer,
            )
        ).scalar_one_or_none()
        if user is not None:
            if name and user.display_name != name:
                user.display_name = name
            user.last_login_at = now
            return user

        user = db.execute(select(AuthUser).where(AuthUser.email == email)).scalar_one_or_none()
        if user is None:
            return None
        if not self._link_by_email:
            LOGGER.warning("Refusing to link federated subject %s to existing user %s", subject, user.id)
            raise AccountLinkRefused()
        if user.federated_subject is not None:
            LOGGER.warning(
                "User %s was linked to federated subject %s, relinking to %s",
                user.id,
                user.federated_subject,
                subject,
            )
        user.federated_subject = subject
        user.federated_issuer = issuer
        user.last_login_at = now
        LOGGER.info("Linked existing user %s with federated subject %s", user.id, subject)
        return user
