"""Server-side session store backed by the ``auth_sessions`` table.

The browser only ever holds ``<session id>.<signature>``; everything else
lives in the row. Every mutating operation commits before it returns and
reports store failures as :class:`SessionPersistenceFailure`, so callers can
never answer a request while a session write is still pending or has failed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from itsdangerous import BadSignature, Signer
from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError

from ..db import Database
from .config import AuthSettings
from .crypto import generate_token
from .errors import SessionPersistenceFailure
from .models import AuthSession

LOGGER = logging.getLogger(__name__)

_TOUCH_INTERVAL = timedelta(minutes=5)


def short_id(session_id: Optional[str]) -> str:
    """Log-safe prefix of a session id."""

    if not session_id:
        return "-"
    return f"{session_id[:8]}…"


@dataclass(frozen=True)
class PendingFederatedLogin:
    """Values stored at federated login init, handed back exactly once."""

    state: Optional[str] = None
    nonce: Optional[str] = None
    code_verifier: Optional[str] = None


class SessionManager:
    """Create, rotate and destroy server-side sessions."""

    def __init__(self, settings: AuthSettings, database: Database) -> None:
        self._database = database
        self._ttl = timedelta(seconds=settings.session_ttl_seconds)
        self._signer = Signer(settings.session_secret, salt="authgate.session")

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _normalize_dt(value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def cookie_value(self, session: AuthSession) -> str:
        return self._signer.sign(session.id).decode("ascii")

    def _unsign(self, cookie_value: Optional[str]) -> Optional[str]:
        if not cookie_value:
            return None
        try:
            return self._signer.unsign(cookie_value).decode("ascii")
        except BadSignature:
            LOGGER.debug("Rejected session cookie with a bad signature")
            return None

    def session_id_from_cookie(self, cookie_value: Optional[str]) -> Optional[str]:
        """Session id carried by a correctly signed cookie, without touching the store."""

        return self._unsign(cookie_value)

    def _new_record(self, *, user_id: Optional[int] = None, federated: bool = False) -> AuthSession:
        now = self._now()
        return AuthSession(
            id=generate_token(32),
            user_id=user_id,
            federated_login=federated,
            expires_at=now + self._ttl,
            last_seen_at=now,
        )

    def create(self) -> AuthSession:
        """Persist a new anonymous session."""

        session = self._new_record()
        try:
            with self._database.session_scope() as db:
                db.add(session)
        except SQLAlchemyError as exc:
            raise SessionPersistenceFailure(detail=f"session create failed: {exc.__class__.__name__}") from exc
        LOGGER.debug("Created anonymous session %s", short_id(session.id))
        return session

    def load(self, cookie_value: Optional[str]) -> Optional[AuthSession]:
        """Return the live session for a cookie value, or None.

        Expired rows are deleted on sight.
        """

        session_id = self._unsign(cookie_value)
        if session_id is None:
            return None
        now = self._now()
        with self._database.session_scope() as db:
            record = db.get(AuthSession, session_id)
            if record is None:
                return None
            if self._normalize_dt(record.expires_at) <= now:
                LOGGER.info("Session %s expired, removing", short_id(session_id))
                db.delete(record)
                return None
            if now - self._normalize_dt(record.last_seen_at) >= _TOUCH_INTERVAL:
                record.last_seen_at = now
            return record

    def regenerate(self, session: Optional[AuthSession], *, preserve: bool = True) -> AuthSession:
        """Replace ``session`` with a fresh id.

        ``preserve`` carries the user binding forward; any in-flight federated
        login values are always dropped. A missing or already-deleted session
        simply yields a new one.
        """

        old_id = session.id if session is not None else None
        try:
            with self._database.session_scope() as db:
                user_id = None
                federated = False
                if old_id is not None:
                    current = db.get(AuthSession, old_id)
                    if current is not None:
                        if preserve:
                            user_id = current.user_id
                            federated = current.federated_login
                        db.delete(current)
                replacement = self._new_record(user_id=user_id, federated=federated)
                db.add(replacement)
        except SQLAlchemyError as exc:
            LOGGER.error("Session regeneration failed for %s", short_id(old_id))
            raise SessionPersistenceFailure(detail=f"session regenerate failed: {exc.__class__.__name__}") from exc
        LOGGER.info("Session rotated %s -> %s", short_id(old_id), short_id(replacement.id))
        return replacement

    def attach(self, session: AuthSession, user_id: int, *, federated: bool = False) -> AuthSession:
        """Bind an authenticated user to an already regenerated session."""

        try:
            with self._database.session_scope() as db:
                record = db.get(AuthSession, session.id)
                if record is None:
                    raise SessionPersistenceFailure(detail="session disappeared before login completed")
                record.user_id = user_id
                record.federated_login = federated
                record.csrf_state = None
                record.oidc_nonce = None
                record.pkce_verifier = None
                record.last_seen_at = self._now()
        except SQLAlchemyError as exc:
            LOGGER.error("Attaching user %s to session %s failed", user_id, short_id(session.id))
            raise SessionPersistenceFailure(detail=f"session attach failed: {exc.__class__.__name__}") from exc
        return record

    def destroy(self, session: Optional[AuthSession]) -> bool:
        if session is None:
            return False
        try:
            with self._database.session_scope() as db:
                record = db.get(AuthSession, session.id)
                if record is None:
                    return False
                db.delete(record)
        except SQLAlchemyError as exc:
            LOGGER.error("Destroying session %s failed", short_id(session.id))
            raise SessionPersistenceFailure(detail=f"session destroy failed: {exc.__class__.__name__}") from exc
        LOGGER.info("Session %s destroyed", short_id(session.id))
        return True

    def begin_federated_login(
        self,
        session: AuthSession,
        *,
        state: str,
        nonce: Optional[str],
        code_verifier: Optional[str],
    ) -> None:
        try:
            with self._database.session_scope() as db:
                record = db.get(AuthSession, session.id)
                if record is None:
                    raise SessionPersistenceFailure(detail="session disappeared before federated login init")
                record.csrf_state = state
                record.oidc_nonce = nonce
                record.pkce_verifier = code_verifier
        except SQLAlchemyError as exc:
            raise SessionPersistenceFailure(detail=f"storing federated state failed: {exc.__class__.__name__}") from exc

    def consume_federated_login(self, session: Optional[AuthSession]) -> PendingFederatedLogin:
        """Clear and return the stored federated login values.

        The clear is a conditional UPDATE on the value just read, so two
        callbacks racing on one state cannot both receive it.
        """

        if session is None:
            return PendingFederatedLogin()
        try:
            with self._database.session_scope() as db:
                record = db.get(AuthSession, session.id)
                if record is None or record.csrf_state is None:
                    return PendingFederatedLogin()
                pending = PendingFederatedLogin(
                    state=record.csrf_state,
                    nonce=record.oidc_nonce,
                    code_verifier=record.pkce_verifier,
                )
                result = db.execute(
                    update(AuthSession)
                    .where(AuthSession.id == session.id, AuthSession.csrf_state == pending.state)
                    .values(csrf_state=None, oidc_nonce=None, pkce_verifier=None)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return PendingFederatedLogin()
        except SQLAlchemyError as exc:
            raise SessionPersistenceFailure(detail=f"consuming federated state failed: {exc.__class__.__name__}") from exc
        return pending

    def prune_expired(self) -> int:
        """Delete expired sessions. Returns the number removed."""

        with self._database.session_scope() as db:
            result = db.execute(
                delete(AuthSession)
                .where(AuthSession.expires_at <= self._now())
                .execution_options(synchronize_session=False)
            )
            removed = result.rowcount or 0
        if removed:
            LOGGER.info("Pruned %d expired sessions", removed)
        return removed
