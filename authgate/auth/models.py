"""SQLAlchemy models for the authentication subsystem."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from ..db import Base, TimestampMixin


class AuthUser(TimestampMixin, Base):
    """Identity record reachable by password, federated login, or both."""

    __tablename__ = "auth_users"
    __table_args__ = (
        UniqueConstraint("federated_subject", "federated_issuer", name="uq_auth_users_federated_identity"),
        CheckConstraint(
            "(federated_subject IS NULL AND federated_issuer IS NULL)"
            " OR (federated_subject IS NOT NULL AND federated_issuer IS NOT NULL)",
            name="ck_auth_users_federated_pair",
        ),
        # AUTOINCREMENT keeps SQLite from handing out a deleted row's id again.
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    public_id = Column(String(40), unique=True, nullable=False, default=lambda: uuid4().hex)
    email = Column(String(320), unique=True, nullable=False, index=True)
    display_name = Column(String(320), nullable=True)
    password_hash = Column(Text, nullable=True)
    federated_subject = Column(String(255), nullable=True)
    federated_issuer = Column(String(512), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    sessions = relationship("AuthSession", back_populates="user", cascade="all, delete-orphan")

    @property
    def is_federated(self) -> bool:
        return self.federated_subject is not None


class AuthSession(TimestampMixin, Base):
    """Server-side session addressed by the opaque id carried in the cookie."""

    __tablename__ = "auth_sessions"

    id = Column(String(72), primary_key=True)
    user_id = Column(Integer, ForeignKey("auth_users.id", ondelete="CASCADE"), nullable=True, index=True)
    csrf_state = Column(String(128), nullable=True)
    oidc_nonce = Column(String(128), nullable=True)
    pkce_verifier = Column(String(128), nullable=True)
    federated_login = Column(Boolean, nullable=False, default=False, server_default="0")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    user = relationship("AuthUser", back_populates="sessions")

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


Index("ix_auth_sessions_expiry", AuthSession.expires_at)
