"""Cryptographic helpers for the authentication subsystem."""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

_PASSWORD_HASHER = PasswordHasher()

# Verified against when there is no real hash, so unknown accounts cost the same as known ones.
_DUMMY_HASH = _PASSWORD_HASHER.hash(secrets.token_urlsafe(16))


def hash_password(password: str) -> str:
    """Hash a plain text password using Argon2."""

    return _PASSWORD_HASHER.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """Verify a password hash.

    A missing hash still pays for a full Argon2 verification and then fails.
    """

    if not password_hash:
        _burn_verification(password)
        return False
    try:
        return _PASSWORD_HASHER.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        # VerifyMismatchError is a VerificationError; a corrupt stored hash fails closed.
        return False


def _burn_verification(password: str) -> None:
    try:
        _PASSWORD_HASHER.verify(_DUMMY_HASH, password)
    except VerifyMismatchError:
        pass


def generate_token(length: int = 48) -> str:
    """Generate a URL-safe random token."""

    return secrets.token_urlsafe(length)


def constant_time_equals(left: Optional[str], right: Optional[str]) -> bool:
    if left is None or right is None:
        return False
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def generate_pkce_verifier() -> str:
    raw = os.urandom(32)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
