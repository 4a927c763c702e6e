"""Tests for resolving federated identities to credential-store rows."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from authgate.auth.errors import AccountLinkRefused, CredentialStoreFailure
from authgate.auth.linker import AccountLinker
from authgate.auth.local import LocalAuthenticator
from authgate.auth.models import AuthUser

ISSUER = "https://idp.example.test"


def _user_count(database) -> int:
    with database.session_scope() as db:
        return db.execute(select(func.count()).select_from(AuthUser)).scalar()


def test_known_subject_resolves_to_same_row(database):
    linker = AccountLinker(database)
    first = linker.resolve(subject="alice-sub", issuer=ISSUER, email="alice@example.com", display_name="Alice")
    second = linker.resolve(subject="alice-sub", issuer=ISSUER, email="alice@example.com", display_name="Alice A.")

    assert first.id == second.id
    assert second.display_name == "Alice A."
    assert _user_count(database) == 1


def test_existing_local_account_is_linked_by_email(database):
    local_user = LocalAuthenticator(database).register(email="bob@example.com", password="bob-password")

    user = AccountLinker(database).resolve(subject="bob-sub", issuer=ISSUER, email="bob@example.com")

    assert user.id == local_user.id
    assert user.federated_subject == "bob-sub"
    assert user.federated_issuer == ISSUER
    assert user.password_hash is not None
    # Password login keeps working after the link.
    assert LocalAuthenticator(database).authenticate("bob@example.com", "bob-password").id == local_user.id


def test_unknown_identity_creates_federated_only_user(database):
    user = AccountLinker(database).resolve(subject="new-sub", issuer=ISSUER, email="new@example.com")

    assert user.password_hash is None
    assert user.display_name == "new@example.com"
    assert _user_count(database) == 1


def test_same_subject_from_another_issuer_is_a_different_identity(database):
    linker = AccountLinker(database)
    first = linker.resolve(subject="shared-sub", issuer=ISSUER, email="one@example.com")
    second = linker.resolve(subject="shared-sub", issuer="https://other-idp.test", email="two@example.com")

    assert first.id != second.id


def test_link_by_email_can_be_disabled(database):
    LocalAuthenticator(database).register(email="gina@example.com", password="gina-password")

    with pytest.raises(AccountLinkRefused):
        AccountLinker(database, link_by_email=False).resolve(
            subject="gina-sub", issuer=ISSUER, email="gina@example.com"
        )


def test_email_linked_row_is_relinked_to_new_subject(database):
    linker = AccountLinker(database)
    first = linker.resolve(subject="old-sub", issuer=ISSUER, email="henry@example.com")
    second = linker.resolve(subject="new-sub", issuer=ISSUER, email="henry@example.com")

    assert first.id == second.id
    assert second.federated_subject == "new-sub"
    assert _user_count(database) == 1


def test_losing_insert_rereads_the_winner(database, monkeypatch):
    """Simulate the race: the lookup misses, then another request inserts first."""
    linker = AccountLinker(database)
    original_find = AccountLinker._find_existing
    calls = {"count": 0}

    def racing_find(self, db, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            AccountLinker(database).resolve(
                subject="race-sub", issuer=ISSUER, email="race@example.com", display_name="Winner"
            )
            return None
        return original_find(self, db, **kwargs)

    monkeypatch.setattr(AccountLinker, "_find_existing", racing_find)

    user = linker.resolve(subject="race-sub", issuer=ISSUER, email="race@example.com")

    assert user.federated_subject == "race-sub"
    assert _user_count(database) == 1


def test_concurrent_first_logins_create_one_row(database):
    linker = AccountLinker(database)
    barrier = threading.Barrier(4)

    def login(_):
        barrier.wait()
        return linker.resolve(subject="burst-sub", issuer=ISSUER, email="burst@example.com").id

    with ThreadPoolExecutor(max_workers=4) as pool:
        ids = list(pool.map(login, range(4)))

    assert len(set(ids)) == 1
    assert _user_count(database) == 1


@pytest.mark.parametrize("email", ["", "   ", "\t"])
def test_blank_email_is_refused(database, email):
    with pytest.raises(ValueError):
        AccountLinker(database).resolve(subject="blank-sub", issuer=ISSUER, email=email)

    assert _user_count(database) == 0


def test_store_fault_surfaces_as_credential_store_failure(database, monkeypatch):
    def locked(self, db, **kwargs):
        raise OperationalError("SELECT auth_users", {}, Exception("database is locked"))

    monkeypatch.setattr(AccountLinker, "_find_existing", locked)

    with pytest.raises(CredentialStoreFailure):
        AccountLinker(database).resolve(subject="s-1", issuer=ISSUER, email="s1@example.com")
