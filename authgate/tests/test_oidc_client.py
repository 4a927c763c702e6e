"""Tests for the OIDC client and federated authenticator against a fake provider."""

from __future__ import annotations

import base64
import time

import httpx
import pytest
from jose import jwt

from authgate.auth.config import TokenAuthMethod
from authgate.auth.errors import (
    FederatedDisabled,
    MissingEmailClaim,
    ProviderError,
    ProviderUnavailable,
    StateMismatch,
)
from authgate.auth.oidc import FederatedAuthenticator, OIDCClient
from authgate.auth.sessions import SessionManager

from conftest import CLIENT_ID, CLIENT_SECRET, ISSUER, FakeProvider, build_settings, query_of

SIGNING_SECRET = "id-token-signing-secret-for-tests"


def _authenticator(database, provider: FakeProvider, **overrides):
    settings = build_settings(**overrides)
    sessions = SessionManager(settings, database)
    client = OIDCClient(settings, transport=provider.transport())
    return FederatedAuthenticator(settings, client, sessions), sessions


def _basic_credentials(request: httpx.Request):
    header = request.headers.get("authorization", "")
    assert header.startswith("Basic ")
    return base64.b64decode(header[len("Basic "):]).decode("ascii").split(":", 1)


@pytest.mark.asyncio
async def test_authorization_url_carries_state_nonce_and_pkce(database):
    provider = FakeProvider()
    authenticator, sessions = _authenticator(database, provider)
    session = sessions.create()

    url = await authenticator.begin_login(session)

    assert url.startswith(f"{ISSUER}/authorize?")
    params = query_of(url)
    assert params["client_id"] == CLIENT_ID
    assert params["response_type"] == "code"
    assert params["redirect_uri"] == "http://testserver/api/auth/federated/callback"
    assert params["scope"] == "openid profile email"
    assert params["code_challenge_method"] == "S256"
    pending = sessions.consume_federated_login(session)
    assert pending.state == params["state"]
    assert pending.nonce == params["nonce"]
    assert pending.code_verifier


@pytest.mark.asyncio
async def test_configured_endpoints_override_discovery(database):
    provider = FakeProvider()
    authenticator, sessions = _authenticator(
        database,
        provider,
        oidc_authorization_url="https://login.example.test/auth?tenant=acme",
    )

    url = await authenticator.begin_login(sessions.create())

    assert url.startswith("https://login.example.test/auth?tenant=acme&")
    assert provider.requests == []


@pytest.mark.asyncio
async def test_complete_login_uses_basic_auth_only(database):
    provider = FakeProvider()
    authenticator, sessions = _authenticator(database, provider)
    session = sessions.create()
    params = query_of(await authenticator.begin_login(session))

    identity = await authenticator.complete_login(session, code="auth-code", state=params["state"])

    assert identity.subject == "alice-sub"
    assert identity.issuer == ISSUER
    assert identity.email == "alice@example.com"
    (token_request,) = provider.token_requests()
    assert _basic_credentials(token_request) == [CLIENT_ID, CLIENT_SECRET]
    body = dict(httpx.QueryParams(token_request.content.decode("ascii")))
    assert "client_secret" not in body
    assert "client_id" not in body
    assert body["code"] == "auth-code"
    assert body["code_verifier"]


@pytest.mark.asyncio
async def test_client_secret_post_puts_credentials_in_body(database):
    provider = FakeProvider()
    authenticator, sessions = _authenticator(
        database,
        provider,
        oidc_token_auth_method=TokenAuthMethod.CLIENT_SECRET_POST,
    )
    session = sessions.create()
    params = query_of(await authenticator.begin_login(session))

    await authenticator.complete_login(session, code="auth-code", state=params["state"])

    (token_request,) = provider.token_requests()
    assert "authorization" not in token_request.headers
    body = dict(httpx.QueryParams(token_request.content.decode("ascii")))
    assert body["client_id"] == CLIENT_ID
    assert body["client_secret"] == CLIENT_SECRET


@pytest.mark.asyncio
async def test_state_is_single_use(database):
    provider = FakeProvider()
    authenticator, sessions = _authenticator(database, provider)
    session = sessions.create()
    params = query_of(await authenticator.begin_login(session))

    await authenticator.complete_login(session, code="auth-code", state=params["state"])
    with pytest.raises(StateMismatch):
        await authenticator.complete_login(session, code="auth-code", state=params["state"])


@pytest.mark.asyncio
async def test_wrong_state_consumes_stored_state(database):
    provider = FakeProvider()
    authenticator, sessions = _authenticator(database, provider)
    session = sessions.create()
    params = query_of(await authenticator.begin_login(session))

    with pytest.raises(StateMismatch):
        await authenticator.complete_login(session, code="auth-code", state="forged")
    with pytest.raises(StateMismatch):
        await authenticator.complete_login(session, code="auth-code", state=params["state"])
    assert provider.token_requests() == []


@pytest.mark.asyncio
async def test_provider_error_parameter_is_rejected(database):
    provider = FakeProvider()
    authenticator, sessions = _authenticator(database, provider)
    session = sessions.create()
    params = query_of(await authenticator.begin_login(session))

    with pytest.raises(ProviderError):
        await authenticator.complete_login(session, code=None, state=params["state"], error="access_denied")


@pytest.mark.asyncio
async def test_timeout_maps_to_provider_unavailable(database):
    provider = FakeProvider(fail_with=httpx.ConnectTimeout("timed out"))
    authenticator, sessions = _authenticator(database, provider)

    with pytest.raises(ProviderUnavailable):
        await authenticator.begin_login(sessions.create())


@pytest.mark.asyncio
async def test_provider_5xx_maps_to_provider_unavailable(database):
    provider = FakeProvider(fail_with=502)
    authenticator, sessions = _authenticator(database, provider)

    with pytest.raises(ProviderUnavailable):
        await authenticator.begin_login(sessions.create())


@pytest.mark.asyncio
async def test_disabled_authenticator_refuses(database):
    settings = build_settings(oidc_enabled=False)
    authenticator = FederatedAuthenticator(settings, None, SessionManager(settings, database))

    assert authenticator.enabled is False
    with pytest.raises(FederatedDisabled):
        await authenticator.begin_login(SessionManager(settings, database).create())
    assert await authenticator.logout_url() is None


def test_parse_identity_falls_back_to_preferred_username(database):
    authenticator, _ = _authenticator(database, FakeProvider())

    identity = authenticator.parse_identity({"sub": "s-1", "preferred_username": "pat"})

    assert identity.email == "pat"
    assert identity.name == "pat"


def test_parse_identity_requires_email_or_username(database):
    authenticator, _ = _authenticator(database, FakeProvider())

    with pytest.raises(MissingEmailClaim):
        authenticator.parse_identity({"sub": "s-1", "name": "No Mail"})


def test_parse_identity_requires_subject(database):
    authenticator, _ = _authenticator(database, FakeProvider())

    with pytest.raises(ProviderError):
        authenticator.parse_identity({"email": "x@example.com"})


def _oct_jwks() -> dict:
    encoded = base64.urlsafe_b64encode(SIGNING_SECRET.encode("ascii")).decode("ascii").rstrip("=")
    return {"keys": [{"kty": "oct", "k": encoded, "alg": "HS256", "kid": "test-key"}]}


def _id_token(**claims) -> str:
    now = int(time.time())
    payload = {"iss": ISSUER, "aud": CLIENT_ID, "sub": "alice-sub", "iat": now, "exp": now + 300}
    payload.update(claims)
    return jwt.encode(payload, SIGNING_SECRET, algorithm="HS256", headers={"kid": "test-key"})


@pytest.mark.asyncio
async def test_id_token_is_verified_against_jwks(database):
    provider = FakeProvider(jwks=_oct_jwks())
    client = OIDCClient(build_settings(), transport=provider.transport())

    claims = await client.decode_id_token(_id_token(nonce="n-1"), nonce="n-1")

    assert claims["sub"] == "alice-sub"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "claims",
    [
        {"nonce": "other"},
        {"nonce": "n-1", "aud": "someone-else"},
        {"nonce": "n-1", "iss": "https://evil.example.test"},
    ],
)
async def test_id_token_rejections(database, claims):
    provider = FakeProvider(jwks=_oct_jwks())
    client = OIDCClient(build_settings(), transport=provider.transport())

    with pytest.raises(ProviderError):
        await client.decode_id_token(_id_token(**claims), nonce="n-1")


@pytest.mark.asyncio
async def test_userinfo_subject_must_match_id_token(database):
    provider = FakeProvider(
        jwks=_oct_jwks(),
        next_userinfo={"sub": "mallory-sub", "email": "mallory@example.com"},
    )
    authenticator, sessions = _authenticator(database, provider)
    session = sessions.create()
    params = query_of(await authenticator.begin_login(session))
    provider.extra_tokens = {"id_token": _id_token(nonce=params["nonce"])}

    with pytest.raises(ProviderError):
        await authenticator.complete_login(session, code="auth-code", state=params["state"])


@pytest.mark.asyncio
async def test_end_session_url_from_discovery(database):
    authenticator, _ = _authenticator(database, FakeProvider())

    url = await authenticator.logout_url()

    assert url.startswith(f"{ISSUER}/logout?")
    assert query_of(url)["post_logout_redirect_uri"] == "http://frontend.test/login"


@pytest.mark.parametrize(
    "claims",
    [
        {"sub": "s-1", "email": " "},
        {"sub": "s-1", "email": "\t", "preferred_username": "  "},
        {"sub": "s-1", "email": "", "name": "Blank"},
    ],
)
def test_parse_identity_rejects_blank_email_claims(database, claims):
    authenticator, _ = _authenticator(database, FakeProvider())

    with pytest.raises(MissingEmailClaim):
        authenticator.parse_identity(claims)


def test_parse_identity_strips_claims(database):
    authenticator, _ = _authenticator(database, FakeProvider())

    identity = authenticator.parse_identity({"sub": " s-1 ", "email": "  ", "preferred_username": " pat "})

    assert identity.subject == "s-1"
    assert identity.email == "pat"
    assert identity.name == "pat"


def test_parse_identity_rejects_blank_subject(database):
    authenticator, _ = _authenticator(database, FakeProvider())

    with pytest.raises(ProviderError):
        authenticator.parse_identity({"sub": "   ", "email": "x@example.com"})
