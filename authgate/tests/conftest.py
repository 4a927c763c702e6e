"""Shared fixtures: a throwaway SQLite store and a fake identity provider."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from authgate.app import create_app
from authgate.auth.config import AuthSettings
from authgate.auth.oidc import OIDCClient
from authgate.db import Database

ISSUER = "https://idp.example.test"
CLIENT_ID = "authgate-client"
CLIENT_SECRET = "authgate-secret"


@dataclass
class FakeProvider:
    """In-memory OIDC provider served through ``httpx.MockTransport``.

    ``next_userinfo`` is what the next token exchange authenticates as; set
    ``fail_with`` to an exception or status code to break every endpoint.
    """

    next_userinfo: Dict[str, Any] = field(
        default_factory=lambda: {"sub": "alice-sub", "email": "alice@example.com", "name": "Alice"}
    )
    fail_with: Any = None
    requests: List[httpx.Request] = field(default_factory=list)
    jwks: Dict[str, Any] = field(default_factory=lambda: {"keys": []})
    extra_tokens: Dict[str, Any] = field(default_factory=dict)
    end_session_endpoint: Optional[str] = f"{ISSUER}/logout"

    def discovery(self) -> Dict[str, Any]:
        document = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
            "jwks_uri": f"{ISSUER}/jwks",
        }
        if self.end_session_endpoint:
            document["end_session_endpoint"] = self.end_session_endpoint
        return document

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.fail_with, Exception):
            raise self.fail_with
        if isinstance(self.fail_with, int):
            return httpx.Response(self.fail_with, json={"error": "unavailable"})
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=self.discovery())
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks)
        if path == "/token":
            tokens = {"access_token": "access-token", "token_type": "Bearer"}
            tokens.update(self.extra_tokens)
            return httpx.Response(200, json=tokens)
        if path == "/userinfo":
            return httpx.Response(200, content=json.dumps(self.next_userinfo))
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def token_requests(self) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path == "/token"]


def build_settings(**overrides) -> AuthSettings:
    values: Dict[str, Any] = {
        "app_base_url": "http://testserver",
        "frontend_url": "http://frontend.test",
        "session_secret": "test-session-secret",
        "oidc_enabled": True,
        "oidc_issuer": ISSUER,
        "oidc_client_id": CLIENT_ID,
        "oidc_client_secret": CLIENT_SECRET,
    }
    values.update(overrides)
    return AuthSettings(**values)


def build_request(
    *,
    cookies: Optional[Dict[str, str]] = None,
    headers: Optional[Dict[str, str]] = None,
    client_host: str = "127.0.0.1",
    scheme: str = "http",
) -> Request:
    raw_headers = [(b"user-agent", b"pytest")]
    for key, value in (headers or {}).items():
        raw_headers.append((key.lower().encode("latin-1"), value.encode("latin-1")))
    cookie_header = "; ".join(f"{key}={value}" for key, value in (cookies or {}).items())
    if cookie_header:
        raw_headers.append((b"cookie", cookie_header.encode("ascii")))
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": scheme,
        "path": "/api/current_user",
        "query_string": b"",
        "server": ("testserver", 80),
        "headers": raw_headers,
        "client": (client_host, 12345),
    }
    return Request(scope)


def query_of(url: str) -> Dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


@pytest.fixture
def database(tmp_path) -> Database:
    db = Database(f"sqlite:///{tmp_path / 'authgate.db'}")
    db.init_schema()
    yield db
    db.dispose()


@pytest.fixture
def settings() -> AuthSettings:
    return build_settings()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def app_factory(database, provider) -> Callable[..., TestClient]:
    """Build a client for an app wired to ``database`` and ``provider``."""

    def _build(settings: Optional[AuthSettings] = None, **client_kwargs) -> TestClient:
        settings = settings or build_settings()
        oidc_client = OIDCClient(settings, transport=provider.transport()) if settings.federated_enabled else None
        app = create_app(settings, database=database, oidc_client=oidc_client)
        return TestClient(app, **client_kwargs)

    return _build


@pytest.fixture
def client(app_factory) -> TestClient:
    return app_factory()
