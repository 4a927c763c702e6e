"""OIDC authorization-code flow against a single identity provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt
from starlette.concurrency import run_in_threadpool

from .config import AuthSettings, TokenAuthMethod
from .crypto import constant_time_equals, generate_pkce_challenge, generate_pkce_verifier, generate_token
from .errors import (
    AuthError,
    FederatedDisabled,
    MissingEmailClaim,
    ProviderError,
    ProviderUnavailable,
    StateMismatch,
)
from .models import AuthSession
from .sessions import SessionManager, short_id

LOGGER = logging.getLogger(__name__)

_METADATA_TTL = timedelta(hours=1)
_JWKS_TTL = timedelta(hours=4)


@dataclass(frozen=True)
class FederatedIdentity:
    subject: str
    issuer: str
    email: str
    name: str


def _with_query(url: str, query: Dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(query)}"


def _claim_text(claims: Dict[str, Any], key: str) -> str:
    """Stripped string value of a claim; blank or absent claims come back empty."""

    value = claims.get(key)
    if value is None:
        return ""
    return str(value).strip()


class OIDCClient:
    """HTTP client for one provider registration.

    Discovery documents and signing keys are cached on the instance; build one
    client per application and hand it to :class:`FederatedAuthenticator`.
    ``transport`` lets tests substitute the provider.
    """

    def __init__(self, settings: AuthSettings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._settings = settings
        self._transport = transport
        self._metadata: Optional[Dict[str, Any]] = None
        self._metadata_cached_at: Optional[datetime] = None
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_cached_at: Optional[datetime] = None

    @property
    def issuer(self) -> Optional[str]:
        return self._settings.oidc_issuer

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._settings.oidc_http_timeout_seconds, transport=self._transport)

    @staticmethod
    def _fresh(cached_at: Optional[datetime], ttl: timedelta) -> bool:
        return cached_at is not None and datetime.now(timezone.utc) - cached_at < ttl

    async def _fetch_json(self, url: str, *, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            async with self._http() as client:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(detail=f"timed out fetching {url}") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(detail=f"could not reach {url}: {exc.__class__.__name__}") from exc
        if response.status_code >= 500:
            raise ProviderUnavailable(detail=f"{url} answered {response.status_code}")
        if response.status_code != 200:
            raise ProviderError(detail=f"{url} answered {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(detail=f"{url} did not return JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderError(detail=f"{url} returned a non-object document")
        return payload

    async def metadata(self) -> Dict[str, Any]:
        if self._metadata is not None and self._fresh(self._metadata_cached_at, _METADATA_TTL):
            return self._metadata
        if not self._settings.oidc_issuer:
            raise FederatedDisabled(detail="OIDC issuer missing")
        well_known = self._settings.oidc_issuer.rstrip("/") + "/.well-known/openid-configuration"
        self._metadata = await self._fetch_json(well_known)
        self._metadata_cached_at = datetime.now(timezone.utc)
        return self._metadata

    async def _endpoint(self, override: Optional[str], key: str) -> str:
        if override:
            return override
        metadata = await self.metadata()
        value = metadata.get(key)
        if not value:
            raise ProviderError(detail=f"OIDC discovery missing {key}")
        return str(value)

    async def _optional_endpoint(self, override: Optional[str], key: str) -> Optional[str]:
        if override:
            return override
        metadata = await self.metadata()
        value = metadata.get(key)
        return str(value) if value else None

    async def _signing_keys(self) -> Dict[str, Any]:
        if self._jwks is not None and self._fresh(self._jwks_cached_at, _JWKS_TTL):
            return self._jwks
        jwks_uri = await self._endpoint(None, "jwks_uri")
        self._jwks = await self._fetch_json(jwks_uri)
        self._jwks_cached_at = datetime.now(timezone.utc)
        return self._jwks

    async def authorization_url(self, *, state: str, nonce: str, code_challenge: Optional[str] = None) -> str:
        endpoint = await self._endpoint(self._settings.oidc_authorization_url, "authorization_endpoint")
        query = {
            "client_id": self._settings.oidc_client_id or "",
            "response_type": "code",
            "redirect_uri": self._settings.redirect_uri,
            "scope": self._settings.oidc_scopes,
            "state": state,
            "nonce": nonce,
        }
        if code_challenge:
            query["code_challenge"] = code_challenge
            query["code_challenge_method"] = "S256"
        return _with_query(endpoint, query)

    async def exchange_code(self, *, code: str, code_verifier: Optional[str] = None) -> Dict[str, Any]:
        """Trade an authorization code for tokens.

        ``client_secret_basic`` sends the client credentials only in the
        Authorization header; some providers reject requests that also carry
        them in the body. ``client_secret_post`` sends them only in the body.
        """

        token_endpoint = await self._endpoint(self._settings.oidc_token_url, "token_endpoint")
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._settings.redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        auth: Optional[httpx.BasicAuth] = None
        if self._settings.oidc_token_auth_method == TokenAuthMethod.CLIENT_SECRET_BASIC:
            auth = httpx.BasicAuth(self._settings.oidc_client_id or "", self._settings.oidc_client_secret or "")
        else:
            data["client_id"] = self._settings.oidc_client_id or ""
            data["client_secret"] = self._settings.oidc_client_secret or ""
        try:
            async with self._http() as client:
                response = await client.post(
                    token_endpoint,
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(detail="token exchange timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(detail=f"token endpoint unreachable: {exc.__class__.__name__}") from exc
        if response.status_code >= 500:
            raise ProviderUnavailable(detail=f"token endpoint answered {response.status_code}")
        if response.status_code != 200:
            LOGGER.error("OIDC token exchange failed with status %s", response.status_code)
            raise ProviderError(detail=f"token endpoint answered {response.status_code}")
        try:
            tokens = response.json()
        except ValueError as exc:
            raise ProviderError(detail="token endpoint did not return JSON") from exc
        if not isinstance(tokens, dict):
            raise ProviderError(detail="token endpoint returned a non-object document")
        return tokens

    async def userinfo(self, access_token: Optional[str]) -> Optional[Dict[str, Any]]:
        endpoint = await self._optional_endpoint(self._settings.oidc_userinfo_url, "userinfo_endpoint")
        if not endpoint or not access_token:
            return None
        return await self._fetch_json(endpoint, headers={"Authorization": f"Bearer {access_token}"})

    async def decode_id_token(
        self,
        id_token: str,
        *,
        nonce: Optional[str],
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        keys = await self._signing_keys()
        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as exc:
            raise ProviderError(detail="malformed id_token") from exc
        candidates = [key for key in keys.get("keys", []) if isinstance(key, dict)]
        kid = header.get("kid")
        if kid:
            key_data = next((key for key in candidates if key.get("kid") == kid), None)
        else:
            key_data = candidates[0] if len(candidates) == 1 else None
        if key_data is None:
            raise ProviderError(detail="OIDC signing key not found")
        metadata = await self.metadata()
        try:
            claims = jwt.decode(
                id_token,
                key_data,
                algorithms=[key_data.get("alg") or header.get("alg", "RS256")],
                audience=self._settings.oidc_client_id,
                issuer=metadata.get("issuer") or self._settings.oidc_issuer,
                access_token=access_token,
            )
        except JWTError as exc:
            raise ProviderError(detail=f"id_token rejected: {exc}") from exc
        if nonce and claims.get("nonce") != nonce:
            raise ProviderError(detail="OIDC nonce mismatch")
        return claims

    async def end_session_url(self, *, post_logout_redirect_uri: str) -> Optional[str]:
        endpoint = self._settings.oidc_end_session_url
        if not endpoint:
            try:
                metadata = await self.metadata()
            except AuthError as exc:
                LOGGER.warning("Could not load OIDC discovery for logout: %s", exc.detail or exc.message)
                return None
            endpoint = metadata.get("end_session_endpoint")
        if not endpoint:
            return None
        query = {
            "client_id": self._settings.oidc_client_id or "",
            "post_logout_redirect_uri": post_logout_redirect_uri,
        }
        return _with_query(str(endpoint), query)


class FederatedAuthenticator:
    """Drives init and callback of the authorization-code flow for one session."""

    def __init__(self, settings: AuthSettings, client: Optional[OIDCClient], sessions: SessionManager) -> None:
        self._settings = settings
        self._client = client
        self._sessions = sessions

    @property
    def enabled(self) -> bool:
        return self._settings.federated_enabled and self._client is not None

    @property
    def configured(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> OIDCClient:
        if not self.enabled or self._client is None:
            raise FederatedDisabled()
        return self._client

    async def begin_login(self, session: AuthSession) -> str:
        """Issue fresh state/nonce/PKCE values on ``session`` and return the provider URL."""

        client = self.client
        state = generate_token(32)
        nonce = generate_token(16)
        verifier = generate_pkce_verifier() if self._settings.oidc_use_pkce else None
        challenge = generate_pkce_challenge(verifier) if verifier else None
        url = await client.authorization_url(state=state, nonce=nonce, code_challenge=challenge)
        await run_in_threadpool(
            self._sessions.begin_federated_login,
            session,
            state=state,
            nonce=nonce,
            code_verifier=verifier,
        )
        LOGGER.info("Federated login started for session %s", short_id(session.id))
        return url

    async def complete_login(
        self,
        session: Optional[AuthSession],
        *,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> FederatedIdentity:
        """Validate the callback and return the provider's identity.

        The stored state is consumed before anything else, so it cannot be
        replayed whether this call succeeds or fails.
        """

        client = self.client
        pending = await run_in_threadpool(self._sessions.consume_federated_login, session)
        if not constant_time_equals(pending.state, state):
            LOGGER.warning(
                "OIDC callback state mismatch for session %s",
                short_id(session.id if session is not None else None),
            )
            raise StateMismatch()
        if error:
            raise ProviderError(detail=f"provider returned error={error}")
        if not code:
            raise ProviderError(detail="callback carried no authorization code")
        tokens = await client.exchange_code(code=code, code_verifier=pending.code_verifier)
        claims = await self._collect_claims(client, tokens, nonce=pending.nonce)
        return self.parse_identity(claims)

    async def _collect_claims(self, client: OIDCClient, tokens: Dict[str, Any], *, nonce: Optional[str]) -> Dict[str, Any]:
        claims: Dict[str, Any] = {}
        access_token = tokens.get("access_token")
        id_token = tokens.get("id_token")
        if id_token:
            claims.update(await client.decode_id_token(id_token, nonce=nonce, access_token=access_token))
        userinfo = await client.userinfo(access_token)
        if userinfo:
            if claims.get("sub") and userinfo.get("sub") != claims["sub"]:
                raise ProviderError(detail="userinfo subject does not match id_token")
            claims.update(userinfo)
        if not claims:
            raise ProviderError(detail="provider returned neither id_token nor userinfo")
        return claims

    def parse_identity(self, claims: Dict[str, Any]) -> FederatedIdentity:
        subject = _claim_text(claims, "sub")
        if not subject:
            raise ProviderError(detail="sub claim missing")
        email = _claim_text(claims, "email") or _claim_text(claims, "preferred_username")
        if not email:
            LOGGER.error("OIDC provider sent neither email nor preferred_username; check the requested scopes")
            raise MissingEmailClaim()
        name = _claim_text(claims, "name") or _claim_text(claims, "preferred_username") or email
        return FederatedIdentity(
            subject=subject,
            issuer=self._settings.oidc_issuer or "",
            email=email,
            name=name,
        )

    async def logout_url(self) -> Optional[str]:
        if not self.enabled or self._client is None:
            return None
        return await self._client.end_session_url(
            post_logout_redirect_uri=self._settings.frontend_path(self._settings.federated_error_path),
        )
