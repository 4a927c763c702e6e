"""Pydantic schemas for authentication routes."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field


class SessionUser(BaseModel):
    """Public view of a user; internal ids never leave the server."""

    uid: str
    email: str
    name: str
    provider: Literal["local", "oidc", "linked"]


class SessionMeta(BaseModel):
    expires_at: datetime
    federated_login: bool = False


class CurrentUserResponse(BaseModel):
    user: Optional[SessionUser] = None


class SessionEnvelope(BaseModel):
    user: SessionUser
    session: SessionMeta


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


class BootstrapRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    name: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    errors: List[str]
    reason: Optional[str] = None


class FederatedConfigResponse(BaseModel):
    enabled: bool


class FederatedStatusResponse(BaseModel):
    enabled: bool
    configured: bool
    issuer: Optional[str] = None


class AuthStatusResponse(BaseModel):
    has_users: bool
