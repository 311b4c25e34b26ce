"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these dataclasses only own the domain shape.

Layer rule: no imports from rbac/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """Represents an identity that logs in with emailed one-time codes.

    email and username are stored lower-cased; lookups normalize the same way.
    Users created from a bare username get a synthesized placeholder email so
    the UNIQUE NOT NULL email column always has a value.
    """

    email: str
    id: int | None = None
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool = True
    is_staff: bool = False
    is_superuser: bool = False
    email_verified: bool = False
    last_login: str | None = None  # ISO 8601
    date_joined: str | None = None  # ISO 8601, set by store on insert


@dataclass
class UserDevice:
    """A client installation bound to a user.

    uuid is the stable external identity the client presents on later logins.
    It is globally unique: a uuid belonging to another user never resolves.

    device_token / firebase_token are push credentials. They are never part
    of the public representation (see auth.service.public_device).
    """

    user_id: int
    name: str
    uuid: str = ""
    id: int | None = None
    os: str | None = None
    os_version: str | None = None
    app_version: str | None = None
    device_type: str | None = None
    device_token: str | None = None
    firebase_token: str | None = None  # push-notification token
    active: bool = True
    last_login: str | None = None
    ip: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class VerificationCode:
    """A one-time login credential.

    token is the bcrypt hash of the code -- the plaintext is never persisted.
    An empty token means generation has not run yet; such a row never verifies.
    """

    user_id: int
    token: str = ""
    id: int | None = None
    device_id: int | None = None
    verified: bool = False
    ip: str | None = None
    created_at: str | None = None  # ISO 8601, set by store on insert unless given


@dataclass
class ClientApplication:
    """An OAuth2-style caller registered with the AuthService at start-up."""

    client_id: str
    client_secret: str
    name: str = ""


@dataclass
class LoginResult:
    device_uuid: str | None = None
    message: str = "Verification code sent"


@dataclass
class AuthTokens:
    """Result of a successful authenticate() exchange.

    token_expire is the wall-clock expiry of the access token (UTC).
    user is the public representation from auth.service.public_user().
    """

    access_token: str
    refresh_token: str
    token_expire: datetime
    user: dict
    token_type: str = "bearer"


@dataclass
class RefreshedToken:
    access_token: str
    token_expire: datetime
