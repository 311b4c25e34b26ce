"""
auth/service.py -- AuthService: passwordless login, code exchange, token refresh.

One AuthService instance is built at start-up (AuthService.from_settings) and
shared by every request handler. It owns:
  - the OAuth2-style client registry (filled at start-up, read-only after)
  - the UserStore, the verification-code manager and the device registry
  - a SecureCache used to suppress duplicate deliveries of the same code
  - optionally a PermissionResolver over a RoleStore

Protocol:
  login(identifier, device_data, ip)
      resolve user by email, then username; create one if neither matches
      -> optional device upsert -> NEW code row (older unverified rows are
      superseded, not deleted) -> generate code -> deliver (best-effort).

  authenticate(identifier, code, client_id, client_secret, device_uuid)
      client check -> user -> latest unverified code -> verify -> mark
      verified -> touch device -> record login -> mint access + refresh.

  refresh_access_token(refresh_token)
      signature + type == "refresh" -> active user -> new access token.
      The refresh token itself is not rotated.

  logout(access_token)
      no server-side state; clients discard their tokens.

Partial failure: steps are separate single-row writes. A crash after the code
is marked verified but before tokens are returned leaves the code consumed;
the client requests a fresh code, as it would for any InvalidCode.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from auth.codes import VerificationCodeManager
from auth.devices import DeviceRegistry
from auth.errors import InvalidClient, InvalidCode, InvalidToken, NoCodeIssued, UserInactive, UserNotFound
from auth.models import (
    AuthTokens,
    ClientApplication,
    LoginResult,
    RefreshedToken,
    User,
    UserDevice,
    VerificationCode,
)
from auth.store import UserStore
from auth.tokens import ACCESS, REFRESH, compute_expiry, create_token, decode_token
from cache.secure import SecureCache
from cache.store import Cache, TTLCache
from core.config import Settings
from core.notifier import Notifier, build_notifier
from rbac.permissions import PermissionResolver
from rbac.store import RoleStore

logger = logging.getLogger("codegate.auth")

_PUBLIC_USER_FIELDS = (
    "id",
    "email",
    "username",
    "first_name",
    "last_name",
    "is_active",
    "email_verified",
    "last_login",
    "date_joined",
)

_PUBLIC_DEVICE_FIELDS = (
    "id",
    "uuid",
    "user_id",
    "name",
    "os",
    "os_version",
    "app_version",
    "device_type",
    "active",
    "last_login",
    "ip",
)


def public_user(user: User) -> dict:
    """Serializable view of a user. Staff/superuser flags stay server-side."""
    data = asdict(user)
    return {k: data[k] for k in _PUBLIC_USER_FIELDS}


def public_device(device: UserDevice) -> dict:
    """Serializable view of a device. Push tokens are never exposed."""
    data = asdict(device)
    return {k: data[k] for k in _PUBLIC_DEVICE_FIELDS}


class AuthService:
    def __init__(
        self,
        settings: Settings,
        user_store: UserStore,
        cache: Cache,
        notifier: Notifier | None = None,
        permissions: PermissionResolver | None = None,
    ) -> None:
        self.settings = settings
        self.store = user_store
        self.notifier = notifier or build_notifier(settings)
        self.permissions = permissions
        self.codes = VerificationCodeManager(
            user_store,
            cache,
            expire_seconds=settings.code_expire_seconds,
            cache_key_prefix=settings.code_cache_key,
            debug_code=settings.debug_code,
            tester_emails=settings.tester_emails,
            tester_code=settings.tester_code,
        )
        self.devices = DeviceRegistry(user_store)
        self.secure_cache = SecureCache(cache, settings.secret_key)
        self._secret_key = settings.secret_key
        self._applications: dict[str, ClientApplication] = {}
        for app in settings.client_applications:
            self.register_application(ClientApplication(app.client_id, app.client_secret, app.name))

    @classmethod
    def from_settings(cls, settings: Settings, notifier: Notifier | None = None) -> AuthService:
        """Build the production wiring: SQLite stores, TTL cache, configured notifier, RBAC."""
        return cls(
            settings,
            UserStore(settings.auth_db_url),
            TTLCache(settings.cache_db_path),
            notifier=notifier,
            permissions=PermissionResolver(RoleStore(settings.rbac_db_url)),
        )

    # ------------------------------------------------------------------
    # Client applications
    # ------------------------------------------------------------------

    def register_application(self, app: ClientApplication) -> None:
        """Register (or replace) a client. Call during start-up only."""
        if not app.client_id or not app.client_secret:
            raise ValueError("client_id and client_secret are required")
        self._applications[app.client_id] = app
        logger.info("Registered client application %s (%s)", app.client_id, app.name or "unnamed")

    def _validate_application(self, client_id: str, client_secret: str) -> bool:
        app = self._applications.get(client_id)
        if app is None:
            return False
        return app.client_secret == client_secret

    # ------------------------------------------------------------------
    # User resolution
    # ------------------------------------------------------------------

    def find_user(self, identifier: str) -> User | None:
        return self.store.get_by_email(identifier) or self.store.get_by_username(identifier)

    def _create_user(self, identifier: str) -> User:
        is_email = "@" in identifier
        user = User(
            email=identifier if is_email else f"{identifier}@{self.settings.placeholder_email_domain}",
            username=None if is_email else identifier,
        )
        try:
            user_id = self.store.create_user(user)
        except IntegrityError:
            # Concurrent first login for the same identifier -- use the winner's row.
            existing = self.find_user(identifier) or self.store.get_by_email(user.email)
            if existing is None:
                raise
            return existing
        logger.info("Created user %s on first login", user_id)
        return self.store.get_by_id(user_id)

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------

    def login(self, identifier: str, device_data: dict | None = None, ip: str | None = None) -> LoginResult:
        """Issue a verification code for identifier (email or username).

        Raises InvalidDevice when device_data carries a uuid that is not one of
        this user's devices. Delivery failures are logged, never raised.
        """
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValueError("an email or username is required")

        user = self.find_user(identifier) or self._create_user(identifier)

        device = None
        if device_data:
            device = self.devices.validate_and_create_or_update(user.id, {**device_data, "ip": ip})

        code = VerificationCode(user_id=user.id, device_id=device.id if device else None, ip=ip)
        code.id = self.store.create_verification_code(code)
        plain = self.codes.generate_and_save_token(
            code,
            user.email,
            is_debug_mode=self.settings.debug_codes_enabled,
            email_debug_enabled=self.settings.email_debug_enabled,
        )
        self._deliver(user, plain)
        return LoginResult(device_uuid=device.uuid if device else None)

    def _deliver(self, user: User, plain: str) -> None:
        marker = f"delivered:{user.id}"
        window = self.settings.resend_suppress_seconds
        if window > 0 and self.secure_cache.validate(self.secure_cache.get(marker), plain):
            logger.info("Same code delivered to user %s within %ss; not re-sending", user.id, window)
            return
        display_name = user.first_name or user.username or "User"
        try:
            outcome = self.notifier.deliver_verification_code(user.email, plain, display_name)
        except Exception as exc:
            # Login must still succeed: tester/debug codes work without delivery.
            logger.warning("Failed to deliver verification code to user %s: %s", user.id, exc)
            return
        if outcome.delivered and window > 0:
            self.secure_cache.set(marker, plain, window)

    # ------------------------------------------------------------------
    # authenticate
    # ------------------------------------------------------------------

    def authenticate(
        self,
        identifier: str,
        code: str,
        client_id: str,
        client_secret: str,
        device_uuid: str | None = None,
    ) -> AuthTokens:
        if not self._validate_application(client_id, client_secret):
            raise InvalidClient()

        user = self.find_user((identifier or "").strip())
        if user is None:
            raise UserNotFound()
        if not user.is_active:
            raise UserInactive()

        verification = self.store.get_latest_unverified_code(user.id)
        if verification is None:
            if self.store.has_verified_code(user.id):
                # Replay of an already exchanged code.
                raise InvalidCode()
            raise NoCodeIssued()

        if not self.codes.verify_code(verification, code, device_uuid):
            raise InvalidCode()

        device = self.devices.get_device(user.id, device_uuid) if device_uuid else None
        if verification.device_id is not None and device is not None and device.id != verification.device_id:
            logger.warning("Code %s for user %s presented from a different device", verification.id, user.id)
            raise InvalidCode()

        if not self.store.mark_code_verified(verification.id):
            # Lost a race with a concurrent exchange of the same code.
            raise InvalidCode()
        self.store.consume_unverified_codes(user.id)

        if device is not None:
            self.store.touch_device_login(device.id)
        self.store.record_login(user.id)
        self.codes.clear_cached_code(user.id)

        now = datetime.now(timezone.utc)
        access_expire = compute_expiry(self.settings.access_token_expire, now)
        refresh_expire = compute_expiry(self.settings.refresh_token_expire, now)
        logger.info("User %s authenticated via client %s", user.id, client_id)
        return AuthTokens(
            access_token=create_token(user.id, ACCESS, self._secret_key, access_expire),
            refresh_token=create_token(user.id, REFRESH, self._secret_key, refresh_expire),
            token_expire=access_expire,
            user=public_user(self.store.get_by_id(user.id) or user),
        )

    # ------------------------------------------------------------------
    # refresh / logout / verify
    # ------------------------------------------------------------------

    def refresh_access_token(self, refresh_token: str) -> RefreshedToken:
        claims = decode_token(refresh_token, self._secret_key, expected_type=REFRESH)
        if claims is None:
            raise InvalidToken()
        user = self.store.get_by_id(claims["user_id"])
        if user is None or not user.is_active:
            raise UserInactive()
        expire = compute_expiry(self.settings.access_token_expire)
        return RefreshedToken(
            access_token=create_token(user.id, ACCESS, self._secret_key, expire),
            token_expire=expire,
        )

    def logout(self, access_token: str) -> None:
        """No server-side effect: sessions end when the client drops its tokens.

        TODO: add a revocation list keyed by token jti in the TTL cache if
        server-side logout becomes a requirement.
        """
        claims = self.verify_token(access_token)
        if claims is not None:
            logger.info("User %s logged out", claims["user_id"])

    def verify_token(self, token: str) -> dict | None:
        """Signature and expiry check only. Returns the claims or None, never raises."""
        return decode_token(token, self._secret_key)

    def get_user_for_token(self, access_token: str) -> User | None:
        """Resolve an access token to an active user, or None."""
        claims = decode_token(access_token, self._secret_key, expected_type=ACCESS)
        if claims is None:
            return None
        user = self.store.get_by_id(claims["user_id"])
        if user is None or not user.is_active:
            return None
        return user

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def check_permission(self, user: User | None, action: str, scope=None) -> bool:
        """Delegate to the PermissionResolver. Without one, only superusers pass."""
        if self.permissions is None:
            return bool(user and user.is_superuser)
        return self.permissions.check_permission(user, action, scope)
