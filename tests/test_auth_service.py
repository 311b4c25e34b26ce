"""End-to-end tests for auth/service.py -- login, authenticate, refresh.

Covers:
- The basic flow: login -> emailed code -> authenticate -> tokens
- A consumed code cannot be exchanged twice
- Client, user and code failures raise the matching AuthError
- Expired codes are deleted on the first late attempt
- Device binding and device mismatch
- Delivery is best-effort and suppressed for identical resends
- Refresh tokens only mint access tokens for active users
"""

from datetime import datetime, timedelta, timezone

import pytest
from conftest import CLIENT_ID, CLIENT_SECRET, make_settings

from auth.errors import (
    InvalidClient,
    InvalidCode,
    InvalidDevice,
    InvalidToken,
    NoCodeIssued,
    UserInactive,
    UserNotFound,
)
from auth.models import ClientApplication, User, VerificationCode
from auth.service import AuthService, public_device
from auth.tokens import ACCESS, REFRESH, decode_token, hash_code
from cache.store import MemoryCache


def _login_and_get_code(service, notifier, identifier="a@x.com", **kwargs) -> str:
    service.login(identifier, **kwargs)
    return notifier.last_code


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestLoginFlow:
    def test_login_then_authenticate(self, service, notifier, settings):
        result = service.login("a@x.com")
        assert result.device_uuid is None
        (email, code, _name) = notifier.sent[0]
        assert email == "a@x.com"

        before = datetime.now(timezone.utc)
        tokens = service.authenticate("a@x.com", code, CLIENT_ID, CLIENT_SECRET)

        assert tokens.token_type == "bearer"
        assert tokens.user["email"] == "a@x.com"
        assert "is_superuser" not in tokens.user
        expected = before + timedelta(days=30)
        assert abs((tokens.token_expire - expected).total_seconds()) < 60

        access = decode_token(tokens.access_token, settings.secret_key)
        refresh = decode_token(tokens.refresh_token, settings.secret_key)
        assert access["type"] == ACCESS
        assert refresh["type"] == REFRESH
        assert access["user_id"] == tokens.user["id"]

    def test_second_exchange_of_same_code_fails(self, service, notifier):
        code = _login_and_get_code(service, notifier)
        service.authenticate("a@x.com", code, CLIENT_ID, CLIENT_SECRET)
        with pytest.raises(InvalidCode):
            service.authenticate("a@x.com", code, CLIENT_ID, CLIENT_SECRET)

    def test_login_creates_user_once(self, service, user_store, notifier):
        service.login("A@X.com")
        service.login("a@x.com")
        user = user_store.get_by_email("a@x.com")
        assert user is not None
        assert user.email_verified is False

    def test_authenticate_records_login(self, service, user_store, notifier):
        code = _login_and_get_code(service, notifier)
        service.authenticate("a@x.com", code, CLIENT_ID, CLIENT_SECRET)
        user = user_store.get_by_email("a@x.com")
        assert user.email_verified is True
        assert user.last_login is not None

    def test_username_login_gets_placeholder_email(self, service, user_store, notifier):
        code = _login_and_get_code(service, notifier, identifier="alice")
        user = user_store.get_by_username("alice")
        assert user.email == "alice@placeholder.com"
        tokens = service.authenticate("alice", code, CLIENT_ID, CLIENT_SECRET)
        assert tokens.user["username"] == "alice"

    def test_empty_identifier_rejected(self, service):
        with pytest.raises(ValueError):
            service.login("   ")

    def test_newer_code_supersedes_older(self, service, notifier, cache, monkeypatch):
        codes = iter(["111111", "222222"])
        monkeypatch.setattr("auth.codes.generate_int_code", lambda: next(codes))
        service.login("a@x.com")
        service.codes.clear_cached_code(service.find_user("a@x.com").id)
        service.login("a@x.com")
        with pytest.raises(InvalidCode):
            service.authenticate("a@x.com", "111111", CLIENT_ID, CLIENT_SECRET)
        assert service.authenticate("a@x.com", "222222", CLIENT_ID, CLIENT_SECRET).access_token
        # The superseded code stays dead after the newer one is exchanged.
        with pytest.raises(InvalidCode):
            service.authenticate("a@x.com", "111111", CLIENT_ID, CLIENT_SECRET)

    def test_resent_code_works_only_once(self, service, notifier, user_store):
        service.login("a@x.com")
        service.login("a@x.com")
        code = notifier.last_code
        service.authenticate("a@x.com", code, CLIENT_ID, CLIENT_SECRET)
        with pytest.raises(InvalidCode):
            service.authenticate("a@x.com", code, CLIENT_ID, CLIENT_SECRET)
        assert user_store.get_latest_unverified_code(service.find_user("a@x.com").id) is None

    def test_tester_code_works_once_per_exchange(self, service, notifier):
        for _ in range(3):
            service.login("review@example.com")
        service.authenticate("review@example.com", "789654", CLIENT_ID, CLIENT_SECRET)
        with pytest.raises(InvalidCode):
            service.authenticate("review@example.com", "789654", CLIENT_ID, CLIENT_SECRET)

    def test_tester_account_code(self, service, notifier):
        code = _login_and_get_code(service, notifier, identifier="review@example.com")
        assert code == "789654"
        service.authenticate("review@example.com", "789654", CLIENT_ID, CLIENT_SECRET)

    def test_debug_code_needs_explicit_flag(self, user_store, notifier):
        svc = AuthService(
            make_settings(debug_codes_enabled=True),
            user_store,
            MemoryCache(),
            notifier=notifier,
        )
        svc.login("a@x.com")
        assert notifier.last_code == "123456"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestAuthenticateFailures:
    def test_unknown_client(self, service, notifier):
        code = _login_and_get_code(service, notifier)
        with pytest.raises(InvalidClient):
            service.authenticate("a@x.com", code, "nope", CLIENT_SECRET)
        with pytest.raises(InvalidClient):
            service.authenticate("a@x.com", code, CLIENT_ID, "wrong-secret")

    def test_unknown_user(self, service):
        with pytest.raises(UserNotFound):
            service.authenticate("ghost@x.com", "123456", CLIENT_ID, CLIENT_SECRET)

    def test_no_code_issued(self, service, user_store):
        user_store.create_user(User(email="a@x.com"))
        with pytest.raises(NoCodeIssued):
            service.authenticate("a@x.com", "123456", CLIENT_ID, CLIENT_SECRET)

    def test_wrong_code_does_not_consume(self, service, notifier):
        code = _login_and_get_code(service, notifier)
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(InvalidCode):
            service.authenticate("a@x.com", wrong, CLIENT_ID, CLIENT_SECRET)
        assert service.authenticate("a@x.com", code, CLIENT_ID, CLIENT_SECRET).access_token

    def test_expired_code_deleted_on_first_attempt(self, service, user_store):
        user_id = user_store.create_user(User(email="a@x.com"))
        late = datetime.now(timezone.utc) - timedelta(seconds=901)
        code_id = user_store.create_verification_code(
            VerificationCode(user_id=user_id, token=hash_code("482917"), created_at=late.isoformat())
        )
        with pytest.raises(InvalidCode):
            service.authenticate("a@x.com", "482917", CLIENT_ID, CLIENT_SECRET)
        assert user_store.get_verification_code(code_id) is None
        with pytest.raises(NoCodeIssued):
            service.authenticate("a@x.com", "482917", CLIENT_ID, CLIENT_SECRET)

    def test_inactive_user(self, service, user_store, notifier):
        code = _login_and_get_code(service, notifier)
        user_store.update_user(service.find_user("a@x.com").id, is_active=False)
        with pytest.raises(UserInactive):
            service.authenticate("a@x.com", code, CLIENT_ID, CLIENT_SECRET)


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class TestDevices:
    def test_login_registers_device(self, service, user_store, notifier):
        result = service.login("a@x.com", device_data={"name": "Pixel", "os": "android"}, ip="10.0.0.1")
        device = user_store.get_device_by_uuid(result.device_uuid, service.find_user("a@x.com").id)
        assert device.name == "Pixel"
        assert device.ip == "10.0.0.1"

    def test_repeat_login_with_uuid_keeps_one_device(self, service, user_store, notifier):
        first = service.login("a@x.com", device_data={"name": "Pixel"})
        second = service.login("a@x.com", device_data={"uuid": first.device_uuid, "app_version": "2.0"})
        assert second.device_uuid == first.device_uuid
        assert user_store.count_devices() == 1

    def test_unknown_device_uuid_rejected_on_login(self, service, notifier):
        with pytest.raises(InvalidDevice):
            service.login("a@x.com", device_data={"uuid": "not-a-real-device"})
        assert notifier.sent == []

    def test_authenticate_stamps_device(self, service, user_store, notifier):
        result = service.login("a@x.com", device_data={"name": "Pixel"})
        service.authenticate("a@x.com", notifier.last_code, CLIENT_ID, CLIENT_SECRET, result.device_uuid)
        device = user_store.get_device_by_uuid(result.device_uuid, service.find_user("a@x.com").id)
        assert device.last_login is not None

    def test_code_bound_to_other_device_rejected(self, service, notifier):
        phone = service.login("a@x.com", device_data={"name": "Phone"})
        tablet = service.login("a@x.com", device_data={"name": "Tablet"})
        # The latest code belongs to the tablet.
        with pytest.raises(InvalidCode):
            service.authenticate("a@x.com", notifier.last_code, CLIENT_ID, CLIENT_SECRET, phone.device_uuid)
        tokens = service.authenticate(
            "a@x.com", notifier.last_code, CLIENT_ID, CLIENT_SECRET, tablet.device_uuid
        )
        assert tokens.access_token

    def test_public_device_hides_push_tokens(self, service, user_store, notifier):
        result = service.login("a@x.com", device_data={"name": "Pixel", "firebase_token": "fcm-secret"})
        device = user_store.get_device_by_uuid(result.device_uuid, service.find_user("a@x.com").id)
        data = public_device(device)
        assert "firebase_token" not in data
        assert "device_token" not in data
        assert data["uuid"] == result.device_uuid


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class TestDelivery:
    def test_delivery_failure_does_not_fail_login(self, service, notifier):
        notifier.fail_with = OSError("smtp down")
        result = service.login("review@example.com")
        assert result.message == "Verification code sent"
        service.authenticate("review@example.com", "789654", CLIENT_ID, CLIENT_SECRET)

    def test_identical_resend_suppressed_within_window(self, service, notifier, clock):
        service.login("a@x.com")
        service.login("a@x.com")
        assert len(notifier.sent) == 1
        clock.advance(31)
        service.login("a@x.com")
        assert len(notifier.sent) == 2
        assert notifier.sent[0][1] == notifier.sent[1][1]

    def test_display_name_fallback(self, service, notifier):
        service.login("a@x.com")
        assert notifier.sent[0][2] == "User"


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TestTokens:
    def _tokens(self, service, notifier):
        code = _login_and_get_code(service, notifier)
        return service.authenticate("a@x.com", code, CLIENT_ID, CLIENT_SECRET)

    def test_refresh_mints_access_token(self, service, notifier, settings):
        tokens = self._tokens(service, notifier)
        refreshed = service.refresh_access_token(tokens.refresh_token)
        claims = decode_token(refreshed.access_token, settings.secret_key, expected_type=ACCESS)
        assert claims["user_id"] == tokens.user["id"]

    def test_access_token_cannot_refresh(self, service, notifier):
        tokens = self._tokens(service, notifier)
        with pytest.raises(InvalidToken):
            service.refresh_access_token(tokens.access_token)

    def test_refresh_for_inactive_user(self, service, user_store, notifier):
        tokens = self._tokens(service, notifier)
        user_store.update_user(tokens.user["id"], is_active=False)
        with pytest.raises(UserInactive):
            service.refresh_access_token(tokens.refresh_token)

    def test_garbage_refresh_token(self, service):
        with pytest.raises(InvalidToken):
            service.refresh_access_token("garbage")

    def test_get_user_for_token(self, service, notifier):
        tokens = self._tokens(service, notifier)
        assert service.get_user_for_token(tokens.access_token).email == "a@x.com"
        assert service.get_user_for_token(tokens.refresh_token) is None
        assert service.verify_token("garbage") is None

    def test_logout_is_harmless(self, service, notifier):
        tokens = self._tokens(service, notifier)
        service.logout(tokens.access_token)
        service.logout("garbage")
        assert service.get_user_for_token(tokens.access_token) is not None

    def test_malformed_expiry_falls_back_to_thirty_days(self, user_store, notifier):
        svc = AuthService(
            make_settings(access_token_expire="soon"),
            user_store,
            MemoryCache(),
            notifier=notifier,
        )
        svc.register_application(ClientApplication(CLIENT_ID, CLIENT_SECRET))
        svc.login("a@x.com")
        before = datetime.now(timezone.utc)
        tokens = svc.authenticate("a@x.com", notifier.last_code, CLIENT_ID, CLIENT_SECRET)
        assert abs((tokens.token_expire - (before + timedelta(days=30))).total_seconds()) < 60


# ---------------------------------------------------------------------------
# Permissions via the service
# ---------------------------------------------------------------------------


def test_check_permission_without_resolver(user_store, notifier):
    svc = AuthService(make_settings(), user_store, MemoryCache(), notifier=notifier)
    assert svc.check_permission(User(id=1, email="a@x.com"), "anything") is False
    assert svc.check_permission(User(id=1, email="a@x.com", is_superuser=True), "anything") is True
    assert svc.check_permission(None, "anything") is False
