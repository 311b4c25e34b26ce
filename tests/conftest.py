"""
tests/conftest.py -- Shared test fixtures for CodeGate.

This module provides:
  - settings: a Settings instance with a fixed key and a tester pattern
  - user_store / role_store: isolated in-memory SQLite stores
  - cache: a MemoryCache whose clock the test controls
  - notifier: records deliveries instead of sending mail
  - service: an AuthService wired from the pieces above, with one client app

The DEBUG env var must be set before any core import so get_settings() can
auto-generate SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator

# CRITICAL: Set DEBUG before any core import.
os.environ.setdefault("DEBUG", "true")

import pytest

from auth.models import ClientApplication
from auth.service import AuthService
from auth.store import UserStore
from cache.store import MemoryCache
from core.config import Settings
from core.notifier import DeliveryOutcome
from rbac.permissions import PermissionResolver
from rbac.store import RoleStore

CLIENT_ID = "test-client"
CLIENT_SECRET = "test-client-secret"
TEST_SECRET_KEY = "k" * 48


class FakeClock:
    """Monotonic stand-in for time.time() that tests can advance."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    """Captures (email, code, display_name) triples. Can be told to fail."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail_with: Exception | None = None

    def deliver_verification_code(self, email: str, code: str, display_name: str) -> DeliveryOutcome:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((email, code, display_name))
        return DeliveryOutcome(delivered=True)

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET_KEY,
        "tester_emails": ["google_tester*", "review@example.com"],
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def role_store() -> Generator[RoleStore, None, None]:
    store = RoleStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> MemoryCache:
    return MemoryCache(clock=clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(settings, user_store, role_store, cache, notifier) -> AuthService:
    svc = AuthService(
        settings,
        user_store,
        cache,
        notifier=notifier,
        permissions=PermissionResolver(role_store),
    )
    svc.register_application(ClientApplication(CLIENT_ID, CLIENT_SECRET, "Test app"))
    return svc
