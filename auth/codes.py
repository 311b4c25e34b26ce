"""
auth/codes.py -- Verification code lifecycle: generation, caching, expiry, checks.

State of a code row:
  created (verified=0) -> verified (terminal, success)
                       -> expired  (terminal, row deleted on the first late check)
                       -> superseded (a newer row exists; authenticate never
                          loads this one again)

Two stores are involved on purpose:
  cache -- holds the current plaintext per user for code_expire_seconds so a
           "resend code" request within the window re-sends the same code
           instead of invalidating the one already in the user's inbox.
  store -- holds only the bcrypt hash, the durable record checked at
           authenticate time.

Override codes:
  tester_emails -- exact addresses or "prefix*" patterns that always receive
                   tester_code (app-store review accounts and the like).
  is_debug_mode -- the caller passes Settings.debug_codes_enabled, which the
                   settings validator only allows together with DEBUG=true.
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone

from auth.models import VerificationCode
from auth.store import UserStore
from auth.tokens import hash_code, verify_code_hash
from cache.store import Cache

logger = logging.getLogger("codegate.auth.codes")

CODE_LENGTH = 6


def generate_int_code(size: int = CODE_LENGTH) -> str:
    """Mix a random number with the millisecond clock and keep the first size digits."""
    combined = f"{secrets.randbelow(1_000_000)}{time.time_ns() // 1_000_000}"
    return combined[:size]


def is_tester_email(email: str, patterns: list[str]) -> bool:
    email = email.strip().lower()
    for pattern in patterns:
        pattern = pattern.strip().lower()
        if pattern.endswith("*"):
            if email.startswith(pattern[:-1]):
                return True
        elif email == pattern:
            return True
    return False


def _elapsed_seconds(created_at: str | None, now: datetime) -> float:
    if not created_at:
        return float("inf")
    created = datetime.fromisoformat(created_at)
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (now - created).total_seconds()


class VerificationCodeManager:
    def __init__(
        self,
        store: UserStore,
        cache: Cache,
        *,
        expire_seconds: int = 15 * 60,
        cache_key_prefix: str = "NC_T",
        debug_code: str = "123456",
        tester_emails: list[str] | None = None,
        tester_code: str = "789654",
    ) -> None:
        self.store = store
        self.cache = cache
        self.expire_seconds = expire_seconds
        self.cache_key_prefix = cache_key_prefix
        self.debug_code = debug_code
        self.tester_emails = list(tester_emails or [])
        self.tester_code = tester_code

    def _cache_key(self, user_id: int) -> str:
        return f"{self.cache_key_prefix}{user_id}"

    def _choose_code(self, user_id: int, email: str, is_debug_mode: bool, email_debug_enabled: bool) -> str:
        if is_tester_email(email, self.tester_emails):
            return self.tester_code
        if is_debug_mode and not email_debug_enabled:
            return self.debug_code
        cached = self.cache.get(self._cache_key(user_id))
        if cached:
            logger.debug("Reusing cached verification code for user %s", user_id)
            return cached
        return generate_int_code()

    def generate_and_save_token(
        self,
        code: VerificationCode,
        email: str,
        is_debug_mode: bool = False,
        email_debug_enabled: bool = False,
    ) -> str:
        """Pick the plaintext for code, cache it, persist its hash, return the plaintext.

        The returned value exists only so the caller can hand it to the
        notifier; it is never written to the durable store.
        """
        if code.id is None:
            raise ValueError("verification code must be saved before a token is generated")
        plain = self._choose_code(code.user_id, email, is_debug_mode, email_debug_enabled)
        self.cache.set(self._cache_key(code.user_id), plain, self.expire_seconds)
        code.token = hash_code(plain)
        self.store.set_code_token(code.id, code.token)
        return plain

    def verify_code(
        self,
        code: VerificationCode,
        candidate: str,
        device_uuid: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Check candidate against code. Expired rows are deleted and never retried.

        device_uuid is accepted for the caller's convenience; correlating the
        row's device_id with a device is the caller's job.
        """
        if not candidate or not code.token:
            return False
        now = now or datetime.now(timezone.utc)
        if _elapsed_seconds(code.created_at, now) > self.expire_seconds:
            if code.id is not None:
                self.store.delete_verification_code(code.id)
            logger.info("Verification code %s for user %s expired", code.id, code.user_id)
            return False
        return verify_code_hash(candidate, code.token)

    def clear_cached_code(self, user_id: int) -> None:
        """Forget the resendable plaintext once it has been exchanged."""
        self.cache.delete(self._cache_key(user_id))
