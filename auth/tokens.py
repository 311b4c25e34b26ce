"""
auth/tokens.py -- JWT, verification-code hashing, and duration utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry the user id (as "sub" and
       "user_id"), a "type" discriminator ("access" or "refresh") and expiry.
       Verification returns None on any failure -- callers decide whether that
       becomes an InvalidToken error or a 401.

  Codes: bcrypt via the bcrypt package directly. Six-digit codes are
       low-entropy secrets, exactly the case bcrypt's cost factor exists for:
       a leaked verification_codes table does not yield usable codes within
       the 15-minute window.

  Durations: "<integer><unit>" with unit in d/h/m/s. Anything else falls back
       to 30 days so a typo in configuration never produces a token that
       expires instantly.

Layer rule: no imports from rbac/ or cache/. Import from core/ is not needed
here -- the secret is passed in by the AuthService that owns it.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"

_DEFAULT_DURATION = timedelta(days=30)
_DURATION_RE = re.compile(r"^(\d+)([dhms])$")
_UNIT_SECONDS = {
    "d": 24 * 60 * 60,
    "h": 60 * 60,
    "m": 60,
    "s": 1,
}


# ---------------------------------------------------------------------------
# Duration specifiers
# ---------------------------------------------------------------------------


def parse_duration(duration: str | None) -> timedelta | None:
    """Parse '30d', '24h', '60m', '45s'. Returns None if it is malformed."""
    if not duration:
        return None
    match = _DURATION_RE.match(duration.strip())
    if not match:
        return None
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _UNIT_SECONDS[unit])


def compute_expiry(duration: str | None, now: datetime | None = None) -> datetime:
    """Return the wall-clock expiry for a duration string, defaulting to 30 days."""
    now = now or datetime.now(timezone.utc)
    return now + (parse_duration(duration) or _DEFAULT_DURATION)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_token(user_id: int, token_type: str, secret_key: str, expires_at: datetime) -> str:
    """Encode a signed JWT for user_id with the given type discriminator and expiry."""
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "type": token_type,
        "iat": datetime.now(timezone.utc),
        "exp": expires_at,
    }
    return jwt.encode(payload, secret_key, algorithm=ALGORITHM)


def decode_token(token: str, secret_key: str, expected_type: str | None = None) -> dict | None:
    """Decode and verify a JWT. Returns the claims dict or None on any failure.

    A token missing user_id or type, or whose type differs from expected_type
    (when given), is treated exactly like a bad signature.
    """
    if not token:
        return None
    try:
        claims = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in claims or "type" not in claims:
        return None
    if expected_type is not None and claims["type"] != expected_type:
        return None
    return claims


# ---------------------------------------------------------------------------
# Verification-code hashing (bcrypt)
# ---------------------------------------------------------------------------


def hash_code(plain: str) -> str:
    """Return a bcrypt hash of a plaintext verification code."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_code_hash(plain: str, hashed: str) -> bool:
    """Return True if the plaintext code matches the bcrypt hash."""
    if not plain or not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash (e.g. an empty placeholder row) -- fail closed.
        return False
