"""Unit tests for auth/tokens.py -- durations, JWT helpers, code hashing."""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.tokens import (
    ACCESS,
    ALGORITHM,
    REFRESH,
    compute_expiry,
    create_token,
    decode_token,
    hash_code,
    parse_duration,
    verify_code_hash,
)

SECRET = "x" * 40
NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "duration, expected",
    [
        ("30d", timedelta(days=30)),
        ("24h", timedelta(hours=24)),
        ("60m", timedelta(minutes=60)),
        ("45s", timedelta(seconds=45)),
        ("0s", timedelta(0)),
    ],
)
def test_parse_duration_units(duration, expected):
    assert parse_duration(duration) == expected


@pytest.mark.parametrize("duration", ["", None, "30", "d", "1w", "1.5h", "-1d", "30 days", "h12"])
def test_parse_duration_rejects_malformed(duration):
    assert parse_duration(duration) is None


def test_compute_expiry_uses_duration():
    assert compute_expiry("2h", NOW) == NOW + timedelta(hours=2)


def test_compute_expiry_falls_back_to_thirty_days():
    assert compute_expiry("forever", NOW) == NOW + timedelta(days=30)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------


def _future(hours: int = 1) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


def test_token_carries_user_and_type():
    token = create_token(7, ACCESS, SECRET, _future())
    claims = decode_token(token, SECRET)
    assert claims["user_id"] == 7
    assert claims["sub"] == "7"
    assert claims["type"] == ACCESS


def test_expected_type_mismatch_returns_none():
    token = create_token(7, ACCESS, SECRET, _future())
    assert decode_token(token, SECRET, expected_type=REFRESH) is None
    assert decode_token(token, SECRET, expected_type=ACCESS) is not None


def test_wrong_secret_returns_none():
    token = create_token(7, ACCESS, SECRET, _future())
    assert decode_token(token, "y" * 40) is None


def test_expired_token_returns_none():
    token = create_token(7, ACCESS, SECRET, datetime.now(timezone.utc) - timedelta(seconds=5))
    assert decode_token(token, SECRET) is None


def test_garbage_and_empty_return_none():
    assert decode_token("not.a.jwt", SECRET) is None
    assert decode_token("", SECRET) is None


def test_token_without_type_claim_rejected():
    token = jwt.encode({"sub": "7", "user_id": 7, "exp": _future()}, SECRET, algorithm=ALGORITHM)
    assert decode_token(token, SECRET) is None


# ---------------------------------------------------------------------------
# Code hashing
# ---------------------------------------------------------------------------


def test_hash_code_is_not_plaintext_and_verifies():
    hashed = hash_code("482917")
    assert hashed != "482917"
    assert verify_code_hash("482917", hashed) is True
    assert verify_code_hash("482918", hashed) is False


def test_verify_code_hash_fails_closed_on_bad_input():
    assert verify_code_hash("482917", "") is False
    assert verify_code_hash("", hash_code("482917")) is False
    assert verify_code_hash("482917", "not-a-bcrypt-hash") is False
