"""
auth/errors.py -- Typed failures surfaced by the authentication core.

Every error carries a stable machine-readable code and an HTTP-style status so
the HTTP layer can map it without string matching. None of them are retried
inside the core.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for authentication and authorization failures."""

    code: str = "auth_error"
    status_code: int = 400
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidClient(AuthError):
    code = "invalid_client"
    status_code = 401
    default_message = "Invalid client credentials."


class UserNotFound(AuthError):
    code = "user_not_found"
    status_code = 404
    default_message = "User not found."


class NoCodeIssued(AuthError):
    code = "no_code_issued"
    status_code = 400
    default_message = "No verification code found. Please request a new one."


class InvalidCode(AuthError):
    """Wrong, expired, or already consumed verification code."""

    code = "invalid_code"
    status_code = 401
    default_message = "Invalid verification code."


class InvalidDevice(AuthError):
    code = "invalid_device"
    status_code = 400
    default_message = "Invalid device UUID."


class UserInactive(AuthError):
    code = "user_inactive"
    status_code = 403
    default_message = "User not found or inactive."


class InvalidToken(AuthError):
    code = "invalid_token"
    status_code = 401
    default_message = "Invalid or expired refresh token."


class UnsupportedScope(AuthError):
    """A permission scope was given with only one of its two halves."""

    code = "unsupported_scope"
    status_code = 400
    default_message = "Permission scope needs both a resource type and a resource id."
