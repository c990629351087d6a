"""
auth/errors.py -- Typed failures raised by the auth core.

Every exception carries a stable error_code and a public_message. The
transport layer shows clients public_message only; str(exc) holds the
internal message for audit logs.

Anti-enumeration: every refresh/reset token failure (unknown token, expired,
reused, consumed) shares INVALID_TOKEN_MESSAGE, so a client cannot tell which
failure mode occurred. The subclass keeps the distinction for logging.
"""

from __future__ import annotations

from typing import Optional

INVALID_TOKEN_MESSAGE = "Invalid or expired token."


class AuthError(Exception):
    """Base class for auth-core failures."""

    error_code: str = "auth_error"
    public_message: str = "Request could not be completed."

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class NotFound(AuthError):
    """User or token absent."""

    error_code = "not_found"
    public_message = "Not found."


class RefreshTokenNotFound(NotFound):
    """No refresh token row matches the presented string.

    Reported to clients exactly like an expired or reused token: an unknown
    token string is suspicious but must not be distinguishable from one.
    """

    error_code = "invalid_token"
    public_message = INVALID_TOKEN_MESSAGE


class Unauthorized(AuthError):
    error_code = "unauthorized"
    public_message = "Unauthorized."


class InvalidCredentials(Unauthorized):
    public_message = "Invalid username or password."


class InvalidToken(Unauthorized):
    error_code = "invalid_token"
    public_message = INVALID_TOKEN_MESSAGE


class TokenExpired(InvalidToken):
    pass


class TokenReuseDetected(InvalidToken):
    """A revoked refresh token was presented again; its lineage was revoked."""


class TokenOwnerInactive(InvalidToken):
    """Refresh token is intact but its owner is disabled or gone."""


class InvalidOrExpired(InvalidToken):
    """Password-reset token missing, already used, or past its expiration."""


class Forbidden(AuthError):
    error_code = "forbidden"
    public_message = "Access denied."


class Conflict(AuthError):
    error_code = "conflict"
    public_message = "Username or email is already in use."


class InvalidInput(AuthError):
    error_code = "validation_error"
    public_message = "Request validation failed."


class ConfigurationError(AuthError):
    """Startup-fatal misconfiguration, e.g. a missing signing key."""

    error_code = "configuration_error"
    public_message = "Service is misconfigured."


__all__ = [
    "INVALID_TOKEN_MESSAGE",
    "AuthError",
    "NotFound",
    "RefreshTokenNotFound",
    "Unauthorized",
    "InvalidCredentials",
    "InvalidToken",
    "TokenExpired",
    "TokenReuseDetected",
    "TokenOwnerInactive",
    "InvalidOrExpired",
    "Forbidden",
    "Conflict",
    "InvalidInput",
    "ConfigurationError",
]
