"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). Dataclasses own
domain shape; the store, managers, and service do the work. The only methods
here are derived-state predicates on RefreshToken and PasswordResetToken,
which take `now` explicitly so they stay deterministic under a test clock.

All timestamps are timezone-aware UTC datetimes.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    admin = "admin"
    seller = "seller"
    user = "user"


# Refresh token revocation reasons. Stored in reason_revoked for audit.
REASON_ROTATED = "rotated"
REASON_REUSE = "reuse of an already-rotated/revoked ancestor detected"
REASON_LOGOUT = "revoked by user"
REASON_PASSWORD_RESET = "password reset"


@dataclass
class User:
    """A marketplace account.

    password_hash / password_salt are opaque bytes produced by
    auth.passwords.hash_password(); nothing outside that module interprets them.
    is_active is the status flag -- disabled users cannot log in or refresh.
    """

    username: str
    email: str
    role: Role = Role.seller
    id: int | None = None
    phone: str = ""
    first_name: str = ""
    last_name: str = ""
    password_hash: bytes = b""
    password_salt: bytes = b""
    is_active: bool = True
    created_at: str | None = None
    last_login: str = ""


@dataclass
class OperationClaim:
    """A named permission label (e.g. "product.write")."""

    name: str
    id: int | None = None


@dataclass
class UserOperationClaim:
    """Join record between a User and an OperationClaim."""

    user_id: int
    operation_claim_id: int
    id: int | None = None


@dataclass
class RefreshToken:
    """One issued refresh credential.

    Lineage: replaced_by_token points at the token that superseded this one.
    Each token has at most one successor, so a user's tokens form a forest of
    singly linked chains. Rows are never mutated except by revocation.
    """

    token: str
    user_id: int
    created: datetime
    expires: datetime
    created_by_ip: str = "unknown"
    revoked: datetime | None = None
    revoked_by_ip: str | None = None
    reason_revoked: str | None = None
    replaced_by_token: str | None = None
    id: int | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires

    def is_active(self, now: datetime) -> bool:
        return self.revoked is None and now < self.expires


@dataclass
class PasswordResetToken:
    """Single-use, short-lived password reset credential.

    user_id is an optional link so deleting the user removes its tokens;
    matching at reset time is by token + email.
    """

    token: str
    email: str
    expiration_date: datetime
    is_used: bool = False
    user_id: int | None = None
    created: datetime | None = None
    id: int | None = None

    def is_valid(self, now: datetime) -> bool:
        return not self.is_used and now <= self.expiration_date


@dataclass(frozen=True)
class AccessToken:
    """A signed, self-verifying credential. Never persisted."""

    token: str
    expiration: datetime


@dataclass(frozen=True)
class TokenPair:
    """Result of login and refresh: a fresh access token plus refresh token."""

    access_token: AccessToken
    refresh_token: RefreshToken


@dataclass(frozen=True)
class Identity:
    """The caller's resolved identity, passed explicitly into operations
    that need authorization context."""

    user_id: int
    role: Role
    claims: frozenset[str] = field(default_factory=frozenset)
