"""
auth/tokens.py -- Access token issuance and verification.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       the user id (sub + user_id), username, email, role, the sorted claim
       list, and expiry. Anyone holding the shared key can verify a token
       without touching the database, which is what keeps per-request checks
       cheap.

  Verification returns None on any failure -- callers treat that as
       unauthenticated.

  SECRET_KEY: passed in once at construction (normally from
       core.config.get_settings(), which validates it at startup). An empty
       key raises ConfigurationError. The key is never logged or included in
       error messages.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Iterable

from jose import JWTError, jwt

from auth.clock import Clock, utcnow
from auth.errors import ConfigurationError
from auth.models import AccessToken

if TYPE_CHECKING:
    from auth.models import User

logger = logging.getLogger("marketplace.auth.tokens")

ALGORITHM = "HS256"
DEFAULT_EXPIRE_SECONDS = 3600


class AccessTokenIssuer:
    """Signs short-lived access tokens for authenticated users.

    Usage:
        issuer = AccessTokenIssuer(settings.secret_key, settings.access_token_expire_seconds)
        access = issuer.issue(user, claims)
        payload = issuer.decode(access.token)
    """

    def __init__(
        self,
        secret_key: str,
        expire_seconds: int = DEFAULT_EXPIRE_SECONDS,
        clock: Clock = utcnow,
    ) -> None:
        if not secret_key:
            raise ConfigurationError("Access token signing key is not configured.")
        if expire_seconds <= 0:
            raise ConfigurationError("Access token lifetime must be positive.")
        self._secret_key = secret_key
        self._expire_seconds = expire_seconds
        self._clock = clock

    def __repr__(self) -> str:
        return f"AccessTokenIssuer(expire_seconds={self._expire_seconds})"

    def issue(self, user: User, claims: Iterable[str]) -> AccessToken:
        """Encode a signed JWT with identity, role, and one entry per claim."""
        now = self._clock()
        expires = now + timedelta(seconds=self._expire_seconds)
        payload = {
            "sub": str(user.id),
            "user_id": user.id,
            "username": user.username,
            "email": user.email,
            "role": user.role.value,
            "claims": sorted(set(claims)),
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
        }
        token = jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)
        logger.debug("Issued access token for user_id=%s (expires %s)", user.id, expires.isoformat())
        return AccessToken(token=token, expiration=expires)

    def decode(self, token: str) -> dict | None:
        """Verify signature and expiry. Returns the payload dict or None on any failure."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                options={"verify_aud": False},
            )
        except JWTError:
            return None
        if "user_id" not in payload or "role" not in payload:
            return None
        return payload
