"""
auth/reset.py -- Password reset tokens: issue, validate, consume.

A reset token is single-use and short-lived (10 minutes by default). Several
tokens may be outstanding for the same user; each is judged only by its own
state, never by "latest wins".

Matching: validate() accepts the token alone or token + email. The service
always passes the email, so a token mailed to one address cannot reset
another account.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING

from auth.clock import Clock, utcnow
from auth.errors import InvalidOrExpired
from auth.models import PasswordResetToken
from core.logging_config import token_prefix

if TYPE_CHECKING:
    from auth.store import AuthStore

logger = logging.getLogger("marketplace.auth.reset")

DEFAULT_TTL = timedelta(minutes=10)


class PasswordResetTokenManager:
    def __init__(self, store: AuthStore, ttl: timedelta = DEFAULT_TTL, clock: Clock = utcnow) -> None:
        self._store = store
        self._ttl = ttl
        self._clock = clock

    def issue(self, email: str, user_id: int | None = None) -> PasswordResetToken:
        """Create and persist a fresh reset token.

        Precondition: the caller has already checked that a user with this
        email exists. This method does not look.
        """
        now = self._clock()
        reset_token = PasswordResetToken(
            token=secrets.token_urlsafe(32),
            email=email,
            user_id=user_id,
            created=now,
            expiration_date=now + self._ttl,
        )
        reset_token.id = self._store.insert_reset_token(reset_token)
        logger.info("Issued password reset token %s for user_id=%s", token_prefix(reset_token.token), user_id)
        return reset_token

    def validate(self, token: str, email: str | None = None) -> PasswordResetToken:
        """Return the token record if it is unused and unexpired.

        Raises InvalidOrExpired when no record matches, when it was already
        used, or when now > expiration_date.
        """
        record = self._store.get_reset_token(token, email=email)
        if record is None:
            raise InvalidOrExpired("Password reset token not found.")
        if record.is_used:
            raise InvalidOrExpired("Password reset token already used.")
        if not record.is_valid(self._clock()):
            raise InvalidOrExpired("Password reset token expired.")
        return record

    def consume(self, token: str) -> None:
        """Mark a token used. A second call raises InvalidOrExpired."""
        if not self._store.mark_reset_token_used(token):
            raise InvalidOrExpired("Password reset token already used.")
