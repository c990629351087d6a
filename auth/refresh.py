"""
auth/refresh.py -- Refresh token lifecycle: create, rotate, revoke, cascade.

State machine for one RefreshToken row:

    Active --rotate()--> Rotated            (revoked, replaced_by_token set)
    Active --reuse-----> RevokedDueToReuse  (revoked, no replacement)
    Active --revoke()--> Revoked            (explicit, e.g. logout)
    Active --time------> Expired            (derived: now >= expires)

Only Active tokens transition. Every other state is terminal, and the row
stays in the database for audit and theft forensics.

Theft containment:
  Rotation links each token to its successor through replaced_by_token. If a
  token that is already revoked is presented again, someone is replaying an
  old credential -- either the attacker or the legitimate user, whichever
  came second. The whole live lineage after the replayed token is revoked and
  the caller gets TokenReuseDetected, forcing re-authentication.

Concurrency:
  Two requests rotating the same token race on AuthStore.rotate_refresh_token,
  a conditional UPDATE. The loser sees zero affected rows and takes the reuse
  path. It is never retried silently.

Chain walks are iterative, bounded by max_chain_length, and track visited
tokens. A cycle or an over-long chain is logged as a data-integrity error and
ends the walk; it never raises out of the cascade.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Iterator

from auth.clock import Clock, utcnow
from auth.errors import RefreshTokenNotFound, TokenExpired, TokenOwnerInactive, TokenReuseDetected
from auth.models import REASON_REUSE, REASON_ROTATED, RefreshToken, User
from core.logging_config import token_prefix

if TYPE_CHECKING:
    from auth.store import AuthStore

logger = logging.getLogger("marketplace.auth.refresh")

DEFAULT_TTL = timedelta(days=7)
DEFAULT_MAX_CHAIN_LENGTH = 10000


def generate_refresh_token() -> str:
    """64 random bytes, URL-safe base64 (86 chars). Brute-force is infeasible."""
    return secrets.token_urlsafe(64)


class RefreshTokenManager:
    """Creates, validates, rotates, and revokes refresh tokens."""

    def __init__(
        self,
        store: AuthStore,
        ttl: timedelta = DEFAULT_TTL,
        clock: Clock = utcnow,
        max_chain_length: int = DEFAULT_MAX_CHAIN_LENGTH,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self._clock = clock
        self._max_chain_length = max_chain_length

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, user: User, request_ip: str) -> RefreshToken:
        """Build a new Active token for user. The caller persists it."""
        now = self._clock()
        return RefreshToken(
            token=generate_refresh_token(),
            user_id=user.id,
            created=now,
            expires=now + self._ttl,
            created_by_ip=request_ip,
        )

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(self, presented: str, request_ip: str) -> tuple[User, RefreshToken]:
        """Exchange an Active token for a new one.

        Raises:
            RefreshTokenNotFound: no row for this token string.
            TokenReuseDetected:   token already revoked (or lost a concurrent
                                  rotation); its descendants were revoked.
            TokenExpired:         token is past its expiry; nothing mutated.
            TokenOwnerInactive:   owner no longer exists or is disabled.
        """
        current = self._store.get_refresh_token(presented)
        if current is None:
            logger.warning("Refresh rejected: unknown token %s from %s", token_prefix(presented), request_ip)
            raise RefreshTokenNotFound("Refresh token does not exist.")

        if current.is_revoked:
            self._handle_reuse(current, request_ip)

        now = self._clock()
        if current.is_expired(now):
            logger.info(
                "Refresh rejected: expired token %s for user_id=%s", token_prefix(presented), current.user_id
            )
            raise TokenExpired("Refresh token has expired.")

        user = self._store.get_by_id(current.user_id)
        if user is None or not user.is_active:
            logger.warning("Refresh rejected: owner user_id=%s missing or disabled", current.user_id)
            raise TokenOwnerInactive("Refresh token owner is missing or disabled.")

        replacement = self.create(user, request_ip)
        won = self._store.rotate_refresh_token(
            presented,
            replacement,
            revoked_at=now,
            revoked_by_ip=request_ip,
            reason=REASON_ROTATED,
        )
        if not won:
            # A concurrent request rotated or revoked this token between our
            # read and our write. Re-read so the cascade starts from the
            # winner's successor link.
            latest = self._store.get_refresh_token(presented) or current
            logger.warning(
                "Concurrent rotation lost for token %s (user_id=%s); treating as reuse",
                token_prefix(presented),
                current.user_id,
            )
            self._handle_reuse(latest, request_ip)

        logger.info(
            "Rotated refresh token %s -> %s for user_id=%s",
            token_prefix(presented),
            token_prefix(replacement.token),
            user.id,
        )
        return user, replacement

    def _handle_reuse(self, token: RefreshToken, request_ip: str) -> None:
        revoked = self.revoke_descendants(token, request_ip, REASON_REUSE)
        logger.warning(
            "Refresh token reuse detected: token %s (user_id=%s, reason=%r) from %s; revoked %d descendant(s)",
            token_prefix(token.token),
            token.user_id,
            token.reason_revoked,
            request_ip,
            revoked,
        )
        raise TokenReuseDetected(
            "Attempted reuse of a revoked refresh token; descendant tokens revoked.",
            detail={"user_id": token.user_id, "revoked_descendants": revoked},
        )

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, token: str, request_ip: str, reason: str, replaced_by: str | None = None) -> bool:
        """Revoke one token. First writer wins: returns False if it was
        already revoked (existing revocation fields are left untouched)."""
        done = self._store.revoke_refresh_token(
            token,
            revoked_at=self._clock(),
            revoked_by_ip=request_ip,
            reason=reason,
            replaced_by_token=replaced_by,
        )
        if not done:
            logger.debug("Revoke no-op for token %s (absent or already revoked)", token_prefix(token))
        return done

    def revoke_descendants(self, token: RefreshToken, request_ip: str, reason: str) -> int:
        """Revoke every still-active token after `token` in its lineage.

        Returns how many tokens this call revoked.
        """
        now = self._clock()
        count = 0
        for descendant in self._walk(token):
            if descendant.is_active(now) and self.revoke(descendant.token, request_ip, reason):
                count += 1
        return count

    def revoke_all_for_user(self, user_id: int, request_ip: str, reason: str) -> int:
        """Revoke every active token a user holds (e.g. after a password reset)."""
        count = self._store.revoke_active_refresh_tokens(user_id, self._clock(), request_ip, reason)
        if count:
            logger.info("Revoked %d active refresh token(s) for user_id=%s (%s)", count, user_id, reason)
        return count

    # ------------------------------------------------------------------
    # Lineage inspection
    # ------------------------------------------------------------------

    def chain(self, token: str) -> list[RefreshToken]:
        """Return the lineage starting at `token` (inclusive), oldest first."""
        start = self._store.get_refresh_token(token)
        if start is None:
            raise RefreshTokenNotFound("Refresh token does not exist.")
        return [start, *self._walk(start)]

    def _walk(self, start: RefreshToken) -> Iterator[RefreshToken]:
        """Yield the successors of `start` by following replaced_by_token.

        Stops at the end of the chain, at a missing link, on a cycle, or after
        max_chain_length links.
        """
        visited = {start.token}
        node = start
        for _ in range(self._max_chain_length):
            successor_token = node.replaced_by_token
            if successor_token is None:
                return
            if successor_token in visited:
                logger.error(
                    "Refresh token chain integrity error: cycle at %s (user_id=%s)",
                    token_prefix(successor_token),
                    node.user_id,
                )
                return
            successor = self._store.get_refresh_token(successor_token)
            if successor is None:
                return
            visited.add(successor_token)
            yield successor
            node = successor
        if node.replaced_by_token is None:
            return
        logger.error(
            "Refresh token chain integrity error: lineage from %s exceeds %d links (user_id=%s)",
            token_prefix(start.token),
            self._max_chain_length,
            start.user_id,
        )
