"""auth/claims.py -- Claim resolution for access-token enrichment."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.store import AuthStore


class ClaimResolver:
    """Loads the operation claims attached to a user.

    A pure read: names are returned exactly as stored (they are trimmed when
    granted, see AuthStore.grant_claim), as an immutable set.
    """

    def __init__(self, store: AuthStore) -> None:
        self._store = store

    def claims_for(self, user_id: int) -> frozenset[str]:
        return frozenset(self._store.get_claim_names(user_id))
