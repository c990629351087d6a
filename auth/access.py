"""
auth/access.py -- The single admin-or-owner access check.

Every operation that needs authorization context receives the caller's
Identity as an explicit argument; nothing here reads ambient request state.

require_admin() and require_admin_or_owner() are the raising variants used by
the service; is_admin() / is_owner() / can_access() are the plain predicates
for callers that want a bool. The same check applies to every entity type:
callers pass the owning user id of whatever resource they are guarding.
"""

from __future__ import annotations

from auth.errors import Forbidden
from auth.models import Identity, Role


def is_admin(identity: Identity) -> bool:
    return identity.role == Role.admin


def is_owner(identity: Identity, owner_id: int | None) -> bool:
    return owner_id is not None and identity.user_id == owner_id


def can_access(identity: Identity, owner_id: int | None) -> bool:
    """True if the caller is an admin or owns the resource."""
    return is_admin(identity) or is_owner(identity, owner_id)


def require_admin(identity: Identity) -> Identity:
    """Raise Forbidden unless the caller is an admin."""
    if not is_admin(identity):
        raise Forbidden(f"user_id={identity.user_id} is not an admin.")
    return identity


def require_admin_or_owner(identity: Identity, owner_id: int | None) -> Identity:
    """Raise Forbidden unless the caller is an admin or owns the resource."""
    if not can_access(identity, owner_id):
        raise Forbidden(f"user_id={identity.user_id} may not access a resource owned by user_id={owner_id}.")
    return identity


def identity_from_claims(payload: dict) -> Identity:
    """Build an Identity from a verified access-token payload.

    The payload must come from AccessTokenIssuer.decode(); this function does
    no verification of its own.
    """
    return Identity(
        user_id=int(payload["user_id"]),
        role=Role(payload["role"]),
        claims=frozenset(payload.get("claims", ())),
    )
