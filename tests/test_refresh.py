"""Unit tests for auth/refresh.py -- rotation, reuse detection, cascade revocation.

Covers:
- create() builds an unpersisted Active token with the configured TTL
- rotate() never returns the presented token and links old -> new
- replaying a rotated token revokes every live descendant (A1/A2/A3 scenario)
- an expired, never-rotated token fails without any mutation
- revoke() is first-writer-wins
- long chains terminate; cycles and over-long chains stop the walk
"""

from __future__ import annotations

import logging
from datetime import timedelta

import pytest

from auth.errors import (
    INVALID_TOKEN_MESSAGE,
    NotFound,
    RefreshTokenNotFound,
    TokenExpired,
    TokenOwnerInactive,
    TokenReuseDetected,
    Unauthorized,
)
from auth.models import REASON_LOGOUT, REASON_REUSE, REASON_ROTATED, RefreshToken, Role, User
from auth.refresh import RefreshTokenManager


@pytest.fixture
def owner(store) -> User:
    user = User(username="alice", email="alice@example.com", role=Role.user, password_hash=b"h", password_salt=b"s")
    user.id = store.create_user(user)
    return user


@pytest.fixture
def manager(store, clock) -> RefreshTokenManager:
    return RefreshTokenManager(store, ttl=timedelta(days=7), clock=clock)


def _issue(manager: RefreshTokenManager, store, user: User, ip: str = "10.0.0.1") -> RefreshToken:
    token = manager.create(user, ip)
    store.insert_refresh_token(token)
    return token


# ---------------------------------------------------------------------------
# create()
# ---------------------------------------------------------------------------


def test_create_builds_active_token_without_persisting(manager, store, owner, clock):
    token = manager.create(owner, "10.0.0.1")
    assert token.user_id == owner.id
    assert token.created == clock.now
    assert token.expires == clock.now + timedelta(days=7)
    assert token.revoked is None
    assert token.is_active(clock.now)
    assert store.get_refresh_token(token.token) is None


def test_create_generates_unique_unguessable_tokens(manager, owner):
    tokens = {manager.create(owner, "ip").token for _ in range(50)}
    assert len(tokens) == 50
    assert all(len(t) >= 64 for t in tokens)


# ---------------------------------------------------------------------------
# rotate() -- happy path
# ---------------------------------------------------------------------------


def test_rotate_returns_new_token_and_links_lineage(manager, store, owner):
    original = _issue(manager, store, owner)

    user, replacement = manager.rotate(original.token, "10.0.0.2")

    assert user.id == owner.id
    assert replacement.token != original.token
    old = store.get_refresh_token(original.token)
    assert old.revoked is not None
    assert old.reason_revoked == REASON_ROTATED
    assert old.replaced_by_token == replacement.token
    assert old.revoked_by_ip == "10.0.0.2"
    new = store.get_refresh_token(replacement.token)
    assert new is not None
    assert new.revoked is None
    assert new.created_by_ip == "10.0.0.2"


def test_rotate_unknown_token_is_not_found(manager):
    with pytest.raises(RefreshTokenNotFound) as exc_info:
        manager.rotate("no-such-token", "10.0.0.1")
    assert isinstance(exc_info.value, NotFound)
    assert exc_info.value.public_message == INVALID_TOKEN_MESSAGE


def test_rotate_for_disabled_owner_looks_like_any_invalid_token(manager, store, owner):
    token = _issue(manager, store, owner)
    store.update_user(owner.id, is_active=False)
    with pytest.raises(TokenOwnerInactive) as exc_info:
        manager.rotate(token.token, "10.0.0.1")
    assert isinstance(exc_info.value, Unauthorized)
    assert exc_info.value.public_message == INVALID_TOKEN_MESSAGE
    assert exc_info.value.error_code == "invalid_token"
    assert store.get_refresh_token(token.token).revoked is None


# ---------------------------------------------------------------------------
# rotate() -- reuse detection
# ---------------------------------------------------------------------------


def test_replaying_ancestor_revokes_live_descendants(manager, store, owner):
    """login -> rotate(A1) -> rotate(A2) -> A3; replay A1 revokes A3."""
    a1 = _issue(manager, store, owner)
    _, a2 = manager.rotate(a1.token, "10.0.0.1")
    _, a3 = manager.rotate(a2.token, "10.0.0.1")

    with pytest.raises(TokenReuseDetected) as exc_info:
        manager.rotate(a1.token, "198.51.100.9")

    assert isinstance(exc_info.value, Unauthorized)
    assert exc_info.value.detail["revoked_descendants"] == 1
    a3_row = store.get_refresh_token(a3.token)
    assert a3_row.revoked is not None
    assert a3_row.reason_revoked == REASON_REUSE
    assert a3_row.replaced_by_token is None
    assert a3_row.revoked_by_ip == "198.51.100.9"
    # Already-rotated links keep their original audit trail.
    a2_row = store.get_refresh_token(a2.token)
    assert a2_row.reason_revoked == REASON_ROTATED
    assert a2_row.replaced_by_token == a3.token


def test_replaying_rotated_token_twice_keeps_failing(manager, store, owner):
    a1 = _issue(manager, store, owner)
    manager.rotate(a1.token, "ip")
    for _ in range(2):
        with pytest.raises(TokenReuseDetected):
            manager.rotate(a1.token, "ip")


def test_replaying_middle_token_revokes_only_later_links(manager, store, owner):
    a1 = _issue(manager, store, owner)
    _, a2 = manager.rotate(a1.token, "ip")
    _, a3 = manager.rotate(a2.token, "ip")
    _, a4 = manager.rotate(a3.token, "ip")

    with pytest.raises(TokenReuseDetected):
        manager.rotate(a2.token, "ip")

    assert store.get_refresh_token(a4.token).reason_revoked == REASON_REUSE
    assert store.get_refresh_token(a3.token).reason_revoked == REASON_ROTATED


def test_reusing_logged_out_token_has_no_descendants(manager, store, owner):
    token = _issue(manager, store, owner)
    other = _issue(manager, store, owner)
    assert manager.revoke(token.token, "ip", REASON_LOGOUT)

    with pytest.raises(TokenReuseDetected) as exc_info:
        manager.rotate(token.token, "ip")

    assert exc_info.value.detail["revoked_descendants"] == 0
    # Unrelated lineages of the same user are untouched.
    assert store.get_refresh_token(other.token).revoked is None


def test_reuse_and_expiry_are_indistinguishable_to_clients():
    assert TokenReuseDetected.public_message == TokenExpired.public_message == INVALID_TOKEN_MESSAGE
    assert RefreshTokenNotFound.public_message == INVALID_TOKEN_MESSAGE


# ---------------------------------------------------------------------------
# rotate() -- expiry
# ---------------------------------------------------------------------------


def test_expired_never_rotated_token_fails_without_mutation(manager, store, owner, clock):
    token = _issue(manager, store, owner)
    before = store.get_refresh_token(token.token)
    clock.advance(days=7)  # now == expires -> expired

    with pytest.raises(TokenExpired):
        manager.rotate(token.token, "ip")

    after = store.get_refresh_token(token.token)
    assert after == before
    assert len(store.list_refresh_tokens(owner.id)) == 1


def test_token_is_active_until_just_before_expiry(manager, store, owner, clock):
    token = _issue(manager, store, owner)
    clock.advance(days=7, microseconds=-1)
    _, replacement = manager.rotate(token.token, "ip")
    assert replacement.token != token.token


def test_revoked_and_expired_token_is_reported_as_reuse(manager, store, owner, clock):
    a1 = _issue(manager, store, owner)
    manager.rotate(a1.token, "ip")
    clock.advance(days=30)
    with pytest.raises(TokenReuseDetected):
        manager.rotate(a1.token, "ip")


# ---------------------------------------------------------------------------
# revoke()
# ---------------------------------------------------------------------------


def test_revoke_first_writer_wins(manager, store, owner, clock):
    token = _issue(manager, store, owner)
    assert manager.revoke(token.token, "1.1.1.1", "first") is True
    first = store.get_refresh_token(token.token)

    clock.advance(minutes=5)
    assert manager.revoke(token.token, "2.2.2.2", "second", replaced_by="x") is False

    second = store.get_refresh_token(token.token)
    assert second == first
    assert second.reason_revoked == "first"
    assert second.replaced_by_token is None


def test_revoke_unknown_token_is_noop(manager):
    assert manager.revoke("missing", "ip", "reason") is False


def test_revoke_all_for_user_skips_expired_and_revoked(manager, store, owner, clock):
    old = _issue(manager, store, owner)
    clock.advance(days=8)
    live_a = _issue(manager, store, owner)
    live_b = _issue(manager, store, owner)
    manager.revoke(live_b.token, "ip", REASON_LOGOUT)

    assert manager.revoke_all_for_user(owner.id, "ip", "password reset") == 1
    assert store.get_refresh_token(live_a.token).reason_revoked == "password reset"
    assert store.get_refresh_token(old.token).revoked is None
    assert store.get_refresh_token(live_b.token).reason_revoked == REASON_LOGOUT


# ---------------------------------------------------------------------------
# Chain walking
# ---------------------------------------------------------------------------


def test_long_rotation_chain_terminates_and_cascades(manager, store, owner):
    first = _issue(manager, store, owner)
    current = first
    for _ in range(150):
        _, current = manager.rotate(current.token, "ip")

    lineage = manager.chain(first.token)
    assert len(lineage) == 151
    assert len({t.token for t in lineage}) == 151
    assert lineage[-1].token == current.token

    with pytest.raises(TokenReuseDetected):
        manager.rotate(first.token, "ip")
    assert store.get_refresh_token(current.token).reason_revoked == REASON_REUSE


def test_chain_of_unknown_token_is_not_found(manager):
    with pytest.raises(RefreshTokenNotFound):
        manager.chain("missing")


def test_cyclic_chain_is_logged_not_crashed(manager, store, owner, clock, caplog):
    now = clock.now
    common = {"user_id": owner.id, "created": now, "expires": now + timedelta(days=1), "revoked": now}
    store.insert_refresh_token(RefreshToken(token="loop-a", replaced_by_token="loop-b", **common))
    store.insert_refresh_token(RefreshToken(token="loop-b", replaced_by_token="loop-a", **common))

    with caplog.at_level(logging.ERROR, logger="marketplace.auth.refresh"):
        with pytest.raises(TokenReuseDetected):
            manager.rotate("loop-a", "ip")

    assert "cycle" in caplog.text
    assert [t.token for t in manager.chain("loop-a")] == ["loop-a", "loop-b"]


def test_overlong_chain_stops_at_guard(store, owner, clock, caplog):
    manager = RefreshTokenManager(store, ttl=timedelta(days=7), clock=clock, max_chain_length=3)
    first = _issue(manager, store, owner)
    current = first
    for _ in range(6):
        _, current = manager.rotate(current.token, "ip")

    with caplog.at_level(logging.ERROR, logger="marketplace.auth.refresh"):
        lineage = manager.chain(first.token)

    assert len(lineage) == 4
    assert "exceeds 3 links" in caplog.text


def test_chain_exactly_at_guard_is_not_an_error(store, owner, clock, caplog):
    manager = RefreshTokenManager(store, ttl=timedelta(days=7), clock=clock, max_chain_length=3)
    first = _issue(manager, store, owner)
    current = first
    for _ in range(3):
        _, current = manager.rotate(current.token, "ip")

    with caplog.at_level(logging.ERROR, logger="marketplace.auth.refresh"):
        lineage = manager.chain(first.token)

    assert len(lineage) == 4
    assert "integrity" not in caplog.text


def test_missing_link_ends_walk(manager, store, owner, clock):
    now = clock.now
    store.insert_refresh_token(
        RefreshToken(
            token="orphan-parent",
            user_id=owner.id,
            created=now,
            expires=now + timedelta(days=1),
            revoked=now,
            reason_revoked=REASON_ROTATED,
            replaced_by_token="purged-child",
        )
    )
    assert [t.token for t in manager.chain("orphan-parent")] == ["orphan-parent"]
    with pytest.raises(TokenReuseDetected):
        manager.rotate("orphan-parent", "ip")
