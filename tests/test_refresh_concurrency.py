"""Concurrency tests for refresh token rotation.

Two requests presenting the same Active refresh token at the same moment:
exactly one rotation succeeds, the other is treated as reuse, and the
original row records exactly one revocation.

Design: a file-backed SQLite database under tmp_path (WAL mode) so both
threads share the data through separate pooled connections. A Barrier
releases both rotate() calls together to maximize overlap.
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from auth.errors import TokenReuseDetected
from auth.models import REASON_REUSE, REASON_ROTATED, Role, User
from auth.refresh import RefreshTokenManager
from auth.store import AuthStore


@pytest.fixture
def file_store(tmp_path):
    s = AuthStore(f"sqlite:///{tmp_path / 'race.db'}")
    yield s
    s.close()


def _race(manager: RefreshTokenManager, presented: str) -> tuple[list, list]:
    barrier = threading.Barrier(2)
    successes: list = []
    failures: list = []
    lock = threading.Lock()

    def worker(ip: str) -> None:
        barrier.wait()
        try:
            result = manager.rotate(presented, ip)
        except Exception as exc:  # noqa: BLE001 -- collected and asserted on below
            with lock:
                failures.append(exc)
        else:
            with lock:
                successes.append(result)

    threads = [threading.Thread(target=worker, args=(f"10.0.0.{i}",)) for i in (1, 2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return successes, failures


@pytest.mark.parametrize("attempt", range(5))
def test_double_rotation_has_exactly_one_winner(file_store, attempt):
    user = User(username=f"racer{attempt}", email=f"racer{attempt}@example.com", role=Role.user)
    user.password_hash, user.password_salt = b"h", b"s"
    user.id = file_store.create_user(user)
    manager = RefreshTokenManager(file_store, ttl=timedelta(days=7))
    original = manager.create(user, "10.0.0.0")
    file_store.insert_refresh_token(original)

    successes, failures = _race(manager, original.token)

    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], TokenReuseDetected)

    _, winner_token = successes[0]
    assert winner_token.token != original.token

    row = file_store.get_refresh_token(original.token)
    assert row.reason_revoked == REASON_ROTATED
    assert row.replaced_by_token == winner_token.token

    # The loser never inserted a token; the winner's token was revoked by the
    # reuse cascade the loser triggered.
    tokens = file_store.list_refresh_tokens(user.id)
    assert {t.token for t in tokens} == {original.token, winner_token.token}
    assert file_store.get_refresh_token(winner_token.token).reason_revoked == REASON_REUSE
