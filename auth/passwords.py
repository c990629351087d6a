"""
auth/passwords.py -- Salted password hashing with bcrypt.

Security design decisions:
  bcrypt is used directly (no passlib wrapper). Its cost factor makes
  brute-force expensive; the cost is configuration (BCRYPT_ROUNDS) so tests
  can run at the minimum of 4.

  hash_password() returns (hash, salt) as separate opaque byte strings. The
  salt is a fresh bcrypt.gensalt() on every call, so hashing the same password
  twice yields a different pair. verify_password() recomputes the hash with
  the stored salt and compares with hmac.compare_digest.

  bcrypt only looks at the first 72 bytes of a password and bcrypt 5.x refuses
  longer input outright. hash_password() rejects such passwords with
  InvalidInput; verify_password() answers False for them.

  _DUMMY_HASH / _DUMMY_SALT enable timing equalization: login runs one
  verification even when the user does not exist, so response time does not
  reveal which usernames are registered.
"""

from __future__ import annotations

import hmac

import bcrypt

from auth.errors import InvalidInput

BCRYPT_MAX_BYTES = 72
DEFAULT_ROUNDS = 12


def hash_password(plain: str, rounds: int = DEFAULT_ROUNDS) -> tuple[bytes, bytes]:
    """Return (hash, salt) for a plaintext password."""
    encoded = plain.encode("utf-8")
    if not encoded:
        raise InvalidInput("Password must not be empty.")
    if len(encoded) > BCRYPT_MAX_BYTES:
        raise InvalidInput(f"Password must be at most {BCRYPT_MAX_BYTES} bytes.")
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(encoded, salt), salt


def verify_password(plain: str, hashed: bytes, salt: bytes) -> bool:
    """Return True if the plaintext password matches the stored hash and salt."""
    encoded = plain.encode("utf-8")
    if not hashed or not salt or len(encoded) > BCRYPT_MAX_BYTES:
        return False
    try:
        candidate = bcrypt.hashpw(encoded, bytes(salt))
    except ValueError:
        # Malformed salt in storage.
        return False
    return hmac.compare_digest(candidate, bytes(hashed))


# Computed once at module load so the first failed login is not measurably
# slower than later ones.
_DUMMY_HASH, _DUMMY_SALT = hash_password("marketplace_timing_dummy")


def verify_dummy(plain: str) -> None:
    """Burn one full-cost verification. Call when the user was not found."""
    verify_password(plain, _DUMMY_HASH, _DUMMY_SALT)
