"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Managers and the service never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh token revocation is a conditional UPDATE (... WHERE revoked IS NULL)
  and callers inspect the affected row count. Two requests racing to rotate
  the same token cannot both win: the database serializes the writes and the
  second UPDATE matches zero rows. The loser is reported back as False so the
  caller can treat it as a reuse event instead of retrying.

  Password reset consumption and the password write share one transaction
  (reset_password), so a crash cannot leave a changed password behind a
  still-unused token.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision, so lexicographic order in SQL matches chronological order.

Layer rule: no imports from core/ or from the managers/service.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import OperationClaim, PasswordResetToken, RefreshToken, Role, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'marketplace_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("phone", String(50), nullable=False, server_default=""),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("role", String(30), nullable=False, server_default="seller"),
    Column("password_hash", LargeBinary, nullable=False),
    Column("password_salt", LargeBinary, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),
)

_operation_claims = Table(
    "operation_claims",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
)

_user_operation_claims = Table(
    "user_operation_claims",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("operation_claim_id", Integer, nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("created", String(32), nullable=False),
    Column("expires", String(32), nullable=False),
    Column("created_by_ip", String(64), nullable=False, server_default="unknown"),
    Column("revoked", String(32)),  # NULL = not revoked
    Column("revoked_by_ip", String(64)),
    Column("reason_revoked", Text),
    Column("replaced_by_token", String(128)),
)

_password_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("email", String(255), nullable=False),
    Column("user_id", Integer),  # optional link for cascade delete
    Column("created", String(32)),
    Column("expiration_date", String(32), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL lets readers proceed while a rotation transaction holds the write
    lock. Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


def normalize_claim_name(name: str) -> str:
    """Claim names are trimmed once, at write time."""
    return name.strip()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, claims, refresh tokens, and password-reset tokens.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        uid = store.create_user(User(username="ada", email="ada@example.com", ...))
        user = store.get_by_login("ada@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Concurrent writers wait for the lock instead of failing fast.
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 30
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. The service checks case-insensitively first; the UNIQUE
        constraints catch the race where two registrations pass that check.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    phone=user.phone,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    role=Role(user.role).value,
                    password_hash=user.password_hash,
                    password_salt=user.password_salt,
                    is_active=1 if user.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_login(self, identifier: str) -> User | None:
        """Look up a user whose username or email matches (case-insensitive)."""
        needle = identifier.strip().lower()
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select()
                .where(or_(func.lower(_users.c.username) == needle, func.lower(_users.c.email) == needle))
                .order_by(_users.c.id)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.email) == email.strip().lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def identity_taken(self, username: str | None, email: str | None, exclude_user_id: int | None = None) -> bool:
        """Return True if another user already holds this username or email.

        Login accepts either column, so each identifier is checked against
        both usernames and emails, case-insensitively. exclude_user_id skips
        the user being updated so a profile save that keeps its own email is
        not a conflict.
        """
        needles = sorted({value.strip().lower() for value in (username, email) if value})
        if not needles:
            return False
        conditions = [func.lower(_users.c.username).in_(needles), func.lower(_users.c.email).in_(needles)]
        query = _users.select().where(or_(*conditions))
        if exclude_user_id is not None:
            query = query.where(_users.c.id != exclude_user_id)
        with self.engine.connect() as conn:
            row = conn.execute(query.limit(1)).fetchone()
        return row is not None

    def list_users(self) -> list[User]:
        """Return all users ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: username, email, phone, first_name, last_name, role,
        is_active, password_hash, password_salt. is_active is converted to int
        and role to its string value for storage.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if not fields:
            return self.get_by_id(user_id) is not None
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user and everything that hangs off it.

        Refresh tokens, claim links, and password-reset tokens (linked by
        user_id or by the user's email) are removed in the same transaction.
        Returns True if deleted, False if not found.
        """
        with self.engine.begin() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            if row is None:
                return False
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            conn.execute(_user_operation_claims.delete().where(_user_operation_claims.c.user_id == user_id))
            conn.execute(
                _password_reset_tokens.delete().where(
                    or_(
                        _password_reset_tokens.c.user_id == user_id,
                        func.lower(_password_reset_tokens.c.email) == row.email.lower(),
                    )
                )
            )
            conn.execute(_users.delete().where(_users.c.id == user_id))
        return True

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Operation claims
    # ------------------------------------------------------------------

    def create_operation_claim(self, name: str) -> OperationClaim:
        """Return the claim with this (trimmed) name, creating it if needed."""
        name = normalize_claim_name(name)
        if not name:
            raise ValueError("Claim name must not be blank.")
        with self.engine.begin() as conn:
            row = conn.execute(_operation_claims.select().where(_operation_claims.c.name == name)).fetchone()
            if row is not None:
                return OperationClaim(id=row.id, name=row.name)
            result = conn.execute(_operation_claims.insert().values(name=name))
            return OperationClaim(id=result.inserted_primary_key[0], name=name)

    def grant_claim(self, user_id: int, name: str) -> bool:
        """Attach a claim to a user. Returns False if the user already had it."""
        claim = self.create_operation_claim(name)
        with self.engine.begin() as conn:
            existing = conn.execute(
                _user_operation_claims.select().where(
                    (_user_operation_claims.c.user_id == user_id)
                    & (_user_operation_claims.c.operation_claim_id == claim.id)
                )
            ).fetchone()
            if existing is not None:
                return False
            conn.execute(_user_operation_claims.insert().values(user_id=user_id, operation_claim_id=claim.id))
        return True

    def revoke_claim(self, user_id: int, name: str) -> bool:
        """Detach a claim from a user. Returns True if a link was removed."""
        name = normalize_claim_name(name)
        claim_ids = select(_operation_claims.c.id).where(_operation_claims.c.name == name)
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_operation_claims.delete().where(
                    (_user_operation_claims.c.user_id == user_id)
                    & (_user_operation_claims.c.operation_claim_id.in_(claim_ids))
                )
            )
            conn.commit()
        return result.rowcount > 0

    def get_claim_names(self, user_id: int) -> list[str]:
        """Return the names of all claims linked to a user, sorted."""
        query = (
            select(_operation_claims.c.name)
            .select_from(
                _operation_claims.join(
                    _user_operation_claims,
                    _operation_claims.c.id == _user_operation_claims.c.operation_claim_id,
                )
            )
            .where(_user_operation_claims.c.user_id == user_id)
            .order_by(_operation_claims.c.name)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [r.name for r in rows]

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def insert_refresh_token(self, token: RefreshToken) -> int:
        """Persist a freshly created refresh token and return its ID."""
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(token)))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        """Look up a refresh token by its unique token string."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def list_refresh_tokens(self, user_id: int) -> list[RefreshToken]:
        """Return every refresh token of a user, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.created, _refresh_tokens.c.id)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def revoke_refresh_token(
        self,
        token: str,
        revoked_at: datetime,
        revoked_by_ip: str,
        reason: str,
        replaced_by_token: str | None = None,
    ) -> bool:
        """Revoke a token only if it is not revoked yet (first writer wins).

        Returns True if this call performed the revocation, False if the token
        does not exist or was already revoked. Existing revocation fields are
        never overwritten.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token == token) & (_refresh_tokens.c.revoked.is_(None)))
                .values(
                    revoked=_to_iso(revoked_at),
                    revoked_by_ip=revoked_by_ip,
                    reason_revoked=reason,
                    replaced_by_token=replaced_by_token,
                )
            )
            conn.commit()
        return result.rowcount == 1

    def rotate_refresh_token(
        self,
        old_token: str,
        new_token: RefreshToken,
        revoked_at: datetime,
        revoked_by_ip: str,
        reason: str,
    ) -> bool:
        """Atomically revoke old_token (pointing at new_token) and insert new_token.

        The conditional UPDATE runs first, so the transaction takes the write
        lock before anything else. If it matches zero rows another writer got
        there first; nothing is inserted and False is returned.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token == old_token) & (_refresh_tokens.c.revoked.is_(None)))
                .values(
                    revoked=_to_iso(revoked_at),
                    revoked_by_ip=revoked_by_ip,
                    reason_revoked=reason,
                    replaced_by_token=new_token.token,
                )
            )
            if result.rowcount != 1:
                return False
            inserted = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(new_token)))
            new_token.id = inserted.inserted_primary_key[0]
        return True

    def revoke_active_refresh_tokens(
        self, user_id: int, now: datetime, revoked_by_ip: str, reason: str
    ) -> int:
        """Revoke every unexpired, unrevoked token of a user. Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.revoked.is_(None))
                    & (_refresh_tokens.c.expires > _to_iso(now))
                )
                .values(revoked=_to_iso(now), revoked_by_ip=revoked_by_ip, reason_revoked=reason)
            )
            conn.commit()
        return result.rowcount

    def purge_refresh_tokens(self, expired_before: datetime) -> int:
        """Delete refresh tokens whose validity window ended before the cutoff.

        Operational garbage collection only; the auth flows never delete rows.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires < _to_iso(expired_before)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def insert_reset_token(self, token: PasswordResetToken) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_reset_tokens.insert().values(
                    token=token.token,
                    email=token.email,
                    user_id=token.user_id,
                    created=_to_iso(token.created) if token.created else None,
                    expiration_date=_to_iso(token.expiration_date),
                    is_used=1 if token.is_used else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_reset_token(self, token: str, email: str | None = None) -> PasswordResetToken | None:
        """Look up a reset token by token string, optionally also matching email."""
        query = _password_reset_tokens.select().where(_password_reset_tokens.c.token == token)
        if email is not None:
            query = query.where(func.lower(_password_reset_tokens.c.email) == email.strip().lower())
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def mark_reset_token_used(self, token: str) -> bool:
        """Flip is_used to true. Returns False if already used or absent."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_reset_tokens.update()
                .where((_password_reset_tokens.c.token == token) & (_password_reset_tokens.c.is_used == 0))
                .values(is_used=1)
            )
            conn.commit()
        return result.rowcount == 1

    def reset_password(self, token: str, user_id: int, password_hash: bytes, password_salt: bytes) -> bool:
        """Consume a reset token and store the new password in one transaction.

        Returns False (and writes nothing) if the token was already used, is
        linked to a different user, or the user no longer exists.
        """
        try:
            with self.engine.begin() as conn:
                consumed = conn.execute(
                    _password_reset_tokens.update()
                    .where(
                        (_password_reset_tokens.c.token == token)
                        & (_password_reset_tokens.c.is_used == 0)
                        & or_(
                            _password_reset_tokens.c.user_id == user_id,
                            _password_reset_tokens.c.user_id.is_(None),
                        )
                    )
                    .values(is_used=1)
                )
                if consumed.rowcount != 1:
                    return False
                updated = conn.execute(
                    _users.update()
                    .where(_users.c.id == user_id)
                    .values(password_hash=password_hash, password_salt=password_salt)
                )
                if updated.rowcount != 1:
                    # Leaving the block by exception rolls back the consume.
                    raise _RollbackReset()
        except _RollbackReset:
            return False
        return True

    def purge_reset_tokens(self, expired_before: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_reset_tokens.delete().where(
                    _password_reset_tokens.c.expiration_date < _to_iso(expired_before)
                )
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


class _RollbackReset(Exception):
    """Internal signal that aborts the reset_password transaction."""


_MUTABLE_USER_FIELDS = {
    "username",
    "email",
    "phone",
    "first_name",
    "last_name",
    "role",
    "is_active",
    "password_hash",
    "password_salt",
}


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _refresh_token_values(token: RefreshToken) -> dict:
    return {
        "token": token.token,
        "user_id": token.user_id,
        "created": _to_iso(token.created),
        "expires": _to_iso(token.expires),
        "created_by_ip": token.created_by_ip,
        "revoked": _to_iso(token.revoked) if token.revoked else None,
        "revoked_by_ip": token.revoked_by_ip,
        "reason_revoked": token.reason_revoked,
        "replaced_by_token": token.replaced_by_token,
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        phone=row.phone or "",
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        role=Role(row.role),
        password_hash=bytes(row.password_hash),
        password_salt=bytes(row.password_salt),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login or "",
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        created=_from_iso(row.created),
        expires=_from_iso(row.expires),
        created_by_ip=row.created_by_ip,
        revoked=_from_iso(row.revoked),
        revoked_by_ip=row.revoked_by_ip,
        reason_revoked=row.reason_revoked,
        replaced_by_token=row.replaced_by_token,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        token=row.token,
        email=row.email,
        user_id=row.user_id,
        created=_from_iso(row.created),
        expiration_date=_from_iso(row.expiration_date),
        is_used=bool(row.is_used),
    )
