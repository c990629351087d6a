"""
auth/service.py -- AuthService facade: login, refresh, register, roles,
profile, deletion, and the forgot/reset password flow.

The facade orchestrates the store, password hasher, claim resolver, access
token issuer, and the two token managers. It holds no per-request state;
every call that needs authorization context takes the caller's Identity as
an explicit argument.

Security:
  Login runs a full bcrypt verification even when the identifier matches no
  user (verify_dummy), so "unknown user" and "wrong password" cost the same.
  The two outcomes still raise different errors (NotFound vs
  InvalidCredentials) for the audit log.

  After a successful password reset every active refresh token of the user
  is revoked, so sessions opened with the old password die with it.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.access import require_admin, require_admin_or_owner
from auth.claims import ClaimResolver
from auth.clock import Clock, utcnow
from auth.errors import Conflict, InvalidCredentials, InvalidOrExpired, NotFound, Unauthorized
from auth.models import (
    REASON_LOGOUT,
    REASON_PASSWORD_RESET,
    Identity,
    PasswordResetToken,
    Role,
    TokenPair,
    User,
)
from auth.passwords import DEFAULT_ROUNDS, hash_password, verify_dummy, verify_password
from auth.refresh import RefreshTokenManager
from auth.reset import PasswordResetTokenManager
from auth.schemas import ProfileUpdate, RegisterRequest, validate_input
from auth.store import AuthStore
from auth.tokens import AccessTokenIssuer
from core.logging_config import token_prefix

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("marketplace.auth.service")


class AuthService:
    """Entry point for the transport layer.

    Usage:
        service = AuthService.from_settings(get_settings())
        pair = service.login("ada@example.com", "s3cret", request_ip="203.0.113.7")
        pair = service.refresh(pair.refresh_token.token, request_ip="203.0.113.7")
    """

    def __init__(
        self,
        store: AuthStore,
        issuer: AccessTokenIssuer,
        refresh_tokens: RefreshTokenManager,
        reset_tokens: PasswordResetTokenManager,
        claims: ClaimResolver | None = None,
        bcrypt_rounds: int = DEFAULT_ROUNDS,
        default_role: Role = Role.seller,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.refresh_tokens = refresh_tokens
        self.reset_tokens = reset_tokens
        self.claims = claims or ClaimResolver(store)
        self._bcrypt_rounds = bcrypt_rounds
        self._default_role = Role(default_role)

    @classmethod
    def from_settings(cls, settings: Settings, store: AuthStore | None = None, clock: Clock = utcnow) -> AuthService:
        """Wire a service from configuration. The store defaults to settings.database_url."""
        store = store or AuthStore(settings.database_url)
        return cls(
            store=store,
            issuer=AccessTokenIssuer(settings.secret_key, settings.access_token_expire_seconds, clock=clock),
            refresh_tokens=RefreshTokenManager(
                store,
                ttl=timedelta(days=settings.refresh_token_ttl_days),
                clock=clock,
                max_chain_length=settings.max_refresh_chain_length,
            ),
            reset_tokens=PasswordResetTokenManager(
                store, ttl=timedelta(minutes=settings.reset_token_ttl_minutes), clock=clock
            ),
            bcrypt_rounds=settings.bcrypt_rounds,
            default_role=Role(settings.default_role),
        )

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def login(self, identifier: str, password: str, request_ip: str = "unknown") -> TokenPair:
        """Authenticate by username or email and issue an access/refresh pair.

        Raises NotFound for an unknown identifier, InvalidCredentials for a
        wrong password, and Unauthorized for a disabled account.
        """
        user = self.store.get_by_login(identifier)
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt.
            verify_dummy(password)
            logger.warning("Login failed: no user for identifier %r from %s", identifier, request_ip)
            raise NotFound("User not found.")
        if not verify_password(password, user.password_hash, user.password_salt):
            logger.warning("Login failed: wrong credentials for user_id=%s from %s", user.id, request_ip)
            raise InvalidCredentials("Wrong credentials.")
        if not user.is_active:
            logger.warning("Login refused: user_id=%s is disabled", user.id)
            raise Unauthorized("Account is disabled.")

        access = self.issuer.issue(user, self.claims.claims_for(user.id))
        refresh = self.refresh_tokens.create(user, request_ip)
        refresh.id = self.store.insert_refresh_token(refresh)
        self.store.update_last_login(user.id)
        logger.info("Login succeeded for user_id=%s from %s", user.id, request_ip)
        return TokenPair(access_token=access, refresh_token=refresh)

    def refresh(self, presented: str, request_ip: str = "unknown") -> TokenPair:
        """Rotate a refresh token and issue a fresh access token for its owner."""
        user, refresh = self.refresh_tokens.rotate(presented, request_ip)
        access = self.issuer.issue(user, self.claims.claims_for(user.id))
        return TokenPair(access_token=access, refresh_token=refresh)

    def logout(self, caller: Identity, presented: str, request_ip: str = "unknown") -> bool:
        """Revoke one refresh token held by the caller (or any token, for admins).

        Returns False if the token was already revoked.
        """
        token = self.store.get_refresh_token(presented)
        if token is None:
            raise NotFound("Refresh token does not exist.")
        require_admin_or_owner(caller, token.user_id)
        revoked = self.refresh_tokens.revoke(presented, request_ip, REASON_LOGOUT)
        if revoked:
            logger.info("Refresh token %s revoked by user_id=%s", token_prefix(presented), caller.user_id)
        return revoked

    # ------------------------------------------------------------------
    # Registration and user management
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        phone: str,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        """Create a new account with the default role.

        Raises InvalidInput for malformed fields and Conflict when the
        username or email is already taken (case-insensitive).
        """
        request = validate_input(
            RegisterRequest,
            {
                "username": username,
                "email": email,
                "password": password,
                "phone": phone,
                "first_name": first_name,
                "last_name": last_name,
            },
        )
        if self.store.identity_taken(request.username, request.email):
            logger.warning("Registration conflict for username %r / email %r", request.username, request.email)
            raise Conflict("Username or email is already in use.")

        password_hash, password_salt = hash_password(request.password, self._bcrypt_rounds)
        user = User(
            username=request.username,
            email=request.email,
            phone=request.phone,
            first_name=request.first_name,
            last_name=request.last_name,
            role=self._default_role,
            password_hash=password_hash,
            password_salt=password_salt,
        )
        try:
            user.id = self.store.create_user(user)
        except IntegrityError as exc:
            # A concurrent registration won the UNIQUE constraint race.
            raise Conflict("Username or email is already in use.") from exc
        logger.info("Registered user_id=%s with role %s", user.id, user.role.value)
        return self.store.get_by_id(user.id)

    def get_user(self, caller: Identity, user_id: int) -> User:
        require_admin_or_owner(caller, user_id)
        return self._require_user(user_id)

    def list_users(self, caller: Identity) -> list[User]:
        require_admin(caller)
        return self.store.list_users()

    def change_role(self, caller: Identity, user_id: int, role: Role | str) -> User:
        """Admin-only role assignment."""
        require_admin(caller)
        self._require_user(user_id)
        self.store.update_user(user_id, role=Role(role))
        logger.info("user_id=%s set role of user_id=%s to %s", caller.user_id, user_id, Role(role).value)
        return self._require_user(user_id)

    def make_seller(self, caller: Identity, user_id: int) -> User:
        return self.change_role(caller, user_id, Role.seller)

    def make_normal(self, caller: Identity, user_id: int) -> User:
        return self.change_role(caller, user_id, Role.user)

    def update_profile(self, caller: Identity, user_id: int, **fields) -> User:
        """Update profile fields of a user.

        Owners may change their own username, email, phone, and names. Changing
        role or is_active requires an admin.
        """
        require_admin_or_owner(caller, user_id)
        update = validate_input(ProfileUpdate, fields)
        changes = update.model_dump(exclude_none=True)
        if "role" in changes or "is_active" in changes:
            require_admin(caller)

        self._require_user(user_id)
        if self.store.identity_taken(changes.get("username"), changes.get("email"), exclude_user_id=user_id):
            raise Conflict("Username or email is already in use.")
        try:
            self.store.update_user(user_id, **changes)
        except IntegrityError as exc:
            raise Conflict("Username or email is already in use.") from exc
        logger.info("user_id=%s updated profile of user_id=%s (%s)", caller.user_id, user_id, sorted(changes))
        return self._require_user(user_id)

    def delete_user(self, caller: Identity, user_id: int) -> None:
        """Delete a user and its tokens and claim links."""
        require_admin_or_owner(caller, user_id)
        if not self.store.delete_user(user_id):
            raise NotFound("User not found.")
        logger.info("user_id=%s deleted user_id=%s", caller.user_id, user_id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> PasswordResetToken:
        """Issue a reset token for the account with this email.

        Delivering the token (mail, SMS) is the caller's job.
        """
        user = self.store.get_by_email(email)
        if user is None:
            logger.warning("Forgot password: email not found %r", email)
            raise NotFound("Email not found.")
        return self.reset_tokens.issue(user.email, user_id=user.id)

    def reset_password(self, token: str, email: str, new_password: str, request_ip: str = "unknown") -> User:
        """Set a new password using a valid reset token for this email.

        The token is consumed and the password written in one transaction.
        Raises InvalidOrExpired for an unknown, used, or expired token and
        NotFound if the account no longer exists.
        """
        try:
            record = self.reset_tokens.validate(token, email=email)
        except InvalidOrExpired:
            logger.warning("Password reset failed: token %s invalid or expired", token_prefix(token))
            raise
        user = self._reset_target(record)

        password_hash, password_salt = hash_password(new_password, self._bcrypt_rounds)
        if not self.store.reset_password(token, user.id, password_hash, password_salt):
            # Lost a race with another reset using the same token.
            raise InvalidOrExpired("Password reset token already used.")
        self.refresh_tokens.revoke_all_for_user(user.id, request_ip, REASON_PASSWORD_RESET)
        logger.info("Password reset for user_id=%s", user.id)
        return self._require_user(user.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reset_target(self, record: PasswordResetToken) -> User:
        """Return the account a reset token may change.

        A token issued for a user id only resets that user, and only while the
        account still holds the email the token was sent to. Tokens without a
        user link fall back to the email.
        """
        if record.user_id is None:
            user = self.store.get_by_email(record.email)
            if user is None:
                logger.warning("Password reset failed: user not found for %r", record.email)
                raise NotFound("User not found.")
            return user
        user = self.store.get_by_id(record.user_id)
        if user is None or user.email.lower() != record.email.lower():
            logger.warning(
                "Password reset failed: token %s no longer matches user_id=%s",
                token_prefix(record.token),
                record.user_id,
            )
            raise InvalidOrExpired("Password reset token does not match its account.")
        return user

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user
