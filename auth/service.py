"""
auth/service.py -- Registration, login, token refresh and account recovery.

AuthService is the only component that touches both the credential store and
the token service. Every operation is tenant-scoped: the caller passes the
tenant id resolved from the request (or, for token-driven operations, the
tenant recorded with the token).

Security:
  login() always runs bcrypt, against DUMMY_HASH when the identifier is
      unknown, so response time does not reveal which accounts exist.
  forgot_password() and resend_verification() return silently for unknown
      addresses -- the HTTP response is identical either way.
  reset_password() and change_password() revoke every outstanding refresh
      token of the user so a stolen session cannot outlive a password change.
  Notifications are enqueued, never sent inline.

Retries: registration relies on the UNIQUE(tenant_id, username/email)
constraints, so a retried request fails with DuplicateUsername instead of
creating a second account. Re-issuing a verification or reset token
supersedes the previous unused one.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AccountInactive,
    DuplicateEmail,
    DuplicateUsername,
    EmailUnverified,
    InvalidCredentials,
    InvalidToken,
    NotFound,
)
from auth.models import AuthResult, Grants, TokenPair, User
from auth.notifications import RESET_PASSWORD, VERIFY_EMAIL, Notification, NotificationQueue
from auth.one_time import OneTimeTokens
from auth.passwords import DUMMY_HASH, check_password_strength, hash_password, verify_password
from auth.rbac import RBACStore
from auth.store import OneTimeTokenStore, RefreshTokenStore, UserStore
from auth.tokens import TokenService

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from core.config import Settings

logger = logging.getLogger("travelauth.auth")

PROFILE_FIELDS = frozenset(
    {"first_name", "last_name", "phone_number", "profile_picture_url", "preferred_language", "timezone"}
)


class AuthService:
    def __init__(
        self,
        users: UserStore,
        rbac: RBACStore,
        tokens: TokenService,
        one_time: OneTimeTokens,
        notifications: NotificationQueue,
        default_role: str = "ROLE_USER",
        require_verified_email: bool = False,
        password_min_length: int = 8,
        verification_ttl: int = 24 * 3600,
        reset_ttl: int = 3600,
    ) -> None:
        self.users = users
        self.rbac = rbac
        self.tokens = tokens
        self.one_time = one_time
        self.notifications = notifications
        self.default_role = default_role
        self.require_verified_email = require_verified_email
        self.password_min_length = password_min_length
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        tenant_id: str,
        profile: dict | None = None,
    ) -> AuthResult:
        """Create an account in tenant_id with the default role and sign the user in.

        Raises WeakPassword, DuplicateUsername or DuplicateEmail.
        """
        username = username.strip()
        email = email.strip().lower()
        profile = {k: v for k, v in (profile or {}).items() if v is not None}
        unknown = set(profile) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {unknown!r}")

        check_password_strength(password, self.password_min_length, username)
        if self.users.get_by_username(tenant_id, username) is not None:
            raise DuplicateUsername()
        if self.users.get_by_email(tenant_id, email) is not None:
            raise DuplicateEmail()

        self.rbac.ensure_default_catalogue(tenant_id)
        new_user = User(
            tenant_id=tenant_id,
            username=username,
            email=email,
            hashed_password=hash_password(password),
            **profile,
        )
        try:
            user_id = self.users.create_user(new_user)
        except IntegrityError as exc:
            # A concurrent registration committed first.
            if self.users.get_by_username(tenant_id, username) is not None:
                raise DuplicateUsername() from exc
            raise DuplicateEmail() from exc

        role = self.rbac.get_role_by_name(tenant_id, self.default_role)
        if role is not None:
            self.rbac.assign_role(user_id, role.id)
        else:
            logger.warning("Default role %s missing in tenant=%s", self.default_role, tenant_id)

        user = self.users.get_by_id(user_id)
        self._queue_verification(user)
        grants = self.rbac.grants_for_user(user_id)
        tokens = self.tokens.issue_pair(user_id, tenant_id, grants)
        logger.info("Registered user_id=%s tenant=%s", user_id, tenant_id)
        return AuthResult(user=user, tokens=tokens, roles=list(grants.roles))

    def login(self, identifier: str, password: str, tenant_id: str) -> AuthResult:
        """Authenticate by username or email within tenant_id.

        Raises InvalidCredentials, AccountInactive or (when verification is
        required) EmailUnverified. The wrong-password and unknown-user paths
        are indistinguishable to the caller.
        """
        user = self.users.get_by_login(tenant_id, identifier.strip())
        if user is None:
            verify_password(password, DUMMY_HASH)
            logger.info("Login failed (unknown identifier) tenant=%s", tenant_id)
            raise InvalidCredentials()
        if not verify_password(password, user.hashed_password):
            logger.info("Login failed (bad password) user_id=%s tenant=%s", user.id, tenant_id)
            raise InvalidCredentials()
        if not user.is_active:
            raise AccountInactive()
        if self.require_verified_email and not user.is_email_verified:
            raise EmailUnverified()

        self.users.update_last_login(user.id)
        user = self.users.get_by_id(user.id)
        grants = self.rbac.grants_for_user(user.id)
        tokens = self.tokens.issue_pair(user.id, tenant_id, grants)
        logger.info("Login succeeded user_id=%s tenant=%s", user.id, tenant_id)
        return AuthResult(user=user, tokens=tokens, roles=list(grants.roles))

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token. Raises InvalidToken, RevokedToken, ExpiredToken or AccountInactive."""
        return self.tokens.redeem_refresh_token(refresh_token, self._load_grants)

    def logout(self, refresh_token: str) -> None:
        """Revoke the presented refresh token. Never fails, even if already revoked."""
        self.tokens.revoke_refresh_token(refresh_token)

    def _load_grants(self, user_id: int, tenant_id: str) -> Grants:
        user = self.users.get_by_id(user_id)
        if user is None or user.tenant_id != tenant_id:
            raise InvalidToken()
        if not user.is_active:
            raise AccountInactive()
        return self.rbac.grants_for_user(user_id)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str) -> User:
        """Consume a verification token. Raises InvalidToken, ExpiredToken or AlreadyUsed."""
        record = self.one_time.consume(token, VERIFY_EMAIL)
        self.users.update_user(record.user_id, is_email_verified=True)
        logger.info("Email verified user_id=%s tenant=%s", record.user_id, record.tenant_id)
        return self.users.get_by_id(record.user_id)

    def resend_verification(self, email: str, tenant_id: str) -> None:
        user = self.users.get_by_email(tenant_id, email.strip())
        if user is None or user.is_email_verified or not user.is_active:
            return
        self._queue_verification(user)

    def _queue_verification(self, user: User) -> None:
        raw = self.one_time.issue(user.id, user.tenant_id, VERIFY_EMAIL, self.verification_ttl)
        self.notifications.enqueue(
            Notification(kind=VERIFY_EMAIL, tenant_id=user.tenant_id, user_id=user.id, email=user.email, token=raw)
        )

    # ------------------------------------------------------------------
    # Password recovery and changes
    # ------------------------------------------------------------------

    def forgot_password(self, email: str, tenant_id: str) -> None:
        """Queue a reset token for (email, tenant_id). Silent no-op for unknown accounts."""
        user = self.users.get_by_email(tenant_id, email.strip())
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive account tenant=%s", tenant_id)
            return
        raw = self.one_time.issue(user.id, tenant_id, RESET_PASSWORD, self.reset_ttl)
        self.notifications.enqueue(
            Notification(kind=RESET_PASSWORD, tenant_id=tenant_id, user_id=user.id, email=user.email, token=raw)
        )
        logger.info("Password reset issued user_id=%s tenant=%s", user.id, tenant_id)

    def reset_password(self, token: str, new_password: str) -> None:
        """Replace the password using a reset token and end every session.

        The strength check runs before the token is consumed so a rejected
        password does not burn the token.
        """
        record = self.one_time.peek(token, RESET_PASSWORD)
        user = self.users.get_by_id(record.user_id)
        if user is None:
            raise InvalidToken()
        check_password_strength(new_password, self.password_min_length, user.username)
        self.one_time.consume(token, RESET_PASSWORD)
        self.users.update_user(user.id, hashed_password=hash_password(new_password))
        revoked = self.tokens.revoke_all_for_user(user.id)
        logger.info("Password reset user_id=%s tenant=%s revoked_sessions=%d", user.id, user.tenant_id, revoked)

    def change_password(self, user_id: int, tenant_id: str, current_password: str, new_password: str) -> None:
        user = self.get_user(user_id, tenant_id)
        if not verify_password(current_password, user.hashed_password):
            raise InvalidCredentials("Current password is incorrect.")
        check_password_strength(new_password, self.password_min_length, user.username)
        self.users.update_user(user.id, hashed_password=hash_password(new_password))
        self.tokens.revoke_all_for_user(user.id)
        logger.info("Password changed user_id=%s tenant=%s", user.id, tenant_id)

    # ------------------------------------------------------------------
    # Profile and account state
    # ------------------------------------------------------------------

    def get_user(self, user_id: int, tenant_id: str) -> User:
        """Return the user, treating a user of another tenant as not found."""
        user = self.users.get_by_id(user_id)
        if user is None or user.tenant_id != tenant_id:
            raise NotFound("User not found.")
        return user

    def update_profile(self, user_id: int, tenant_id: str, **fields) -> User:
        self.get_user(user_id, tenant_id)
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {unknown!r}")
        if fields:
            self.users.update_user(user_id, **fields)
        return self.users.get_by_id(user_id)

    def set_active(self, user_id: int, tenant_id: str, is_active: bool) -> User:
        """Soft-(de)activate an account. Deactivation also ends every session."""
        self.get_user(user_id, tenant_id)
        self.users.update_user(user_id, is_active=is_active)
        if not is_active:
            self.tokens.revoke_all_for_user(user_id)
        logger.info("User user_id=%s tenant=%s is_active=%s", user_id, tenant_id, is_active)
        return self.users.get_by_id(user_id)

    def purge_expired(self) -> int:
        return self.tokens.purge_expired() + self.one_time.purge_expired()


def build_auth_service(engine: Engine, settings: Settings, notifications: NotificationQueue) -> AuthService:
    """Wire the stores and services around one shared Engine."""
    tokens = TokenService(
        RefreshTokenStore(engine),
        secret_key=settings.secret_key,
        access_ttl=settings.access_token_expire_seconds,
        refresh_ttl=settings.refresh_token_expire_seconds,
    )
    return AuthService(
        users=UserStore(engine),
        rbac=RBACStore(engine),
        tokens=tokens,
        one_time=OneTimeTokens(OneTimeTokenStore(engine), secret_key=settings.secret_key),
        notifications=notifications,
        default_role=settings.default_role,
        require_verified_email=settings.require_verified_email,
        password_min_length=settings.password_min_length,
        verification_ttl=settings.verification_token_expire_seconds,
        reset_ttl=settings.reset_token_expire_seconds,
    )
