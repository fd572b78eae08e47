"""Authentication and authorization services.

:class:`AuthService` owns the credential and session lifecycle: password
hashing, access tokens (short-lived, stateless JWTs), refresh tokens
(longer-lived JWTs whose SHA-256 hash is stored so they can be revoked) and
failed-login lockout.  One instance is built by the application factory and
kept in ``app.extensions["auth_service"]``.

Refresh tokens are single use: :meth:`AuthService.refresh` revokes the
presented token and links it to its replacement, so replaying an already
rotated token fails.
"""

from __future__ import annotations

import datetime
import logging
import secrets
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Optional

import jwt
from flask import current_app, g, has_request_context, request
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from config_models import Settings
from errors import (
    AccountLocked,
    AuthError,
    BadRequest,
    EmailExists,
    Forbidden,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidToken,
    TokenExpired,
)
from extensions import db
from mailer import MailerError
from models import RefreshToken, User
from services.audit import log_action
from utils import as_utc, hash_token, new_id, utc_now

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
VERIFICATION_TTL = datetime.timedelta(hours=24)
RESET_TTL = datetime.timedelta(hours=1)

# exp is checked against the service clock, not PyJWT's wall clock
_DECODE_OPTIONS = {"verify_exp": False, "verify_iat": False}


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int

    def to_dict(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


def _request_origin() -> tuple[Optional[str], Optional[str]]:
    if not has_request_context():
        return None, None
    return request.remote_addr, request.headers.get("User-Agent")


class AuthService:
    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], datetime.datetime] = utc_now,
        send_mail: Optional[Callable[..., bool]] = None,
    ):
        self.config = settings.auth
        self.client_url = settings.app.client_url
        self.email_verification = settings.app.enable_email_verification
        self.clock = clock
        self.send_mail = send_mail

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return generate_password_hash(password, method=self.config.password_hash_method)

    @staticmethod
    def check_password(user: User, password: str) -> bool:
        return check_password_hash(user.password_hash, password)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def create_access_token(self, user: User) -> str:
        issued = int(self.clock().timestamp())
        claims = {
            "userId": user.id,
            "email": user.email,
            "role": user.role,
            "iat": issued,
            "exp": issued + self.config.access_ttl_seconds,
        }
        return jwt.encode(claims, self.config.jwt_secret, algorithm=JWT_ALGORITHM)

    def verify_access_token(self, token: str) -> dict:
        """Check signature and expiry; raises TokenExpired or InvalidToken."""
        try:
            claims = jwt.decode(
                token,
                self.config.jwt_secret,
                algorithms=[JWT_ALGORITHM],
                options={**_DECODE_OPTIONS, "require": ["exp", "userId"]},
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidToken() from exc
        if claims["exp"] <= self.clock().timestamp():
            raise TokenExpired()
        return claims

    def user_from_access_token(self, token: str) -> User:
        """Verify *token* and re-check that its user still exists."""
        claims = self.verify_access_token(token)
        user = db.session.get(User, claims["userId"])
        if user is None or user.is_deleted:
            raise AuthError("User not found or deactivated")
        return user

    def _create_refresh_token(self, user: User) -> tuple[str, RefreshToken]:
        now = self.clock()
        expires_at = now + datetime.timedelta(days=self.config.refresh_ttl_days)
        raw = jwt.encode(
            {
                "userId": user.id,
                "jti": new_id(),
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
            },
            self.config.jwt_refresh_secret,
            algorithm=JWT_ALGORITHM,
        )
        ip_address, user_agent = _request_origin()
        record = RefreshToken(
            id=new_id(),
            user_id=user.id,
            token_hash=hash_token(raw),
            expires_at=expires_at,
            created_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        db.session.add(record)
        return raw, record

    def issue_tokens(self, user: User) -> TokenPair:
        """Mint an access/refresh pair.  Does NOT commit."""
        raw_refresh, _ = self._create_refresh_token(user)
        return TokenPair(
            access_token=self.create_access_token(user),
            refresh_token=raw_refresh,
            expires_in=self.config.access_ttl_seconds,
        )

    def refresh(self, raw_token: str) -> tuple[User, TokenPair]:
        """Rotate *raw_token*: revoke it and return a brand-new pair."""
        if not raw_token:
            raise InvalidRefreshToken("Refresh token is required", code="REFRESH_TOKEN_REQUIRED")
        try:
            claims = jwt.decode(
                raw_token,
                self.config.jwt_refresh_secret,
                algorithms=[JWT_ALGORITHM],
                options={**_DECODE_OPTIONS, "require": ["userId"]},
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidRefreshToken("Invalid refresh token") from exc

        now = self.clock()
        stored = RefreshToken.query.filter_by(token_hash=hash_token(raw_token)).first()
        if (
            stored is None
            or stored.revoked_at is not None
            or as_utc(stored.expires_at) <= now
            or stored.user_id != claims["userId"]
        ):
            if stored is not None and stored.revoked_at is not None:
                logger.warning("Replay of revoked refresh token %s for user %s", stored.id, stored.user_id)
            raise InvalidRefreshToken()

        user = db.session.get(User, stored.user_id)
        if user is None or user.is_deleted:
            raise AuthError("User not found", code="USER_NOT_FOUND")

        # Conditional update: of two concurrent refreshes only one sees a live row.
        revoked = RefreshToken.query.filter(
            RefreshToken.id == stored.id, RefreshToken.revoked_at.is_(None)
        ).update({"revoked_at": now})
        if revoked != 1:
            db.session.rollback()
            raise InvalidRefreshToken()

        raw_refresh, replacement = self._create_refresh_token(user)
        db.session.flush()
        stored.replaced_by_id = replacement.id
        tokens = TokenPair(
            access_token=self.create_access_token(user),
            refresh_token=raw_refresh,
            expires_in=self.config.access_ttl_seconds,
        )
        db.session.commit()
        return user, tokens

    def revoke(self, raw_token: str, user_id: Optional[str] = None) -> bool:
        """Revoke one refresh token (optionally only if owned by *user_id*).  No commit."""
        query = RefreshToken.query.filter(
            RefreshToken.token_hash == hash_token(raw_token),
            RefreshToken.revoked_at.is_(None),
        )
        if user_id is not None:
            query = query.filter(RefreshToken.user_id == user_id)
        return query.update({"revoked_at": self.clock()}) > 0

    def revoke_all(self, user_id: str) -> int:
        """Revoke every outstanding refresh token of a user.  No commit."""
        count = RefreshToken.query.filter(
            RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None)
        ).update({"revoked_at": self.clock()})
        logger.info("Revoked %s refresh token(s) for user %s", count, user_id)
        return count

    # ------------------------------------------------------------------
    # Registration / login
    # ------------------------------------------------------------------

    def _active_user_by_email(self, email: str) -> Optional[User]:
        return User.query.filter(
            User.email == email.strip().lower(), User.deleted_at.is_(None)
        ).first()

    def register(
        self, email: str, password: str, first_name: str, last_name: str
    ) -> tuple[User, TokenPair]:
        email = email.strip().lower()
        if self._active_user_by_email(email):
            raise EmailExists()

        user = User(
            id=new_id(),
            email=email,
            password_hash=self.hash_password(password),
            first_name=first_name,
            last_name=last_name,
            email_verified=not self.email_verification,
        )
        verification_token = None
        if self.email_verification:
            verification_token = secrets.token_hex(32)
            user.email_verification_token = hash_token(verification_token)
            user.email_verification_expires = self.clock() + VERIFICATION_TTL
        db.session.add(user)
        # The user row must exist before the token and audit rows that reference it.
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            if "email" not in str(exc.orig).lower():
                raise
            raise EmailExists() from exc
        tokens = self.issue_tokens(user)
        log_action("user.register", "user", user.id, user_id=user.id, new_values={"email": email})
        db.session.commit()

        logger.info("User registered: %s", user.id)
        if verification_token:
            self._notify(
                "verify_email",
                user,
                f"{self.client_url}/verify-email?token={verification_token}",
            )
        return user, tokens

    def authenticate(self, email: str, password: str) -> tuple[User, TokenPair]:
        user = self._active_user_by_email(email)
        now = self.clock()

        if user and user.locked_until and as_utc(user.locked_until) > now:
            raise AccountLocked()

        if user is None or not self.check_password(user, password):
            if user is not None:
                user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
                if user.failed_login_attempts >= self.config.max_failed_logins:
                    user.locked_until = now + datetime.timedelta(
                        minutes=self.config.lockout_minutes
                    )
                    logger.warning(
                        "User %s locked out after %s failed logins",
                        user.id,
                        user.failed_login_attempts,
                    )
                db.session.commit()
            raise InvalidCredentials()

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = now
        tokens = self.issue_tokens(user)
        log_action("user.login", "user", user.id, user_id=user.id)
        db.session.commit()
        logger.info("User logged in: %s", user.id)
        return user, tokens

    def logout(self, user: User, raw_refresh_token: Optional[str]) -> None:
        if raw_refresh_token:
            self.revoke(raw_refresh_token, user_id=user.id)
        log_action("user.logout", "user", user.id, user_id=user.id)
        db.session.commit()
        logger.info("User logged out: %s", user.id)

    # ------------------------------------------------------------------
    # Password reset / email verification
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> None:
        """Issue a reset token for an active account.  Silent when none exists."""
        user = self._active_user_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return
        token = secrets.token_hex(32)
        user.password_reset_token = hash_token(token)
        user.password_reset_expires = self.clock() + RESET_TTL
        db.session.commit()
        logger.info("Password reset requested: %s", user.id)
        self._notify("password_reset", user, f"{self.client_url}/reset-password?token={token}")

    def _user_by_action_token(self, column, expires_column, token: str) -> Optional[User]:
        if not token:
            return None
        user = User.query.filter(column == hash_token(token), User.deleted_at.is_(None)).first()
        if user is None:
            return None
        expires = as_utc(getattr(user, expires_column.key))
        if expires is None or expires <= self.clock():
            return None
        return user

    def reset_password(self, token: str, password: str) -> User:
        user = self._user_by_action_token(
            User.password_reset_token, User.password_reset_expires, token
        )
        if user is None:
            raise BadRequest("Invalid or expired reset token", code="INVALID_TOKEN")
        user.password_hash = self.hash_password(password)
        user.password_reset_token = None
        user.password_reset_expires = None
        user.failed_login_attempts = 0
        user.locked_until = None
        self.revoke_all(user.id)
        log_action("user.password_reset", "user", user.id, user_id=user.id)
        db.session.commit()
        logger.info("Password reset completed: %s", user.id)
        return user

    def verify_email(self, token: str) -> User:
        if not token:
            raise BadRequest("Verification token is required", code="INVALID_TOKEN")
        user = self._user_by_action_token(
            User.email_verification_token, User.email_verification_expires, token
        )
        if user is None:
            raise BadRequest("Invalid or expired verification token", code="INVALID_TOKEN")
        user.email_verified = True
        user.email_verification_token = None
        user.email_verification_expires = None
        db.session.commit()
        logger.info("Email verified: %s", user.id)
        return user

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def change_password(self, user: User, current_password: str, new_password: str) -> None:
        """Set a new password and sign the user out everywhere."""
        if not self.check_password(user, current_password):
            raise BadRequest("Current password is incorrect", code="INVALID_PASSWORD")
        user.password_hash = self.hash_password(new_password)
        self.revoke_all(user.id)
        log_action("user.password_change", "user", user.id, user_id=user.id)
        db.session.commit()
        logger.info("Password changed: %s", user.id)

    def update_profile(self, user: User, changes: dict) -> User:
        if not changes:
            raise BadRequest("No fields to update", code="NO_UPDATES")
        old_values = {field: getattr(user, field) for field in changes}
        for field, value in changes.items():
            setattr(user, field, value)
        log_action(
            "user.profile_update",
            "user",
            user.id,
            user_id=user.id,
            old_values=old_values,
            new_values=dict(changes),
        )
        db.session.commit()
        return user

    def delete_account(self, user: User, password: Optional[str]) -> None:
        """Soft-delete *user*; the row stays, the email is freed."""
        if not password:
            raise BadRequest(
                "Password is required to delete account", code="PASSWORD_REQUIRED"
            )
        if not self.check_password(user, password):
            raise BadRequest("Invalid password", code="INVALID_PASSWORD")
        old_email = user.email
        user.deleted_at = self.clock()
        user.email = f"{old_email}.deleted.{user.id}"
        self.revoke_all(user.id)
        log_action(
            "user.delete",
            "user",
            user.id,
            user_id=user.id,
            old_values={"email": old_email},
        )
        db.session.commit()
        logger.info("Account deleted: %s", user.id)

    def _notify(self, template: str, user: User, link: str) -> None:
        if self.send_mail is None:
            return
        try:
            self.send_mail(template, user.email, first_name=user.first_name, link=link)
        except MailerError as e:
            logger.error("Failed to send %s email to user %s: %s", template, user.id, e)


# ---------------------------------------------------------------------------
# Request guards
# ---------------------------------------------------------------------------

def get_auth_service() -> AuthService:
    return current_app.extensions["auth_service"]


def get_current_user() -> Optional[User]:
    """Return the authenticated user from ``flask.g``."""
    return getattr(g, "current_user", None)


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[7:].strip() or None


def token_required(f):
    """Decorator that rejects the request unless a valid access token is sent."""

    @wraps(f)
    def decorated(*args, **kwargs):
        token = _bearer_token()
        if not token:
            raise AuthError()
        g.current_user = get_auth_service().user_from_access_token(token)
        return f(*args, **kwargs)

    return decorated


def optional_auth(f):
    """Decorator that loads the user when a valid token is sent, else continues anonymously."""

    @wraps(f)
    def decorated(*args, **kwargs):
        g.current_user = None
        token = _bearer_token()
        if token:
            try:
                g.current_user = get_auth_service().user_from_access_token(token)
            except AuthError as e:
                logger.debug("Ignoring invalid optional token: %s", e.code)
        return f(*args, **kwargs)

    return decorated


def role_required(role: str):
    """Decorator that requires an authenticated user with *role*."""

    def decorator(f):
        @wraps(f)
        @token_required
        def decorated(*args, **kwargs):
            user = get_current_user()
            if user.role != role:
                raise Forbidden()
            return f(*args, **kwargs)

        return decorated

    return decorator
