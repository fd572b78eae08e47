"""Error taxonomy shared by services and blueprints.

Every error a client may see is an :class:`ApiError` carrying a stable
``code``; the application factory renders them into the JSON envelope.
"""

from __future__ import annotations

from typing import Optional


class ApiError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500
    message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message or self.message)
        self.message = message or self.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict:
        error = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationError(ApiError):
    code = "VALIDATION_ERROR"
    status_code = 400
    message = "Validation failed"


class BadRequest(ApiError):
    """Well-formed request that cannot be honoured; callers pass a specific code."""

    code = "BAD_REQUEST"
    status_code = 400
    message = "Bad request"


# ---------------------------------------------------------------------------
# Authentication / authorization
# ---------------------------------------------------------------------------

class AuthError(ApiError):
    code = "UNAUTHORIZED"
    status_code = 401
    message = "Access token required"


class TokenExpired(AuthError):
    code = "TOKEN_EXPIRED"
    message = "Access token expired"


class InvalidToken(AuthError):
    code = "INVALID_TOKEN"
    message = "Invalid access token"


class InvalidRefreshToken(AuthError):
    """Unknown, expired, revoked (already rotated) or forged refresh token."""

    code = "INVALID_REFRESH_TOKEN"
    message = "Invalid or expired refresh token"


class InvalidCredentials(AuthError):
    code = "INVALID_CREDENTIALS"
    message = "Invalid email or password"


class AccountLocked(AuthError):
    code = "ACCOUNT_LOCKED"
    status_code = 423
    message = "Account is temporarily locked. Please try again later."


class Forbidden(ApiError):
    code = "FORBIDDEN"
    status_code = 403
    message = "Forbidden"


# ---------------------------------------------------------------------------
# Lookups and conflicts
# ---------------------------------------------------------------------------

class NotFound(ApiError):
    code = "NOT_FOUND"
    status_code = 404
    message = "Resource not found"


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"
    message = "User not found"


class PlanNotFound(NotFound):
    code = "PLAN_NOT_FOUND"
    message = "Plan not found"


class SubscriptionNotFound(NotFound):
    code = "SUBSCRIPTION_NOT_FOUND"
    message = "No active subscription found"


class Conflict(ApiError):
    code = "CONFLICT"
    status_code = 409
    message = "Conflict"


class EmailExists(Conflict):
    code = "EMAIL_EXISTS"
    message = "An account with this email already exists"


class NotCanceled(Conflict):
    code = "NOT_CANCELED"
    status_code = 400
    message = "Subscription is not scheduled for cancellation"


# ---------------------------------------------------------------------------
# Payment provider and webhooks
# ---------------------------------------------------------------------------

class ProviderError(ApiError):
    """Upstream payment provider failure; details stay in the server log."""

    code = "INTERNAL_ERROR"
    status_code = 500
    message = "Payment provider request failed"


class WebhookSignatureError(ApiError):
    code = "INVALID_SIGNATURE"
    status_code = 400
    message = "Invalid signature"


class WebhookProcessingError(ApiError):
    code = "WEBHOOK_PROCESSING_FAILED"
    status_code = 500
    message = "Webhook processing failed"
