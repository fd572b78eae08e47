"""Authentication routes."""

from flask import Blueprint, request

from extensions import auth_rate_limit, limiter
from services.auth import get_auth_service, get_current_user, token_required
from services.validation import (
    validate_change_password,
    validate_forgot_password,
    validate_login,
    validate_registration,
    validate_reset_password,
)
from utils import api_response, json_body

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _session_payload(user, tokens) -> dict:
    return {"user": user.to_dict(), **tokens.to_dict()}


@auth_bp.route("/register", methods=["POST"])
@limiter.limit(auth_rate_limit)
def register():
    data = validate_registration(json_body())
    user, tokens = get_auth_service().register(
        data["email"], data["password"], data["first_name"], data["last_name"]
    )
    return api_response(_session_payload(user, tokens), 201)


@auth_bp.route("/login", methods=["POST"])
@limiter.limit(auth_rate_limit)
def login():
    data = validate_login(json_body())
    user, tokens = get_auth_service().authenticate(data["email"], data["password"])
    return api_response(_session_payload(user, tokens))


@auth_bp.route("/refresh", methods=["POST"])
def refresh():
    raw = json_body().get("refreshToken")
    _, tokens = get_auth_service().refresh(raw if isinstance(raw, str) else "")
    return api_response(tokens.to_dict())


@auth_bp.route("/logout", methods=["POST"])
@token_required
def logout():
    raw = json_body().get("refreshToken")
    get_auth_service().logout(get_current_user(), raw if isinstance(raw, str) else None)
    return api_response(message="Logged out successfully")


@auth_bp.route("/me", methods=["GET"])
@token_required
def me():
    return api_response(get_current_user().to_dict())


@auth_bp.route("/forgot-password", methods=["POST"])
@limiter.limit(auth_rate_limit)
def forgot_password():
    email = validate_forgot_password(json_body())
    get_auth_service().forgot_password(email)
    return api_response(
        message="If an account exists, a password reset email has been sent"
    )


@auth_bp.route("/reset-password", methods=["POST"])
@limiter.limit(auth_rate_limit)
def reset_password():
    data = validate_reset_password(json_body())
    get_auth_service().reset_password(data["token"], data["password"])
    return api_response(
        message="Password reset successfully. Please log in with your new password."
    )


@auth_bp.route("/verify-email", methods=["GET"])
def verify_email():
    get_auth_service().verify_email(request.args.get("token", ""))
    return api_response(message="Email verified successfully")


@auth_bp.route("/change-password", methods=["POST"])
@token_required
def change_password():
    data = validate_change_password(json_body())
    get_auth_service().change_password(
        get_current_user(), data["current_password"], data["new_password"]
    )
    return api_response(message="Password changed successfully")
