"""Profile routes."""

from flask import Blueprint

from services.auth import get_auth_service, get_current_user, token_required
from services.validation import validate_profile_update
from utils import api_response, json_body

profile_bp = Blueprint("profile", __name__, url_prefix="/api/profile")


@profile_bp.route("", methods=["GET"])
@token_required
def get_profile():
    return api_response(get_current_user().to_dict(include_last_login=True))


@profile_bp.route("", methods=["PATCH"])
@token_required
def update_profile():
    changes = validate_profile_update(json_body())
    user = get_auth_service().update_profile(get_current_user(), changes)
    return api_response(user.to_dict(include_last_login=True))


@profile_bp.route("", methods=["DELETE"])
@token_required
def delete_profile():
    password = json_body().get("password")
    get_auth_service().delete_account(
        get_current_user(), password if isinstance(password, str) else None
    )
    return api_response(message="Account deleted successfully")
