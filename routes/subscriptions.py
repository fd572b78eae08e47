"""Subscription routes: checkout, billing portal, cancel/resume and invoices."""

from flask import Blueprint

from services.auth import get_current_user, token_required
from services.billing import get_sync_engine
from services.validation import validate_cancel, validate_checkout
from utils import api_response, json_body

subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api/subscriptions")


@subscriptions_bp.route("/checkout", methods=["POST"])
@token_required
def checkout():
    data = validate_checkout(json_body())
    session = get_sync_engine().initiate_checkout(
        get_current_user(), data["plan_id"], data["success_url"], data["cancel_url"]
    )
    return api_response({"sessionId": session.id, "url": session.url})


@subscriptions_bp.route("/current", methods=["GET"])
@token_required
def current():
    subscription = get_sync_engine().current_subscription(get_current_user().id)
    return api_response(subscription.to_dict() if subscription else None)


@subscriptions_bp.route("/billing-portal", methods=["POST"])
@token_required
def billing_portal():
    return_url = json_body().get("returnUrl")
    url = get_sync_engine().create_portal_session(
        get_current_user(), return_url if isinstance(return_url, str) else None
    )
    return api_response({"url": url})


@subscriptions_bp.route("/cancel", methods=["POST"])
@token_required
def cancel():
    data = validate_cancel(json_body())
    immediate = data["immediate"]
    subscription = get_sync_engine().cancel_subscription(
        get_current_user(), immediate, reason=data["reason"]
    )
    # Provisional until the provider's webhook confirms it.
    return api_response(
        subscription.to_dict(),
        message=(
            "Subscription cancelled immediately"
            if immediate
            else "Subscription will be cancelled at the end of the billing period"
        ),
    )


@subscriptions_bp.route("/resume", methods=["POST"])
@token_required
def resume():
    subscription = get_sync_engine().resume_subscription(get_current_user())
    return api_response(subscription.to_dict(), message="Subscription resumed successfully")


@subscriptions_bp.route("/invoices", methods=["GET"])
@token_required
def invoices():
    rows = get_sync_engine().list_invoices(get_current_user().id)
    return api_response([invoice.to_dict() for invoice in rows])
