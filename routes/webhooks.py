"""Inbound payment-provider webhooks."""

from flask import Blueprint, request

from extensions import limiter, webhook_rate_limit
from services.billing import get_sync_engine
from utils import api_response

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@webhooks_bp.route("/stripe", methods=["POST"])
@limiter.limit(webhook_rate_limit)
def stripe_webhook():
    # Signature covers the exact bytes received; never re-serialise before verifying.
    payload = request.get_data(cache=False, as_text=False, parse_form_data=False)
    result = get_sync_engine().process_webhook(
        payload, request.headers.get("Stripe-Signature")
    )
    return api_response(result)
