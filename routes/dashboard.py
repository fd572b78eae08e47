"""Dashboard routes."""

from flask import Blueprint, request

from services.auth import get_current_user, token_required
from services.billing import get_sync_engine
from services.usage import usage_history, usage_summary
from utils import api_response, safe_int

dashboard_bp = Blueprint("dashboard", __name__, url_prefix="/api/dashboard")


@dashboard_bp.route("", methods=["GET"])
@token_required
def index():
    user = get_current_user()
    engine = get_sync_engine()
    subscription = engine.current_subscription(user.id)
    plan_name = subscription.plan.name if subscription and subscription.plan else None
    now = engine.clock()

    return api_response(
        {
            "user": user.to_dict(),
            "subscription": subscription.to_dict() if subscription else None,
            "usage": usage_summary(user.id, plan_name, now),
            "recentInvoices": [inv.to_dict() for inv in engine.list_invoices(user.id, limit=5)],
        }
    )


@dashboard_bp.route("/usage", methods=["GET"])
@token_required
def usage():
    days = min(max(safe_int(request.args.get("days"), 30), 1), 365)
    metric = request.args.get("metric") or None
    history = usage_history(
        get_current_user().id, get_sync_engine().clock(), metric=metric, days=days
    )
    return api_response(history)
