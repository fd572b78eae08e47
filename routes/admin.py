"""Admin routes: webhook ledger inspection."""

from flask import Blueprint, request

from models import WebhookEvent
from services.auth import role_required
from utils import api_response, safe_int

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.route("/webhook-events", methods=["GET"])
@role_required("admin")
def webhook_events():
    """Recent ledger rows; ``?failed=1`` keeps only unprocessed ones."""
    limit = min(max(safe_int(request.args.get("limit"), 50), 1), 200)
    query = WebhookEvent.query
    if request.args.get("failed", "").lower() in ("1", "true", "yes"):
        query = query.filter(WebhookEvent.processed_at.is_(None))
    events = query.order_by(WebhookEvent.created_at.desc()).limit(limit).all()
    return api_response([event.to_dict() for event in events])
