"""Plan catalog routes."""

from flask import Blueprint

from errors import PlanNotFound
from models import Plan
from services.auth import get_current_user, optional_auth, token_required
from services.billing import get_sync_engine
from utils import api_response

plans_bp = Blueprint("plans", __name__, url_prefix="/api/plans")


def _public_plans():
    return Plan.query.filter_by(is_public=True, is_active=True)


@plans_bp.route("", methods=["GET"])
@optional_auth
def list_plans():
    plans = _public_plans().order_by(Plan.sort_order.asc(), Plan.price.asc()).all()
    return api_response([plan.to_dict() for plan in plans])


@plans_bp.route("/<plan_id>", methods=["GET"])
@optional_auth
def get_plan(plan_id):
    plan = _public_plans().filter_by(id=plan_id).first()
    if plan is None:
        raise PlanNotFound()
    return api_response(plan.to_dict())


@plans_bp.route("/current/mine", methods=["GET"])
@token_required
def current_plan():
    subscription = get_sync_engine().current_subscription(get_current_user().id)
    return api_response(subscription.to_dict() if subscription else None)
