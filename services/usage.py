"""Usage metering and per-plan limits for the dashboard."""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from sqlalchemy import func

from extensions import db
from models import Usage

logger = logging.getLogger(__name__)

UNLIMITED = -1

PLAN_LIMITS = {
    "Free": {"api_calls": 1000, "storage_mb": 1024, "projects": 3},
    "Starter": {"api_calls": 10000, "storage_mb": 10240, "projects": UNLIMITED},
    "Pro": {"api_calls": 100000, "storage_mb": 51200, "projects": UNLIMITED},
    "Enterprise": {"api_calls": UNLIMITED, "storage_mb": UNLIMITED, "projects": UNLIMITED},
}

METRICS = (
    ("api_calls", "API Calls"),
    ("storage_mb", "Storage"),
    ("projects", "Projects"),
)


def limits_for_plan(plan_name: Optional[str]) -> dict:
    """Unknown plans and users without a subscription get the Free limits.

    Yearly variants ("Pro Yearly") share the limits of their monthly tier.
    """
    if not plan_name:
        return PLAN_LIMITS["Free"]
    tier = plan_name.removesuffix(" Yearly")
    return PLAN_LIMITS.get(tier, PLAN_LIMITS["Free"])


def usage_summary(
    user_id: str, plan_name: Optional[str], now: datetime.datetime, days: int = 30
) -> list[dict]:
    since = now - datetime.timedelta(days=days)
    rows = (
        db.session.query(Usage.metric, func.sum(Usage.value))
        .filter(Usage.user_id == user_id, Usage.recorded_at > since)
        .group_by(Usage.metric)
        .all()
    )
    totals = {metric: int(total or 0) for metric, total in rows}
    limits = limits_for_plan(plan_name)

    summary = []
    for key, label in METRICS:
        current = totals.get(key, 0)
        limit = limits[key]
        percentage = min(100, round(current / limit * 100)) if limit > 0 else 0
        summary.append(
            {
                "metric": label,
                "key": key,
                "current": current,
                "limit": limit,
                "percentage": percentage,
                "unlimited": limit < 0,
            }
        )
    return summary


def usage_history(
    user_id: str, now: datetime.datetime, metric: Optional[str] = None, days: int = 30
) -> list[dict]:
    """Daily totals, newest day first."""
    since = now - datetime.timedelta(days=days)
    day = func.date(Usage.recorded_at)
    query = db.session.query(day, func.sum(Usage.value)).filter(
        Usage.user_id == user_id, Usage.recorded_at > since
    )
    if metric:
        query = query.filter(Usage.metric == metric)
    rows = query.group_by(day).order_by(day.desc()).all()
    return [{"date": str(d), "total": int(total or 0)} for d, total in rows]
