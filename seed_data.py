"""Plan catalog and demo accounts.

Usage (via the Flask CLI registered in ``app.py``)::

    flask --app app seed-plans
    flask --app app seed-plans --demo-users
"""
from __future__ import annotations

import logging

from extensions import db
from models import Plan, User
from utils import new_id

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "DemoPass123!"

PLAN_CATALOG = [
    {
        "name": "Free",
        "description": "Perfect for getting started",
        "price": 0,
        "interval": "month",
        "stripe_price_id": "price_free",
        "stripe_product_id": "prod_free",
        "features": ["Up to 3 projects", "Basic analytics", "Community support", "1GB storage"],
        "trial_days": 0,
        "sort_order": 1,
    },
    {
        "name": "Starter",
        "description": "For growing teams",
        "price": 2900,
        "interval": "month",
        "stripe_price_id": "price_starter_monthly",
        "stripe_product_id": "prod_starter",
        "features": [
            "Unlimited projects",
            "Advanced analytics",
            "Email support",
            "10GB storage",
            "API access",
            "Custom integrations",
        ],
        "trial_days": 14,
        "sort_order": 2,
    },
    {
        "name": "Pro",
        "description": "For professional teams",
        "price": 7900,
        "interval": "month",
        "stripe_price_id": "price_pro_monthly",
        "stripe_product_id": "prod_pro",
        "features": [
            "Everything in Starter",
            "Priority support",
            "50GB storage",
            "Advanced security",
            "Team collaboration",
            "Custom domains",
            "SSO integration",
        ],
        "trial_days": 14,
        "sort_order": 3,
    },
    {
        "name": "Enterprise",
        "description": "For large organizations",
        "price": 19900,
        "interval": "month",
        "stripe_price_id": "price_enterprise_monthly",
        "stripe_product_id": "prod_enterprise",
        "features": [
            "Everything in Pro",
            "Dedicated support",
            "Unlimited storage",
            "Custom contracts",
            "SLA guarantee",
            "On-premise option",
            "Advanced audit logs",
        ],
        "trial_days": 30,
        "sort_order": 4,
    },
    {
        "name": "Starter Yearly",
        "description": "For growing teams (billed annually)",
        "price": 29000,
        "interval": "year",
        "stripe_price_id": "price_starter_yearly",
        "stripe_product_id": "prod_starter",
        "features": [
            "Unlimited projects",
            "Advanced analytics",
            "Email support",
            "10GB storage",
            "API access",
            "Custom integrations",
            "Save 17% with yearly billing",
        ],
        "trial_days": 14,
        "sort_order": 5,
    },
    {
        "name": "Pro Yearly",
        "description": "For professional teams (billed annually)",
        "price": 79000,
        "interval": "year",
        "stripe_price_id": "price_pro_yearly",
        "stripe_product_id": "prod_pro",
        "features": [
            "Everything in Starter",
            "Priority support",
            "50GB storage",
            "Advanced security",
            "Team collaboration",
            "Custom domains",
            "SSO integration",
            "Save 17% with yearly billing",
        ],
        "trial_days": 14,
        "sort_order": 6,
    },
]

# Fields refreshed on re-seed; flags and trial length stay as an operator left them.
_MUTABLE_FIELDS = ("name", "description", "price", "features")


def seed_plans(catalog: list[dict] = PLAN_CATALOG) -> tuple[int, int]:
    """Upsert *catalog* keyed by provider price id.  Returns (created, updated)."""
    created = updated = 0
    for entry in catalog:
        plan = Plan.query.filter_by(stripe_price_id=entry["stripe_price_id"]).first()
        if plan is None:
            db.session.add(
                Plan(
                    id=new_id(),
                    currency=entry.get("currency", "USD"),
                    is_active=entry.get("is_active", True),
                    is_public=entry.get("is_public", True),
                    **{k: v for k, v in entry.items() if k not in ("currency", "is_active", "is_public")},
                )
            )
            created += 1
        else:
            for field in _MUTABLE_FIELDS:
                setattr(plan, field, entry[field])
            updated += 1
    db.session.commit()
    logger.info("Seeded plans: %s created, %s updated", created, updated)
    return created, updated


def seed_demo_users(auth_service) -> list[User]:
    """Create demo@example.com and admin@example.com if they do not exist."""
    users = []
    for email, first, role in (
        ("demo@example.com", "Demo", "user"),
        ("admin@example.com", "Admin", "admin"),
    ):
        user = User.query.filter_by(email=email).first()
        if user is None:
            user = User(
                id=new_id(),
                email=email,
                password_hash=auth_service.hash_password(DEMO_PASSWORD),
                first_name=first,
                last_name="User",
                email_verified=True,
                role=role,
            )
            db.session.add(user)
            logger.info("Created demo account %s", email)
        users.append(user)
    db.session.commit()
    return users
