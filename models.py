"""SQLAlchemy models and enumerated value sets."""

from __future__ import annotations

from extensions import db
from utils import isoformat, new_id, utc_now

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

VALID_ROLES = ("user", "admin")
PLAN_INTERVALS = ("month", "year", "one_time")
SUBSCRIPTION_STATUSES = (
    "incomplete",
    "incomplete_expired",
    "trialing",
    "active",
    "past_due",
    "canceled",
    "unpaid",
    "paused",
)
INVOICE_STATUSES = ("draft", "open", "paid", "uncollectible", "void")


def _in(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email_verified = db.Column(db.Boolean, default=False)
    email_verification_token = db.Column(db.String(255), index=True)
    email_verification_expires = db.Column(db.DateTime)
    password_reset_token = db.Column(db.String(255), index=True)
    password_reset_expires = db.Column(db.DateTime)
    role = db.Column(db.String(20), nullable=False, default="user")
    last_login_at = db.Column(db.DateTime)
    failed_login_attempts = db.Column(db.Integer, nullable=False, default=0)
    locked_until = db.Column(db.DateTime)
    stripe_customer_id = db.Column(db.String(255), unique=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)
    deleted_at = db.Column(db.DateTime)  # soft delete

    __table_args__ = (
        db.CheckConstraint(_in("role", VALID_ROLES), name="ck_user_role"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self, *, include_last_login: bool = False) -> dict:
        data = {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "emailVerified": bool(self.email_verified),
            "role": self.role,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }
        if include_last_login:
            data["lastLoginAt"] = isoformat(self.last_login_at)
        return data


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------

class Plan(db.Model):
    """A purchasable offering; created and updated only by catalog seeding."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    price = db.Column(db.Integer, nullable=False)  # minor currency units
    currency = db.Column(db.String(3), default="USD")
    interval = db.Column(db.String(20), nullable=False)
    stripe_price_id = db.Column(db.String(255), unique=True, nullable=False)
    stripe_product_id = db.Column(db.String(255))
    features = db.Column(db.JSON, default=list)
    is_active = db.Column(db.Boolean, default=True)
    is_public = db.Column(db.Boolean, default=True)
    trial_days = db.Column(db.Integer, nullable=False, default=0)
    sort_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.CheckConstraint("price >= 0", name="ck_plan_price"),
        db.CheckConstraint("trial_days >= 0", name="ck_plan_trial_days"),
        db.CheckConstraint(_in("interval", PLAN_INTERVALS), name="ck_plan_interval"),
        db.Index("ix_plan_sort_order", "sort_order"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "currency": self.currency,
            "interval": self.interval,
            "features": list(self.features or []),
            "isActive": bool(self.is_active),
            "trialDays": self.trial_days,
            "sortOrder": self.sort_order,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


# ---------------------------------------------------------------------------
# Subscription billing
# ---------------------------------------------------------------------------

class Subscription(db.Model):
    """Local mirror of a provider subscription; only the sync engine writes it."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("user.id"), nullable=False, index=True)
    plan_id = db.Column(db.String(36), db.ForeignKey("plan.id"), nullable=False)
    stripe_customer_id = db.Column(db.String(255), nullable=False, index=True)
    stripe_subscription_id = db.Column(db.String(255), unique=True)
    status = db.Column(db.String(50), nullable=False, default="incomplete")
    current_period_start = db.Column(db.DateTime)
    current_period_end = db.Column(db.DateTime)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    canceled_at = db.Column(db.DateTime)
    cancellation_reason = db.Column(db.Text)
    trial_start = db.Column(db.DateTime)
    trial_end = db.Column(db.DateTime)
    # created-timestamp of the newest provider event applied to this row
    last_event_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    user = db.relationship("User")
    plan = db.relationship("Plan")

    __table_args__ = (
        db.CheckConstraint(_in("status", SUBSCRIPTION_STATUSES), name="ck_subscription_status"),
        db.Index("ix_subscription_status", "status"),
    )

    def to_dict(self, *, include_plan: bool = True) -> dict:
        data = {
            "id": self.id,
            "status": self.status,
            "planId": self.plan_id,
            "stripeSubscriptionId": self.stripe_subscription_id,
            "currentPeriodStart": isoformat(self.current_period_start),
            "currentPeriodEnd": isoformat(self.current_period_end),
            "cancelAtPeriodEnd": bool(self.cancel_at_period_end),
            "canceledAt": isoformat(self.canceled_at),
            "cancellationReason": self.cancellation_reason,
            "trialStart": isoformat(self.trial_start),
            "trialEnd": isoformat(self.trial_end),
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }
        if include_plan and self.plan is not None:
            data["plan"] = self.plan.to_dict()
        return data


class Invoice(db.Model):
    """Provider invoice mirror, upserted by ``stripe_invoice_id``."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("user.id"), nullable=False, index=True)
    subscription_id = db.Column(db.String(36), db.ForeignKey("subscription.id"))
    stripe_invoice_id = db.Column(db.String(255), unique=True, nullable=False)
    stripe_charge_id = db.Column(db.String(255))
    amount = db.Column(db.Integer, nullable=False)  # minor currency units
    currency = db.Column(db.String(3), default="USD")
    status = db.Column(db.String(50), nullable=False)
    invoice_pdf = db.Column(db.String(500))
    hosted_invoice_url = db.Column(db.String(500))
    period_start = db.Column(db.DateTime)
    period_end = db.Column(db.DateTime)
    paid_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    subscription = db.relationship("Subscription")

    __table_args__ = (
        db.CheckConstraint("amount >= 0", name="ck_invoice_amount"),
        db.CheckConstraint(_in("status", INVOICE_STATUSES), name="ck_invoice_status"),
        db.Index("ix_invoice_created_at", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stripeInvoiceId": self.stripe_invoice_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "invoicePdf": self.invoice_pdf,
            "hostedInvoiceUrl": self.hosted_invoice_url,
            "periodStart": isoformat(self.period_start),
            "periodEnd": isoformat(self.period_end),
            "paidAt": isoformat(self.paid_at),
            "createdAt": isoformat(self.created_at),
        }


class Usage(db.Model):
    """Metered usage sample used by the dashboard."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("user.id"), nullable=False, index=True)
    subscription_id = db.Column(db.String(36), db.ForeignKey("subscription.id"))
    metric = db.Column(db.String(100), nullable=False)
    value = db.Column(db.Integer, nullable=False, default=0)
    recorded_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_usage_metric", "metric"),
        db.Index("ix_usage_recorded_at", "recorded_at"),
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class RefreshToken(db.Model):
    """Server-side record of an issued refresh token (hash only)."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("user.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(64), unique=True, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    revoked_at = db.Column(db.DateTime)
    replaced_by_id = db.Column(db.String(36), db.ForeignKey("refresh_token.id"))
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.Text)

    replaced_by = db.relationship("RefreshToken", remote_side=[id], uselist=False)


# ---------------------------------------------------------------------------
# Webhook idempotency ledger
# ---------------------------------------------------------------------------

class WebhookEvent(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    stripe_event_id = db.Column(db.String(255), unique=True, nullable=False)
    event_type = db.Column(db.String(100), nullable=False)
    payload = db.Column(db.Text, nullable=False)
    processed_at = db.Column(db.DateTime)
    error_message = db.Column(db.Text)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_webhook_event_type", "event_type"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stripeEventId": self.stripe_event_id,
            "eventType": self.event_type,
            "processedAt": isoformat(self.processed_at),
            "errorMessage": self.error_message,
            "retryCount": self.retry_count,
            "createdAt": isoformat(self.created_at),
        }


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("user.id"))
    action = db.Column(db.String(100), nullable=False)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.String(36))
    old_values = db.Column(db.JSON)
    new_values = db.Column(db.JSON)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )
