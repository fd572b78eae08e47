"""Subscription sync engine.

Keeps the local Subscription and Invoice tables consistent with the payment
provider.  Two kinds of writes land here:

* local actions (checkout, cancel, resume) that call the provider first and
  then mirror the result optimistically;
* provider webhook events, which are authoritative and may arrive late,
  out of order or more than once.

Webhook idempotency rests on the unique ``WebhookEvent.stripe_event_id``
column: the ledger row, the business writes and ``processed_at`` are
committed in one transaction, so an event's effects are either fully applied
and marked or not applied at all.

Ordering: every subscription row remembers the ``created`` timestamp of the
newest provider event applied to it (``last_event_at``).  Subscription
events older than that are acknowledged without touching the row.  Local
optimistic writes never move ``last_event_at``, so the next webhook always
overrides them.
"""

from __future__ import annotations

import datetime
import logging
from typing import Callable, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config_models import Settings
from errors import (
    BadRequest,
    NotCanceled,
    PlanNotFound,
    ProviderError,
    SubscriptionNotFound,
    UserNotFound,
    WebhookProcessingError,
    WebhookSignatureError,
)
from extensions import db
from models import INVOICE_STATUSES, Invoice, Plan, Subscription, User, WebhookEvent
from services.audit import log_action
from services.events import EventKind, MalformedEvent, ProviderEvent
from services.stripe_billing import BillingProvider, CheckoutSession
from utils import as_utc, from_unix, new_id, safe_int, utc_now

logger = logging.getLogger(__name__)


def _ref(value) -> Optional[str]:
    """Provider references arrive either as an id or as an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(obj: dict) -> dict:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items and isinstance(items[0], dict) else {}


def _period(obj: dict, key: str) -> Optional[datetime.datetime]:
    # Newer provider API versions carry billing periods on the subscription item.
    return from_unix(obj.get(key)) or from_unix(_first_item(obj).get(key))


class SubscriptionSyncEngine:
    def __init__(
        self,
        provider: BillingProvider,
        settings: Settings,
        clock: Callable[[], datetime.datetime] = utc_now,
    ):
        self.provider = provider
        self.client_url = settings.app.client_url
        self.enable_trials = settings.app.enable_trial_periods
        self.clock = clock
        self._handlers = {
            EventKind.CHECKOUT_COMPLETED: self.apply_checkout_completed,
            EventKind.SUBSCRIPTION_CREATED: self.apply_subscription_upsert,
            EventKind.SUBSCRIPTION_UPDATED: self.apply_subscription_upsert,
            EventKind.SUBSCRIPTION_DELETED: self.apply_subscription_deleted,
            EventKind.INVOICE_PAYMENT_SUCCEEDED: self.apply_invoice_payment_succeeded,
            EventKind.INVOICE_PAYMENT_FAILED: self.apply_invoice_payment_failed,
            EventKind.INVOICE_FINALIZED: self.apply_invoice_finalized,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def current_subscription(user_id: str) -> Optional[Subscription]:
        """Most recently created subscription of a user, or None."""
        return (
            Subscription.query.filter_by(user_id=user_id)
            .order_by(Subscription.created_at.desc())
            .first()
        )

    @staticmethod
    def _billable_subscription(user_id: str) -> Optional[Subscription]:
        return (
            Subscription.query.filter(
                Subscription.user_id == user_id,
                Subscription.stripe_subscription_id.isnot(None),
            )
            .order_by(Subscription.created_at.desc())
            .first()
        )

    @staticmethod
    def list_invoices(user_id: str, limit: Optional[int] = None) -> list[Invoice]:
        query = Invoice.query.filter_by(user_id=user_id).order_by(Invoice.created_at.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    # ------------------------------------------------------------------
    # Local actions
    # ------------------------------------------------------------------

    def ensure_customer(self, user: User) -> str:
        """Return the user's provider customer id, creating it at most once."""
        locked = User.query.filter_by(id=user.id).with_for_update().first()
        if locked is None or locked.is_deleted:
            db.session.rollback()
            raise UserNotFound()
        if locked.stripe_customer_id:
            return locked.stripe_customer_id
        try:
            customer_id = self.provider.create_customer(
                locked.email,
                f"{locked.first_name} {locked.last_name}",
                {"userId": locked.id},
                idempotency_key=f"customer-{locked.id}",
            )
        except ProviderError:
            db.session.rollback()
            raise
        locked.stripe_customer_id = customer_id
        db.session.commit()
        return customer_id

    def initiate_checkout(
        self, user: User, plan_id: str, success_url: str, cancel_url: str
    ) -> CheckoutSession:
        plan = Plan.query.filter_by(id=plan_id, is_active=True).first()
        if plan is None:
            raise PlanNotFound()
        customer_id = self.ensure_customer(user)
        session = self.provider.create_checkout_session(
            customer_id,
            plan.stripe_price_id,
            success_url,
            cancel_url,
            metadata={"userId": user.id, "planId": plan.id},
            trial_days=plan.trial_days if self.enable_trials else 0,
        )
        log_action(
            "subscription.checkout",
            "plan",
            plan.id,
            user_id=user.id,
            new_values={"sessionId": session.id},
        )
        db.session.commit()
        logger.info("Checkout session %s created for user %s, plan %s", session.id, user.id, plan.id)
        return session

    def create_portal_session(self, user: User, return_url: Optional[str] = None) -> str:
        if not user.stripe_customer_id:
            raise BadRequest("No billing information found", code="NO_CUSTOMER")
        return self.provider.create_portal_session(
            user.stripe_customer_id, return_url or f"{self.client_url}/dashboard/billing"
        )

    def cancel_subscription(
        self, user: User, immediate: bool = False, reason: Optional[str] = None
    ) -> Subscription:
        """Cancel at the provider, then mirror the result optimistically."""
        subscription = self._billable_subscription(user.id)
        if subscription is None:
            raise SubscriptionNotFound()
        remote = self.provider.cancel_subscription(
            subscription.stripe_subscription_id, at_period_end=not immediate
        )
        old_values = {
            "status": subscription.status,
            "cancelAtPeriodEnd": bool(subscription.cancel_at_period_end),
        }
        if immediate:
            subscription.status = remote.status or "canceled"
            subscription.canceled_at = remote.canceled_at or self.clock()
            subscription.cancel_at_period_end = False
        else:
            subscription.cancel_at_period_end = True
        subscription.cancellation_reason = reason
        log_action(
            "subscription.cancel",
            "subscription",
            subscription.id,
            user_id=user.id,
            old_values=old_values,
            new_values={
                "status": subscription.status,
                "cancelAtPeriodEnd": subscription.cancel_at_period_end,
                "immediate": immediate,
                "reason": reason,
            },
        )
        db.session.commit()
        logger.info("Subscription %s cancelled (immediate=%s) by user %s", subscription.id, immediate, user.id)
        return subscription

    def resume_subscription(self, user: User) -> Subscription:
        subscription = self._billable_subscription(user.id)
        if subscription is None:
            raise SubscriptionNotFound()
        if not subscription.cancel_at_period_end:
            raise NotCanceled()
        self.provider.resume_subscription(subscription.stripe_subscription_id)
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        subscription.cancellation_reason = None
        log_action(
            "subscription.resume",
            "subscription",
            subscription.id,
            user_id=user.id,
            old_values={"cancelAtPeriodEnd": True},
            new_values={"cancelAtPeriodEnd": False},
        )
        db.session.commit()
        logger.info("Subscription %s resumed by user %s", subscription.id, user.id)
        return subscription

    # ------------------------------------------------------------------
    # Webhook ingestion
    # ------------------------------------------------------------------

    def process_webhook(self, payload: bytes, sig_header: Optional[str]) -> dict:
        """Verify, record and apply one provider event.

        Raises WebhookSignatureError before anything is written, and
        WebhookProcessingError (after recording the failure on the ledger
        row) when applying a verified event fails.
        """
        if not sig_header:
            raise WebhookSignatureError("Missing stripe-signature header")
        raw_event = self.provider.construct_event(payload, sig_header)
        try:
            event = ProviderEvent.from_payload(raw_event)
        except MalformedEvent as e:
            logger.warning("Rejecting malformed webhook payload: %s", e)
            raise BadRequest("Malformed event payload", code="INVALID_PAYLOAD") from e

        logger.info("Webhook event received: %s (%s)", event.id, event.type)
        payload_text = payload.decode("utf-8")
        try:
            ledger = self._claim(event, payload_text)
            if ledger is None:
                db.session.rollback()
                return {"received": True, "duplicate": True}
            self.apply_event(event)
            ledger.processed_at = self.clock()
            ledger.error_message = None
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            logger.exception("Webhook processing failed for event %s (%s)", event.id, event.type)
            self._record_failure(event, payload_text, exc)
            raise WebhookProcessingError() from exc
        return {"received": True, "duplicate": False}

    def apply_event(self, event: ProviderEvent) -> None:
        """Dispatch *event* to its handler.  Does NOT commit."""
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.info("Unhandled webhook event type: %s (%s)", event.type, event.id)
            return
        handler(event)

    def _claim(self, event: ProviderEvent, payload_text: str) -> Optional[WebhookEvent]:
        """Insert the ledger row, or return the existing one if it still needs work.

        Returns None when the event was already processed.
        """
        ledger = WebhookEvent(
            id=new_id(),
            stripe_event_id=event.id,
            event_type=event.type,
            payload=payload_text,
            created_at=self.clock(),
        )
        db.session.add(ledger)
        try:
            db.session.flush()
            return ledger
        except IntegrityError:
            db.session.rollback()

        existing = (
            WebhookEvent.query.filter_by(stripe_event_id=event.id).with_for_update().first()
        )
        if existing is None:
            raise RuntimeError(f"Ledger row for {event.id} vanished after conflict")
        if existing.processed_at is not None:
            logger.info("Duplicate webhook event received: %s", event.id)
            return None
        logger.info(
            "Reprocessing webhook event %s after %s failed attempt(s)",
            event.id,
            existing.retry_count,
        )
        return existing

    def _record_failure(self, event: ProviderEvent, payload_text: str, exc: Exception) -> None:
        try:
            ledger = WebhookEvent.query.filter_by(stripe_event_id=event.id).first()
            if ledger is None:
                ledger = WebhookEvent(
                    id=new_id(),
                    stripe_event_id=event.id,
                    event_type=event.type,
                    payload=payload_text,
                    retry_count=0,
                    created_at=self.clock(),
                )
                db.session.add(ledger)
            ledger.error_message = (str(exc) or exc.__class__.__name__)[:2000]
            ledger.retry_count = (ledger.retry_count or 0) + 1
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not record failure of webhook event %s", event.id)

    # ------------------------------------------------------------------
    # Event handlers (no commits; process_webhook owns the transaction)
    # ------------------------------------------------------------------

    @staticmethod
    def _is_stale(subscription: Subscription, event: ProviderEvent) -> bool:
        applied = as_utc(subscription.last_event_at)
        return bool(event.created and applied and event.created < applied)

    @staticmethod
    def _mark_applied(subscription: Subscription, event: ProviderEvent) -> None:
        if event.created:
            subscription.last_event_at = event.created

    def apply_checkout_completed(self, event: ProviderEvent) -> None:
        session = event.obj
        if session.get("mode") != "subscription":
            logger.info("Ignoring %s checkout session %s", session.get("mode"), session.get("id"))
            return
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        plan_id = metadata.get("planId")
        if not user_id or not plan_id:
            raise MalformedEvent(f"Missing metadata in checkout session {session.get('id')}")

        user = db.session.get(User, user_id)
        plan = db.session.get(Plan, plan_id)
        if user is None or plan is None:
            logger.warning(
                "Checkout session %s references unknown user %s or plan %s",
                session.get("id"),
                user_id,
                plan_id,
            )
            return

        remote = session.get("subscription")
        remote_obj = remote if isinstance(remote, dict) else {}
        stripe_subscription_id = _ref(remote)
        details = session.get("subscription_details") or {}
        customer_id = _ref(session.get("customer")) or user.stripe_customer_id
        if customer_id and not user.stripe_customer_id:
            user.stripe_customer_id = customer_id

        subscription = None
        if stripe_subscription_id:
            subscription = Subscription.query.filter_by(
                stripe_subscription_id=stripe_subscription_id
            ).first()
        if subscription is None:
            subscription = self.current_subscription(user.id)

        if subscription is None:
            subscription = Subscription(
                id=new_id(),
                user_id=user.id,
                plan_id=plan.id,
                stripe_customer_id=customer_id,
                created_at=self.clock(),
            )
            db.session.add(subscription)
        elif self._is_stale(subscription, event):
            if not subscription.stripe_subscription_id:
                subscription.stripe_subscription_id = stripe_subscription_id
            logger.info(
                "Checkout event %s older than subscription %s state; linked only",
                event.id,
                subscription.id,
            )
            return
        elif (
            not remote_obj
            and subscription.last_event_at is not None
            and subscription.stripe_subscription_id == stripe_subscription_id
        ):
            # A subscription event already carried the authoritative state.
            subscription.stripe_customer_id = customer_id
            logger.info(
                "Checkout event %s for subscription %s already synced; linked only",
                event.id,
                subscription.id,
            )
            return

        if subscription.stripe_subscription_id != stripe_subscription_id:
            subscription.last_event_at = None

        now = self.clock()
        source = remote_obj or details
        subscription.plan_id = plan.id
        subscription.stripe_customer_id = customer_id
        subscription.stripe_subscription_id = stripe_subscription_id
        subscription.status = remote_obj.get("status") or "active"
        subscription.current_period_start = _period(source, "current_period_start") or now
        subscription.current_period_end = _period(source, "current_period_end") or now
        subscription.trial_start = from_unix(source.get("trial_start"))
        subscription.trial_end = from_unix(source.get("trial_end"))
        subscription.cancel_at_period_end = bool(remote_obj.get("cancel_at_period_end"))
        subscription.canceled_at = from_unix(remote_obj.get("canceled_at"))
        # Only an expanded subscription is a real snapshot; a bare id leaves
        # the ordering mark to the customer.subscription.* events.
        if remote_obj:
            self._mark_applied(subscription, event)
        logger.info("Checkout completed: user %s subscribed to plan %s", user.id, plan.id)

    def apply_subscription_upsert(self, event: ProviderEvent) -> None:
        obj = event.obj
        subscription = Subscription.query.filter_by(stripe_subscription_id=obj.get("id")).first()
        if subscription is None:
            logger.warning("Subscription %s not found locally; event %s dropped", obj.get("id"), event.id)
            return
        if self._is_stale(subscription, event):
            logger.info("Skipping stale event %s for subscription %s", event.id, subscription.id)
            return

        subscription.status = obj.get("status") or subscription.status
        subscription.current_period_start = (
            _period(obj, "current_period_start") or subscription.current_period_start
        )
        subscription.current_period_end = (
            _period(obj, "current_period_end") or subscription.current_period_end
        )
        subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
        canceled_at = from_unix(obj.get("canceled_at"))
        if canceled_at:
            subscription.canceled_at = canceled_at
        subscription.trial_start = from_unix(obj.get("trial_start"))
        subscription.trial_end = from_unix(obj.get("trial_end"))

        price_id = _ref(_first_item(obj).get("price"))
        if price_id:
            plan = Plan.query.filter_by(stripe_price_id=price_id).first()
            if plan is not None and plan.id != subscription.plan_id:
                logger.info("Subscription %s moved to plan %s", subscription.id, plan.id)
                subscription.plan_id = plan.id
        self._mark_applied(subscription, event)
        logger.info("Subscription %s updated: status=%s", subscription.id, subscription.status)

    def apply_subscription_deleted(self, event: ProviderEvent) -> None:
        obj = event.obj
        subscription = Subscription.query.filter_by(stripe_subscription_id=obj.get("id")).first()
        if subscription is None:
            logger.warning("Subscription %s not found locally; event %s dropped", obj.get("id"), event.id)
            return
        if self._is_stale(subscription, event):
            logger.info("Skipping stale event %s for subscription %s", event.id, subscription.id)
            return
        if subscription.status != "canceled" or subscription.canceled_at is None:
            subscription.status = "canceled"
            subscription.canceled_at = self.clock()
        subscription.cancel_at_period_end = False
        self._mark_applied(subscription, event)
        logger.info("Subscription %s deleted at provider", subscription.id)

    def _upsert_invoice(
        self,
        event: ProviderEvent,
        status: Optional[str] = None,
        mark_paid: bool = False,
        insert_only: bool = False,
    ) -> Optional[Invoice]:
        obj = event.obj
        customer_id = _ref(obj.get("customer"))
        if not customer_id:
            logger.info("Invoice %s has no customer; event %s ignored", obj.get("id"), event.id)
            return None
        user = User.query.filter_by(stripe_customer_id=customer_id).first()
        if user is None:
            logger.warning(
                "No user for customer %s; invoice %s from event %s dropped",
                customer_id,
                obj.get("id"),
                event.id,
            )
            return None

        subscription_ref = _ref(obj.get("subscription")) or (
            ((obj.get("parent") or {}).get("subscription_details") or {}).get("subscription")
        )
        subscription = None
        if subscription_ref:
            subscription = Subscription.query.filter_by(
                stripe_subscription_id=subscription_ref
            ).first()

        invoice = Invoice.query.filter_by(stripe_invoice_id=obj.get("id")).first()
        if invoice is None:
            invoice = Invoice(
                id=new_id(),
                user_id=user.id,
                stripe_invoice_id=obj["id"],
                amount=max(0, safe_int(obj.get("amount_due", obj.get("total")))),
                currency=(obj.get("currency") or "usd").upper(),
                period_start=from_unix(obj.get("period_start")),
                period_end=from_unix(obj.get("period_end")),
                created_at=from_unix(obj.get("created")) or self.clock(),
            )
            db.session.add(invoice)
        elif insert_only:
            logger.info("Invoice %s already recorded; event %s ignored", invoice.stripe_invoice_id, event.id)
            return invoice

        remote_status = obj.get("status")
        new_status = status or (remote_status if remote_status in INVOICE_STATUSES else "open")
        if invoice.status == "paid" and new_status == "open":
            # a late payment_failed must not reopen a paid invoice
            logger.info("Invoice %s already paid; event %s keeps status", invoice.stripe_invoice_id, event.id)
        else:
            invoice.status = new_status
        if subscription is not None:
            invoice.subscription_id = subscription.id
        invoice.stripe_charge_id = _ref(obj.get("charge")) or invoice.stripe_charge_id
        invoice.invoice_pdf = obj.get("invoice_pdf") or invoice.invoice_pdf
        invoice.hosted_invoice_url = obj.get("hosted_invoice_url") or invoice.hosted_invoice_url
        if mark_paid:
            paid_at = from_unix((obj.get("status_transitions") or {}).get("paid_at"))
            invoice.paid_at = paid_at or invoice.paid_at or self.clock()
        return invoice

    def apply_invoice_payment_succeeded(self, event: ProviderEvent) -> None:
        invoice = self._upsert_invoice(event, status="paid", mark_paid=True)
        if invoice is not None:
            logger.info("Invoice %s paid", invoice.stripe_invoice_id)

    def apply_invoice_payment_failed(self, event: ProviderEvent) -> None:
        invoice = self._upsert_invoice(event, status="open")
        if invoice is not None:
            logger.warning("Invoice %s payment failed for user %s", invoice.stripe_invoice_id, invoice.user_id)

    def apply_invoice_finalized(self, event: ProviderEvent) -> None:
        self._upsert_invoice(event, insert_only=True)


def get_sync_engine() -> SubscriptionSyncEngine:
    return current_app.extensions["sync_engine"]
