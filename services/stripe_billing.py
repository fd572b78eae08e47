"""Payment provider interface and its Stripe implementation.

The sync engine only talks to a :class:`BillingProvider`; the application
factory builds a :class:`StripeProvider` from configuration unless a
provider is injected (tests pass a fake).
"""

from __future__ import annotations

import datetime
import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import stripe

from config_models import StripeConfig
from errors import ProviderError, WebhookSignatureError
from utils import from_unix

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSession:
    id: str
    url: str


@dataclass
class RemoteSubscription:
    """Subset of a provider subscription returned by cancel/resume calls."""
    id: str
    status: str
    cancel_at_period_end: bool
    canceled_at: Optional[datetime.datetime] = None


class BillingProvider(Protocol):
    """Calls the sync engine makes against the payment provider.

    Every method raises :class:`errors.ProviderError` when the provider
    rejects the call or cannot be reached within the configured timeout.
    """

    def create_customer(
        self, email: str, name: str, metadata: dict, idempotency_key: Optional[str] = None
    ) -> str:
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict,
        trial_days: Optional[int] = None,
    ) -> CheckoutSession:
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        ...

    def cancel_subscription(self, subscription_id: str, at_period_end: bool) -> RemoteSubscription:
        ...

    def resume_subscription(self, subscription_id: str) -> RemoteSubscription:
        ...

    def construct_event(self, payload: bytes, sig_header: str) -> dict:
        """Verify the signature over the raw body and return the decoded event."""
        ...


def _remote_subscription(obj) -> RemoteSubscription:
    return RemoteSubscription(
        id=obj["id"],
        status=obj["status"],
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        canceled_at=from_unix(obj.get("canceled_at")),
    )


class StripeProvider:
    """Stripe implementation of :class:`BillingProvider`."""

    def __init__(self, config: StripeConfig):
        self.webhook_secret = config.webhook_secret
        self.tolerance = config.webhook_tolerance
        # No automatic retries: a timed-out call is reported, never replayed behind our back.
        self.client = stripe.StripeClient(
            config.secret_key,
            http_client=stripe.RequestsClient(timeout=config.timeout_seconds),
            max_network_retries=0,
        )

    def create_customer(
        self, email: str, name: str, metadata: dict, idempotency_key: Optional[str] = None
    ) -> str:
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            customer = self.client.v1.customers.create(
                params={"email": email, "name": name, "metadata": metadata},
                options=options,
            )
        except stripe.StripeError as e:
            logger.exception("Failed to create Stripe customer for %s", metadata)
            raise ProviderError() from e
        logger.info("Stripe customer created: %s", customer.id)
        return customer.id

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict,
        trial_days: Optional[int] = None,
    ) -> CheckoutSession:
        subscription_data: dict = {"metadata": metadata}
        if trial_days and trial_days > 0:
            subscription_data["trial_period_days"] = trial_days
        params = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": "subscription",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": subscription_data,
            "allow_promotion_codes": True,
            "billing_address_collection": "required",
        }
        try:
            session = self.client.v1.checkout.sessions.create(params=params)
        except stripe.StripeError as e:
            logger.exception("Failed to create checkout session for customer %s", customer_id)
            raise ProviderError() from e
        logger.info("Checkout session created: %s", session.id)
        return CheckoutSession(id=session.id, url=session.url)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        try:
            session = self.client.v1.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            )
        except stripe.StripeError as e:
            logger.exception("Failed to create billing portal session for %s", customer_id)
            raise ProviderError() from e
        logger.info("Billing portal session created: %s", session.id)
        return session.url

    def cancel_subscription(self, subscription_id: str, at_period_end: bool) -> RemoteSubscription:
        try:
            if at_period_end:
                obj = self.client.v1.subscriptions.update(
                    subscription_id, params={"cancel_at_period_end": True}
                )
            else:
                obj = self.client.v1.subscriptions.cancel(subscription_id)
        except stripe.StripeError as e:
            logger.exception("Failed to cancel subscription %s", subscription_id)
            raise ProviderError() from e
        logger.info(
            "Subscription %s cancelled (at_period_end=%s, status=%s)",
            subscription_id,
            at_period_end,
            obj["status"],
        )
        return _remote_subscription(obj)

    def resume_subscription(self, subscription_id: str) -> RemoteSubscription:
        try:
            obj = self.client.v1.subscriptions.update(
                subscription_id, params={"cancel_at_period_end": False}
            )
        except stripe.StripeError as e:
            logger.exception("Failed to resume subscription %s", subscription_id)
            raise ProviderError() from e
        logger.info("Subscription %s resumed", subscription_id)
        return _remote_subscription(obj)

    def construct_event(self, payload: bytes, sig_header: str) -> dict:
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured; rejecting webhook")
            raise WebhookSignatureError()
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text, sig_header, self.webhook_secret, tolerance=self.tolerance
            )
            return json.loads(text)
        except (stripe.SignatureVerificationError, UnicodeDecodeError, ValueError) as e:
            logger.warning("Stripe webhook verification failed: %s", e)
            raise WebhookSignatureError() from e
