"""Typed view over verified payment-provider webhook events."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from utils import from_unix


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_FINALIZED = "invoice.finalized"
    # Anything else the provider sends; logged and acknowledged.
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


class MalformedEvent(ValueError):
    """Verified payload that lacks the fields every event carries."""


@dataclass
class ProviderEvent:
    id: str
    type: str
    kind: EventKind
    created: Optional[datetime.datetime]
    obj: dict = field(default_factory=dict)
    payload: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "ProviderEvent":
        if not isinstance(payload, dict):
            raise MalformedEvent("Event payload is not an object")
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise MalformedEvent("Event is missing id or type")
        data = payload.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        return cls(
            id=str(event_id),
            type=str(event_type),
            kind=EventKind.from_type(str(event_type)),
            created=from_unix(payload.get("created")),
            obj=obj if isinstance(obj, dict) else {},
            payload=payload,
        )
