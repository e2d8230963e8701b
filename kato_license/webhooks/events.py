# kato_license/webhooks/events.py
"""
Lemon Squeezy webhook envelopes parsed into one typed variant per event.

Envelope shape::

    {"meta": {"event_name": ..., "custom_data": {...}},
     "data": {"type": ..., "id": ..., "attributes": {...}, "relationships": {...}}}

Each variant is a pydantic model whose ``event_type`` is pinned to the
events it represents, and whose resource field validates ``data`` with the
models from ``kato_license.commerce``. ``EVENT_PARSERS`` is keyed by every
member of ``EventType``; the import-time check below fails loudly if a new
event type is added without a parser.
"""
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from kato_license.commerce import LicenseKey, Order, Subscription, SubscriptionInvoice


class EventType(str, Enum):
    ORDER_CREATED = "order_created"
    LICENSE_KEY_CREATED = "license_key_created"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_PAYMENT_SUCCESS = "subscription_payment_success"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"


class OrderCreated(BaseModel):
    event_type: Literal[EventType.ORDER_CREATED]
    order: Order
    custom_data: dict = Field(default_factory=dict)


class LicenseKeyCreated(BaseModel):
    event_type: Literal[EventType.LICENSE_KEY_CREATED]
    license_key: LicenseKey
    custom_data: dict = Field(default_factory=dict)


class SubscriptionChanged(BaseModel):
    """subscription_created / _updated / _cancelled: the subscription is inline."""
    event_type: Literal[
        EventType.SUBSCRIPTION_CREATED,
        EventType.SUBSCRIPTION_UPDATED,
        EventType.SUBSCRIPTION_CANCELLED,
    ]
    subscription: Subscription
    custom_data: dict = Field(default_factory=dict)


class SubscriptionPayment(BaseModel):
    """Payment events carry an invoice; the subscription must be fetched."""
    event_type: Literal[EventType.SUBSCRIPTION_PAYMENT_SUCCESS, EventType.SUBSCRIPTION_PAYMENT_FAILED]
    invoice: Optional[SubscriptionInvoice] = None
    subscription: Optional[Subscription] = None
    custom_data: dict = Field(default_factory=dict)

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription is not None:
            return self.subscription.id
        return self.invoice.subscription_id if self.invoice else None


WebhookEvent = Union[OrderCreated, LicenseKeyCreated, SubscriptionChanged, SubscriptionPayment]


def _order_created(event_type, data, custom_data):
    return OrderCreated.model_validate({"event_type": event_type, "order": data, "custom_data": custom_data})


def _license_key_created(event_type, data, custom_data):
    return LicenseKeyCreated.model_validate(
        {"event_type": event_type, "license_key": data, "custom_data": custom_data}
    )


def _subscription_changed(event_type, data, custom_data):
    return SubscriptionChanged.model_validate(
        {"event_type": event_type, "subscription": data, "custom_data": custom_data}
    )


def _subscription_payment(event_type, data, custom_data):
    # Older payloads deliver the subscription itself instead of an invoice
    resource = "subscription" if data.get("type") == "subscriptions" else "invoice"
    return SubscriptionPayment.model_validate(
        {"event_type": event_type, resource: data, "custom_data": custom_data}
    )


EVENT_PARSERS = {
    EventType.ORDER_CREATED: _order_created,
    EventType.LICENSE_KEY_CREATED: _license_key_created,
    EventType.SUBSCRIPTION_CREATED: _subscription_changed,
    EventType.SUBSCRIPTION_UPDATED: _subscription_changed,
    EventType.SUBSCRIPTION_CANCELLED: _subscription_changed,
    EventType.SUBSCRIPTION_PAYMENT_SUCCESS: _subscription_payment,
    EventType.SUBSCRIPTION_PAYMENT_FAILED: _subscription_payment,
}

_missing = set(EventType) - set(EVENT_PARSERS)
if _missing:
    raise RuntimeError(f"No webhook parser for: {sorted(e.value for e in _missing)}")


def parse_event(envelope: dict) -> Optional[WebhookEvent]:
    """
    Parse a decoded envelope. Returns None for event names this service
    ignores; a payload that does not fit its variant raises
    ``pydantic.ValidationError``.
    """
    meta = envelope.get("meta") or {}
    try:
        event_type = EventType(meta.get("event_name"))
    except ValueError:
        return None
    custom_data = meta.get("custom_data") if isinstance(meta.get("custom_data"), dict) else {}
    data = envelope.get("data")
    return EVENT_PARSERS[event_type](event_type, data if isinstance(data, dict) else {}, custom_data)
