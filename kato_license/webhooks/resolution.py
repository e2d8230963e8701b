# kato_license/webhooks/resolution.py
"""
License-key resolution and plan derivation for webhook events.

Each strategy is a pure function of a ``ResolutionContext`` (whatever the
pipeline managed to gather from the payload and the commerce API) returning
a key or None. ``resolve_license_key`` tries them in priority order and
reports which one produced the key.
"""
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from kato_license.commerce import Order, OrderItem


@dataclass
class ResolutionContext:
    order_id: Optional[str] = None
    payload_key: Optional[str] = None
    custom_data: dict = field(default_factory=dict)
    order: Optional[Order] = None
    order_item: Optional[OrderItem] = None
    related_keys: List[str] = field(default_factory=list)


@dataclass
class Resolution:
    license_key: str
    strategy: str


def from_event_payload(ctx: ResolutionContext) -> Optional[str]:
    return ctx.payload_key or ctx.custom_data.get("license_key")


def from_order_item_custom_data(ctx: ResolutionContext) -> Optional[str]:
    if ctx.order_item is None:
        return None
    return ctx.order_item.custom_data.get("license_key")


def from_order_license_keys(ctx: ResolutionContext) -> Optional[str]:
    return ctx.related_keys[0] if ctx.related_keys else None


def from_order_identifier(ctx: ResolutionContext) -> Optional[str]:
    # last resort: the order's identifier as a pseudo-key, never the sequential order id
    if ctx.order is None:
        return None
    return ctx.order.identifier


STRATEGIES: List[Tuple[str, Callable[[ResolutionContext], Optional[str]]]] = [
    ("event_payload", from_event_payload),
    ("order_item_custom_data", from_order_item_custom_data),
    ("order_license_keys", from_order_license_keys),
    ("order_identifier", from_order_identifier),
]


def resolve_license_key(ctx: ResolutionContext, strategies=None) -> Optional[Resolution]:
    for name, strategy in strategies or STRATEGIES:
        key = strategy(ctx)
        if key:
            return Resolution(str(key), name)
    return None


def derive_plan(product_name: Optional[str], variant_name: Optional[str]) -> Tuple[str, str]:
    """(tier, billing_cycle) from case-insensitive substrings of the product/variant names."""
    text = f"{product_name or ''} {variant_name or ''}".lower()
    if "agency" in text:
        tier = "agency"
    elif "enterprise" in text or "unlimited" in text:
        tier = "enterprise"
    else:
        tier = "freelancer"
    billing_cycle = "annual" if "annual" in text else "monthly"
    return tier, billing_cycle
