# kato_license/commerce.py
# Read-only Lemon Squeezy REST client (JSON:API) and the resources it returns.
import logging
from datetime import datetime
from typing import Annotated, List, Literal, Optional

import requests
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic import ValidationError as SchemaError

from kato_license.errors import UpstreamError

logger = logging.getLogger("kato_license")

JSONAPI_HEADERS = {
    "Accept": "application/vnd.api+json",
    "Content-Type": "application/vnd.api+json",
}

# provider ids arrive as ints or strings; "" means absent
ResourceId = Annotated[Optional[str], BeforeValidator(lambda v: None if v == "" else v)]
Name = Annotated[str, BeforeValidator(lambda v: v or "")]


def _related_ids(relationships: dict, name: str) -> list:
    refs = (relationships.get(name) or {}).get("data") or []
    return [ref.get("id") for ref in refs if isinstance(ref, dict)]


class LemonSqueezyResource(BaseModel):
    """
    Validating a JSON:API resource ``{"type", "id", "attributes", ...}``
    flattens its attributes onto the model. Keyword construction takes the
    flat fields directly.
    """
    model_config = ConfigDict(coerce_numbers_to_str=True, extra="ignore")

    id: str

    @model_validator(mode="before")
    @classmethod
    def _unwrap_resource(cls, value):
        if isinstance(value, dict) and isinstance(value.get("attributes"), dict):
            return cls._flatten(value)
        return value

    @classmethod
    def _flatten(cls, resource: dict) -> dict:
        flat = dict(resource["attributes"], id=resource.get("id"))
        if resource.get("type"):
            flat["type"] = resource["type"]
        return flat


class OrderItem(LemonSqueezyResource):
    type: Literal["order-items"] = "order-items"
    # the inline first_order_item on an order may come without an id
    id: Optional[str] = None
    order_id: ResourceId = None
    variant_id: ResourceId = None
    product_name: Name = ""
    variant_name: Name = ""
    custom_data: dict = Field(default_factory=dict)

    @classmethod
    def _flatten(cls, resource: dict) -> dict:
        flat = super()._flatten(resource)
        attrs = resource["attributes"]
        # per-item data the storefront may attach (product options / checkout custom data)
        custom = {}
        for name in ("product_options", "custom_data"):
            if isinstance(attrs.get(name), dict):
                custom.update(attrs[name])
        flat["custom_data"] = custom
        return flat


class LicenseKey(LemonSqueezyResource):
    type: Literal["license-keys"] = "license-keys"
    key: Optional[str] = None
    order_id: ResourceId = None
    order_item_id: ResourceId = None
    user_email: Optional[str] = None
    created_at: Optional[datetime] = None


class Order(LemonSqueezyResource):
    type: Literal["orders"] = "orders"
    identifier: ResourceId = None
    user_email: Optional[str] = None
    created_at: Optional[datetime] = None
    first_order_item: Optional[OrderItem] = None
    order_item_ids: List[str] = Field(default_factory=list)
    license_keys: List[str] = Field(default_factory=list)
    license_key_ids: List[str] = Field(default_factory=list)

    @classmethod
    def _flatten(cls, resource: dict) -> dict:
        flat = super()._flatten(resource)
        relationships = resource.get("relationships") or {}
        flat["order_item_ids"] = _related_ids(relationships, "order-items")
        flat["license_key_ids"] = _related_ids(relationships, "license-keys")
        first = flat.get("first_order_item")
        if isinstance(first, dict):
            flat["first_order_item"] = {"id": first.get("id"), "attributes": first}
        return flat

    @classmethod
    def from_document(cls, document: dict) -> "Order":
        """Build an order from a JSON:API document, reading any `included` resources."""
        order = cls.model_validate(document.get("data") or {})
        for inc in document.get("included") or []:
            kind = inc.get("type") if isinstance(inc, dict) else None
            if kind == "license-keys":
                key = LicenseKey.model_validate(inc).key
                if key:
                    order.license_keys.append(key)
            elif kind == "order-items" and order.first_order_item is None:
                order.first_order_item = OrderItem.model_validate(inc)
        return order


class Subscription(LemonSqueezyResource):
    type: Literal["subscriptions"] = "subscriptions"
    order_id: ResourceId = None
    order_item_id: ResourceId = None
    variant_id: ResourceId = None
    product_name: Name = ""
    variant_name: Name = ""
    user_email: Optional[str] = None
    status: Optional[str] = None
    renews_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    portal_url: Optional[str] = None

    @classmethod
    def _flatten(cls, resource: dict) -> dict:
        flat = super()._flatten(resource)
        flat["portal_url"] = (resource["attributes"].get("urls") or {}).get("customer_portal")
        return flat


class SubscriptionInvoice(LemonSqueezyResource):
    type: Literal["subscription-invoices"] = "subscription-invoices"
    subscription_id: ResourceId = None
    status: Optional[str] = None


class LemonSqueezyClient:
    """
    Every call takes an optional ``api_key`` so a webhook verified with the
    test signing secret can read the provider with the test credential.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 8, session=None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.http = session or requests.Session()

    def _get(self, path: str, api_key: Optional[str] = None, params: Optional[dict] = None) -> dict:
        key = api_key or self.api_key
        if not key:
            raise UpstreamError("Lemon Squeezy API key not configured")

        headers = dict(JSONAPI_HEADERS, Authorization=f"Bearer {key}")
        try:
            r = self.http.get(f"{self.base_url}{path}", headers=headers, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamError(f"Lemon Squeezy request failed: {e}") from e
        if r.status_code != 200:
            raise UpstreamError(f"Lemon Squeezy API error: {r.status_code} {r.reason}")
        try:
            document = r.json()
        except ValueError as e:
            raise UpstreamError(f"Lemon Squeezy returned invalid JSON for {path}") from e
        if not isinstance(document, dict) or not isinstance(document.get("data"), dict):
            raise UpstreamError(f"Lemon Squeezy returned no resource for {path}")
        return document

    @staticmethod
    def _parse(parser, payload, path: str):
        try:
            return parser(payload)
        except SchemaError as e:
            raise UpstreamError(f"Unexpected Lemon Squeezy payload for {path}: {e.error_count()} error(s)") from e

    def fetch_order(self, order_id: str, api_key: Optional[str] = None) -> Order:
        path = f"/orders/{order_id}"
        document = self._get(path, api_key, params={"include": "order-items,license-keys"})
        return self._parse(Order.from_document, document, path)

    def fetch_order_item(self, item_id: str, api_key: Optional[str] = None) -> OrderItem:
        path = f"/order-items/{item_id}"
        return self._parse(OrderItem.model_validate, self._get(path, api_key)["data"], path)

    def fetch_subscription(self, subscription_id: str, api_key: Optional[str] = None) -> Subscription:
        path = f"/subscriptions/{subscription_id}"
        return self._parse(Subscription.model_validate, self._get(path, api_key)["data"], path)

    def fetch_license_key_resource(self, license_key_id: str, api_key: Optional[str] = None) -> dict:
        path = f"/license-keys/{license_key_id}"
        resource = self._parse(LicenseKey.model_validate, self._get(path, api_key)["data"], path)
        return {"key": resource.key}

    def resolve_license_key_for_order(self, order_id: str, api_key: Optional[str] = None) -> Optional[str]:
        order = self.fetch_order(order_id, api_key)
        if order.license_keys:
            return order.license_keys[0]
        if order.license_key_ids:
            return self.fetch_license_key_resource(order.license_key_ids[0], api_key)["key"]
        return None
