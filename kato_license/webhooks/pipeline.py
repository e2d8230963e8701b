# kato_license/webhooks/pipeline.py
"""
Webhook ingestion: authenticate -> parse -> resolve license -> apply -> audit.

Signature verification runs over the raw request bytes before any JSON
decoding. Once the signature is accepted the event is always acknowledged:
handler failures are logged and recorded in the audit trail, never surfaced
to the provider.
"""
import json
import logging
from dataclasses import dataclass
from typing import Optional

from kato_license.commerce import LemonSqueezyClient, Order, OrderItem
from kato_license.config import Settings
from kato_license.errors import AuthError, PersistenceError, UpstreamError, ValidationError
from kato_license.repository import LicenseRepository
from kato_license.utils.crypto import match_signing_secret
from kato_license.utils.policy import calculate_expiry, parse_timestamp, utcnow
from kato_license.webhooks.events import (
    EventType,
    LicenseKeyCreated,
    OrderCreated,
    SubscriptionChanged,
    SubscriptionPayment,
    parse_event,
)
from kato_license.webhooks.resolution import (
    Resolution,
    ResolutionContext,
    derive_plan,
    resolve_license_key,
)

logger = logging.getLogger("kato_license")


@dataclass
class WebhookOutcome:
    event_name: str
    mode: str
    license_key: Optional[str] = None
    strategy: Optional[str] = None
    handled: bool = False
    error: Optional[str] = None


class WebhookProcessor:
    def __init__(self, settings: Settings, commerce: LemonSqueezyClient):
        self.settings = settings
        self.commerce = commerce
        self._handlers = {
            EventType.ORDER_CREATED: self._on_order_created,
            EventType.LICENSE_KEY_CREATED: self._on_license_key_created,
            EventType.SUBSCRIPTION_CREATED: self._on_subscription_created,
            EventType.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            EventType.SUBSCRIPTION_CANCELLED: self._on_subscription_cancelled,
            EventType.SUBSCRIPTION_PAYMENT_SUCCESS: self._on_payment_success,
            EventType.SUBSCRIPTION_PAYMENT_FAILED: self._on_payment_failed,
        }
        missing = set(EventType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No webhook handler for: {sorted(e.value for e in missing)}")

    # --- entry point --------------------------------------------------------

    def authenticate(self, body: bytes, signature: Optional[str]) -> str:
        """Return the mode ("live"/"test") whose signing secret validates ``body``."""
        if not signature:
            raise AuthError("Missing signature")
        secrets = self.settings.signing_secrets()
        if not secrets:
            logger.error("Webhook received but no signing secret is configured")
            raise AuthError("Invalid signature")
        mode = match_signing_secret(body, signature, secrets)
        if mode is None:
            raise AuthError("Invalid signature")
        return mode

    def process(self, body: bytes, signature: Optional[str], repo: LicenseRepository) -> WebhookOutcome:
        mode = self.authenticate(body, signature)

        try:
            envelope = json.loads(body)
        except ValueError:
            raise ValidationError("Invalid JSON payload")
        if not isinstance(envelope, dict) or not isinstance(envelope.get("meta"), dict):
            raise ValidationError("Malformed webhook payload")

        event_name = str(envelope["meta"].get("event_name") or "")
        outcome = WebhookOutcome(event_name=event_name, mode=mode)
        logger.info("Processing Lemon Squeezy webhook: %s (%s mode)", event_name, mode)

        try:
            event = parse_event(envelope)
            if event is None:
                logger.info("Unhandled event: %s", event_name)
            else:
                self._handlers[event.event_type](event, self.settings.api_key_for(mode), repo, outcome)
                outcome.handled = True
        except Exception as e:
            logger.exception("Error handling %s", event_name)
            outcome.error = type(e).__name__

        self._audit(repo, outcome, body)
        return outcome

    def _audit(self, repo: LicenseRepository, outcome: WebhookOutcome, body: bytes) -> None:
        try:
            repo.record_event(outcome.license_key or "", outcome.event_name, body.decode("utf-8", "replace"))
        except PersistenceError:
            logger.exception("Failed to record %s in subscription_events", outcome.event_name)

    # --- license identity ---------------------------------------------------

    def _gather(self, order_id: Optional[str], api_key: Optional[str], seed: Optional[Order] = None,
                payload_key: Optional[str] = None, custom_data: Optional[dict] = None) -> ResolutionContext:
        """Collect everything the resolution strategies may look at. Lookup failures leave gaps."""
        ctx = ResolutionContext(
            order_id=order_id,
            payload_key=payload_key,
            custom_data=custom_data or {},
            order=seed,
            order_item=seed.first_order_item if seed else None,
        )
        if not order_id:
            return ctx

        try:
            order = self.commerce.fetch_order(order_id, api_key)
        except UpstreamError:
            logger.warning("Could not fetch order %s", order_id, exc_info=True)
            return ctx

        ctx.order = order
        ctx.related_keys = list(order.license_keys)
        if not ctx.related_keys and order.license_key_ids:
            try:
                key = self.commerce.fetch_license_key_resource(order.license_key_ids[0], api_key).get("key")
            except UpstreamError:
                logger.warning("Could not fetch license key %s", order.license_key_ids[0], exc_info=True)
            else:
                if key:
                    ctx.related_keys.append(key)

        item = order.first_order_item or ctx.order_item
        key_known = bool(ctx.payload_key or ctx.related_keys)
        if order.order_item_ids and (item is None or (not item.custom_data and not key_known)):
            try:
                item = self.commerce.fetch_order_item(order.order_item_ids[0], api_key)
            except UpstreamError:
                logger.warning("Could not fetch order item %s", order.order_item_ids[0], exc_info=True)
        ctx.order_item = item or ctx.order_item
        return ctx

    def _resolve(self, ctx: ResolutionContext, outcome: WebhookOutcome) -> Optional[Resolution]:
        resolution = resolve_license_key(ctx)
        if resolution is None:
            logger.warning("No license key resolved for %s (order %s)", outcome.event_name, ctx.order_id)
            return None
        outcome.license_key = resolution.license_key
        outcome.strategy = resolution.strategy
        logger.info("Resolved license %s via %s", resolution.license_key, resolution.strategy)
        return resolution

    def _subscription_context(self, event, api_key, outcome):
        sub = event.subscription
        if sub is None:
            if not event.subscription_id:
                logger.warning("%s without a subscription id", outcome.event_name)
                return None, None
            sub = self.commerce.fetch_subscription(event.subscription_id, api_key)
        if not sub.order_id:
            logger.warning("Subscription %s has no order id", sub.id)
            return sub, None
        ctx = self._gather(sub.order_id, api_key, custom_data=event.custom_data)
        return sub, self._resolve(ctx, outcome)

    # --- handlers -----------------------------------------------------------

    def _upsert_from_order(self, resolution: Resolution, item: Optional[OrderItem],
                           order_id: Optional[str], email: Optional[str], created_at, repo: LicenseRepository):
        tier, billing_cycle = derive_plan(item.product_name if item else "", item.variant_name if item else "")
        created = parse_timestamp(created_at) or utcnow()
        lic = repo.upsert_license(
            resolution.license_key,
            order_id=order_id,
            variant_id=item.variant_id if item else None,
            customer_email=email,
            status="active",
            tier=tier,
            billing_cycle=billing_cycle,
            created_at=created,
            expires_at=calculate_expiry(billing_cycle, created),
        )
        logger.info("Upserted license %s (%s, %s) for order %s", lic.license_key, tier, billing_cycle, order_id)

    def _on_order_created(self, event: OrderCreated, api_key, repo, outcome):
        order = event.order
        ctx = self._gather(order.id, api_key, seed=order, custom_data=event.custom_data)
        resolution = self._resolve(ctx, outcome)
        if resolution is None:
            return
        email = (ctx.order.user_email if ctx.order else None) or order.user_email
        self._upsert_from_order(resolution, ctx.order_item, order.id, email, order.created_at, repo)

    def _on_license_key_created(self, event: LicenseKeyCreated, api_key, repo, outcome):
        key = event.license_key
        ctx = self._gather(key.order_id, api_key, payload_key=key.key, custom_data=event.custom_data)
        resolution = self._resolve(ctx, outcome)
        if resolution is None:
            return
        email = key.user_email or (ctx.order.user_email if ctx.order else None)
        self._upsert_from_order(resolution, ctx.order_item, key.order_id, email, key.created_at, repo)

    def _on_subscription_created(self, event: SubscriptionChanged, api_key, repo, outcome):
        sub, resolution = self._subscription_context(event, api_key, outcome)
        if resolution is None:
            return
        tier, billing_cycle = derive_plan(sub.product_name, sub.variant_name)
        expires_at = parse_timestamp(sub.renews_at) or calculate_expiry(billing_cycle)
        repo.upsert_license(
            resolution.license_key,
            order_id=sub.order_id,
            variant_id=sub.variant_id,
            customer_email=sub.user_email,
            status="active",
            tier=tier,
            billing_cycle=billing_cycle,
            subscription_id=sub.id,
            expires_at=expires_at,
        )
        logger.info("Linked subscription %s to license %s", sub.id, resolution.license_key)

    def _on_subscription_updated(self, event: SubscriptionChanged, api_key, repo, outcome):
        sub, resolution = self._subscription_context(event, api_key, outcome)
        if resolution is None:
            return
        tier, billing_cycle = derive_plan(sub.product_name, sub.variant_name)
        fields = {"tier": tier, "billing_cycle": billing_cycle, "subscription_id": sub.id}
        if sub.variant_id:
            fields["variant_id"] = sub.variant_id
        renews_at = parse_timestamp(sub.renews_at)
        if renews_at:
            fields["expires_at"] = renews_at
        self._update(repo, resolution.license_key, outcome, **fields)

    def _on_subscription_cancelled(self, event: SubscriptionChanged, api_key, repo, outcome):
        sub, resolution = self._subscription_context(event, api_key, outcome)
        if resolution is None:
            return
        # expires_at is left alone so the grace period still applies
        self._update(repo, resolution.license_key, outcome, status="cancelled")

    def _on_payment_success(self, event: SubscriptionPayment, api_key, repo, outcome):
        sub, resolution = self._subscription_context(event, api_key, outcome)
        if resolution is None:
            return
        _, billing_cycle = derive_plan(sub.product_name, sub.variant_name)
        expires_at = parse_timestamp(sub.renews_at) or calculate_expiry(billing_cycle)
        self._update(repo, resolution.license_key, outcome, status="active", expires_at=expires_at)

    def _on_payment_failed(self, event: SubscriptionPayment, api_key, repo, outcome):
        sub, resolution = self._subscription_context(event, api_key, outcome)
        if resolution is None:
            return
        # status untouched: expiry + grace period downgrade access, cancellation arrives separately
        logger.info(
            "Payment failed for subscription %s (license %s), access ends %s",
            sub.id, resolution.license_key, sub.ends_at or "at expiry",
        )

    def _update(self, repo: LicenseRepository, license_key: str, outcome: WebhookOutcome, **fields):
        lic = repo.update_license(license_key, **fields)
        if lic is None:
            logger.warning("%s: no license %s to update", outcome.event_name, license_key)
            return
        logger.info("%s applied to license %s: %s", outcome.event_name, license_key, sorted(fields))
