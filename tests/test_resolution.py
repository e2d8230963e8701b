"""License-key resolution strategies and plan derivation."""
import pytest

from kato_license.commerce import Order, OrderItem
from kato_license.webhooks.resolution import (
    ResolutionContext,
    derive_plan,
    resolve_license_key,
)


def full_context():
    return ResolutionContext(
        order_id="1001",
        payload_key="PAYLOAD-KEY",
        order=Order(id="1001", identifier="ord-uuid"),
        order_item=OrderItem(id="9001", custom_data={"license_key": "ITEM-KEY"}),
        related_keys=["RELATED-KEY"],
    )


def test_payload_key_wins():
    res = resolve_license_key(full_context())
    assert (res.license_key, res.strategy) == ("PAYLOAD-KEY", "event_payload")


def test_meta_custom_data_counts_as_payload():
    ctx = ResolutionContext(custom_data={"license_key": "META-KEY"}, related_keys=["RELATED-KEY"])
    assert resolve_license_key(ctx).strategy == "event_payload"


def test_order_item_custom_data_before_related_keys():
    ctx = full_context()
    ctx.payload_key = None
    res = resolve_license_key(ctx)
    assert (res.license_key, res.strategy) == ("ITEM-KEY", "order_item_custom_data")


def test_related_license_keys():
    ctx = full_context()
    ctx.payload_key = None
    ctx.order_item = OrderItem(id="9001")
    res = resolve_license_key(ctx)
    assert (res.license_key, res.strategy) == ("RELATED-KEY", "order_license_keys")


def test_order_identifier_is_last_resort():
    ctx = ResolutionContext(order_id="1001", order=Order(id="1001", identifier="ord-uuid"))
    res = resolve_license_key(ctx)
    assert (res.license_key, res.strategy) == ("ord-uuid", "order_identifier")


def test_sequential_order_id_is_never_a_key():
    assert resolve_license_key(ResolutionContext(order_id="1001")) is None
    assert resolve_license_key(ResolutionContext(order_id="1001", order=Order(id="1001"))) is None


def test_nothing_to_resolve():
    assert resolve_license_key(ResolutionContext()) is None


@pytest.mark.parametrize("product, variant, expected", [
    ("KatoSync", "Freelancer - Monthly", ("freelancer", "monthly")),
    ("KatoSync", "Agency - Annual", ("agency", "annual")),
    ("KatoSync AGENCY", "", ("agency", "monthly")),
    ("KatoSync", "Enterprise Annual", ("enterprise", "annual")),
    ("KatoSync", "Unlimited sites", ("enterprise", "monthly")),
    (None, None, ("freelancer", "monthly")),
])
def test_derive_plan(product, variant, expected):
    assert derive_plan(product, variant) == expected
