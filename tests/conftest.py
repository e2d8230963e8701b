import hashlib
import hmac
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from kato_license.commerce import Order, OrderItem, Subscription
from kato_license.config import Settings
from kato_license.database import make_engine, make_session_factory
from kato_license.errors import UpstreamError
from kato_license.main import create_app
from kato_license.models import Base, License, Activation

LIVE_SECRET = "live-signing-secret"
TEST_SECRET = "test-signing-secret"


def sign(body: bytes, secret: str = LIVE_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class FakeCommerce:
    """In-memory stand-in for LemonSqueezyClient. Records the api_key of every call."""

    def __init__(self):
        self.orders = {}
        self.order_items = {}
        self.subscriptions = {}
        self.license_key_resources = {}
        self.calls = []

    def _lookup(self, table, name, ident, api_key):
        self.calls.append((name, str(ident), api_key))
        if str(ident) not in table:
            raise UpstreamError(f"{name} {ident} not found")
        return table[str(ident)]

    def fetch_order(self, order_id, api_key=None):
        return self._lookup(self.orders, "order", order_id, api_key)

    def fetch_order_item(self, item_id, api_key=None):
        return self._lookup(self.order_items, "order_item", item_id, api_key)

    def fetch_subscription(self, subscription_id, api_key=None):
        return self._lookup(self.subscriptions, "subscription", subscription_id, api_key)

    def fetch_license_key_resource(self, license_key_id, api_key=None):
        return {"key": self._lookup(self.license_key_resources, "license_key", license_key_id, api_key)}


class FakeReleases:
    def __init__(self, version="0.9.2"):
        self.version = version
        self.signed = []

    def list_latest_release(self, bucket, name_prefix):
        return {"version": self.version, "key": f"{name_prefix}-{self.version}.zip"}

    def issue_time_limited_download_url(self, bucket, object_key, ttl_seconds=900):
        self.signed.append((bucket, object_key, ttl_seconds))
        return f"https://signed.example/{bucket}/{object_key}?ttl={ttl_seconds}"


class FakeChangelog:
    def __init__(self, text=None):
        self.text = text
        self.requests = []

    def fetch(self, current_version, latest_version):
        self.requests.append((current_version, latest_version))
        return self.text or f"Version {latest_version} is available with bug fixes and improvements."


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        LEMON_SQUEEZY_API_KEY="live-api-key",
        LEMON_SQUEEZY_API_KEY_TEST="test-api-key",
        LEMON_SQUEEZY_SIGNING_SECRET=LIVE_SECRET,
        LEMON_SQUEEZY_SIGNING_SECRET_TEST=TEST_SECRET,
        AWS_S3_BUCKET="kato-releases",
    )


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def commerce():
    return FakeCommerce()


@pytest.fixture
def releases():
    return FakeReleases()


@pytest.fixture
def changelog():
    return FakeChangelog()


@pytest.fixture
def app(settings, session_factory, commerce, releases, changelog):
    return create_app(
        settings,
        session_factory=session_factory,
        commerce=commerce,
        releases=releases,
        changelog=changelog,
    )


@pytest.fixture
def client(app):
    return TestClient(app)


def utcnow():
    return datetime.now(timezone.utc)


def make_license(db, license_key="LIC-123", tier="freelancer", status="active",
                 expires_at=None, subscription_id=None, billing_cycle="annual"):
    lic = License(
        license_key=license_key,
        order_id="1001",
        variant_id="555",
        customer_email="buyer@example.com",
        status=status,
        tier=tier,
        billing_cycle=billing_cycle,
        subscription_id=subscription_id,
        created_at=utcnow(),
        expires_at=expires_at or utcnow() + timedelta(days=30),
    )
    db.add(lic)
    db.commit()
    return lic


def make_activation(db, license_key, site_url, is_local=False):
    a = Activation(
        license_key=license_key,
        site_url=site_url,
        site_domain=site_url.split("//")[-1],
        is_local=is_local,
        activated_at=utcnow(),
        last_checked_at=utcnow(),
    )
    db.add(a)
    db.commit()
    return a


def order_fixture(order_id="1001", identifier="ord-uuid-1001", license_keys=None,
                  product_name="KatoSync", variant_name="Freelancer - Annual"):
    item = OrderItem(
        id="9001",
        order_id=order_id,
        variant_id="555",
        product_name=product_name,
        variant_name=variant_name,
    )
    return Order(
        id=order_id,
        identifier=identifier,
        user_email="buyer@example.com",
        created_at="2026-01-15T10:00:00Z",
        first_order_item=item,
        order_item_ids=["9001"],
        license_keys=list(license_keys or []),
    )


def subscription_fixture(subscription_id="7001", order_id="1001", renews_at="2027-01-15T10:00:00Z",
                         variant_name="Agency - Annual", portal_url=None):
    return Subscription(
        id=subscription_id,
        order_id=order_id,
        order_item_id="9001",
        variant_id="556",
        product_name="KatoSync",
        variant_name=variant_name,
        user_email="buyer@example.com",
        status="active",
        renews_at=renews_at,
        ends_at=None,
        portal_url=portal_url,
    )
