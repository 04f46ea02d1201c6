import hashlib
import hmac
import json
from dataclasses import replace
from datetime import datetime

import pytest
from faker import Faker
from flask_jwt_extended import create_access_token

from minicrm import create_app
from minicrm.config.testing import TestingConfig
from minicrm.errors import GatewayRejected
from minicrm.extensions import db
from minicrm.models import User
from minicrm.services.entitlement_service import EntitlementResolver, UsageCounter
from minicrm.services.gateway_client import (
    Capability,
    GatewaySubscriptionSnapshot,
    OrderRef,
    PaymentSnapshot,
    SubscriptionRef,
)
from minicrm.services.razorpay_service import RazorpayGateway
from minicrm.services.reconciliation_service import ReconciliationEngine
from minicrm.services.subscription_service import SubscriptionService
from minicrm.services.subscription_store import SubscriptionStore

# Initialize Faker for generating test data
fake = Faker()

WEBHOOK_SECRET = TestingConfig.RAZORPAY_WEBHOOK_SECRET
KEY_SECRET = TestingConfig.RAZORPAY_KEY_SECRET
PLAN_IDS = TestingConfig.RAZORPAY_PLAN_IDS

FIXED_NOW = datetime(2024, 1, 31, 12, 0, 0)


def pytest_configure(config):
    config.addinivalue_line("markers", "db: mark test as database-intensive")
    config.addinivalue_line("markers", "payment: mark test as payment-related")


# ==================== SIGNING HELPERS ====================

def sign(raw_body, secret=WEBHOOK_SECRET):
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def payment_signature(order_ref, payment_ref, secret=KEY_SECRET):
    return hmac.new(secret.encode(), f"{order_ref}|{payment_ref}".encode(), hashlib.sha256).hexdigest()


def unix(value):
    return int((value - datetime(1970, 1, 1)).total_seconds())


def razorpay_event(event, subscription=None, payment=None):
    """A Razorpay webhook envelope with optional subscription/payment entities."""
    body = {"entity": "event", "event": event, "payload": {}}
    if subscription is not None:
        body["payload"]["subscription"] = {"entity": subscription}
    if payment is not None:
        body["payload"]["payment"] = {"entity": payment}
    return json.dumps(body).encode()


def subscription_entity(ref, status, plan_id=PLAN_IDS["starter"], user_id=None, **fields):
    entity = {
        "id": ref,
        "entity": "subscription",
        "status": status,
        "plan_id": plan_id,
        "customer_id": "cust_test_1",
        "notes": {"user_id": str(user_id)} if user_id is not None else {},
    }
    entity.update(fields)
    return entity


# ==================== FAKE GATEWAY ====================

class FakeGateway:
    """
    In-memory gateway. Network operations read and write dictionaries;
    signature checks and webhook parsing use the real Razorpay code.
    """

    name = "razorpay"
    capabilities = frozenset(Capability)
    webhook_signature_header = RazorpayGateway.webhook_signature_header
    event_id_header = RazorpayGateway.event_id_header
    key_id = TestingConfig.RAZORPAY_KEY_ID
    is_configured = True

    def __init__(self):
        self._razorpay = RazorpayGateway(TestingConfig.RAZORPAY_KEY_ID, KEY_SECRET, WEBHOOK_SECRET)
        self.subscriptions = {}
        self.payments = {}
        self.orders = {}
        self.subscription_payments = {}
        self.calls = []
        self.error = None
        self._counter = 0

    def _next(self, prefix):
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if self.error is not None:
            raise self.error

    def set_subscription(self, ref, status, **fields):
        snapshot = GatewaySubscriptionSnapshot(id=ref, status=status, **fields)
        self.subscriptions[ref] = snapshot
        return snapshot

    def set_payment(self, ref, status="captured", amount=24900, order_ref=None, subscription_ref=None, **fields):
        self.payments[ref] = PaymentSnapshot(
            id=ref, status=status, amount=amount, currency="INR",
            order_ref=order_ref, subscription_ref=subscription_ref, **fields,
        )
        if subscription_ref:
            self.subscription_payments[subscription_ref] = ref
        return self.payments[ref]

    def create_order(self, amount_minor_units, currency, receipt_id, metadata=None):
        self._call("create_order", amount_minor_units, currency, receipt_id)
        ref = self._next("order")
        self.orders[ref] = metadata or {}
        return OrderRef(id=ref, amount=amount_minor_units, currency=currency, receipt=receipt_id, status="created")

    def create_subscription(self, plan_ref, customer, total_cycles, notes=None, amount_minor_units=None):
        self._call("create_subscription", plan_ref, customer, total_cycles)
        ref = self._next("sub")
        self.set_subscription(ref, "created", plan_id=plan_ref, customer_ref="cust_test_1", notes=notes or {})
        return SubscriptionRef(
            id=ref,
            customer_ref=customer.gateway_customer_ref or "cust_test_1",
            status="created",
            checkout_url=f"https://rzp.io/i/{ref}",
        )

    def fetch_subscription(self, ref):
        self._call("fetch_subscription", ref)
        if ref not in self.subscriptions:
            raise GatewayRejected("The id provided does not exist", http_status=400)
        return self.subscriptions[ref]

    def fetch_payment(self, payment_ref):
        self._call("fetch_payment", payment_ref)
        return self.payments[payment_ref]

    def latest_subscription_payment(self, ref):
        self._call("latest_subscription_payment", ref)
        return self.payments.get(self.subscription_payments.get(ref))

    def cancel_subscription(self, ref, at_cycle_end):
        self._call("cancel_subscription", ref, at_cycle_end)
        snapshot = self.subscriptions.get(ref) or GatewaySubscriptionSnapshot(id=ref, status="active")
        snapshot = replace(snapshot, status="active" if at_cycle_end else "cancelled")
        self.subscriptions[ref] = snapshot
        return snapshot

    def verify_payment_signature(self, order_ref, payment_ref, signature):
        return self._razorpay.verify_payment_signature(order_ref, payment_ref, signature)

    def verify_webhook_signature(self, raw_body, signature_header, secret=None):
        return self._razorpay.verify_webhook_signature(raw_body, signature_header, secret)

    def parse_webhook_event(self, payload, event_id=None):
        return self._razorpay.parse_webhook_event(payload, event_id)

    def network_calls(self, name):
        return [call for call in self.calls if call[0] == name]


# ==================== APP & DB FIXTURES ====================

@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def app(gateway):
    """Fresh application and in-memory database per test."""
    app = create_app("testing", gateway=gateway)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def clock():
    return lambda: FIXED_NOW


@pytest.fixture()
def store(app, clock):
    return SubscriptionStore(db.session, clock=clock)


@pytest.fixture()
def engine(gateway, store, clock):
    return ReconciliationEngine(gateway, store, PLAN_IDS, clock=clock)


@pytest.fixture()
def entitlements(store, clock):
    return EntitlementResolver(store, UsageCounter(db.session), clock=clock)


@pytest.fixture()
def service(engine, store, entitlements, clock):
    return SubscriptionService(engine, store, entitlements, clock=clock)


@pytest.fixture()
def make_user(app):
    def _make_user(role="user", plan="free", **fields):
        user = User(
            email=fields.pop("email", fake.unique.email()),
            name=fields.pop("name", fake.name()),
            phone=fields.pop("phone", "+9198" + fake.numerify("########")),
            role=role,
            plan=plan,
            **fields,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture()
def user(make_user):
    return make_user()


@pytest.fixture()
def auth_headers(app):
    def _headers(user):
        token = create_access_token(identity=str(user.id), additional_claims={"role": user.role})
        return {
            "Authorization": f"Bearer {token}",
            "X-Request-ID": fake.uuid4(),
        }

    return _headers
