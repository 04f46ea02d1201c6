# razorpay_service.py
import logging
from datetime import timedelta

from minicrm.billing.security import verify_hmac_signature, verify_payment_signature
from minicrm.billing.state_machine import EventKind
from minicrm.billing.utils import from_unix, to_unix, utcnow
from minicrm.errors import GatewayRejected
from minicrm.services.gateway_client import (
    Capability,
    GatewayEvent,
    GatewayHttp,
    GatewaySubscriptionSnapshot,
    OrderRef,
    PaymentSnapshot,
    SubscriptionRef,
    requires_credentials,
)

logger = logging.getLogger(__name__)

RAZORPAY_BASE_URL = "https://api.razorpay.com/v1"

# Subscription links stay payable for this long after creation
CHECKOUT_LINK_TTL = timedelta(days=30)
CUSTOMER_LOOKUP_PAGE_SIZE = 100

RAZORPAY_EVENTS = {
    "subscription.authenticated": EventKind.AUTHENTICATED,
    "subscription.activated": EventKind.ACTIVATED,
    "subscription.charged": EventKind.CHARGED,
    "subscription.completed": EventKind.COMPLETED,
    "subscription.cancelled": EventKind.CANCELLED,
    "subscription.paused": EventKind.PAUSED,
    "subscription.resumed": EventKind.RESUMED,
    "subscription.pending": EventKind.PENDING,
    "subscription.halted": EventKind.HALTED,
    "payment.failed": EventKind.PAYMENT_FAILED,
}


class RazorpayGateway:
    name = "razorpay"
    capabilities = frozenset({
        Capability.CUSTOMERS,
        Capability.ONE_TIME_ORDERS,
        Capability.CANCEL_AT_CYCLE_END,
        Capability.WEBHOOK_EVENT_IDS,
        Capability.PAYMENT_HISTORY,
    })
    webhook_signature_header = "X-Razorpay-Signature"
    event_id_header = "X-Razorpay-Event-Id"

    def __init__(self, key_id, key_secret, webhook_secret=None, *,
                 base_url=RAZORPAY_BASE_URL, timeout=10, clock=utcnow):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.clock = clock
        self.http = GatewayHttp(self.name, base_url, timeout=timeout, auth=(key_id or "", key_secret or ""))

    @classmethod
    def from_config(cls, config):
        return cls(
            config.get("RAZORPAY_KEY_ID"),
            config.get("RAZORPAY_KEY_SECRET"),
            config.get("RAZORPAY_WEBHOOK_SECRET"),
            base_url=config.get("RAZORPAY_API_BASE") or RAZORPAY_BASE_URL,
            timeout=config.get("GATEWAY_TIMEOUT_SECONDS", 10),
        )

    @property
    def is_configured(self):
        return bool(self.key_id and self.key_secret)

    # ----- orders & payments -----

    @requires_credentials
    def create_order(self, amount_minor_units, currency, receipt_id, metadata=None):
        data = self.http.post("orders", json={
            "amount": int(amount_minor_units),
            "currency": currency,
            "receipt": receipt_id,
            "notes": metadata or {},
        })
        logger.info("Razorpay order created", extra={"order_id": data.get("id"), "receipt": receipt_id})
        return OrderRef(
            id=data["id"],
            amount=data.get("amount", amount_minor_units),
            currency=data.get("currency", currency),
            receipt=data.get("receipt", receipt_id),
            status=data.get("status"),
        )

    @requires_credentials
    def fetch_payment(self, payment_ref):
        return self._payment(self.http.get(f"payments/{payment_ref}"))

    @requires_credentials
    def latest_subscription_payment(self, ref):
        """The payment behind the most recent invoice of a subscription, if any."""
        data = self.http.get("invoices", params={"subscription_id": ref, "count": 1})
        for invoice in data.get("items", []):
            if invoice.get("payment_id"):
                return self.fetch_payment(invoice["payment_id"])
        return None

    @requires_credentials
    def verify_payment_signature(self, order_ref, payment_ref, signature):
        return verify_payment_signature(order_ref, payment_ref, signature, self.key_secret)

    # ----- customers -----

    def resolve_customer(self, customer):
        """Reuse a known customer id, else create one, else find the existing one by contact."""
        if customer.gateway_customer_ref:
            return customer.gateway_customer_ref
        try:
            data = self.http.post("customers", json={
                "name": customer.name,
                "email": customer.email,
                "contact": customer.phone or "",
                "fail_existing": "1",
            })
            return data["id"]
        except GatewayRejected as exc:
            if "already exists" not in str(exc.details).lower():
                raise
            existing = self.find_customer(customer)
            if existing is None:
                raise
            logger.info("Reusing existing Razorpay customer", extra={"customer_id": existing})
            return existing

    def find_customer(self, customer):
        data = self.http.get("customers", params={"count": CUSTOMER_LOOKUP_PAGE_SIZE})
        email = (customer.email or "").lower()
        for item in data.get("items", []):
            if email and (item.get("email") or "").lower() == email:
                return item["id"]
            if customer.phone and item.get("contact") == customer.phone:
                return item["id"]
        return None

    # ----- subscriptions -----

    @requires_credentials
    def create_subscription(self, plan_ref, customer, total_cycles, notes=None, amount_minor_units=None):
        customer_ref = self.resolve_customer(customer)
        data = self.http.post("subscriptions", json={
            "plan_id": plan_ref,
            "customer_id": customer_ref,
            "total_count": int(total_cycles),
            "quantity": 1,
            "customer_notify": 1,
            "expire_by": to_unix(self.clock() + CHECKOUT_LINK_TTL),
            "notes": notes or {},
        })
        logger.info(
            "Razorpay subscription created",
            extra={"subscription_id": data.get("id"), "plan_id": plan_ref},
        )
        return SubscriptionRef(
            id=data["id"],
            customer_ref=data.get("customer_id") or customer_ref,
            status=data.get("status", "created"),
            checkout_url=data.get("short_url"),
        )

    @requires_credentials
    def fetch_subscription(self, ref):
        return self._snapshot(self.http.get(f"subscriptions/{ref}"))

    @requires_credentials
    def cancel_subscription(self, ref, at_cycle_end):
        data = self.http.post(
            f"subscriptions/{ref}/cancel",
            json={"cancel_at_cycle_end": 1 if at_cycle_end else 0},
        )
        return self._snapshot(data)

    # ----- webhooks -----

    def verify_webhook_signature(self, raw_body, signature_header, secret=None):
        return verify_hmac_signature(raw_body, signature_header, secret or self.webhook_secret)

    def parse_webhook_event(self, payload, event_id=None):
        event_type = payload.get("event") or ""
        body = payload.get("payload") or {}
        subscription_entity = (body.get("subscription") or {}).get("entity")
        payment_entity = (body.get("payment") or {}).get("entity")

        snapshot = self._snapshot(subscription_entity) if subscription_entity else None
        payment = self._payment(payment_entity) if payment_entity else None

        subscription_ref = snapshot.id if snapshot else (payment.subscription_ref if payment else None)
        return GatewayEvent(
            event_type=event_type,
            kind=RAZORPAY_EVENTS.get(event_type),
            subscription_ref=subscription_ref,
            subscription=snapshot,
            payment=payment,
            event_id=event_id,
        )

    @staticmethod
    def _snapshot(data):
        return GatewaySubscriptionSnapshot(
            id=data["id"],
            status=(data.get("status") or "").lower(),
            plan_id=data.get("plan_id"),
            customer_ref=data.get("customer_id"),
            start_at=from_unix(data.get("start_at")),
            end_at=from_unix(data.get("end_at")),
            current_start=from_unix(data.get("current_start")),
            current_end=from_unix(data.get("current_end")),
            charge_at=from_unix(data.get("charge_at")),
            short_url=data.get("short_url"),
            notes=data.get("notes") or {},
        )

    @staticmethod
    def _payment(data):
        card = data.get("card") or {}
        return PaymentSnapshot(
            id=data.get("id"),
            status=data.get("status", ""),
            amount=data.get("amount"),
            currency=data.get("currency"),
            order_ref=data.get("order_id"),
            subscription_ref=data.get("subscription_id"),
            method=data.get("method"),
            card={key: card.get(key) for key in ("last4", "network", "type", "issuer") if card.get(key)},
            vpa=data.get("vpa"),
            bank=data.get("bank"),
            wallet=data.get("wallet"),
            email=data.get("email"),
            contact=data.get("contact"),
            created_at=from_unix(data.get("created_at")),
        )
