# cashfree_service.py
import logging
import uuid

from minicrm.billing.security import verify_hmac_signature
from minicrm.billing.state_machine import EventKind
from minicrm.billing.utils import add_months, utcnow
from minicrm.errors import UnsupportedOperation
from minicrm.services.gateway_client import (
    Capability,
    GatewayEvent,
    GatewayHttp,
    GatewaySubscriptionSnapshot,
    PaymentSnapshot,
    SubscriptionRef,
    parse_gateway_datetime,
    requires_credentials,
)

logger = logging.getLogger(__name__)

CASHFREE_BASE_URLS = {
    "sandbox": "https://sandbox.cashfree.com/pg",
    "production": "https://api.cashfree.com/pg",
}

# Cashfree status -> common gateway vocabulary
CASHFREE_STATUS_MAP = {
    "INITIALIZED": "created",
    "BANK_APPROVAL_PENDING": "pending",
    "ACTIVE": "active",
    "ON_HOLD": "halted",
    "PAUSED": "paused",
    "CUSTOMER_PAUSED": "paused",
    "CANCELLED": "cancelled",
    "CUSTOMER_CANCELLED": "cancelled",
    "COMPLETED": "completed",
    "EXPIRED": "completed",
    "LINK_EXPIRED": "cancelled",
}

CASHFREE_EVENTS = {
    "SUBSCRIPTION_ACTIVATED": EventKind.ACTIVATED,
    "SUBSCRIPTION_CANCELLED": EventKind.CANCELLED,
    "SUBSCRIPTION_PAUSED": EventKind.PAUSED,
    "SUBSCRIPTION_RESUMED": EventKind.RESUMED,
    "SUBSCRIPTION_COMPLETED": EventKind.COMPLETED,
    "PAYMENT_SUCCESS": EventKind.CHARGED,
    "SUBSCRIPTION_PAYMENT_SUCCESS": EventKind.CHARGED,
    "PAYMENT_FAILED": EventKind.PAYMENT_FAILED,
    "SUBSCRIPTION_PAYMENT_FAILED": EventKind.PAYMENT_FAILED,
}

# SUBSCRIPTION_STATUS_CHANGED carries the new status instead of an event name
STATUS_CHANGE_EVENTS = {
    "active": EventKind.ACTIVATED,
    "pending": EventKind.PENDING,
    "paused": EventKind.PAUSED,
    "halted": EventKind.HALTED,
    "cancelled": EventKind.CANCELLED,
    "completed": EventKind.COMPLETED,
}

PAYMENT_STATUS_MAP = {"SUCCESS": "captured", "FAILED": "failed", "PENDING": "pending"}


def translate_status(status):
    if not status:
        return ""
    return CASHFREE_STATUS_MAP.get(str(status).upper(), str(status).lower())


class CashfreeGateway:
    """
    Cashfree subscriptions. Customers travel inline with each subscription
    and cancellation is always immediate.
    """

    name = "cashfree"
    capabilities = frozenset({Capability.PLAN_AMOUNTS})
    webhook_signature_header = "x-webhook-signature"
    event_id_header = None

    def __init__(self, app_id, secret_key, webhook_secret=None, *,
                 base_url=CASHFREE_BASE_URLS["sandbox"], api_version="2023-08-01",
                 timeout=10, clock=utcnow):
        self.app_id = app_id
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.clock = clock
        self.http = GatewayHttp(
            self.name,
            base_url,
            timeout=timeout,
            headers={
                "x-client-id": app_id or "",
                "x-client-secret": secret_key or "",
                "x-api-version": api_version,
                "Content-Type": "application/json",
            },
        )

    @classmethod
    def from_config(cls, config):
        environment = config.get("CASHFREE_ENVIRONMENT", "sandbox")
        base_url = config.get("CASHFREE_API_BASE") or CASHFREE_BASE_URLS.get(environment, CASHFREE_BASE_URLS["sandbox"])
        return cls(
            config.get("CASHFREE_APP_ID"),
            config.get("CASHFREE_SECRET_KEY"),
            config.get("CASHFREE_WEBHOOK_SECRET"),
            base_url=base_url,
            api_version=config.get("CASHFREE_API_VERSION", "2023-08-01"),
            timeout=config.get("GATEWAY_TIMEOUT_SECONDS", 10),
        )

    @property
    def is_configured(self):
        return bool(self.app_id and self.secret_key)

    def create_order(self, amount_minor_units, currency, receipt_id, metadata=None):
        raise UnsupportedOperation("cashfree does not support one time orders")

    def fetch_payment(self, payment_ref):
        raise UnsupportedOperation("cashfree does not support one time orders")

    def verify_payment_signature(self, order_ref, payment_ref, signature):
        raise UnsupportedOperation("cashfree does not support one time orders")

    def latest_subscription_payment(self, ref):
        raise UnsupportedOperation("cashfree does not support payment history")

    @requires_credentials
    def create_subscription(self, plan_ref, customer, total_cycles, notes=None, amount_minor_units=None):
        subscription_id = f"sub_{uuid.uuid4().hex[:24]}"
        plan_details = {"plan_id": plan_ref}
        if amount_minor_units is not None:
            amount = round(amount_minor_units / 100, 2)
            plan_details.update({
                "plan_type": "PERIODIC",
                "plan_currency": "INR",
                "plan_recurring_amount": amount,
                "plan_max_amount": amount,
            })

        data = self.http.post("subscriptions", json={
            "subscription_id": subscription_id,
            "customer_details": {
                "customer_name": customer.name,
                "customer_email": customer.email,
                "customer_phone": customer.phone or "",
            },
            "plan_details": plan_details,
            "authorization_details": {
                "authorization_amount": 1,
                "authorization_amount_refund": True,
            },
            "subscription_expiry_time": add_months(self.clock(), int(total_cycles)).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "subscription_tags": {key: str(value) for key, value in (notes or {}).items()},
        })
        logger.info(
            "Cashfree subscription created",
            extra={"subscription_id": data.get("subscription_id", subscription_id), "plan_id": plan_ref},
        )
        return SubscriptionRef(
            id=data.get("subscription_id", subscription_id),
            customer_ref=None,
            status=translate_status(data.get("subscription_status")) or "created",
            checkout_token=data.get("subscription_session_id"),
        )

    @requires_credentials
    def fetch_subscription(self, ref):
        return self._snapshot(self.http.get(f"subscriptions/{ref}"))

    @requires_credentials
    def cancel_subscription(self, ref, at_cycle_end):
        if at_cycle_end:
            raise UnsupportedOperation("cashfree does not support cancel at cycle end")
        data = self.http.post(
            f"subscriptions/{ref}/manage",
            json={"subscription_id": ref, "action": "CANCEL"},
        )
        return self._snapshot(data)

    def verify_webhook_signature(self, raw_body, signature_header, secret=None):
        return verify_hmac_signature(raw_body, signature_header, secret or self.webhook_secret)

    def parse_webhook_event(self, payload, event_id=None):
        event_type = payload.get("type") or ""
        data = payload.get("data") or {}
        details = data.get("subscription_details") or {}

        snapshot = self._snapshot(details) if details.get("subscription_id") else None
        subscription_ref = (
            data.get("subscriptionId")
            or data.get("subscription_id")
            or (snapshot.id if snapshot else None)
        )

        if event_type == "SUBSCRIPTION_STATUS_CHANGED":
            kind = STATUS_CHANGE_EVENTS.get(snapshot.status if snapshot else "")
        else:
            kind = CASHFREE_EVENTS.get(event_type)

        payment = None
        payment_data = data.get("payment_details") or data.get("payment") or {}
        if payment_data:
            payment = PaymentSnapshot(
                id=str(payment_data.get("cf_payment_id") or payment_data.get("payment_id") or ""),
                status=PAYMENT_STATUS_MAP.get(str(payment_data.get("payment_status", "")).upper(), "unknown"),
                amount=_to_minor_units(payment_data.get("payment_amount")),
                currency=payment_data.get("payment_currency"),
                subscription_ref=subscription_ref,
            )

        return GatewayEvent(
            event_type=event_type,
            kind=kind,
            subscription_ref=subscription_ref,
            subscription=snapshot,
            payment=payment,
            event_id=event_id,
        )

    @staticmethod
    def _snapshot(data):
        plan = data.get("plan_details") or {}
        return GatewaySubscriptionSnapshot(
            id=data["subscription_id"],
            status=translate_status(data.get("subscription_status")),
            plan_id=plan.get("plan_id"),
            customer_ref=(data.get("customer_details") or {}).get("customer_email"),
            start_at=parse_gateway_datetime(data.get("subscription_first_charge_time")),
            end_at=parse_gateway_datetime(data.get("subscription_expiry_time")),
            charge_at=parse_gateway_datetime(data.get("next_schedule_date")),
            notes=data.get("subscription_tags") or {},
        )


def _to_minor_units(amount):
    if amount in (None, ""):
        return None
    return int(round(float(amount) * 100))
