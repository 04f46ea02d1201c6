# gateway_client.py
"""
Payment gateway abstraction.

Providers are plain classes that satisfy the ``GatewayClient`` protocol and
publish a capability set; callers ask ``supports()`` instead of assuming
every provider can do everything. HTTP plumbing is shared by composition
through ``GatewayHttp``.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Dict, FrozenSet, Optional, Protocol

import requests

from minicrm.billing.state_machine import EventKind
from minicrm.billing.utils import isoformat
from minicrm.config import ConfigurationError
from minicrm.errors import GatewayRejected, GatewayUnavailable, UnsupportedOperation

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    CUSTOMERS = "customers"                      # gateway-side customer objects
    ONE_TIME_ORDERS = "one_time_orders"          # orders + checkout payment signature
    CANCEL_AT_CYCLE_END = "cancel_at_cycle_end"
    WEBHOOK_EVENT_IDS = "webhook_event_ids"      # delivery id header for dedupe
    PLAN_AMOUNTS = "plan_amounts"                # subscription create carries amounts
    PAYMENT_HISTORY = "payment_history"          # latest payment of a subscription


# ==================== VALUE TYPES ====================

@dataclass(frozen=True)
class GatewayCustomer:
    name: str
    email: str
    phone: Optional[str] = None
    gateway_customer_ref: Optional[str] = None


@dataclass(frozen=True)
class OrderRef:
    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionRef:
    id: str
    customer_ref: Optional[str]
    status: str
    checkout_url: Optional[str] = None
    checkout_token: Optional[str] = None


@dataclass(frozen=True)
class GatewaySubscriptionSnapshot:
    """Remote subscription state; ``status`` is in the common gateway vocabulary."""
    id: str
    status: str
    plan_id: Optional[str] = None
    customer_ref: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    current_start: Optional[datetime] = None
    current_end: Optional[datetime] = None
    charge_at: Optional[datetime] = None
    short_url: Optional[str] = None
    notes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentSnapshot:
    id: str
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    order_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    method: Optional[str] = None
    card: Dict[str, Any] = field(default_factory=dict)
    vpa: Optional[str] = None
    bank: Optional[str] = None
    wallet: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_completed(self):
        return self.status in ("captured", "authorized")

    def to_dict(self):
        """Payment instrument summary for the billing page; card details are last4 only."""
        return {
            "id": self.id,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "method": self.method,
            "card": dict(self.card) if self.card else None,
            "vpa": self.vpa,
            "bank": self.bank,
            "wallet": self.wallet,
            "email": self.email,
            "contact": self.contact,
            "createdAt": isoformat(self.created_at),
        }


@dataclass(frozen=True)
class GatewayEvent:
    event_type: str
    kind: Optional[EventKind]
    subscription_ref: Optional[str] = None
    subscription: Optional[GatewaySubscriptionSnapshot] = None
    payment: Optional[PaymentSnapshot] = None
    event_id: Optional[str] = None


class GatewayClient(Protocol):
    name: str
    capabilities: FrozenSet[Capability]
    webhook_signature_header: str
    event_id_header: Optional[str]

    @property
    def is_configured(self) -> bool: ...

    def create_order(self, amount_minor_units: int, currency: str, receipt_id: str,
                     metadata: Optional[dict] = None) -> OrderRef: ...

    def create_subscription(self, plan_ref: str, customer: GatewayCustomer, total_cycles: int,
                            notes: Optional[dict] = None,
                            amount_minor_units: Optional[int] = None) -> SubscriptionRef: ...

    def fetch_subscription(self, ref: str) -> GatewaySubscriptionSnapshot: ...

    def fetch_payment(self, payment_ref: str) -> PaymentSnapshot: ...

    def latest_subscription_payment(self, ref: str) -> Optional[PaymentSnapshot]: ...

    def cancel_subscription(self, ref: str, at_cycle_end: bool) -> GatewaySubscriptionSnapshot: ...

    def verify_payment_signature(self, order_ref: str, payment_ref: str, signature: str) -> bool: ...

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str],
                                 secret: Optional[str] = None) -> bool: ...

    def parse_webhook_event(self, payload: dict, event_id: Optional[str] = None) -> GatewayEvent: ...


def supports(gateway, capability):
    return capability in gateway.capabilities


def require_capability(gateway, capability):
    if not supports(gateway, capability):
        raise UnsupportedOperation(
            f"{gateway.name} does not support {Capability(capability).value.replace('_', ' ')}"
        )


# ==================== GUARDS & HTTP ====================

def requires_credentials(func):
    """Fail fast with GatewayUnavailable before any network call when keys are missing."""
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        if not self.is_configured:
            logger.warning(
                "Gateway operation blocked: credentials missing",
                extra={"provider": self.name, "operation": func.__name__},
            )
            raise GatewayUnavailable(f"{self.name} credentials are not configured")
        return func(self, *args, **kwargs)
    return wrapper


def parse_gateway_datetime(value):
    """ISO-8601 or unix-seconds gateway timestamps to naive UTC."""
    if value in (None, "", 0):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class GatewayHttp:
    """JSON-over-HTTPS calls with one timeout and one error translation."""

    def __init__(self, provider, base_url, *, timeout=10, auth=None, headers=None):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.auth = auth
        self.headers = headers or {}

    def request(self, method, path, *, json=None, params=None):
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = requests.request(
                method,
                url,
                json=json,
                params=params,
                auth=self.auth,
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error(
                "Gateway request failed",
                extra={"provider": self.provider, "method": method, "path": path, "error_type": type(exc).__name__},
            )
            raise GatewayRejected(f"Could not reach {self.provider}: {type(exc).__name__}") from exc

        if not response.ok:
            description, code = self._error_description(response)
            logger.warning(
                "Gateway rejected request",
                extra={
                    "provider": self.provider,
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "gateway_error_code": code,
                },
            )
            raise GatewayRejected(description, http_status=response.status_code, code=code)

        if not response.content:
            return {}
        return response.json()

    def get(self, path, **kwargs):
        return self.request("GET", path, **kwargs)

    def post(self, path, **kwargs):
        return self.request("POST", path, **kwargs)

    @staticmethod
    def _error_description(response):
        try:
            body = response.json()
        except ValueError:
            return f"Gateway returned HTTP {response.status_code}", None
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get("description") or error.get("reason") or str(error), error.get("code")
        if isinstance(body, dict) and body.get("message"):
            return body["message"], body.get("code")
        return f"Gateway returned HTTP {response.status_code}", None


# ==================== FACTORY ====================

def build_gateway_client(config):
    """Construct the provider selected by ``BILLING_PROVIDER``."""
    from minicrm.services.cashfree_service import CashfreeGateway
    from minicrm.services.razorpay_service import RazorpayGateway

    provider = str(config.get("BILLING_PROVIDER", "razorpay")).lower()
    if provider == RazorpayGateway.name:
        gateway = RazorpayGateway.from_config(config)
    elif provider == CashfreeGateway.name:
        gateway = CashfreeGateway.from_config(config)
    else:
        raise ConfigurationError(f"Unsupported BILLING_PROVIDER: {provider}")

    if not gateway.is_configured:
        logger.warning("Billing provider has no credentials; gateway calls will fail", extra={"provider": provider})
    return gateway
