# subscription_service.py
import logging

from flask import current_app

from minicrm.billing.plans import PLAN_CATALOG, effective_plan, limits_for, parse_plan
from minicrm.billing.state_machine import CanonicalStatus
from minicrm.billing.utils import isoformat, utcnow
from minicrm.errors import PermissionDenied, SubscriptionNotFound, ValidationError
from minicrm.extensions import db
from minicrm.services.entitlement_service import EntitlementResolver, UsageCounter
from minicrm.services.gateway_client import Capability, GatewayCustomer, require_capability, supports
from minicrm.services.reconciliation_service import ReconciliationEngine
from minicrm.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


def subscription_summary(row):
    if row is None:
        return None
    return {"plan": row.plan, "status": row.status}


class SubscriptionService:
    """
    Subscription operations for authenticated users and the webhook caller.

    Every user-facing method checks that the subscription it touches belongs
    to ``user_id`` before calling the gateway or writing anything. The
    webhook handler is authorized by its signature alone.
    """

    def __init__(self, engine, store, entitlements, *, clock=utcnow):
        self.engine = engine
        self.store = store
        self.entitlements = entitlements
        self.gateway = engine.gateway
        self.clock = clock

    # ----- recurring subscriptions -----

    def create(self, user_id, plan):
        plan = parse_plan(plan, paid_only=True)
        user = self._user(user_id)
        plan_ref = self.engine.gateway_plan_id(plan)

        current = self.store.read(user_id)
        customer_ref = None
        if current is not None and current.provider == self.gateway.name:
            customer_ref = current.gateway_customer_ref

        customer = GatewayCustomer(
            name=user.name or user.email,
            email=user.email,
            phone=user.phone,
            gateway_customer_ref=customer_ref,
        )
        amount = PLAN_CATALOG[plan].amount if supports(self.gateway, Capability.PLAN_AMOUNTS) else None
        ref = self.gateway.create_subscription(
            plan_ref,
            customer,
            self.engine.total_cycles,
            notes={"user_id": str(user_id), "plan": plan.value},
            amount_minor_units=amount,
        )

        with self.store.transaction("record pending subscription", user_id=user_id, subscription_id=ref.id):
            self.store.discard_pending(user_id, except_gateway_ref=ref.id)
            self.store.upsert_by_gateway_ref(ref.id, {
                "user_id": user_id,
                "provider": self.gateway.name,
                "plan": plan.value,
                "status": CanonicalStatus.PENDING.value,
                "gateway_plan_id": plan_ref,
                "gateway_customer_ref": ref.customer_ref,
                "cancel_at_period_end": False,
            })

        logger.info(
            "Subscription checkout started",
            extra={"user_id": user_id, "plan": plan.value, "subscription_id": ref.id},
        )
        response = {
            "subscriptionId": ref.id,
            "customerId": ref.customer_ref,
            "status": CanonicalStatus.PENDING.value,
            "checkoutUrl": ref.checkout_url,
        }
        if ref.checkout_token:
            response["checkoutToken"] = ref.checkout_token
        return response

    def cancel(self, user_id, gateway_ref, at_cycle_end=False):
        if not gateway_ref:
            raise ValidationError("subscriptionRef is required")
        if not isinstance(at_cycle_end, bool):
            raise ValidationError("cancelAtCycleEnd must be true or false")
        self._owned(user_id, gateway_ref)
        row = self.engine.cancel(gateway_ref, at_cycle_end)
        return row.to_dict()

    def verify_after_checkout(self, user_id, subscription_ref=None, order_ref=None, payment_ref=None, signature=None):
        """
        Confirm a finished checkout: either a one-time payment
        (order, payment and signature) or a recurring subscription ref.
        """
        if order_ref or payment_ref or signature:
            if not (order_ref and payment_ref and signature):
                raise ValidationError("orderRef, paymentRef and signature are all required")
            result = self.engine.verify_one_time_payment(user_id, order_ref, payment_ref, signature)
            response = {"success": True, "subscription": subscription_summary(result.subscription)}
            if result.already_verified:
                response["alreadyVerified"] = True
            return response

        if not subscription_ref:
            raise ValidationError("Provide subscriptionRef, or orderRef, paymentRef and signature")

        row = self.store.find_by_gateway_ref(subscription_ref)
        if row is not None and row.user_id != user_id:
            self._deny(user_id, subscription_ref)

        result = self.engine.pull(user_id, subscription_ref)
        response = {
            "success": result.committed,
            "subscription": {"plan": result.plan, "status": result.status},
        }
        if not result.committed:
            response["details"] = f"Subscription is {result.gateway_status or 'not active'} at the gateway"
        return response

    def sync_own(self, user_id):
        row = self.store.read(user_id)
        if row is None:
            raise SubscriptionNotFound("No subscription found")

        if row.is_one_time:
            synced = False
            if row.status == CanonicalStatus.ACTIVE.value and row.is_expired(self.clock()):
                with self.store.transaction("record lapsed purchase", user_id=user_id):
                    row = self.store.upsert_by_user(user_id, {"status": CanonicalStatus.CANCELED.value})
                synced = True
            return {"synced": synced, "subscription": self._current(row)}

        result = self.engine.pull(user_id, row.gateway_subscription_ref)
        return {
            "synced": result.committed,
            "gateway": result.to_dict(),
            "subscription": self._current(self.store.read(user_id)),
        }

    def get_payment_details(self, user_id, gateway_ref):
        """
        Latest payment made for one of the user's subscriptions, with the
        gateway's view of the billing cycle. One-time purchases report the
        payment that paid for them and no cycle.
        """
        if not gateway_ref:
            raise ValidationError("subscriptionRef is required")
        row = self._owned(user_id, gateway_ref)

        if row.is_one_time:
            payment = self.gateway.fetch_payment(row.gateway_payment_ref) if row.gateway_payment_ref else None
            return {
                "success": True,
                "paymentDetails": payment.to_dict() if payment else None,
                "subscription": None,
            }

        require_capability(self.gateway, Capability.PAYMENT_HISTORY)
        snapshot = self.gateway.fetch_subscription(gateway_ref)
        payment = self.gateway.latest_subscription_payment(gateway_ref)
        return {
            "success": True,
            "paymentDetails": payment.to_dict() if payment else None,
            "subscription": {
                "id": snapshot.id,
                "status": snapshot.status,
                "currentEnd": isoformat(snapshot.current_end),
                "chargeAt": isoformat(snapshot.charge_at),
                "startAt": isoformat(snapshot.start_at),
                "endAt": isoformat(snapshot.end_at),
            },
        }

    def webhook_handler(self, raw_body, signature_header, event_id=None):
        self.engine.handle_webhook(raw_body, signature_header, event_id=event_id)
        return {"status": "success"}

    # ----- one-time purchases -----

    def start_one_time_purchase(self, user_id, plan, duration_months=1):
        plan = parse_plan(plan, paid_only=True)
        self._user(user_id)
        try:
            duration_months = int(duration_months)
        except (TypeError, ValueError):
            raise ValidationError("durationMonths must be a whole number") from None

        order = self.engine.start_one_time_purchase(user_id, plan, duration_months)
        response = order.to_dict()
        key_id = getattr(self.gateway, "key_id", None)
        if key_id:
            response["keyId"] = key_id
        return response

    # ----- read-only views -----

    def get_current_subscription(self, user_id):
        return self._current(self.store.read(user_id))

    def check_can_create(self, resource_kind, user_id):
        return self.entitlements.check_can_create(resource_kind, user_id).to_dict()

    def sync_all(self):
        return self.engine.sync_all().to_dict()

    # ----- helpers -----

    def _current(self, row):
        now = self.clock()
        plan = effective_plan(row, now)
        return {
            "plan": plan.value,
            "status": row.status if row else None,
            "isExpired": row.is_expired(now) if row else False,
            "limits": limits_for(plan).to_dict(),
            "subscription": row.to_dict() if row else None,
        }

    def _user(self, user_id):
        user = self.store.get_user(user_id)
        if user is None:
            raise PermissionDenied("User account not found")
        return user

    def _owned(self, user_id, gateway_ref):
        row = self.store.find_by_gateway_ref(gateway_ref)
        if row is None or row.user_id != user_id:
            self._deny(user_id, gateway_ref)
        return row

    @staticmethod
    def _deny(user_id, gateway_ref):
        logger.warning(
            "Subscription access denied",
            extra={"user_id": user_id, "subscription_id": gateway_ref},
        )
        raise SubscriptionNotFound("Subscription not found")


def get_subscription_service(app=None, session=None):
    """
    Build the service graph for one request: a store on the given session
    and the gateway client the app was configured with.
    """
    app = app or current_app
    session = session or db.session
    config = app.config
    gateway = app.extensions["billing_gateway"]

    store = SubscriptionStore(session)
    plan_ids = config.get(f"{gateway.name.upper()}_PLAN_IDS", {})
    engine = ReconciliationEngine(
        gateway,
        store,
        plan_ids,
        total_cycles=config.get("SUBSCRIPTION_TOTAL_CYCLES", 12),
    )
    entitlements = EntitlementResolver(store, UsageCounter(session))
    return SubscriptionService(engine, store, entitlements)
