# reconciliation_service.py
"""
Reconciliation of local subscription state with the payment gateway.

Two channels feed it: signed webhooks pushed by the gateway, and pulls the
user triggers after checkout or from a manual sync. Either way the stored
status only changes through ``BillingStateMachine``, an activation always
supersedes the user's other active rows inside the same transaction, and
the plan mirrored onto the user profile is written afterwards, best-effort.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from minicrm.billing.plans import PLAN_CATALOG, Plan, effective_plan
from minicrm.billing.state_machine import (
    ACTIVATING_EVENTS,
    BillingStateMachine,
    CanonicalStatus,
    EventKind,
)
from minicrm.billing.utils import add_months, utcnow
from minicrm.errors import (
    DomainError,
    GatewayUnavailable,
    InvalidSignature,
    PaymentNotCompleted,
    PlanMismatch,
    StoreUnavailable,
    SubscriptionNotFound,
    ValidationError,
)
from minicrm.models.subscription import ONE_TIME_REF_PREFIX
from minicrm.services.gateway_client import Capability, require_capability

logger = logging.getLogger(__name__)

ACTIVE = CanonicalStatus.ACTIVE.value


@dataclass
class WebhookResult:
    outcome: str  # applied | ignored | rejected | duplicate
    event_type: str
    subscription_ref: Optional[str] = None
    status: Optional[str] = None
    user_id: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class PullResult:
    committed: bool
    gateway_status: str
    status: Optional[str]
    plan: str
    subscription: Optional[object] = None

    def to_dict(self):
        return {
            "committed": self.committed,
            "gatewayStatus": self.gateway_status,
            "status": self.status,
            "plan": self.plan,
        }


@dataclass
class OneTimeResult:
    subscription: object
    order: object
    already_verified: bool = False


@dataclass
class SyncReport:
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self):
        return {"synced": self.synced, "skipped": self.skipped, "failed": self.failed, "errors": self.errors}


class ReconciliationEngine:

    def __init__(self, gateway, store, plan_ids, *, total_cycles=12, clock=utcnow):
        self.gateway = gateway
        self.store = store
        self.total_cycles = total_cycles
        self.clock = clock
        # internal plan -> gateway plan id, for the configured provider only
        self.plan_ids = {Plan(name): plan_id for name, plan_id in (plan_ids or {}).items() if plan_id}

    # ==================== PLAN & DATE RESOLUTION ====================

    def gateway_plan_id(self, plan):
        plan_id = self.plan_ids.get(Plan(plan))
        if not plan_id:
            raise GatewayUnavailable(f"No {self.gateway.name} plan is configured for {Plan(plan).value}")
        return plan_id

    def resolve_plan(self, gateway_plan_id):
        """Exact match against configured plan ids; anything else is the free plan."""
        for plan, plan_id in self.plan_ids.items():
            if gateway_plan_id and plan_id == gateway_plan_id:
                return plan
        mismatch = PlanMismatch(gateway_plan_id)
        logger.warning(mismatch.details, extra={"provider": self.gateway.name, "gateway_plan_id": gateway_plan_id})
        return Plan.FREE

    @staticmethod
    def compute_next_due_date(snapshot, previous=None):
        """
        Next charge or expiry: the explicit charge time, else the end of the
        current period, else one calendar month after the start, else the
        previously stored value.
        """
        if snapshot.charge_at:
            return snapshot.charge_at
        if snapshot.current_end:
            return snapshot.current_end
        if snapshot.start_at:
            return add_months(snapshot.start_at, 1)
        return previous

    def _snapshot_fields(self, snapshot, previous_due=None):
        fields = {
            "gateway_customer_ref": snapshot.customer_ref,
            "current_period_start": snapshot.current_start or snapshot.start_at,
            "current_period_end": snapshot.current_end,
            "next_due_date": self.compute_next_due_date(snapshot, previous_due),
        }
        if snapshot.plan_id:
            fields["gateway_plan_id"] = snapshot.plan_id
            fields["plan"] = self.resolve_plan(snapshot.plan_id).value
        return {key: value for key, value in fields.items() if value is not None}

    # ==================== PUSH: WEBHOOKS ====================

    def handle_webhook(self, raw_body, signature_header, event_id=None):
        """
        Verify, parse and apply one webhook delivery.

        The signature is checked over ``raw_body`` exactly as received,
        before any parsing. Redeliveries are harmless: applying an event
        overwrites the canonical status with the same value.
        """
        if not self.gateway.verify_webhook_signature(raw_body, signature_header):
            logger.warning(
                "Webhook signature rejected",
                extra={"provider": self.gateway.name, "signature_present": bool(signature_header)},
            )
            raise InvalidSignature("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON") from None
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event = self.gateway.parse_webhook_event(payload, event_id=event_id)

        if event.event_id and self.store.find_webhook_event(self.gateway.name, event.event_id):
            logger.info(
                "Webhook already processed",
                extra={"provider": self.gateway.name, "event_id": event.event_id, "event_type": event.event_type},
            )
            return WebhookResult("duplicate", event.event_type, event.subscription_ref)

        with self.store.transaction("apply webhook event", event_type=event.event_type):
            result = self.apply_event(event)
            if event.event_id:
                self.store.record_webhook_event(
                    self.gateway.name, event.event_id, event.event_type, event.subscription_ref, result.outcome
                )

        logger.info(
            "Webhook processed",
            extra={
                "provider": self.gateway.name,
                "event_type": event.event_type,
                "subscription_id": event.subscription_ref,
                "outcome": result.outcome,
                "status": result.status,
            },
        )
        if result.outcome == "applied" and result.user_id:
            self._mirror_current_plan(result.user_id)
        return result

    def apply_event(self, event):
        """Apply a parsed gateway event inside the caller's transaction."""
        if event.kind is None:
            logger.info("Ignoring unhandled webhook event", extra={"event_type": event.event_type})
            return WebhookResult("ignored", event.event_type, event.subscription_ref, reason="unhandled event type")

        if event.kind == EventKind.PAYMENT_FAILED:
            # Not a cancellation signal; the gateway emits halted once its retries run out
            logger.warning(
                "Subscription payment failed",
                extra={
                    "subscription_id": event.subscription_ref,
                    "payment_id": event.payment.id if event.payment else None,
                },
            )
            return WebhookResult("ignored", event.event_type, event.subscription_ref, reason="payment failure logged")

        ref = event.subscription_ref
        if not ref:
            logger.warning("Webhook event without subscription reference", extra={"event_type": event.event_type})
            return WebhookResult("ignored", event.event_type, reason="no subscription reference")

        if event.kind == EventKind.CHARGED and event.payment and event.payment.status != "captured":
            logger.info(
                "Ignoring charge that was not captured",
                extra={"subscription_id": ref, "payment_status": event.payment.status},
            )
            return WebhookResult("ignored", event.event_type, ref, reason="payment not captured")

        row = self.store.find_by_gateway_ref(ref)
        if row is None:
            return self._adopt_unknown_subscription(event)

        if not BillingStateMachine.can_transition(row.status, event.kind):
            logger.warning(
                "Rejected subscription transition",
                extra={"subscription_id": ref, "current_status": row.status, "event": event.kind.value},
            )
            return WebhookResult(
                "rejected", event.event_type, ref,
                status=row.status,
                reason=f"Cannot apply {event.kind.value} to a {row.status} subscription",
            )
        new_status = BillingStateMachine.transition(row.status, event.kind)

        fields = {"status": new_status.value}
        if event.subscription:
            fields.update(self._snapshot_fields(event.subscription, row.next_due_date))
        if event.kind == EventKind.CHARGED and event.payment:
            fields["gateway_payment_ref"] = event.payment.id
            if event.payment.amount is not None:
                fields["amount_paid"] = event.payment.amount

        user_id = row.user_id
        if new_status == CanonicalStatus.ACTIVE:
            self.store.lock_user(user_id)
            self.store.supersede_active(user_id, except_gateway_ref=ref)
        self.store.upsert_by_gateway_ref(ref, fields)
        return WebhookResult("applied", event.event_type, ref, status=new_status.value, user_id=user_id)

    def _adopt_unknown_subscription(self, event):
        """
        A subscription we have no row for. Activations are recorded when the
        gateway notes name one of our users; anything else is only logged.
        """
        ref = event.subscription_ref
        snapshot = event.subscription
        user_id = _notes_user_id(snapshot.notes if snapshot else None)

        if event.kind not in ACTIVATING_EVENTS or user_id is None or self.store.get_user(user_id) is None:
            logger.warning(
                "Webhook for unknown subscription",
                extra={"subscription_id": ref, "event_type": event.event_type},
            )
            return WebhookResult("ignored", event.event_type, ref, reason="unknown subscription")

        new_status = BillingStateMachine.initial_status_for(event.kind)
        fields = {
            "user_id": user_id,
            "provider": self.gateway.name,
            "status": new_status.value,
            **self._snapshot_fields(snapshot),
        }
        fields.setdefault("plan", Plan.FREE.value)
        if event.kind == EventKind.CHARGED and event.payment:
            fields["gateway_payment_ref"] = event.payment.id
            if event.payment.amount is not None:
                fields["amount_paid"] = event.payment.amount

        self.store.lock_user(user_id)
        self.store.supersede_active(user_id, except_gateway_ref=ref)
        self.store.upsert_by_gateway_ref(ref, fields)
        logger.info("Recorded subscription first seen via webhook", extra={"subscription_id": ref, "user_id": user_id})
        return WebhookResult("applied", event.event_type, ref, status=new_status.value, user_id=user_id)

    # ==================== PULL: CLIENT-DRIVEN SYNC ====================

    def pull(self, user_id, gateway_ref):
        """
        Fetch the live subscription and commit it only if it is active.

        A pending or otherwise non-active snapshot never overwrites local
        state; the caller gets an informational result instead.
        """
        snapshot = self.gateway.fetch_subscription(gateway_ref)
        existing = self.store.find_by_gateway_ref(gateway_ref)

        if existing is not None and existing.user_id != user_id:
            raise SubscriptionNotFound("Subscription not found")
        if existing is None:
            owner = _notes_user_id(snapshot.notes)
            if owner is not None and owner != user_id:
                logger.warning(
                    "Pull for a subscription owned by another user",
                    extra={"subscription_id": gateway_ref, "user_id": user_id},
                )
                raise SubscriptionNotFound("Subscription not found")

        status = BillingStateMachine.normalize_status(snapshot.status)
        fields = self._snapshot_fields(snapshot, existing.next_due_date if existing else None)
        plan = fields.get("plan") or (existing.plan if existing else Plan.FREE.value)

        if status != CanonicalStatus.ACTIVE:
            logger.info(
                "Pulled subscription is not active; nothing committed",
                extra={"subscription_id": gateway_ref, "gateway_status": snapshot.status},
            )
            return PullResult(
                committed=False,
                gateway_status=snapshot.status,
                status=status.value if status else None,
                plan=plan,
                subscription=self.store.read(user_id),
            )

        fields.update({
            "user_id": user_id,
            "provider": self.gateway.name,
            "status": ACTIVE,
            "plan": plan,
        })
        with self.store.transaction("commit pulled subscription", user_id=user_id, subscription_id=gateway_ref):
            self.store.lock_user(user_id)
            self.store.supersede_active(user_id, except_gateway_ref=gateway_ref)
            row = self.store.upsert_by_gateway_ref(gateway_ref, fields)

        logger.info(
            "Subscription reconciled from gateway",
            extra={"subscription_id": gateway_ref, "user_id": user_id, "plan": plan},
        )
        self._mirror_current_plan(user_id)
        return PullResult(committed=True, gateway_status=snapshot.status, status=ACTIVE, plan=plan, subscription=row)

    # ==================== ONE-TIME PURCHASES ====================

    def start_one_time_purchase(self, user_id, plan, duration_months=1):
        require_capability(self.gateway, Capability.ONE_TIME_ORDERS)
        plan = Plan(plan)
        if duration_months < 1:
            raise ValidationError("durationMonths must be at least 1")

        definition = PLAN_CATALOG[plan]
        amount = definition.amount * duration_months
        receipt = f"rcpt_{user_id}_{int(self.clock().timestamp())}"
        order = self.gateway.create_order(
            amount,
            definition.currency,
            receipt,
            {"user_id": str(user_id), "plan": plan.value, "duration_months": str(duration_months)},
        )
        with self.store.transaction("record one-time order", user_id=user_id):
            record = self.store.add_catalog_order(
                user_id=user_id,
                plan=plan.value,
                duration_months=duration_months,
                amount=order.amount,
                currency=order.currency,
                receipt=receipt,
                gateway_order_ref=order.id,
                payment_status="pending",
            )
        return record

    def verify_one_time_payment(self, user_id, order_ref, payment_ref, signature):
        """
        Confirm a checkout payment and grant time-boxed access.

        The resulting row is active with cancel_at_period_end set; it is
        never flipped by a job, readers treat it as expired after its end.
        """
        require_capability(self.gateway, Capability.ONE_TIME_ORDERS)

        order = self.store.find_catalog_order(order_ref)
        if order is None or order.user_id != user_id:
            raise SubscriptionNotFound("Order not found")
        if order.is_paid:
            existing = self.store.find_by_gateway_ref(f"{ONE_TIME_REF_PREFIX}{order.gateway_payment_ref}")
            return OneTimeResult(subscription=existing, order=order, already_verified=True)

        if not self.gateway.verify_payment_signature(order_ref, payment_ref, signature):
            logger.warning("Payment signature rejected", extra={"order_id": order_ref, "user_id": user_id})
            raise InvalidSignature("Invalid payment signature")

        payment = self.gateway.fetch_payment(payment_ref)
        if payment.order_ref and payment.order_ref != order_ref:
            raise ValidationError("Payment does not belong to this order")
        if not payment.is_completed:
            raise PaymentNotCompleted(f"Payment is {payment.status or 'not completed'}; try again shortly")

        now = self.clock()
        period_end = add_months(now, order.duration_months)
        with self.store.transaction("activate one-time purchase", user_id=user_id, order_id=order_ref):
            self.store.lock_user(user_id)
            self.store.supersede_active(user_id)
            row = self.store.upsert_by_gateway_ref(f"{ONE_TIME_REF_PREFIX}{payment_ref}", {
                "user_id": user_id,
                "provider": self.gateway.name,
                "plan": order.plan,
                "status": ACTIVE,
                "gateway_order_ref": order_ref,
                "gateway_payment_ref": payment_ref,
                "current_period_start": now,
                "current_period_end": period_end,
                "next_due_date": period_end,
                "cancel_at_period_end": True,
                "amount_paid": payment.amount if payment.amount is not None else order.amount,
                "billing_duration_months": order.duration_months,
            })
            self.store.mark_catalog_order_paid(order, payment_ref, now)

        logger.info(
            "One-time purchase activated",
            extra={"user_id": user_id, "plan": order.plan, "payment_id": payment_ref, "expires_at": period_end.isoformat()},
        )
        self._mirror_current_plan(user_id)
        return OneTimeResult(subscription=row, order=order)

    # ==================== CANCELLATION ====================

    def cancel(self, gateway_ref, at_cycle_end):
        """
        Cancel at the gateway first. Nothing is written locally unless the
        gateway accepted the cancellation.
        """
        row = self.store.find_by_gateway_ref(gateway_ref)
        if row is None:
            raise SubscriptionNotFound("Subscription not found")
        if row.is_one_time:
            raise ValidationError("One-time purchases end on their own and cannot be canceled")
        # Only a paid, active period runs on to its end; anything else ends now
        at_cycle_end = bool(at_cycle_end) and row.status == ACTIVE
        if at_cycle_end:
            require_capability(self.gateway, Capability.CANCEL_AT_CYCLE_END)

        snapshot = self.gateway.cancel_subscription(gateway_ref, at_cycle_end)

        if at_cycle_end:
            new_status = ACTIVE
        else:
            new_status = BillingStateMachine.transition(row.status, EventKind.CANCELLED).value
        fields = {"status": new_status, "cancel_at_period_end": at_cycle_end}
        if snapshot.current_end:
            fields["current_period_end"] = snapshot.current_end

        with self.store.transaction("record cancellation", subscription_id=gateway_ref):
            row = self.store.upsert_by_gateway_ref(gateway_ref, fields)

        logger.info(
            "Subscription cancellation recorded",
            extra={"subscription_id": gateway_ref, "at_cycle_end": at_cycle_end, "status": row.status},
        )
        self._mirror_current_plan(row.user_id)
        return row

    # ==================== BATCH ====================

    def sync_all(self):
        """Pull every recurring subscription; failures are counted, not fatal."""
        report = SyncReport()
        for row in self.store.list_reconcilable():
            ref = row.gateway_subscription_ref
            try:
                result = self.pull(row.user_id, ref)
            except DomainError as exc:
                report.failed += 1
                report.errors.append({"subscriptionId": ref, "error": exc.details})
                logger.warning("Subscription sync failed", extra={"subscription_id": ref, "error_code": exc.code})
                continue
            if result.committed:
                report.synced += 1
            else:
                report.skipped += 1
        logger.info("Subscription sync finished", extra=report.to_dict())
        return report

    # ==================== PROFILE MIRROR ====================

    def _mirror_current_plan(self, user_id):
        """Copy the entitled plan onto the user profile; failures only warn."""
        try:
            with self.store.transaction("mirror plan onto profile", user_id=user_id):
                plan = effective_plan(self.store.read(user_id), self.clock())
                self.store.mirror_plan(user_id, plan.value)
        except StoreUnavailable:
            logger.warning("Could not mirror plan onto user profile", extra={"user_id": user_id})


def _notes_user_id(notes):
    value = (notes or {}).get("user_id")
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None
