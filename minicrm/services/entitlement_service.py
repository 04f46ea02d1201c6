# entitlement_service.py
import logging
from dataclasses import dataclass
from typing import Optional

from minicrm.billing.plans import (
    RESOURCE_ACTIONS,
    Action,
    can_perform,
    effective_plan,
    limits_for,
)
from minicrm.billing.utils import start_of_month, utcnow
from minicrm.errors import ValidationError
from minicrm.models import Customer, Invoice

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    resource_kind: str
    plan: str
    limit: Optional[int] = None
    usage: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self):
        return {
            "allowed": self.allowed,
            "resourceKind": self.resource_kind,
            "plan": self.plan,
            "limit": self.limit,
            "usage": self.usage,
            "reason": self.reason,
        }


class UsageCounter:
    """Counts the rows a user has created, for limit checks."""

    def __init__(self, session):
        self.session = session

    def count_customers(self, user_id):
        return self.session.query(Customer).filter(Customer.user_id == user_id).count()

    def count_invoices_since(self, user_id, since):
        return (
            self.session.query(Invoice)
            .filter(Invoice.user_id == user_id, Invoice.created_at >= since)
            .count()
        )


class EntitlementResolver:
    """
    Feature gating for the rest of the application.

    Reads the user's stored subscription, applies lazy expiry, and checks
    usage against the static plan table.
    """

    def __init__(self, store, usage, clock=utcnow):
        self.store = store
        self.usage = usage
        self.clock = clock

    def get_limits_for_plan(self, plan):
        return limits_for(plan)

    def current_plan(self, user_id):
        return effective_plan(self.store.read(user_id), self.clock())

    def check_can_create(self, resource_kind, user_id):
        action = RESOURCE_ACTIONS.get(resource_kind)
        if action is None:
            raise ValidationError(
                f"Unknown resource kind {resource_kind!r}; expected one of: {', '.join(RESOURCE_ACTIONS)}"
            )

        plan = self.current_plan(user_id)
        limits = limits_for(plan)

        if action == Action.MANAGE_PRODUCTS:
            allowed = can_perform(action, plan)
            return EntitlementDecision(
                allowed=allowed,
                resource_kind=resource_kind,
                plan=plan.value,
                reason=None if allowed else "Product catalog is not included in your plan",
            )

        if action == Action.CREATE_CUSTOMER:
            limit = limits.max_customers
            usage = self.usage.count_customers(user_id)
        else:
            limit = limits.max_invoices_per_month
            usage = self.usage.count_invoices_since(user_id, start_of_month(self.clock()))

        allowed = can_perform(action, plan, usage)
        if not allowed:
            logger.info(
                "Plan limit reached",
                extra={"user_id": user_id, "plan": plan.value, "resource_kind": resource_kind, "limit": limit},
            )
        return EntitlementDecision(
            allowed=allowed,
            resource_kind=resource_kind,
            plan=plan.value,
            limit=limit,
            usage=usage,
            reason=None if allowed else f"You have reached the {resource_kind} limit of the {plan.value} plan ({limit})",
        )
