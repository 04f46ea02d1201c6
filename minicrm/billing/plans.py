"""
Static plan catalog and the pure entitlement rules built on it.

This table is configuration, never derived from gateway data. Everything
that gates features reads limits from here.
"""
import logging
from dataclasses import asdict, dataclass
from enum import Enum

from minicrm.billing.state_machine import CanonicalStatus
from minicrm.billing.utils import utcnow
from minicrm.errors import ValidationError

logger = logging.getLogger(__name__)

UNLIMITED = -1


class Plan(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    BUSINESS = "business"


PAID_PLANS = (Plan.STARTER, Plan.PRO, Plan.BUSINESS)


class Action(str, Enum):
    CREATE_CUSTOMER = "create_customer"
    CREATE_INVOICE = "create_invoice"
    MANAGE_PRODUCTS = "manage_products"
    WHATSAPP_CRM = "whatsapp_crm"
    PRIORITY_SUPPORT = "priority_support"


# resource kind accepted by check_can_create -> gated action
RESOURCE_ACTIONS = {
    "customer": Action.CREATE_CUSTOMER,
    "invoice": Action.CREATE_INVOICE,
    "product": Action.MANAGE_PRODUCTS,
}


@dataclass(frozen=True)
class PlanLimits:
    max_customers: int
    max_invoices_per_month: int
    has_product_catalog: bool
    has_whatsapp_crm: bool
    has_priority_support: bool

    def to_dict(self):
        return {
            "maxCustomers": self.max_customers,
            "maxInvoicesPerMonth": self.max_invoices_per_month,
            "hasProductCatalog": self.has_product_catalog,
            "hasWhatsAppCRM": self.has_whatsapp_crm,
            "hasPrioritySupport": self.has_priority_support,
        }


@dataclass(frozen=True)
class PlanDefinition:
    plan: Plan
    name: str
    amount: int  # minor units, monthly
    currency: str
    limits: PlanLimits

    def to_dict(self):
        data = asdict(self)
        data["plan"] = self.plan.value
        data["limits"] = self.limits.to_dict()
        return data


PLAN_CATALOG = {
    Plan.FREE: PlanDefinition(
        plan=Plan.FREE,
        name="Free",
        amount=0,
        currency="INR",
        limits=PlanLimits(
            max_customers=50,
            max_invoices_per_month=20,
            has_product_catalog=False,
            has_whatsapp_crm=False,
            has_priority_support=False,
        ),
    ),
    Plan.STARTER: PlanDefinition(
        plan=Plan.STARTER,
        name="Starter",
        amount=24900,
        currency="INR",
        limits=PlanLimits(
            max_customers=200,
            max_invoices_per_month=100,
            has_product_catalog=True,
            has_whatsapp_crm=False,
            has_priority_support=False,
        ),
    ),
    Plan.PRO: PlanDefinition(
        plan=Plan.PRO,
        name="Pro",
        amount=49900,
        currency="INR",
        limits=PlanLimits(
            max_customers=UNLIMITED,
            max_invoices_per_month=UNLIMITED,
            has_product_catalog=True,
            has_whatsapp_crm=False,
            has_priority_support=False,
        ),
    ),
    Plan.BUSINESS: PlanDefinition(
        plan=Plan.BUSINESS,
        name="Business",
        amount=99900,
        currency="INR",
        limits=PlanLimits(
            max_customers=UNLIMITED,
            max_invoices_per_month=UNLIMITED,
            has_product_catalog=True,
            has_whatsapp_crm=True,
            has_priority_support=True,
        ),
    ),
}


def parse_plan(value, *, paid_only=False):
    """Coerce user input to a Plan, raising ValidationError on anything else."""
    try:
        plan = Plan(str(value).lower())
    except ValueError:
        raise ValidationError(f"Unknown plan: {value!r}") from None
    if paid_only and plan not in PAID_PLANS:
        raise ValidationError("Plan must be one of: starter, pro, business")
    return plan


def limits_for(plan):
    try:
        return PLAN_CATALOG[Plan(plan)].limits
    except ValueError:
        logger.warning("Unknown plan, using free limits", extra={"plan": plan})
        return PLAN_CATALOG[Plan.FREE].limits


def can_perform(action, plan, current_usage_count=0):
    """
    ``limit == -1 or usage < limit`` for counted actions; the plan flag for
    feature actions.
    """
    limits = limits_for(plan)
    action = Action(action)

    if action == Action.CREATE_CUSTOMER:
        limit = limits.max_customers
    elif action == Action.CREATE_INVOICE:
        limit = limits.max_invoices_per_month
    elif action == Action.MANAGE_PRODUCTS:
        return limits.has_product_catalog
    elif action == Action.WHATSAPP_CRM:
        return limits.has_whatsapp_crm
    else:
        return limits.has_priority_support

    return limit == UNLIMITED or current_usage_count < limit


def effective_plan(subscription, now=None):
    """
    The plan a stored subscription entitles its owner to right now.

    Only an ``active`` row grants its plan. Rows scheduled to end (one-time
    purchases, cancel-at-period-end) are read as expired once their period
    is over, even though the stored status is still ``active``.
    """
    if subscription is None or subscription.status != CanonicalStatus.ACTIVE.value:
        return Plan.FREE
    if subscription.is_expired(now or utcnow()):
        return Plan.FREE
    try:
        return Plan(subscription.plan)
    except ValueError:
        return Plan.FREE
