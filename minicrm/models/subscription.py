# subscription.py
from sqlalchemy import CheckConstraint, Index, text

from minicrm.billing.utils import isoformat, utcnow
from minicrm.extensions import db

ONE_TIME_REF_PREFIX = "onetime_"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    provider = db.Column(db.String(20), nullable=False)
    plan = db.Column(db.String(20), nullable=False, default="free")
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)

    # Gateway references; one-time purchases use "onetime_<payment ref>"
    gateway_subscription_ref = db.Column(db.String(255), unique=True, nullable=True, index=True)
    gateway_customer_ref = db.Column(db.String(255), nullable=True)
    gateway_plan_id = db.Column(db.String(255), nullable=True)
    gateway_order_ref = db.Column(db.String(255), nullable=True)
    gateway_payment_ref = db.Column(db.String(255), nullable=True)

    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)
    next_due_date = db.Column(db.DateTime, nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)

    amount_paid = db.Column(db.BigInteger, nullable=True)  # minor units
    billing_duration_months = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    user = db.relationship("User", backref=db.backref("subscriptions", lazy="dynamic"))

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'past_due', 'canceled')",
            name="valid_subscription_status",
        ),
        CheckConstraint(
            "plan IN ('free', 'starter', 'pro', 'business')",
            name="valid_subscription_plan",
        ),
        # At most one active row per user
        Index(
            "uq_subscriptions_one_active_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("idx_subscriptions_user_status", "user_id", "status"),
    )

    @property
    def is_one_time(self):
        return bool(self.gateway_subscription_ref) and self.gateway_subscription_ref.startswith(ONE_TIME_REF_PREFIX)

    def is_expired(self, now=None):
        """A row scheduled to end (one-time or cancel-at-period-end) whose period has passed."""
        if not self.cancel_at_period_end or self.current_period_end is None:
            return False
        return (now or utcnow()) > self.current_period_end

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "provider": self.provider,
            "plan": self.plan,
            "status": self.status,
            "subscriptionId": self.gateway_subscription_ref,
            "customerId": self.gateway_customer_ref,
            "currentPeriodStart": isoformat(self.current_period_start),
            "currentPeriodEnd": isoformat(self.current_period_end),
            "nextDueDate": isoformat(self.next_due_date),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "amountPaid": self.amount_paid,
            "billingDurationMonths": self.billing_duration_months,
            "isOneTime": self.is_one_time,
            "updatedAt": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<Subscription {self.gateway_subscription_ref} user={self.user_id} {self.plan}/{self.status}>"
