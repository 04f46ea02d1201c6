# catalog_order.py
from sqlalchemy import CheckConstraint

from minicrm.billing.utils import isoformat, utcnow
from minicrm.extensions import db


class CatalogOrder(db.Model):
    """A one-time purchase of a plan, paid through a gateway order."""

    __tablename__ = "catalog_orders"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    plan = db.Column(db.String(20), nullable=False)
    duration_months = db.Column(db.Integer, nullable=False, default=1)
    amount = db.Column(db.BigInteger, nullable=False)  # minor units
    currency = db.Column(db.String(3), nullable=False, default="INR")
    receipt = db.Column(db.String(64), nullable=False)

    gateway_order_ref = db.Column(db.String(255), unique=True, nullable=False, index=True)
    gateway_payment_ref = db.Column(db.String(255), nullable=True)
    payment_status = db.Column(db.String(20), nullable=False, default="pending")

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("payment_status IN ('pending', 'paid')", name="valid_catalog_payment_status"),
        CheckConstraint("duration_months > 0", name="positive_duration_months"),
    )

    @property
    def is_paid(self):
        return self.payment_status == "paid"

    def to_dict(self):
        return {
            "id": self.id,
            "orderId": self.gateway_order_ref,
            "plan": self.plan,
            "durationMonths": self.duration_months,
            "amount": self.amount,
            "currency": self.currency,
            "receipt": self.receipt,
            "paymentStatus": self.payment_status,
            "paymentId": self.gateway_payment_ref,
            "paidAt": isoformat(self.paid_at),
        }
