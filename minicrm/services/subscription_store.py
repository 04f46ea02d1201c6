# subscription_store.py
"""
Persistence for subscriptions, one-time orders and webhook deliveries.

The store is built around an explicit SQLAlchemy session. Methods flush but
never commit; ``transaction()`` is the only place work is committed, and it
turns every SQLAlchemy failure into StoreUnavailable after rolling back.
"""
import logging
from contextlib import contextmanager

from sqlalchemy import case, or_
from sqlalchemy.exc import SQLAlchemyError

from minicrm.billing.state_machine import CanonicalStatus
from minicrm.billing.utils import utcnow
from minicrm.errors import StoreUnavailable
from minicrm.models import CatalogOrder, Subscription, User, WebhookEvent
from minicrm.models.subscription import ONE_TIME_REF_PREFIX

logger = logging.getLogger(__name__)

ACTIVE = CanonicalStatus.ACTIVE.value
PENDING = CanonicalStatus.PENDING.value
CANCELED = CanonicalStatus.CANCELED.value


class SubscriptionStore:

    def __init__(self, session, clock=utcnow):
        self.session = session
        self.clock = clock

    # ----- transactions -----

    @contextmanager
    def transaction(self, operation, **context):
        """Commit on success; roll back on any error, surfacing DB errors as StoreUnavailable."""
        try:
            yield self
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(
                f"Store operation failed: {operation}",
                exc_info=True,
                extra={"operation": operation, "error_type": type(exc).__name__, **context},
            )
            raise StoreUnavailable(f"Could not {operation}") from exc
        except Exception:
            self.session.rollback()
            raise

    @contextmanager
    def _reading(self, operation):
        try:
            yield
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"Store read failed: {operation}", exc_info=True, extra={"operation": operation})
            raise StoreUnavailable(f"Could not {operation}") from exc

    # ----- reads -----

    def read(self, user_id):
        """The user's current subscription: the active row if any, else the most recent one."""
        with self._reading("read subscription"):
            return (
                self.session.query(Subscription)
                .filter(Subscription.user_id == user_id)
                .order_by(
                    case((Subscription.status == ACTIVE, 0), else_=1),
                    Subscription.updated_at.desc(),
                    Subscription.id.desc(),
                )
                .first()
            )

    def find_by_gateway_ref(self, gateway_ref):
        if not gateway_ref:
            return None
        with self._reading("find subscription"):
            return self.session.query(Subscription).filter_by(gateway_subscription_ref=gateway_ref).first()

    def list_reconcilable(self):
        """Recurring subscriptions the gateway can still report on."""
        with self._reading("list reconcilable subscriptions"):
            return (
                self.session.query(Subscription)
                .filter(
                    Subscription.gateway_subscription_ref.isnot(None),
                    ~Subscription.gateway_subscription_ref.like(f"{ONE_TIME_REF_PREFIX}%"),
                    Subscription.status != CANCELED,
                )
                .order_by(Subscription.id)
                .all()
            )

    def get_user(self, user_id):
        with self._reading("load user"):
            return self.session.get(User, user_id)

    def lock_user(self, user_id):
        """Row lock on the user so concurrent activations for them serialize."""
        return self.session.query(User).filter_by(id=user_id).with_for_update().first()

    # ----- writes -----

    def upsert_by_user(self, user_id, fields):
        row = self.read(user_id)
        if row is None:
            row = Subscription(user_id=user_id)
            self.session.add(row)
        elif self._is_stale(row, fields):
            logger.info("Dropping stale subscription write", extra={"user_id": user_id, "subscription_id": row.id})
            return row
        self._apply(row, fields)
        self.session.flush()
        return row

    def upsert_by_gateway_ref(self, gateway_ref, fields):
        """
        Update the row for ``gateway_ref``. A missing row is inserted only
        when ``fields`` names its owner; otherwise None is returned.
        """
        row = self.find_by_gateway_ref(gateway_ref)
        if row is None:
            if not fields.get("user_id"):
                return None
            row = Subscription(gateway_subscription_ref=gateway_ref, user_id=fields["user_id"])
            self.session.add(row)
        elif self._is_stale(row, fields):
            logger.info("Dropping stale subscription write", extra={"gateway_ref": gateway_ref})
            return row
        self._apply(row, fields)
        self.session.flush()
        return row

    def supersede_active(self, user_id, except_gateway_ref=None):
        """Delete the user's other active rows; returns how many were removed."""
        return self._delete_with_status(user_id, ACTIVE, except_gateway_ref)

    def discard_pending(self, user_id, except_gateway_ref=None):
        """Drop abandoned checkouts when a new one starts."""
        return self._delete_with_status(user_id, PENDING, except_gateway_ref)

    def mirror_plan(self, user_id, plan):
        user = self.session.get(User, user_id)
        if user is None:
            return False
        if user.plan != plan:
            user.plan = plan
            self.session.flush()
        return True

    def _delete_with_status(self, user_id, status, except_gateway_ref):
        query = self.session.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status == status,
        )
        if except_gateway_ref:
            query = query.filter(
                or_(
                    Subscription.gateway_subscription_ref.is_(None),
                    Subscription.gateway_subscription_ref != except_gateway_ref,
                )
            )
        removed = query.delete(synchronize_session="fetch")
        if removed:
            logger.info(
                "Removed superseded subscriptions",
                extra={"user_id": user_id, "status": status, "count": removed},
            )
        return removed

    def _is_stale(self, row, fields):
        incoming = fields.get("updated_at")
        return incoming is not None and row.updated_at is not None and incoming < row.updated_at

    def _apply(self, row, fields):
        changed = row.id is None
        for key, value in fields.items():
            if key == "updated_at":
                continue
            if getattr(row, key) != value:
                setattr(row, key, value)
                changed = True
        if changed:
            row.updated_at = fields.get("updated_at") or self.clock()
        return changed

    # ----- one-time orders -----

    def add_catalog_order(self, **fields):
        order = CatalogOrder(**fields)
        self.session.add(order)
        self.session.flush()
        return order

    def find_catalog_order(self, gateway_order_ref):
        with self._reading("find order"):
            return self.session.query(CatalogOrder).filter_by(gateway_order_ref=gateway_order_ref).first()

    def mark_catalog_order_paid(self, order, payment_ref, paid_at=None):
        order.payment_status = "paid"
        order.gateway_payment_ref = payment_ref
        order.paid_at = paid_at or self.clock()
        self.session.flush()
        return order

    # ----- webhook delivery log -----

    def find_webhook_event(self, provider, event_id):
        if not event_id:
            return None
        with self._reading("find webhook event"):
            return self.session.query(WebhookEvent).filter_by(provider=provider, event_id=event_id).first()

    def record_webhook_event(self, provider, event_id, event_type, gateway_ref, outcome):
        now = self.clock()
        event = WebhookEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            gateway_ref=gateway_ref,
            outcome=outcome,
            received_at=now,
            processed_at=now,
        )
        self.session.add(event)
        self.session.flush()
        return event
