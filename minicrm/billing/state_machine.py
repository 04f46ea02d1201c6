"""
Canonical subscription states and the one table of legal transitions.

Gateway vocabularies (Razorpay statuses, Cashfree statuses after adapter
translation) are normalized here; nothing else decides what a gateway
status or event means for the stored subscription.
"""
from enum import Enum

from minicrm.errors import InvalidStateTransition


class CanonicalStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class EventKind(str, Enum):
    AUTHENTICATED = "authenticated"
    ACTIVATED = "activated"
    CHARGED = "charged"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    RESUMED = "resumed"
    PENDING = "pending"
    HALTED = "halted"
    PAYMENT_FAILED = "payment_failed"


# Gateway status vocabulary -> canonical status
GATEWAY_STATUS_MAP = {
    "created": CanonicalStatus.PENDING,
    "pending": CanonicalStatus.PENDING,
    "authenticated": CanonicalStatus.ACTIVE,
    "active": CanonicalStatus.ACTIVE,
    "resumed": CanonicalStatus.ACTIVE,
    "paused": CanonicalStatus.PAST_DUE,
    "halted": CanonicalStatus.PAST_DUE,
    "completed": CanonicalStatus.CANCELED,
    "cancelled": CanonicalStatus.CANCELED,
    "expired": CanonicalStatus.CANCELED,
}

ACTIVATING_EVENTS = frozenset({
    EventKind.AUTHENTICATED,
    EventKind.ACTIVATED,
    EventKind.CHARGED,
    EventKind.RESUMED,
})
ENDING_EVENTS = frozenset({EventKind.COMPLETED, EventKind.CANCELLED})
DELINQUENT_EVENTS = frozenset({EventKind.PAUSED, EventKind.HALTED})


def _build_transitions():
    table = {}
    for current in (CanonicalStatus.PENDING, CanonicalStatus.ACTIVE, CanonicalStatus.PAST_DUE):
        for event in ACTIVATING_EVENTS:
            table[(current, event)] = CanonicalStatus.ACTIVE
    # Cancellation is unconditional, whatever cancel_at_period_end says
    for current in CanonicalStatus:
        for event in ENDING_EVENTS:
            table[(current, event)] = CanonicalStatus.CANCELED
    for current in (CanonicalStatus.ACTIVE, CanonicalStatus.PAST_DUE):
        for event in DELINQUENT_EVENTS:
            table[(current, event)] = CanonicalStatus.PAST_DUE
    table[(CanonicalStatus.PENDING, EventKind.PENDING)] = CanonicalStatus.PENDING
    return table


# (current status, event) -> new status. Missing keys are illegal transitions.
TRANSITIONS = _build_transitions()


class BillingStateMachine:
    """
    Authoritative subscription state machine.

    Status changes driven by gateway events go through ``transition``;
    pulls go through ``normalize_status``.
    """

    @staticmethod
    def normalize_status(gateway_status):
        """Map a gateway status onto the canonical set; None when unrecognized."""
        if not gateway_status:
            return None
        return GATEWAY_STATUS_MAP.get(str(gateway_status).lower())

    @staticmethod
    def can_transition(current, event):
        return (CanonicalStatus(current), EventKind(event)) in TRANSITIONS

    @staticmethod
    def transition(current, event):
        """
        Return the status ``event`` moves ``current`` to.

        Raises InvalidStateTransition for pairs the table does not list,
        e.g. a charge arriving for a canceled subscription.
        """
        current = CanonicalStatus(current)
        event = EventKind(event)
        try:
            return TRANSITIONS[(current, event)]
        except KeyError:
            raise InvalidStateTransition(current=current.value, event=event.value) from None

    @staticmethod
    def initial_status_for(event):
        """Status for a row first created by ``event`` (no stored row yet)."""
        return BillingStateMachine.transition(CanonicalStatus.PENDING, event)
