from .domain import (
    DomainError,
    GatewayRejected,
    GatewayUnavailable,
    InvalidSignature,
    InvalidStateTransition,
    PaymentNotCompleted,
    PermissionDenied,
    PlanMismatch,
    StoreUnavailable,
    SubscriptionNotFound,
    UnsupportedOperation,
    ValidationError,
)

__all__ = [
    "DomainError",
    "GatewayRejected",
    "GatewayUnavailable",
    "InvalidSignature",
    "InvalidStateTransition",
    "PaymentNotCompleted",
    "PermissionDenied",
    "PlanMismatch",
    "StoreUnavailable",
    "SubscriptionNotFound",
    "UnsupportedOperation",
    "ValidationError",
]
