class DomainError(Exception):
    """
    Base class for billing errors surfaced to API callers.

    ``status_code`` and ``error`` drive the JSON error body; ``details``
    carries the human readable message (provider descriptions included).
    """

    status_code = 400
    error = "Request failed"

    def __init__(self, details=None, *, code=None):
        self.details = details or self.error
        self.code = code or self.__class__.__name__
        super().__init__(self.details)

    def to_dict(self):
        return {"error": self.error, "details": self.details}


class ValidationError(DomainError):
    error = "Invalid request"


class PermissionDenied(DomainError):
    status_code = 403
    error = "Forbidden"


class SubscriptionNotFound(DomainError):
    status_code = 404
    error = "Subscription not found"


class InvalidSignature(DomainError):
    error = "Invalid signature"


class PaymentNotCompleted(DomainError):
    error = "Payment not completed"


class UnsupportedOperation(DomainError):
    error = "Operation not supported by the billing provider"


class InvalidStateTransition(DomainError):
    status_code = 409
    error = "Invalid state transition"

    def __init__(self, details=None, *, current=None, event=None):
        self.current = current
        self.event = event
        super().__init__(details or f"Cannot apply {event} to a {current} subscription")


class GatewayUnavailable(DomainError):
    status_code = 503
    error = "Payment gateway not configured"


class GatewayRejected(DomainError):
    status_code = 502
    error = "Payment gateway error"

    def __init__(self, details=None, *, http_status=None, code=None):
        self.http_status = http_status
        super().__init__(details, code=code)


class StoreUnavailable(DomainError):
    status_code = 500
    error = "Subscription store unavailable"


class PlanMismatch(DomainError):
    """Logged when a gateway plan id matches no configured plan; never raised to callers."""

    error = "Unknown gateway plan"

    def __init__(self, gateway_plan_id):
        self.gateway_plan_id = gateway_plan_id
        super().__init__(f"Gateway plan {gateway_plan_id!r} does not match a configured plan")
