"""Error taxonomy for the order core.

Only conditions a caller cannot act on as a normal business outcome are
exceptions. Short stock, lost holds, payment outcomes and webhook acks are
returned as result variants by the services that produce them.
"""


class ShopcoreError(Exception):
    """Base class; `code` is stable and safe to show to API clients."""

    code = "error"
    http_status = 500

    def __init__(self, message: str, **detail) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.detail}


class ValidationError(ShopcoreError):
    """Bad input or a request that is not valid in the current state."""

    code = "validation_error"
    http_status = 422


class InvalidTransition(ValidationError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, entity: str, current: str, new: str) -> None:
        super().__init__(f"Invalid {entity} transition: {current} -> {new}", current=current, requested=new)


class StalePaymentAction(ValidationError):
    code = "stale_payment_action"
    http_status = 409


class NotFound(ShopcoreError):
    code = "not_found"
    http_status = 404


class Forbidden(ShopcoreError):
    code = "forbidden"
    http_status = 403


class ConcurrentModification(ShopcoreError):
    """Optimistic version check or compare-and-transition lost a race."""

    code = "concurrent_modification"
    http_status = 409


class GatewayError(ShopcoreError):
    """Transport-level failure talking to a payment gateway."""

    code = "gateway_error"
    http_status = 502

    def __init__(self, message: str, retryable: bool = True, **detail) -> None:
        super().__init__(message, **detail)
        self.retryable = retryable


class GatewayTimeout(GatewayError):
    code = "gateway_timeout"
    http_status = 504


class InvariantViolation(ShopcoreError):
    """A cross-entity invariant would be broken; the unit of work is aborted."""

    code = "invariant_violation"
    http_status = 500
