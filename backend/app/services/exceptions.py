"""Domain errors raised by billing services.

Each error carries the HTTP status the API layer answers with; the
handler registered in main.py renders them as {"detail": message}.
"""


class BillingError(Exception):
    """Base class for billing domain errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(BillingError):
    status_code = 404


class SubscriptionNotFoundError(NotFoundError):
    """Raised when a webhook references a subscription the platform never created."""

    def __init__(self, gateway_subscription_id: str | None):
        super().__init__(f"Subscription not found for gateway id {gateway_subscription_id}")
        self.gateway_subscription_id = gateway_subscription_id


class PermissionDeniedError(BillingError):
    status_code = 403


class BillingValidationError(BillingError):
    status_code = 400


class InvalidTransitionError(BillingError):
    status_code = 409

    def __init__(self, current: str, action: str):
        super().__init__(f"Cannot {action} a subscription in status '{current}'")
        self.current = current
        self.action = action


class GatewayError(BillingError):
    """Transient or rejected call to the payment gateway."""

    status_code = 502


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer in time; the outcome of the call is unknown."""

    status_code = 504
