class PaymentError(Exception):
    """Base class for every failure raised by the billing core."""


class NotFoundError(PaymentError):
    pass


class TransactionNotFoundError(NotFoundError):
    """No transaction matches an inbound gateway notification."""


class ValidationError(PaymentError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class GatewayError(PaymentError):
    """
    Raised by the gateway client.

    fallback_eligible is set when the provider blocked the direct push path
    (non-2xx or non-JSON response). Everything else is fatal.
    """

    def __init__(self, message: str, fallback_eligible: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.fallback_eligible = fallback_eligible
        self.status_code = status_code


class PersistenceError(PaymentError):
    pass


class SubscriptionRequiredError(PaymentError):
    """The user has no active subscription of the role a feature needs."""
