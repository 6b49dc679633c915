GENERIC_FAILURE_MESSAGE = "Payment verification failed, please try again or contact support."


class PaymentError(Exception):
    """Base for every error the payment flow raises to its callers."""

    status_code = 500
    user_message = GENERIC_FAILURE_MESSAGE

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class ValidationError(PaymentError):
    status_code = 422

    def __init__(self, message: str):
        super().__init__(message)
        self.user_message = message


class TransactionCodeReuseError(PaymentError):
    status_code = 409
    user_message = "This M-Pesa transaction code has already been used."

    def __init__(self, transaction_code: str):
        super().__init__(f"transaction code {transaction_code} already linked to another account")
        self.transaction_code = transaction_code


class GatewayError(PaymentError):
    status_code = 502

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class GatewayAuthError(GatewayError):
    pass


class GatewayPushError(GatewayError):
    pass


class GatewayQueryError(GatewayError):
    pass


class LedgerError(PaymentError):
    pass


class DuplicateRequestError(LedgerError):
    def __init__(self, correlation_id: str):
        super().__init__(f"payment request {correlation_id} already recorded")
        self.correlation_id = correlation_id


class InvalidTransitionError(LedgerError):
    def __init__(self, correlation_id: str, current: str, requested: str):
        super().__init__(f"payment request {correlation_id} is {current}, cannot become {requested}")
        self.correlation_id = correlation_id
        self.current = current
        self.requested = requested


class UnknownRequestError(LedgerError):
    status_code = 404

    def __init__(self, correlation_id: str):
        super().__init__(f"no payment request for correlation id {correlation_id}")
        self.correlation_id = correlation_id


class AccountUpdateError(PaymentError):
    """The account store rejected or failed a flag update."""
