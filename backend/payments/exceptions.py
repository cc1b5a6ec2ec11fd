class PaymentError(Exception):
    """Base class for payment domain failures."""


class InvalidSignature(PaymentError):
    pass


class InvalidPayload(PaymentError):
    pass


class TransactionNotFound(PaymentError):
    pass


class InvalidStateTransition(PaymentError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition payment transaction from {current} to {target}")


class ProviderError(PaymentError):
    """The upstream provider rejected or failed a checkout request."""


class UnsupportedProvider(PaymentError):
    pass
