"""Error taxonomy for the payment client, identity binding and API."""


class PaymentError(Exception):
    """Base error for the payment subsystem."""


class NetworkFailure(PaymentError):
    """Status request failed, returned non-2xx, or had an unreadable body."""


class UnknownStatusValue(PaymentError):
    """Status endpoint answered with a value outside `PaymentStatus`."""

    def __init__(self, value) -> None:
        super().__init__(f"Unknown payment status: {value!r}")
        self.value = value


class AuthUnavailable(PaymentError):
    """No signing extension/identity provider is available."""


class ProviderError(PaymentError):
    """Invoice provider call failed."""


class InvoiceNotFound(PaymentError):
    """Invoice id is not known to the store."""


class ServerNotFound(PaymentError):
    """Blossom server id is not known to the store."""
