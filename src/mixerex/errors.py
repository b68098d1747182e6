"""Mixer error taxonomy.

Each error carries the HTTP status the API layer answers with. Messages are
safe to show to clients: they never contain ledger responses or key material.
"""

from typing import Optional


class MixerError(Exception):
    """Base mixer error."""

    http_status: int = 500

    def __init__(self, message: str, http_status: Optional[int] = None) -> None:
        self.message = message
        if http_status is not None:
            self.http_status = http_status
        super().__init__(message)


class ConfigurationError(MixerError):
    """Invalid or missing configuration. Fatal at startup."""


class ValidationError(MixerError):
    """Bad client input, rejected before anything is persisted."""

    http_status = 400


class NotFoundError(MixerError):
    """Unknown order id."""

    http_status = 404

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class AlreadyTerminalError(MixerError):
    """Operation is not valid for the order's current state."""

    http_status = 409

    def __init__(self, order_id: str, status: str) -> None:
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} is already {status}")


class PayoutInFlightError(MixerError):
    """A payout for the order is being submitted right now."""

    http_status = 409

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Payout for order {order_id} is in flight")


class LedgerUnavailableError(MixerError):
    """Transient RPC or network failure. Retryable."""

    http_status = 503


class DecryptionError(MixerError):
    """Ciphertext cannot be opened with any configured key.

    Fatal for the affected order; it needs operator attention.
    """


class InsufficientDepositError(MixerError):
    """Deposit address holds less than the order amount.

    Not a failure: the normal "not yet deposited" signal.
    """

    http_status = 200

    def __init__(self, expected: int, observed: int) -> None:
        self.expected = expected
        self.observed = observed
        super().__init__(f"Deposit below expected amount: {observed} < {expected}")


class PayoutError(MixerError):
    """Payout submission or confirmation failed."""

    http_status = 502
