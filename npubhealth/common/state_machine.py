"""Payment status enumeration and the transitions the client accepts."""

from enum import Enum


class PaymentStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STATUSES: frozenset[PaymentStatus] = frozenset(
    {PaymentStatus.PAID, PaymentStatus.EXPIRED, PaymentStatus.CANCELLED}
)

# Expired/cancelled invoices can still settle late through the provider.
ALLOWED_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.IDLE: {PaymentStatus.PENDING},
    PaymentStatus.PENDING: {
        PaymentStatus.PAID,
        PaymentStatus.EXPIRED,
        PaymentStatus.CANCELLED,
        PaymentStatus.ERROR,
    },
    PaymentStatus.ERROR: {
        PaymentStatus.PENDING,
        PaymentStatus.PAID,
        PaymentStatus.EXPIRED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.EXPIRED: {PaymentStatus.PAID},
    PaymentStatus.CANCELLED: {PaymentStatus.PAID},
    PaymentStatus.PAID: set(),
}


def can_transition(current: PaymentStatus, new: PaymentStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: PaymentStatus, new: PaymentStatus) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not can_transition(current, new):
        raise ValueError(f"Invalid transition: {current.value} -> {new.value}")


def parse_status(value) -> PaymentStatus:
    """Map a raw wire value onto `PaymentStatus`; raise ValueError otherwise."""

    if isinstance(value, PaymentStatus):
        return value
    if not isinstance(value, str):
        raise ValueError(f"status must be a string, got {type(value).__name__}")
    return PaymentStatus(value.strip().lower())
