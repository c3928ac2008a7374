"""Transaction and delivery state machines enforced by the reconciliation engine."""

from enum import Enum


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class DeliveryStatus(str, Enum):
    PROCESSING = "processing"
    INSPECTION = "inspection"
    DOCUMENTATION = "documentation"
    READY_FOR_COLLECTION = "ready_for_collection"
    COLLECTED = "collected"


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"payment_initiated", "cancelled"},
    "payment_initiated": {"payment_completed", "payment_failed", "cancelled"},
    # `refunded` is reachable only through the admin override.
    "payment_completed": {"completed", "refunded"},
    "payment_failed": set(),
    "cancelled": set(),
    "completed": set(),
    "refunded": set(),
}

SETTLED_STATUSES = frozenset({"payment_completed", "completed", "refunded"})

DELIVERY_ORDER: list[str] = [status.value for status in DeliveryStatus]


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def validate_delivery_transition(current: str | None, new: str) -> None:
    """Delivery only moves forward; re-applying the current step is allowed."""

    if new not in DELIVERY_ORDER:
        raise ValueError(f"Unknown delivery status: {new}")
    if current is None:
        return
    if DELIVERY_ORDER.index(new) < DELIVERY_ORDER.index(current):
        raise ValueError(f"Invalid delivery transition: {current} -> {new}")
