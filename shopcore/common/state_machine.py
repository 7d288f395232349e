"""Transition tables for orders, payments and reservations.

Status columns only change through `validate_transition` followed by a
conditional write, so these tables are the whole lifecycle definition.
"""

from shopcore.common.errors import InvalidTransition

ORDER_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"pending_payment", "cancelled", "refunded"},
    "pending_payment": {"confirmed", "payment_failed", "cancelled", "refunded"},
    "payment_failed": {"pending_payment", "cancelled", "refunded"},
    "confirmed": {"processing", "cancelled", "refunded"},
    "processing": {"shipped", "cancelled", "refunded"},
    "shipped": {"delivered"},
    "delivered": {"completed"},
    "completed": set(),
    "cancelled": set(),
    "refunded": set(),
}
ORDER_TERMINAL = frozenset({"completed", "cancelled", "refunded"})

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "initiated": {"requires_action", "succeeded", "failed"},
    "requires_action": {"requires_action", "succeeded", "failed"},
    "succeeded": {"partially_refunded", "refunded"},
    "partially_refunded": {"partially_refunded", "refunded"},
    "failed": set(),
    "refunded": set(),
}
PAYMENT_OPEN = frozenset({"initiated", "requires_action"})
# Once a payment leaves PAYMENT_OPEN its outcome is settled; later gateway
# events can only add refund bookkeeping on top of a success.
PAYMENT_SETTLED = frozenset({"succeeded", "failed", "partially_refunded", "refunded"})

RESERVATION_TRANSITIONS: dict[str, set[str]] = {
    "active": {"committed", "released", "expired"},
    # Restock after capture: committed quantity goes back on hand.
    "committed": {"released"},
    "released": set(),
    "expired": set(),
}

_TABLES = {
    "order": ORDER_TRANSITIONS,
    "payment": PAYMENT_TRANSITIONS,
    "reservation": RESERVATION_TRANSITIONS,
}


def can_transition(entity: str, current: str, new: str) -> bool:
    return new in _TABLES[entity].get(current, set())


def validate_transition(current: str, new: str, entity: str = "order") -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not can_transition(entity, current, new):
        raise InvalidTransition(entity, current, new)
