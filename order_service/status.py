"""Order status machine.

States are a closed enum. Untrusted strings are converted with
``parse_status`` at the edge of the system; everything past that point works
with ``OrderStatus`` members only.
"""

from enum import Enum
from typing import Dict, FrozenSet, List

from .errors import IllegalState, ValidationFailed


class OrderStatus(str, Enum):
    FOOD_PREPARING = "Food Preparing"
    LOOKING_FOR_DRIVER = "Looking for driver"
    DRIVER_ASSIGNED = "Driver assigned"
    OUT_FOR_DELIVERY = "Out for delivery"
    DELIVERED = "Delivered"
    REDISTRIBUTE = "Redistribute"
    CANCELLED = "Cancelled"
    DONATED = "Donated"

    def __str__(self) -> str:
        return self.value


# Ordered so that rejection messages list next states deterministically.
ALLOWED_TRANSITIONS: Dict[OrderStatus, tuple] = {
    OrderStatus.FOOD_PREPARING: (OrderStatus.LOOKING_FOR_DRIVER, OrderStatus.REDISTRIBUTE),
    OrderStatus.LOOKING_FOR_DRIVER: (OrderStatus.DRIVER_ASSIGNED, OrderStatus.REDISTRIBUTE),
    OrderStatus.DRIVER_ASSIGNED: (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.REDISTRIBUTE),
    OrderStatus.OUT_FOR_DELIVERY: (OrderStatus.DELIVERED, OrderStatus.REDISTRIBUTE),
    OrderStatus.REDISTRIBUTE: (OrderStatus.FOOD_PREPARING, OrderStatus.CANCELLED, OrderStatus.DONATED),
    OrderStatus.CANCELLED: (OrderStatus.DONATED,),
    OrderStatus.DELIVERED: (),
    OrderStatus.DONATED: (),
}

TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Customers may only cancel before a driver is on the way.
USER_CANCELABLE: FrozenSet[OrderStatus] = frozenset(
    [OrderStatus.FOOD_PREPARING, OrderStatus.LOOKING_FOR_DRIVER]
)

DONATABLE: FrozenSet[OrderStatus] = frozenset([OrderStatus.REDISTRIBUTE, OrderStatus.CANCELLED])


class UnknownStatus(ValidationFailed):
    def __init__(self, raw):
        super().__init__(f'Invalid status value: "{raw}"')
        self.raw = raw


class IllegalTransition(IllegalState):
    """Requested edge is not in the transition table."""

    def __init__(self, current: OrderStatus, requested: OrderStatus):
        self.current = current
        self.requested = requested
        self.allowed = allowed_next(current)
        allowed_text = ", ".join(s.value for s in self.allowed) if self.allowed else "none"
        super().__init__(
            f'Illegal transition: "{current.value}" → "{requested.value}". Allowed: {allowed_text}'
        )


def allowed_next(current: OrderStatus) -> List[OrderStatus]:
    return list(ALLOWED_TRANSITIONS.get(current, ()))


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    """True when ``requested`` is the same state or a direct successor."""
    if current == requested:
        return True
    return requested in ALLOWED_TRANSITIONS.get(current, ())


def ensure_transition(current: OrderStatus, requested: OrderStatus) -> None:
    if not can_transition(current, requested):
        raise IllegalTransition(current, requested)


def _fold(value) -> str:
    return str(value or "").strip().lower()


def parse_status(raw) -> OrderStatus:
    """Map an incoming status string to its enum member.

    Matching ignores case and surrounding whitespace. Raises ``UnknownStatus``
    when nothing matches.
    """
    if isinstance(raw, OrderStatus):
        return raw
    folded = _fold(raw)
    for status in OrderStatus:
        if _fold(status.value) == folded:
            return status
    raise UnknownStatus(raw)
