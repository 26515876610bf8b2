"""
Delivery lifecycle state machine. Statuses only move forward; DELIVERED and FAILED are terminal.
"""
from enum import Enum


class DeliveryStatus(str, Enum):
    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


# Current status -> allowed next statuses
VALID_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.CREATED: frozenset({DeliveryStatus.ASSIGNED}),
    DeliveryStatus.ASSIGNED: frozenset({DeliveryStatus.PICKED_UP, DeliveryStatus.FAILED}),
    DeliveryStatus.PICKED_UP: frozenset({DeliveryStatus.IN_TRANSIT, DeliveryStatus.FAILED}),
    DeliveryStatus.IN_TRANSIT: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED}),
    DeliveryStatus.DELIVERED: frozenset(),  # terminal
    DeliveryStatus.FAILED: frozenset(),  # terminal
}

TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED})

# Statuses a rider reports through transition(); ASSIGNED comes from assign_rider()
RIDER_STATUSES = frozenset({
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT,
    DeliveryStatus.DELIVERED,
    DeliveryStatus.FAILED,
})

# Display order used when listing allowed statuses
STATUS_ORDER = list(DeliveryStatus)


def allowed_transitions(status: DeliveryStatus) -> frozenset[DeliveryStatus]:
    return VALID_TRANSITIONS.get(status, frozenset())


def is_valid_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    """True if target is allowed after current."""
    return target in allowed_transitions(current)


def is_terminal(status: DeliveryStatus) -> bool:
    return status in TERMINAL_STATUSES


def sort_statuses(statuses) -> list[DeliveryStatus]:
    return sorted(statuses, key=STATUS_ORDER.index)


def parse_status(value) -> DeliveryStatus | None:
    """Return the DeliveryStatus named by value, or None if it is not a known status."""
    if isinstance(value, DeliveryStatus):
        return value
    try:
        return DeliveryStatus(value)
    except ValueError:
        return None
