"""
Typed failures of lifecycle operations. Each kind maps to one HTTP status at the API boundary.
"""
from courier.delivery_state import DeliveryStatus, sort_statuses


class LifecycleError(Exception):
    """Base class: an operation was rejected and nothing was written."""

    reason = "error"


class NotFoundError(LifecycleError):
    reason = "not_found"


class InvalidArgumentError(LifecycleError):
    reason = "invalid_argument"


class ForbiddenError(LifecycleError):
    reason = "forbidden"


class IllegalTransitionError(LifecycleError):
    """Target status is not reachable from the current status. Carries the allowed set."""

    reason = "illegal_transition"

    def __init__(
        self,
        current_status: DeliveryStatus,
        target_status: DeliveryStatus,
        allowed: frozenset[DeliveryStatus],
    ):
        self.current_status = current_status
        self.target_status = target_status
        self.allowed = frozenset(allowed)
        allowed_text = ", ".join(s.value for s in sort_statuses(self.allowed)) or "none"
        super().__init__(
            f"Cannot transition from {current_status.value} to {target_status.value}. "
            f"Allowed transitions: {allowed_text}"
        )


class ConflictError(LifecycleError):
    """Delivery status changed between read and write. Safe to retry after re-reading."""

    reason = "conflict"

    def __init__(self, delivery_id: str, expected_status: DeliveryStatus):
        self.delivery_id = delivery_id
        self.expected_status = expected_status
        super().__init__(
            f"Delivery {delivery_id} is no longer {expected_status.value}; it was updated concurrently"
        )
