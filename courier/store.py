"""
Storage collaborators the lifecycle manager depends on. Implemented by courier.db (Postgres)
and courier.memory (in-process, used by tests and local runs).
"""
from contextlib import AbstractAsyncContextManager
from typing import Protocol

from courier.delivery_state import DeliveryStatus
from courier.models import Actor, Delivery, DeliveryEvent

# Columns compare_and_update may change; everything else on a delivery is immutable after insert
UPDATABLE_FIELDS = frozenset({"status", "assigned_rider_id", "delivered_at", "updated_at"})


class DeliveryStore(Protocol):
    async def get(self, delivery_id: str) -> Delivery | None: ...

    async def insert(self, delivery: Delivery) -> Delivery: ...

    async def compare_and_update(
        self,
        delivery_id: str,
        expected_status: DeliveryStatus,
        changes: dict,
    ) -> Delivery:
        """Apply changes only if the stored status still equals expected_status, else raise ConflictError."""
        ...

    async def list(
        self,
        *,
        status: DeliveryStatus | None = None,
        business_id: str | None = None,
        rider_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Delivery]: ...


class EventLog(Protocol):
    async def append(self, event: DeliveryEvent) -> None: ...

    async def list_for_delivery(self, delivery_id: str) -> list[DeliveryEvent]: ...


class ActorDirectory(Protocol):
    async def get(self, actor_id: str) -> Actor | None: ...


class Session(Protocol):
    """One transaction: writes through any of the three collaborators commit or roll back together."""

    deliveries: DeliveryStore
    events: EventLog
    actors: ActorDirectory


class Backend(Protocol):
    def session(self) -> AbstractAsyncContextManager[Session]: ...


def check_changes(changes: dict) -> None:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update delivery fields: {sorted(unknown)}")
