"""
Shared fixtures: an in-memory backend seeded with actors, a deterministic clock and a recording notifier.
"""
from datetime import datetime, timedelta, timezone

import pytest

from courier.delivery_state import DeliveryStatus
from courier.lifecycle import DeliveryLifecycleManager
from courier.memory import InMemoryBackend
from courier.models import Actor, Delivery
from courier.roles import Role

ACTORS = [
    Actor("admin1", Role.ADMIN, name="Asha"),
    Actor("staff1", Role.STAFF, name="Baraka"),
    Actor("staff-off", Role.STAFF, active=False),
    Actor("rider7", Role.RIDER, name="Juma", phone="+255700000007"),
    Actor("rider9", Role.RIDER, name="Neema", phone="+255700000009"),
    Actor("rider-off", Role.RIDER, active=False),
    Actor("biz-user", Role.BUSINESS, name="Duka", business_id="biz1"),
    Actor("biz-other", Role.BUSINESS, business_id="biz2"),
]


class StepClock:
    """Each call returns a time one second after the previous one."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[str, DeliveryStatus, str | None]] = []

    async def notify(self, delivery, rider=None) -> None:
        self.calls.append((delivery.id, delivery.status, rider.id if rider else None))


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend(actors=ACTORS)


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def manager(backend, notifier, clock) -> DeliveryLifecycleManager:
    return DeliveryLifecycleManager(backend, notifier=notifier, clock=clock)


@pytest.fixture
def seed(backend):
    """Insert a delivery directly into the backend, bypassing the manager (no event is logged)."""

    def _seed(
        delivery_id: str = "d1",
        status: DeliveryStatus = DeliveryStatus.CREATED,
        rider: str | None = None,
        business_id: str = "biz1",
        created_at: datetime | None = None,
        delivered_at: datetime | None = None,
    ) -> Delivery:
        created = created_at or datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)
        delivery = Delivery(
            id=delivery_id,
            business_id=business_id,
            status=status,
            pickup_name="Duka la Mama",
            pickup_phone="+255711000001",
            pickup_address="Kariakoo, Dar es Salaam",
            dropoff_name="Halima",
            dropoff_phone="+255722000002",
            dropoff_address="Mikocheni, Dar es Salaam",
            created_at=created,
            updated_at=created,
            assigned_rider_id=rider,
            delivered_at=delivered_at,
        )
        backend.add_delivery(delivery)
        return delivery

    return _seed


def snapshot(backend: InMemoryBackend, delivery_id: str) -> tuple:
    d = backend.deliveries[delivery_id]
    return d.status, d.assigned_rider_id, d.delivered_at, len(backend.events_for(delivery_id))


@pytest.fixture
def snap(backend):
    return lambda delivery_id="d1": snapshot(backend, delivery_id)
