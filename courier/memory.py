"""
In-process backend. Each session keeps an undo journal so a failed operation leaves no partial writes,
and every read yields to the event loop so concurrent sessions interleave the way real I/O would.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace

from courier.delivery_state import DeliveryStatus
from courier.errors import ConflictError
from courier.models import Actor, Delivery, DeliveryEvent
from courier.store import check_changes


class InMemoryBackend:
    def __init__(self, actors=()) -> None:
        self.deliveries: dict[str, Delivery] = {}
        self.events: list[DeliveryEvent] = []
        self.actors: dict[str, Actor] = {a.id: a for a in actors}

    def add_actor(self, actor: Actor) -> None:
        self.actors[actor.id] = actor

    def add_delivery(self, delivery: Delivery) -> None:
        self.deliveries[delivery.id] = delivery

    def events_for(self, delivery_id: str) -> list[DeliveryEvent]:
        return [e for e in self.events if e.delivery_id == delivery_id]

    @asynccontextmanager
    async def session(self):
        session = InMemorySession(self)
        try:
            yield session
        except BaseException:
            session.rollback()
            raise


class InMemorySession:
    def __init__(self, backend: InMemoryBackend) -> None:
        self._undo: list = []
        self.deliveries = _DeliveryTable(backend, self._undo)
        self.events = _EventTable(backend, self._undo)
        self.actors = _ActorTable(backend)

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()


class _DeliveryTable:
    def __init__(self, backend: InMemoryBackend, undo: list) -> None:
        self._backend = backend
        self._undo = undo

    async def get(self, delivery_id: str) -> Delivery | None:
        row = self._backend.deliveries.get(delivery_id)
        found = replace(row) if row is not None else None
        await asyncio.sleep(0)
        return found

    async def insert(self, delivery: Delivery) -> Delivery:
        rows = self._backend.deliveries
        if delivery.id in rows:
            raise ValueError(f"Delivery {delivery.id} already exists")
        stored = replace(delivery)
        rows[delivery.id] = stored

        def undo() -> None:
            if rows.get(delivery.id) is stored:
                del rows[delivery.id]

        self._undo.append(undo)
        return replace(stored)

    async def compare_and_update(
        self,
        delivery_id: str,
        expected_status: DeliveryStatus,
        changes: dict,
    ) -> Delivery:
        check_changes(changes)
        rows = self._backend.deliveries
        current = rows.get(delivery_id)
        if current is None or current.status != expected_status:
            raise ConflictError(delivery_id, expected_status)
        updated = replace(current, **changes)
        rows[delivery_id] = updated

        def undo() -> None:
            if rows.get(delivery_id) is updated:
                rows[delivery_id] = current

        self._undo.append(undo)
        return replace(updated)

    async def list(
        self,
        *,
        status: DeliveryStatus | None = None,
        business_id: str | None = None,
        rider_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Delivery]:
        rows = [
            d for d in self._backend.deliveries.values()
            if (status is None or d.status == status)
            and (business_id is None or d.business_id == business_id)
            and (rider_id is None or d.assigned_rider_id == rider_id)
        ]
        rows.sort(key=lambda d: d.created_at, reverse=True)
        await asyncio.sleep(0)
        return [replace(d) for d in rows[offset:offset + limit]]


class _EventTable:
    def __init__(self, backend: InMemoryBackend, undo: list) -> None:
        self._backend = backend
        self._undo = undo

    async def append(self, event: DeliveryEvent) -> None:
        log = self._backend.events
        log.append(event)

        def undo() -> None:
            for i in range(len(log) - 1, -1, -1):
                if log[i] is event:
                    del log[i]
                    break

        self._undo.append(undo)

    async def list_for_delivery(self, delivery_id: str) -> list[DeliveryEvent]:
        # sorted() is stable, so insertion order breaks created_at ties
        events = sorted(self._backend.events_for(delivery_id), key=lambda e: e.created_at)
        await asyncio.sleep(0)
        return events


class _ActorTable:
    def __init__(self, backend: InMemoryBackend) -> None:
        self._backend = backend

    async def get(self, actor_id: str) -> Actor | None:
        actor = self._backend.actors.get(actor_id)
        await asyncio.sleep(0)
        return actor
