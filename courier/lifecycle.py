"""
Delivery Lifecycle Manager: the only code path that changes a delivery's status.

Every accepted mutation runs in one backend session: the status is changed with a compare-and-swap
on the status read at the start of the operation, then exactly one DeliveryEvent is appended.
A rejected operation raises a LifecycleError subclass and writes nothing.

transition() validates in this order: target status, delivery existence, the actor being the
assigned rider, then legality from the current status. An actor who is not the assigned rider
learns nothing about which transitions would be legal.
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Protocol

from courier.delivery_state import (
    RIDER_STATUSES,
    DeliveryStatus,
    allowed_transitions,
    is_terminal,
    is_valid_transition,
    parse_status,
)
from courier.errors import (
    ForbiddenError,
    IllegalTransitionError,
    InvalidArgumentError,
    LifecycleError,
    NotFoundError,
)
from courier.metrics import (
    deliveries_created_total,
    delivery_operations_rejected_total,
    delivery_transitions_total,
    notifications_publish_failed_total,
)
from courier.models import Actor, Delivery, DeliveryEvent, NewDelivery
from courier.roles import Role
from courier.store import Backend, Session

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


class Notifier(Protocol):
    async def notify(self, delivery: Delivery, rider: Actor | None = None) -> None: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _count_rejections(operation: str):
    try:
        yield
    except LifecycleError as e:
        delivery_operations_rejected_total.labels(operation=operation, reason=e.reason).inc()
        logger.info("Rejected %s: %s", operation, e)
        raise


def _can_view(actor: Actor, delivery: Delivery) -> bool:
    if not actor.active:
        return False
    if actor.can("view_all_deliveries"):
        return True
    if actor.can("view_assigned_deliveries") and delivery.assigned_rider_id == actor.id:
        return True
    return actor.can("view_own_deliveries") and actor.business_id == delivery.business_id


class DeliveryLifecycleManager:
    def __init__(
        self,
        backend: Backend,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._backend = backend
        self._notifier = notifier
        self._clock = clock

    async def transition(
        self,
        delivery_id: str,
        actor_id: str,
        target_status: DeliveryStatus | str | None,
        note: str | None = None,
    ) -> Delivery:
        """Apply a rider-reported status change (PICKED_UP, IN_TRANSIT, DELIVERED, FAILED)."""
        with _count_rejections("transition"):
            if not target_status:
                raise InvalidArgumentError("Status is required")
            target = parse_status(target_status)
            if target is None:
                raise InvalidArgumentError(f"Invalid status: {target_status}")
            if target not in RIDER_STATUSES:
                raise InvalidArgumentError(
                    f"Status {target.value} cannot be reported by a rider; assign a rider instead"
                )

            async with self._backend.session() as session:
                delivery = await session.deliveries.get(delivery_id)
                if delivery is None:
                    raise NotFoundError("Delivery not found")
                if delivery.assigned_rider_id is None or delivery.assigned_rider_id != actor_id:
                    raise ForbiddenError("You are not assigned to this delivery")
                current = delivery.status
                if not is_valid_transition(current, target):
                    raise IllegalTransitionError(current, target, allowed_transitions(current))

                now = self._clock()
                changes = {"status": target, "updated_at": now}
                if target is DeliveryStatus.DELIVERED:
                    changes["delivered_at"] = now
                updated = await session.deliveries.compare_and_update(delivery_id, current, changes)
                await session.events.append(DeliveryEvent(
                    delivery_id=delivery_id,
                    status=target,
                    note=(note or "").strip() or f"Status updated to {target.value}",
                    created_by=actor_id,
                    created_at=now,
                ))

        delivery_transitions_total.labels(from_status=current.value, to_status=target.value).inc()
        logger.info("delivery_id=%s %s -> %s by %s", delivery_id, current.value, target.value, actor_id)
        await self._notify(updated)
        return updated

    async def assign_rider(self, delivery_id: str, actor_id: str, rider_id: str | None) -> Delivery:
        """
        Assign (or reassign) a rider. Status is forced to ASSIGNED from any non-terminal status,
        so reassigning a delivery that is already PICKED_UP or IN_TRANSIT rewinds its progress.
        """
        with _count_rejections("assign_rider"):
            if not rider_id:
                raise InvalidArgumentError("Rider ID is required")

            async with self._backend.session() as session:
                actor = await self._require_actor(session, actor_id)
                if not actor.active or not actor.can("assign_rider"):
                    raise ForbiddenError("Only staff or admin can assign riders")
                delivery = await session.deliveries.get(delivery_id)
                if delivery is None:
                    raise NotFoundError("Delivery not found")

                rider = await session.actors.get(rider_id)
                if rider is None:
                    raise NotFoundError("Rider not found")
                if rider.role is not Role.RIDER:
                    raise InvalidArgumentError("User is not a rider")
                if not rider.active:
                    raise InvalidArgumentError("Rider is not active")

                current = delivery.status
                if is_terminal(current):
                    raise IllegalTransitionError(current, DeliveryStatus.ASSIGNED, frozenset())
                if current in (DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT):
                    logger.warning(
                        "Reassigning delivery_id=%s from rider %s to %s resets status %s -> ASSIGNED",
                        delivery_id,
                        delivery.assigned_rider_id,
                        rider.id,
                        current.value,
                    )

                now = self._clock()
                updated = await session.deliveries.compare_and_update(
                    delivery_id,
                    current,
                    {"status": DeliveryStatus.ASSIGNED, "assigned_rider_id": rider.id, "updated_at": now},
                )
                await session.events.append(DeliveryEvent(
                    delivery_id=delivery_id,
                    status=DeliveryStatus.ASSIGNED,
                    note=f"Assigned to rider {rider.name or rider.id}",
                    created_by=actor.id,
                    created_at=now,
                ))

        delivery_transitions_total.labels(from_status=current.value, to_status=DeliveryStatus.ASSIGNED.value).inc()
        logger.info("delivery_id=%s assigned to rider %s by %s", delivery_id, rider.id, actor.id)
        await self._notify(updated, rider)
        return updated

    async def create_delivery(self, actor_id: str, details: NewDelivery) -> Delivery:
        with _count_rejections("create_delivery"):
            required = (
                details.pickup_name,
                details.pickup_phone,
                details.pickup_address,
                details.dropoff_name,
                details.dropoff_phone,
                details.dropoff_address,
            )
            if not all(v and v.strip() for v in required):
                raise InvalidArgumentError("All delivery fields are required")

            async with self._backend.session() as session:
                actor = await self._require_actor(session, actor_id)
                if not actor.active or not actor.can("create_delivery"):
                    raise ForbiddenError("You cannot create deliveries")
                if actor.role is Role.BUSINESS:
                    if not actor.business_id:
                        raise ForbiddenError("Account is not linked to a business")
                    if details.business_id and details.business_id != actor.business_id:
                        raise ForbiddenError("Cannot create deliveries for another business")
                    business_id = actor.business_id
                else:
                    business_id = details.business_id
                    if not business_id:
                        raise InvalidArgumentError("Business ID is required")

                now = self._clock()
                delivery = await session.deliveries.insert(Delivery(
                    id=str(uuid.uuid4()),
                    business_id=business_id,
                    status=DeliveryStatus.CREATED,
                    pickup_name=details.pickup_name.strip(),
                    pickup_phone=details.pickup_phone.strip(),
                    pickup_address=details.pickup_address.strip(),
                    dropoff_name=details.dropoff_name.strip(),
                    dropoff_phone=details.dropoff_phone.strip(),
                    dropoff_address=details.dropoff_address.strip(),
                    package_description=details.package_description or None,
                    created_by=actor.id,
                    created_at=now,
                    updated_at=now,
                ))
                await session.events.append(DeliveryEvent(
                    delivery_id=delivery.id,
                    status=DeliveryStatus.CREATED,
                    note=f"Delivery created by {actor.role.value.lower()}",
                    created_by=actor.id,
                    created_at=now,
                ))

        deliveries_created_total.inc()
        logger.info("Created delivery_id=%s for business %s by %s", delivery.id, business_id, actor.id)
        return delivery

    async def get_delivery(self, delivery_id: str, actor_id: str) -> Delivery:
        with _count_rejections("get_delivery"):
            async with self._backend.session() as session:
                return await self._load_visible(session, delivery_id, actor_id)

    async def history(self, delivery_id: str, actor_id: str) -> list[DeliveryEvent]:
        """Events for a delivery, oldest first."""
        with _count_rejections("history"):
            async with self._backend.session() as session:
                await self._load_visible(session, delivery_id, actor_id)
                return await session.events.list_for_delivery(delivery_id)

    async def list_deliveries(
        self,
        actor_id: str,
        status: DeliveryStatus | str | None = None,
        business_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Delivery]:
        """Staff and admin see everything, riders their assigned deliveries, businesses their own."""
        with _count_rejections("list_deliveries"):
            status_filter = None
            if status and status != "ALL":
                status_filter = parse_status(status)
                if status_filter is None:
                    raise InvalidArgumentError(f"Invalid status: {status}")
            if not 1 <= limit <= MAX_PAGE_SIZE or offset < 0:
                raise InvalidArgumentError("Invalid pagination")

            async with self._backend.session() as session:
                actor = await self._require_actor(session, actor_id)
                rider_id = None
                if not actor.active:
                    raise ForbiddenError("Account is not active")
                if actor.can("view_all_deliveries"):
                    pass
                elif actor.can("view_assigned_deliveries"):
                    rider_id = actor.id
                elif actor.can("view_own_deliveries") and actor.business_id:
                    if business_id and business_id != actor.business_id:
                        raise ForbiddenError("Cannot view deliveries of another business")
                    business_id = actor.business_id
                else:
                    raise ForbiddenError("You cannot view deliveries")
                return await session.deliveries.list(
                    status=status_filter,
                    business_id=business_id,
                    rider_id=rider_id,
                    limit=limit,
                    offset=offset,
                )

    async def _require_actor(self, session: Session, actor_id: str) -> Actor:
        actor = await session.actors.get(actor_id)
        if actor is None:
            raise NotFoundError("Actor not found")
        return actor

    async def _load_visible(self, session: Session, delivery_id: str, actor_id: str) -> Delivery:
        delivery = await session.deliveries.get(delivery_id)
        if delivery is None:
            raise NotFoundError("Delivery not found")
        actor = await self._require_actor(session, actor_id)
        if not _can_view(actor, delivery):
            raise ForbiddenError("You do not have access to this delivery")
        return delivery

    async def _notify(self, delivery: Delivery, rider: Actor | None = None) -> None:
        # The mutation has committed; a queue outage must not turn it into an error.
        if self._notifier is None:
            return
        try:
            await self._notifier.notify(delivery, rider)
        except Exception:
            notifications_publish_failed_total.inc()
            logger.exception("Failed to queue notifications for delivery_id=%s", delivery.id)
