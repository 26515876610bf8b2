"""
SMS notifications for delivery status changes, queued after the change has committed.
"""
import logging
import uuid
from dataclasses import dataclass

from courier.delivery_state import DeliveryStatus
from courier.metrics import notifications_published_total
from courier.models import Actor, Delivery
from courier.queue import make_body, push_to_queue

logger = logging.getLogger(__name__)

BRAND = "Kasi Courier"


@dataclass(frozen=True)
class Notification:
    delivery_id: str
    status: DeliveryStatus
    to: str
    message: str


def reference(delivery: Delivery) -> str:
    return delivery.id[:8].upper()


def build_notifications(delivery: Delivery, rider: Actor | None = None) -> list[Notification]:
    """
    ASSIGNED -> rider; PICKED_UP -> dropoff contact; DELIVERED -> pickup and dropoff contacts;
    FAILED -> pickup contact. Recipients without a phone are skipped, duplicates collapsed.
    """
    ref = reference(delivery)
    status = delivery.status
    messages: list[tuple[str | None, str]] = []

    if status is DeliveryStatus.ASSIGNED and rider is not None:
        messages.append((
            rider.phone,
            f"{BRAND}: New delivery {ref} assigned to you. "
            f"Pickup: {delivery.pickup_name}, {delivery.pickup_address}. "
            f"Dropoff: {delivery.dropoff_name}, {delivery.dropoff_address}.",
        ))
    elif status is DeliveryStatus.PICKED_UP:
        messages.append((
            delivery.dropoff_phone,
            f"{BRAND}: Your package from {delivery.pickup_name} has been picked up "
            f"and is on its way. Ref {ref}.",
        ))
    elif status is DeliveryStatus.DELIVERED:
        text = f"{BRAND}: Delivery {ref} to {delivery.dropoff_name} has been delivered."
        messages.append((delivery.pickup_phone, text))
        messages.append((delivery.dropoff_phone, text))
    elif status is DeliveryStatus.FAILED:
        messages.append((
            delivery.pickup_phone,
            f"{BRAND}: Delivery {ref} to {delivery.dropoff_name} could not be completed. "
            "Our team will contact you.",
        ))

    notifications: list[Notification] = []
    seen: set[str] = set()
    for phone, text in messages:
        if not phone or phone in seen:
            continue
        seen.add(phone)
        notifications.append(Notification(delivery.id, status, phone, text))
    return notifications


class QueueNotifier:
    """Publishes notifications for the worker to send."""

    async def notify(self, delivery: Delivery, rider: Actor | None = None) -> None:
        for n in build_notifications(delivery, rider):
            body = make_body(str(uuid.uuid4()), n.delivery_id, n.status.value, n.to, n.message)
            await push_to_queue(body)
            notifications_published_total.labels(status=n.status.value).inc()
            logger.info("Queued %s notification for delivery_id=%s", n.status.value, n.delivery_id)
