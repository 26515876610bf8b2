"""
Domain records shared by the lifecycle manager and both storage backends.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from courier.delivery_state import DeliveryStatus
from courier.roles import PERMISSIONS, Role, has_permission


@dataclass
class Delivery:
    id: str
    business_id: str
    status: DeliveryStatus
    pickup_name: str
    pickup_phone: str
    pickup_address: str
    dropoff_name: str
    dropoff_phone: str
    dropoff_address: str
    created_at: datetime
    updated_at: datetime
    created_by: str | None = None
    package_description: str | None = None
    assigned_rider_id: str | None = None
    delivered_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "status": self.status.value,
            "assigned_rider_id": self.assigned_rider_id,
            "pickup_name": self.pickup_name,
            "pickup_phone": self.pickup_phone,
            "pickup_address": self.pickup_address,
            "dropoff_name": self.dropoff_name,
            "dropoff_phone": self.dropoff_phone,
            "dropoff_address": self.dropoff_address,
            "package_description": self.package_description,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }


@dataclass(frozen=True)
class DeliveryEvent:
    """Audit record of one accepted mutation. Never updated or deleted."""

    delivery_id: str
    status: DeliveryStatus
    note: str
    created_by: str
    created_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "delivery_id": self.delivery_id,
            "status": self.status.value,
            "note": self.note,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role
    active: bool = True
    name: str | None = None
    phone: str | None = None
    business_id: str | None = None

    @property
    def capabilities(self) -> frozenset[str]:
        return PERMISSIONS.get(self.role, frozenset())

    def can(self, permission: str) -> bool:
        return has_permission(self.role, permission)


@dataclass(frozen=True)
class NewDelivery:
    """Fields a caller supplies when creating a delivery."""

    pickup_name: str
    pickup_phone: str
    pickup_address: str
    dropoff_name: str
    dropoff_phone: str
    dropoff_address: str
    business_id: str | None = None
    package_description: str | None = None
