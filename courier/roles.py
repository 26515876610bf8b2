from enum import Enum


class Role(str, Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    RIDER = "RIDER"
    BUSINESS = "BUSINESS"


PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.ADMIN: frozenset({
        "view_all_deliveries",
        "create_delivery",
        "assign_rider",
        "view_invoices",
        "generate_invoices",
        "view_reports",
        "manage_users",
        "manage_businesses",
    }),
    Role.STAFF: frozenset({
        "view_all_deliveries",
        "create_delivery",
        "assign_rider",
        "view_invoices",
    }),
    Role.RIDER: frozenset({"view_assigned_deliveries", "update_delivery_status"}),
    Role.BUSINESS: frozenset({"create_delivery", "view_own_deliveries", "view_own_invoices"}),
}


def has_permission(role: Role | None, permission: str) -> bool:
    if role is None:
        return False
    return permission in PERMISSIONS.get(role, frozenset())
