from fastapi import Header, HTTPException

from courier.lifecycle import DeliveryLifecycleManager

_manager: DeliveryLifecycleManager | None = None


def set_manager(manager: DeliveryLifecycleManager | None) -> None:
    global _manager
    _manager = manager


def get_manager() -> DeliveryLifecycleManager:
    if _manager is None:
        raise RuntimeError("Lifecycle manager not initialised; is the app lifespan running?")
    return _manager


def get_actor_id(x_actor_id: str | None = Header(default=None)) -> str:
    """Identity of the caller, set by the authenticating gateway in front of this service."""
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_actor_id
