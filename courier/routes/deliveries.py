from typing import Awaitable, Callable

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from courier.config import settings
from courier.deps import get_actor_id, get_manager
from courier.lifecycle import DeliveryLifecycleManager
from courier.models import NewDelivery
from courier.redis_client import check_idempotency, release_idempotency

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


class CreateDeliveryBody(BaseModel):
    business_id: str | None = Field(default=None, description="Required for staff/admin; ignored for business accounts")
    pickup_name: str = ""
    pickup_phone: str = ""
    pickup_address: str = ""
    dropoff_name: str = ""
    dropoff_phone: str = ""
    dropoff_address: str = ""
    package_description: str | None = None


class AssignRiderBody(BaseModel):
    rider_id: str | None = Field(default=None, description="User id of an active rider")


class StatusUpdateBody(BaseModel):
    status: str | None = Field(default=None, description="PICKED_UP, IN_TRANSIT, DELIVERED or FAILED")
    note: str | None = Field(default=None, description="Free text; defaults to 'Status updated to <STATUS>'")


async def _once(
    request: Request,
    idempotency_key: str | None,
    actor_id: str,
    operation: Callable[[], Awaitable[JSONResponse]],
) -> JSONResponse:
    """
    Run operation at most once per (actor, method, path, Idempotency-Key). Same key twice -> 200 already_processed.
    The same key sent to another delivery or endpoint is a separate request.
    A failed operation releases its key so the client can retry.
    """
    if not idempotency_key:
        return await operation()
    key = f"idempotency:{actor_id}:{request.method}:{request.url.path}:{idempotency_key}"
    if await check_idempotency(key, settings.idempotency_ttl_seconds):
        return JSONResponse(
            status_code=200,
            content={"status": "already_processed", "idempotency_key": idempotency_key},
        )
    try:
        return await operation()
    except Exception:
        await release_idempotency(key)
        raise


@router.post("")
async def create_delivery(
    request: Request,
    body: CreateDeliveryBody,
    actor_id: str = Depends(get_actor_id),
    manager: DeliveryLifecycleManager = Depends(get_manager),
    idempotency_key: str | None = Header(default=None),
) -> JSONResponse:
    async def operation() -> JSONResponse:
        delivery = await manager.create_delivery(actor_id, NewDelivery(**body.model_dump()))
        return JSONResponse(status_code=201, content={"success": True, "delivery": delivery.to_dict()})

    return await _once(request, idempotency_key, actor_id, operation)


@router.get("")
async def list_deliveries(
    status: str | None = Query(default=None),
    business_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    actor_id: str = Depends(get_actor_id),
    manager: DeliveryLifecycleManager = Depends(get_manager),
) -> JSONResponse:
    deliveries = await manager.list_deliveries(
        actor_id,
        status=status,
        business_id=business_id,
        limit=limit,
        offset=offset,
    )
    return JSONResponse(status_code=200, content=[d.to_dict() for d in deliveries])


@router.get("/{delivery_id}")
async def get_delivery(
    delivery_id: str,
    actor_id: str = Depends(get_actor_id),
    manager: DeliveryLifecycleManager = Depends(get_manager),
) -> JSONResponse:
    delivery = await manager.get_delivery(delivery_id, actor_id)
    return JSONResponse(status_code=200, content=delivery.to_dict())


@router.get("/{delivery_id}/events")
async def delivery_history(
    delivery_id: str,
    actor_id: str = Depends(get_actor_id),
    manager: DeliveryLifecycleManager = Depends(get_manager),
) -> JSONResponse:
    events = await manager.history(delivery_id, actor_id)
    return JSONResponse(
        status_code=200,
        content={"delivery_id": delivery_id, "events": [e.to_dict() for e in events]},
    )


@router.put("/{delivery_id}/assign")
async def assign_rider(
    request: Request,
    delivery_id: str,
    body: AssignRiderBody,
    actor_id: str = Depends(get_actor_id),
    manager: DeliveryLifecycleManager = Depends(get_manager),
    idempotency_key: str | None = Header(default=None),
) -> JSONResponse:
    async def operation() -> JSONResponse:
        delivery = await manager.assign_rider(delivery_id, actor_id, body.rider_id)
        return JSONResponse(status_code=200, content={"success": True, "delivery": delivery.to_dict()})

    return await _once(request, idempotency_key, actor_id, operation)


@router.put("/{delivery_id}/status")
async def update_status(
    request: Request,
    delivery_id: str,
    body: StatusUpdateBody,
    actor_id: str = Depends(get_actor_id),
    manager: DeliveryLifecycleManager = Depends(get_manager),
    idempotency_key: str | None = Header(default=None),
) -> JSONResponse:
    """Rider reports progress. Errors list the allowed next statuses when the transition is illegal."""
    async def operation() -> JSONResponse:
        delivery = await manager.transition(delivery_id, actor_id, body.status, body.note)
        return JSONResponse(status_code=200, content={"success": True, "delivery": delivery.to_dict()})

    return await _once(request, idempotency_key, actor_id, operation)
