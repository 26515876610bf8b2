import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from courier.config import settings
from courier.db import PostgresBackend, close_pool, get_pool, init_schema
from courier.delivery_state import sort_statuses
from courier.deps import set_manager
from courier.errors import (
    ConflictError,
    ForbiddenError,
    IllegalTransitionError,
    InvalidArgumentError,
    LifecycleError,
    NotFoundError,
)
from courier.lifecycle import DeliveryLifecycleManager
from courier.memory import InMemoryBackend
from courier.metrics import get_metrics_bytes, get_metrics_content_type, sqs_queue_messages_in_flight, sqs_queue_messages_waiting
from courier.models import Actor
from courier.notifications import QueueNotifier
from courier.redis_client import close_redis, get_redis
from courier.roles import Role
from courier.routes import admin, deliveries
from courier.sqs_client import get_queue_depth

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[type[LifecycleError], int] = {
    NotFoundError: 404,
    InvalidArgumentError: 400,
    ForbiddenError: 403,
    IllegalTransitionError: 400,
    ConflictError: 409,
}


def build_memory_backend(rows: list[dict]) -> InMemoryBackend:
    """In-process backend seeded with the actors from MEMORY_ACTORS."""
    actors = [Actor(**{**row, "role": Role(row["role"])}) for row in rows]
    if not actors:
        logger.warning("Memory backend started without actors; every request will fail actor lookup")
    return InMemoryBackend(actors)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.store_backend == "memory":
        backend = build_memory_backend(settings.memory_actors)
    else:
        pool = await get_pool()
        await init_schema(pool)
        backend = PostgresBackend(pool)
    notifier = QueueNotifier() if settings.notifications_enabled else None
    set_manager(DeliveryLifecycleManager(backend, notifier=notifier))
    await get_redis()
    yield
    set_manager(None)
    await close_redis()
    await close_pool()


app = FastAPI(title="Courier Delivery Lifecycle", lifespan=lifespan)
app.include_router(deliveries.router)
app.include_router(admin.router)


def error_body(exc: LifecycleError) -> dict:
    body: dict = {"error": str(exc)}
    if isinstance(exc, IllegalTransitionError):
        body["current_status"] = exc.current_status.value
        body["target_status"] = exc.target_status.value
        body["allowed"] = [s.value for s in sort_statuses(exc.allowed)]
    elif isinstance(exc, ConflictError):
        body["retryable"] = True
    return body


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS_CODES.items() if isinstance(exc, cls)),
        400,
    )
    return JSONResponse(status_code=status_code, content=error_body(exc))


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: lifecycle counters, SQS queue depth (when using SQS)."""
    if settings.sqs_queue_url:
        try:
            waiting, in_flight = await get_queue_depth()
            sqs_queue_messages_waiting.set(waiting)
            sqs_queue_messages_in_flight.set(in_flight)
        except Exception:
            logger.warning("Could not read SQS queue depth", exc_info=True)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
