"""
Worker: pull SMS notifications from Redis or AWS SQS and send them through the SMS gateway.
- Redis: exponential backoff + manual DLQ. SQS: don't delete on failure; SQS redrive to DLQ after max receives.
- Every send attempt is recorded in sms_logs when Postgres is the store backend.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m courier.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time

import httpx
import redis.asyncio as redis

from courier.config import settings
from courier.db import close_pool, get_pool, init_schema, insert_sms_log
from courier.metrics import notifications_dlq_total, notifications_failed_total, notifications_sent_total
from courier.queue import NOTIFICATION_DLQ_KEY, NOTIFICATION_QUEUE_KEY, make_body
from courier.sms import create_client, send_sms
from courier.sqs_client import change_message_visibility, delete_message, receive_messages

logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


class SMSDeliveryError(Exception):
    """The gateway did not accept the message."""


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


async def send_notification(client: httpx.AsyncClient, pool, data: dict) -> None:
    """Send one notification, log the attempt, raise SMSDeliveryError if the gateway rejected it.

    A failed log write is reported but never raised: the gateway has already accepted or
    rejected the text, and raising would re-queue an SMS that was sent.
    """
    result = await send_sms(client, data["to"], data["message"])
    if pool is not None:
        try:
            await insert_sms_log(
                pool,
                data.get("delivery_id"),
                data["to"],
                data["message"],
                "success" if result.success else "failed",
                result.provider_response,
            )
        except Exception:
            logger.exception("Failed to record sms_log for notification_id=%s", data.get("notification_id"))
    if not result.success:
        raise SMSDeliveryError(result.error)


def _parse(raw: str) -> dict | None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON from queue: %s", e)
        return None
    if not data.get("to") or not data.get("message"):
        logger.warning("Message missing recipient or text, skipping")
        return None
    return data


async def process_one_redis(
    r: redis.Redis,
    client: httpx.AsyncClient,
    pool,
    raw: str,
    sem: asyncio.Semaphore,
) -> None:
    data = _parse(raw)
    if data is None:
        return
    notification_id = data.get("notification_id")
    attempts = data.get("attempts", 0)

    async with sem:
        try:
            await send_notification(client, pool, data)
            notifications_sent_total.inc()
            logger.info("Sent notification_id=%s for delivery_id=%s", notification_id, data.get("delivery_id"))
        except Exception as e:
            notifications_failed_total.inc()
            logger.exception("Failed to send notification_id=%s (attempt %d): %s", notification_id, attempts + 1, e)
            next_attempts = attempts + 1
            body = make_body(
                notification_id,
                data.get("delivery_id", ""),
                data.get("status", ""),
                data["to"],
                data["message"],
                attempts=next_attempts,
            )
            if next_attempts >= settings.worker_max_retries:
                body["last_error"] = str(e)
                body["failed_at"] = time.time()
                await r.lpush(NOTIFICATION_DLQ_KEY, json.dumps(body))
                notifications_dlq_total.inc()
                logger.warning("Moved notification_id=%s to DLQ after %d attempts", notification_id, next_attempts)
            else:
                backoff_sec = 2 ** attempts
                logger.info(
                    "Re-queuing notification_id=%s in %ds (attempt %d/%d)",
                    notification_id,
                    backoff_sec,
                    next_attempts,
                    settings.worker_max_retries,
                )
                await asyncio.sleep(backoff_sec)
                await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(body))


async def process_one_sqs(
    client: httpx.AsyncClient,
    pool,
    body: str,
    receipt_handle: str,
    receive_count: int,
    sem: asyncio.Semaphore,
) -> None:
    data = _parse(body)
    if data is None:
        await asyncio.to_thread(delete_message, receipt_handle)
        return
    notification_id = data.get("notification_id")

    async with sem:
        try:
            await send_notification(client, pool, data)
            notifications_sent_total.inc()
            logger.info("Sent notification_id=%s for delivery_id=%s", notification_id, data.get("delivery_id"))
            await asyncio.to_thread(delete_message, receipt_handle)
        except Exception as e:
            notifications_failed_total.inc()
            logger.exception("Failed to send notification_id=%s (receive #%d): %s", notification_id, receive_count, e)
            # Not deleted: reappears after the visibility timeout; SQS redrives to the DLQ after max receives
            backoff = min(2 ** receive_count, 900)
            await asyncio.to_thread(change_message_visibility, receipt_handle, backoff)


async def _open_log_pool():
    if settings.store_backend != "postgres":
        return None
    pool = await get_pool()
    await init_schema(pool)
    return pool


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_redis(shutdown_event: asyncio.Event) -> None:
    pool = await _open_log_pool()
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d) ...",
        NOTIFICATION_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    client = create_client()
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(NOTIFICATION_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one_redis(r, client, pool, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await client.aclose()
        await r.aclose()
        await close_pool()
        logger.info("Worker stopped.")


async def run_worker_sqs(shutdown_event: asyncio.Event) -> None:
    pool = await _open_log_pool()
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=SQS. Queue=%s (concurrency=%d) ...",
        settings.sqs_queue_url,
        settings.worker_concurrency,
    )
    client = create_client()
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(receive_messages, 10, 5)
            for msg in messages:
                body = msg.get("Body") or "{}"
                receipt = msg.get("ReceiptHandle") or ""
                attrs = msg.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(client, pool, body, receipt, receive_count, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await client.aclose()
        await close_pool()
        logger.info("Worker stopped.")


async def run_worker(shutdown_event: asyncio.Event) -> None:
    if settings.sqs_queue_url:
        await run_worker_sqs(shutdown_event)
    else:
        await run_worker_redis(shutdown_event)


def main() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
