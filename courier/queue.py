"""
Push SMS notifications to the queue. Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
"""
import json

from courier.config import settings
from courier.redis_client import get_redis
from courier.sqs_client import send_message

NOTIFICATION_QUEUE_KEY = "queue:notifications"
NOTIFICATION_DLQ_KEY = "queue:notifications:dlq"


def make_body(
    notification_id: str,
    delivery_id: str,
    status: str,
    to: str,
    message: str,
    attempts: int = 0,
) -> dict:
    return {
        "notification_id": notification_id,
        "delivery_id": delivery_id,
        "status": status,
        "to": to,
        "message": message,
        "attempts": attempts,
    }


async def push_to_queue(body: dict) -> None:
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(body))


async def replay_redis_dlq(limit: int = 100) -> int:
    """Move up to limit messages from the Redis DLQ back onto the main queue with attempts reset."""
    r = await get_redis()
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(NOTIFICATION_DLQ_KEY)
        if raw is None:
            break
        replayed += 1
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if not data.get("to") or not data.get("message"):
            continue
        body = make_body(
            data.get("notification_id", ""),
            data.get("delivery_id", ""),
            data.get("status", ""),
            data["to"],
            data["message"],
        )
        await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(body))
    return replayed
