"""
SMS gateway client. The gateway takes a JSON {from, text, to} POST with Basic auth.
"""
import json
import logging
from dataclasses import dataclass

import httpx

from courier.config import settings

logger = logging.getLogger(__name__)


@dataclass
class SMSResult:
    success: bool
    message_id: str | None = None
    error: str | None = None
    provider_response: str | None = None


def create_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.sms_timeout_seconds,
        headers={
            "Authorization": f"Basic {settings.sms_api_auth}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        },
    )


async def send_sms(client: httpx.AsyncClient, to: str, message: str) -> SMSResult:
    """Send one SMS. Transport and gateway errors are reported in the result, not raised."""
    try:
        resp = await client.post(
            settings.sms_api_url,
            json={"from": settings.sms_sender, "text": message, "to": to},
        )
    except httpx.HTTPError as e:
        logger.warning("SMS gateway unreachable for %s: %s", to, e)
        return SMSResult(success=False, error=str(e), provider_response=str(e))

    try:
        data = resp.json()
        raw = json.dumps(data)
    except ValueError:
        data = None
        raw = resp.text

    if resp.is_error:
        return SMSResult(
            success=False,
            error=f"SMS API returned {resp.status_code}: {raw}",
            provider_response=raw,
        )
    message_id = data.get("messageId") if isinstance(data, dict) else None
    return SMSResult(success=True, message_id=message_id or "unknown", provider_response=raw)
