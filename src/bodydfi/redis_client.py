"""Best-effort event publishing over Redis pub/sub."""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()


async def publish_event(client: redis.Redis | None, channel: str, payload: dict[str, Any]) -> None:
    """Publish a JSON event. Failures are logged and never propagate."""
    if client is None:
        return
    try:
        await client.publish(channel, json.dumps(payload, default=str))
    except Exception:
        logger.warning("event_publish_failed", channel=channel, exc_info=True)
