"""Best-effort event publishing."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from bodydfi import redis_client


class TestPublishEvent:
    @pytest.mark.asyncio
    async def test_publishes_json(self):
        client = AsyncMock()
        await redis_client.publish_event(client, "pubsub:test", {"amount": 1})
        channel, body = client.publish.await_args.args
        assert channel == "pubsub:test"
        assert json.loads(body) == {"amount": 1}

    @pytest.mark.asyncio
    async def test_no_client_is_a_noop(self):
        await redis_client.publish_event(None, "pubsub:test", {"amount": 1})

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self):
        client = AsyncMock()
        client.publish.side_effect = ConnectionError("redis down")
        await redis_client.publish_event(client, "pubsub:test", {"amount": 1})
        client.publish.assert_awaited_once()

