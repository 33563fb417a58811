"""RedisStreamsBus against a mocked Redis client."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest
import redis.asyncio as aioredis

from billing_backoffice.bus.redis_streams import RedisStreamsBus
from billing_backoffice.core.errors import DeliveryError

STREAM = "billing:invoice.pdf"


def _bus(**kwargs) -> RedisStreamsBus:
    bus = RedisStreamsBus(**kwargs)
    bus._redis = AsyncMock()
    return bus


def _fields(payload: dict | None = None) -> dict[str, str]:
    return {
        "_type": "invoice.pdf",
        "_id": "evt-1",
        "_data": json.dumps(payload or {"invoiceId": "i-1", "forContentHash": "h"}),
    }


# ---------------------------------------------------------------------------
# Send
# ---------------------------------------------------------------------------

class TestSend:
    @pytest.mark.asyncio
    async def test_send_requires_start(self):
        with pytest.raises(DeliveryError):
            await RedisStreamsBus().send("invoice.pdf", {})

    @pytest.mark.asyncio
    async def test_send_appends_to_stream(self):
        bus = _bus(max_stream_length=500)
        event_id = await bus.send("invoice.pdf", {"invoiceId": "i-1"})

        bus._redis.xadd.assert_awaited_once()
        args, kwargs = bus._redis.xadd.call_args
        assert args[0] == STREAM
        assert args[1]["_type"] == "invoice.pdf"
        assert args[1]["_id"] == event_id
        assert json.loads(args[1]["_data"]) == {"invoiceId": "i-1"}
        assert kwargs == {"maxlen": 500, "approximate": True}

    def test_stream_key_uses_prefix(self):
        assert RedisStreamsBus(stream_prefix="t1:").stream_key("invoice.send") == "t1:invoice.send"


# ---------------------------------------------------------------------------
# Consume
# ---------------------------------------------------------------------------

class TestProcessMessage:
    @pytest.mark.asyncio
    async def test_success_acks(self):
        bus = _bus()
        handler = AsyncMock()

        await bus.process_message("invoice.pdf", "billing", handler, "1-0", _fields())

        message = handler.call_args.args[0]
        assert message.event_id == "evt-1"
        assert message.payload["invoiceId"] == "i-1"
        bus._redis.xack.assert_awaited_once_with(STREAM, "billing", "1-0")
        assert bus.messages_processed == 1

    @pytest.mark.asyncio
    async def test_failure_retries_then_dead_letters(self):
        errors: list[tuple] = []
        bus = _bus(max_handler_retries=3, on_handler_error=lambda *a: errors.append(a))
        handler = AsyncMock(side_effect=RuntimeError("renderer down"))

        for _ in range(2):
            await bus.process_message("invoice.pdf", "billing", handler, "1-0", _fields())
        bus._redis.xack.assert_not_awaited()
        assert bus.dead_letters == []

        await bus.process_message("invoice.pdf", "billing", handler, "1-0", _fields())
        bus._redis.xack.assert_awaited_once_with(STREAM, "billing", "1-0")
        [dead] = bus.dead_letters
        assert dead.attempts == 3
        assert dead.error == "renderer down"
        assert bus.get_error_counts() == {"invoice.pdf/billing": 3}
        assert len(errors) == 3

    @pytest.mark.asyncio
    async def test_malformed_entry_is_dead_lettered(self):
        bus = _bus()
        handler = AsyncMock()

        await bus.process_message(
            "invoice.pdf", "billing", handler, "2-0", {"_type": "invoice.pdf", "_data": "{nope"}
        )

        handler.assert_not_awaited()
        assert bus.dead_letters[0].error == "deserialization_failed"
        bus._redis.xack.assert_awaited_once_with(STREAM, "billing", "2-0")


class TestGroups:
    @pytest.mark.asyncio
    async def test_existing_group_is_tolerated(self):
        bus = _bus()
        bus._redis.xgroup_create.side_effect = aioredis.ResponseError(
            "BUSYGROUP Consumer Group name already exists"
        )
        await bus._ensure_group(STREAM, "billing")

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        bus = _bus()
        bus._redis.xgroup_create.side_effect = aioredis.ResponseError("WRONGTYPE")
        with pytest.raises(aioredis.ResponseError):
            await bus._ensure_group(STREAM, "billing")

    @pytest.mark.asyncio
    async def test_subscribe_before_start_only_registers(self):
        bus = RedisStreamsBus()
        await bus.subscribe("invoice.pdf", "billing", AsyncMock())
        assert bus._tasks == []
