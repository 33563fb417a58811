"""MemoryEventBus queued and inline dispatch."""

from __future__ import annotations

import pytest

from billing_backoffice.bus.bus import create_event_bus
from billing_backoffice.bus.memory_bus import MemoryEventBus
from billing_backoffice.bus.redis_streams import RedisStreamsBus
from billing_backoffice.bus.schemas import BusMessage, InvoiceSendLater, parse_payload
from billing_backoffice.core.enums import BusBackend


class TestQueuedDispatch:
    @pytest.mark.asyncio
    async def test_send_queues_until_drain(self):
        bus = MemoryEventBus()
        received: list[BusMessage] = []

        async def handler(message: BusMessage) -> None:
            received.append(message)

        await bus.subscribe("invoice.pdf", "billing", handler)
        event_id = await bus.send("invoice.pdf", {"invoiceId": "i-1"})

        assert received == []
        assert bus.pending == 1
        assert await bus.drain() == 1
        assert [m.event_id for m in received] == [event_id]
        assert received[0].payload == {"invoiceId": "i-1"}
        assert bus.messages_processed == 1

    @pytest.mark.asyncio
    async def test_drain_follows_messages_sent_by_handlers(self):
        bus = MemoryEventBus()
        seen: list[str] = []

        async def first(message: BusMessage) -> None:
            seen.append(message.name)
            await bus.send("second", {})

        async def second(message: BusMessage) -> None:
            seen.append(message.name)

        await bus.subscribe("first", "g", first)
        await bus.subscribe("second", "g", second)
        await bus.send("first", {})

        assert await bus.drain() == 2
        assert seen == ["first", "second"]

    @pytest.mark.asyncio
    async def test_drain_limit(self):
        bus = MemoryEventBus()
        for _ in range(3):
            await bus.send("x", {})
        assert await bus.drain(max_messages=2) == 2
        assert bus.pending == 1


class TestInlineDispatch:
    @pytest.mark.asyncio
    async def test_handler_errors_are_dead_lettered(self):
        errors: list[tuple] = []
        bus = MemoryEventBus(
            dispatch_inline=True,
            on_handler_error=lambda *args: errors.append(args),
        )

        async def broken(message: BusMessage) -> None:
            raise RuntimeError("boom")

        await bus.subscribe("invoice.send", "billing", broken)
        event_id = await bus.send("invoice.send", {})

        assert bus.get_error_counts() == {"invoice.send/billing": 1}
        [dead] = bus.dead_letters
        assert dead.event_id == event_id
        assert dead.error == "boom"
        assert errors[0][:3] == ("invoice.send", "billing", event_id)

    @pytest.mark.asyncio
    async def test_history_filter(self):
        bus = MemoryEventBus(dispatch_inline=True)
        await bus.send("a", {})
        await bus.send("b", {})
        assert [m.name for m in bus.get_history("b")] == ["b"]
        bus.clear_history()
        assert bus.get_history() == []


class TestSchemas:
    def test_parse_registered_payload(self):
        message = BusMessage(
            name="invoice.later",
            payload={
                "id": "e-1",
                "userName": "alice",
                "invoiceId": "i-1",
                "submissionId": "s-1",
                "aggregateId": "i-1",
            },
        )
        payload = parse_payload(message)
        assert isinstance(payload, InvoiceSendLater)
        assert payload.user_name == "alice"

    def test_unregistered_name(self):
        with pytest.raises(KeyError):
            parse_payload(BusMessage(name="invoice.paid"))


class TestFactory:
    def test_backends(self):
        assert isinstance(create_event_bus(BusBackend.MEMORY), MemoryEventBus)
        assert isinstance(create_event_bus(BusBackend.REDIS), RedisStreamsBus)
