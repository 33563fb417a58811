"""Redis Streams event bus implementation.

Each event name maps to one stream (``{prefix}{name}``).  Consumer groups
give every subscriber at-least-once delivery; handlers must therefore be
idempotent, which the invoice handlers are through
``Invoice.processed_event_ids`` and content-hash checks.

- Messages are only ack'd after the handler succeeds.
- Failed messages are retried up to ``max_handler_retries`` times, then
  dead-lettered and ack'd so they don't block the stream.
- Optional error callback hook for metrics.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as aioredis

from billing_backoffice.core.errors import DeliveryError
from billing_backoffice.core.ids import new_id
from billing_backoffice.core.interfaces import MessageHandler

from .schemas import BusMessage

logger = logging.getLogger(__name__)


@dataclass
class DeadLetter:
    """Record of a message that ran out of retries."""

    name: str
    group: str
    msg_id: str
    event_id: str
    error: str
    attempts: int
    timestamp: float = field(default_factory=time.monotonic)


class RedisStreamsBus:
    """Event bus backed by Redis Streams."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        stream_prefix: str = "billing:",
        max_stream_length: int = 10_000,
        block_ms: int = 1000,
        batch_size: int = 10,
        max_handler_retries: int = 3,
        on_handler_error: Callable[
            [str, str, str, Exception], None
        ] | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._prefix = stream_prefix
        self._redis: aioredis.Redis | None = None
        self._max_len = max_stream_length
        self._block_ms = block_ms
        self._batch_size = batch_size
        self._max_retries = max_handler_retries
        self._on_handler_error = on_handler_error
        self._subscriptions: list[tuple[str, str, MessageHandler]] = []
        self._tasks: list[asyncio.Task] = []
        self._running = False

        # Observability
        self._error_counts: dict[str, int] = defaultdict(int)
        self._handler_attempts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[DeadLetter] = []
        self._messages_processed: int = 0

    def stream_key(self, name: str) -> str:
        return f"{self._prefix}{name}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect to Redis and start consumer loops."""
        self._redis = aioredis.from_url(
            self._redis_url, decode_responses=True
        )
        self._running = True

        for name, group, handler in self._subscriptions:
            await self._launch(name, group, handler)

    async def stop(self) -> None:
        """Stop consumer loops and close the Redis connection."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Send / Subscribe
    # ------------------------------------------------------------------

    async def send(self, name: str, payload: dict[str, Any]) -> str:
        """Append *payload* to the stream for *name*; return the event id."""
        if not self._redis:
            raise DeliveryError("RedisStreamsBus not started")

        event_id = new_id()
        fields = {
            "_type": name,
            "_id": event_id,
            "_data": json.dumps(payload, default=str),
        }
        logger.debug("Sending event %s (%s)", name, event_id)
        await self._redis.xadd(
            self.stream_key(name), fields, maxlen=self._max_len, approximate=True
        )
        return event_id

    async def subscribe(
        self,
        name: str,
        group: str,
        handler: MessageHandler,
    ) -> None:
        """Register a handler.

        Can be called before or after start().  If the bus is already
        running the consumer loop is launched immediately.
        """
        self._subscriptions.append((name, group, handler))
        if self._running and self._redis is not None:
            await self._launch(name, group, handler)

    async def _launch(self, name: str, group: str, handler: MessageHandler) -> None:
        await self._ensure_group(self.stream_key(name), group)
        task = asyncio.create_task(
            self._consume_loop(name, group, handler),
            name=f"consumer-{name}-{group}",
        )
        self._tasks.append(task)

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    async def _consume_loop(
        self,
        name: str,
        group: str,
        handler: MessageHandler,
    ) -> None:
        consumer_name = f"{group}-worker"
        stream = self.stream_key(name)
        assert self._redis is not None

        while self._running:
            try:
                entries = await self._redis.xreadgroup(
                    groupname=group,
                    consumername=consumer_name,
                    streams={stream: ">"},
                    count=self._batch_size,
                    block=self._block_ms,
                )
                if not entries:
                    continue

                for _stream, messages in entries:
                    for msg_id, fields in messages:
                        await self.process_message(name, group, handler, msg_id, fields)

            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Consumer loop error for %s/%s", name, group)
                self._error_counts[f"{name}/{group}"] += 1
                await asyncio.sleep(1)

    async def process_message(
        self,
        name: str,
        group: str,
        handler: MessageHandler,
        msg_id: str,
        fields: dict[str, str],
    ) -> None:
        """Handle one stream entry.

        On success: ack.  On failure: count the attempt and leave the
        entry pending; after ``max_handler_retries`` dead-letter and ack.
        """
        assert self._redis is not None
        stream = self.stream_key(name)
        error_key = f"{name}/{group}"
        attempt_key = f"{name}/{group}/{msg_id}"

        message = self._deserialize(fields)
        if message is None:
            self._dead_letters.append(
                DeadLetter(
                    name=name,
                    group=group,
                    msg_id=str(msg_id),
                    event_id=fields.get("_id", ""),
                    error="deserialization_failed",
                    attempts=1,
                )
            )
            await self._redis.xack(stream, group, msg_id)
            return

        try:
            await handler(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._error_counts[error_key] += 1
            self._handler_attempts[attempt_key] += 1
            attempts = self._handler_attempts[attempt_key]
            logger.exception(
                "Handler error on %s/%s msg=%s (attempt %d/%d)",
                name,
                group,
                msg_id,
                attempts,
                self._max_retries,
            )

            if self._on_handler_error is not None:
                try:
                    self._on_handler_error(name, group, str(msg_id), exc)
                except Exception:
                    logger.warning("on_handler_error callback failed", exc_info=True)

            if attempts >= self._max_retries:
                logger.error(
                    "Dead-lettering message %s on %s/%s after %d attempts",
                    msg_id,
                    name,
                    group,
                    attempts,
                )
                self._dead_letters.append(
                    DeadLetter(
                        name=name,
                        group=group,
                        msg_id=str(msg_id),
                        event_id=message.event_id,
                        error=str(exc),
                        attempts=attempts,
                    )
                )
                await self._redis.xack(stream, group, msg_id)
                self._handler_attempts.pop(attempt_key, None)
            return

        await self._redis.xack(stream, group, msg_id)
        self._messages_processed += 1
        self._handler_attempts.pop(attempt_key, None)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
        return dict(self._error_counts)

    @property
    def dead_letters(self) -> list[DeadLetter]:
        return list(self._dead_letters)

    @property
    def messages_processed(self) -> int:
        return self._messages_processed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _ensure_group(self, stream: str, group: str) -> None:
        """Create consumer group, ignoring BUSYGROUP if it already exists."""
        assert self._redis is not None
        try:
            await self._redis.xgroup_create(stream, group, id="0", mkstream=True)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    @staticmethod
    def _deserialize(fields: dict[str, str]) -> BusMessage | None:
        name = fields.get("_type")
        data = fields.get("_data")
        if not name or data is None:
            logger.warning("Malformed message: %s", fields)
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Undecodable payload on %s: %r", name, data)
            return None
        return BusMessage(event_id=fields.get("_id") or new_id(), name=name, payload=payload)
