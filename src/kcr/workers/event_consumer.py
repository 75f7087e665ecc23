"""Redis Stream consumer for point-earning events.

Producers (posts, follows, check-ins) ``XADD`` to ``points:events`` with an
``event`` name and a ``data`` JSON payload. Each message is applied in its own
session and acked once committed. Messages that can never apply (unknown
event, bad payload, unknown or deactivated account) are acked and logged so
they do not block the group; anything else stays pending for redelivery.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from kcr.config import get_settings
from kcr.errors import NotFoundError
from kcr.points.events import apply_event, parse_event

logger = logging.getLogger(__name__)


class PointsEventConsumer:
    """Applies point-earning events from a Redis Stream to the ledger."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        session_factory: Callable[[], AsyncSession],
        consumer_name: str | None = None,
        stream: str | None = None,
        group: str | None = None,
    ) -> None:
        settings = get_settings()
        self.redis = redis_client
        self.session_factory = session_factory
        self.consumer_name = consumer_name or settings.points_consumer_name
        self.stream = stream or settings.points_stream
        self.group = group or settings.points_consumer_group
        self._running = False
        self._processed = 0
        self._skipped = 0
        self._errors = 0

    @property
    def stats(self) -> dict[str, int]:
        return {"processed": self._processed, "skipped": self._skipped, "errors": self._errors}

    async def setup_group(self) -> None:
        """Create the consumer group (idempotent)."""
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", self.group, self.stream)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    @staticmethod
    def _parse_data(data: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Split a stream message into (event name, payload)."""
        name = data.get("event")
        if not name:
            msg = "Stream message has no 'event' field"
            raise ValueError(msg)
        raw = data.get("data", "{}")
        try:
            payload = json.loads(raw) if isinstance(raw, str) else dict(raw)
        except json.JSONDecodeError as e:
            msg = f"Invalid JSON payload for {name}"
            raise ValueError(msg) from e
        return str(name), payload

    async def handle(self, data: dict[str, Any]) -> int:
        """Apply one message. Returns the number of new ledger entries."""
        name, payload = self._parse_data(data)
        event = parse_event(name, payload)
        async with self.session_factory() as session:
            try:
                entries = await apply_event(session, event)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return len(entries)

    async def consume(self, count: int = 100, block_ms: int = 5000) -> int:
        """Read and process a batch of events.

        Returns:
            Number of messages acked.
        """
        try:
            events = await self.redis.xreadgroup(
                groupname=self.group,
                consumername=self.consumer_name,
                streams={self.stream: ">"},
                count=count,
                block=block_ms,
            )
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            return 0

        if not events:
            return 0

        acked = 0
        for _stream_name, messages in events:
            for msg_id, data in messages:
                try:
                    granted = await self.handle(data)
                    self._processed += 1
                    logger.debug("Applied %s (%d new entries)", msg_id, granted)
                except (ValueError, NotFoundError) as e:
                    self._skipped += 1
                    logger.warning("Skipping points event %s: %s", msg_id, e)
                except Exception:
                    self._errors += 1
                    logger.exception("Error handling points event %s", msg_id)
                    continue
                await self.redis.xack(self.stream, self.group, msg_id)
                acked += 1

        return acked

    async def run(self) -> None:
        """Main consumer loop; runs until ``stop``."""
        await self.setup_group()
        self._running = True
        logger.info("Points event consumer started (consumer=%s)", self.consumer_name)

        while self._running:
            try:
                await self.consume()
            except Exception:
                logger.exception("Consumer loop error")
                await asyncio.sleep(1)

    def stop(self) -> None:
        """Signal the consumer to stop."""
        self._running = False


async def publish_event(redis_client: aioredis.Redis, name: str, payload: dict[str, Any], stream: str | None = None) -> str:
    """Append an event to the points stream (used by producers and tooling)."""
    stream = stream or get_settings().points_stream
    return await redis_client.xadd(stream, {"event": name, "data": json.dumps(payload, default=str)})
