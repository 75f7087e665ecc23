"""Standalone runner for the points event consumer.

Usage: python -m kcr.workers.event_consumer_runner
"""

from __future__ import annotations

import asyncio
import logging
import signal

import redis.asyncio as aioredis

from kcr.config import get_settings
from kcr.database import close_db, get_session_factory, init_db
from kcr.middleware.logging import setup_logging
from kcr.workers.event_consumer import PointsEventConsumer

logger = logging.getLogger(__name__)

STATS_INTERVAL = 300  # seconds


async def main() -> None:
    """Run the consumer until SIGINT/SIGTERM."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10,
    )
    consumer = PointsEventConsumer(
        redis_client=redis_client,
        session_factory=get_session_factory(),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, consumer.stop)

    async def stats_reporter() -> None:
        while not consumer._running:
            await asyncio.sleep(1)
        while consumer._running:
            await asyncio.sleep(STATS_INTERVAL)
            logger.info("Points consumer stats: %s", consumer.stats)

    logger.info("Starting points event consumer (consumer=%s)", consumer.consumer_name)
    reporter = asyncio.create_task(stats_reporter())
    try:
        await consumer.run()
    finally:
        reporter.cancel()
        await redis_client.aclose()
        await close_db()
        logger.info("Points event consumer stopped")


if __name__ == "__main__":
    asyncio.run(main())
