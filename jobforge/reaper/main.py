"""
Broker maintenance process.

The reaper periodically trims job streams and purges stale status records
and index entries, independently of worker traffic. Workers can run the same
pass themselves; a standalone reaper lets deployments disable that and
centralize maintenance.
"""

import asyncio
import logging
import signal

from jobforge.config import get_settings
from jobforge.constants import TransportMode
from jobforge.exceptions import TransportError
from jobforge.observability.logging import setup_logging
from jobforge.transport.redis import CleanupReport, RedisTransport

logger = logging.getLogger(__name__)


class Reaper:
    """
    Maintenance loop over a Redis transport.

    Runs periodically to:
    1. Drop terminal status index entries older than the retention window
    2. Trim job streams to their maximum size
    3. Delete status records that lost their TTL
    """

    def __init__(
        self,
        transport: RedisTransport | None = None,
        interval_seconds: float | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            transport: Transport to clean. Defaults to a producer-mode
                RedisTransport built from settings.
            interval_seconds: Seconds between runs.
        """
        settings = get_settings()
        self.transport = transport or RedisTransport(TransportMode.PRODUCER)
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self._running = False
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Run the maintenance loop until ``stop`` is called."""
        logger.info("Reaper starting", extra={"interval": self.interval})
        await self.transport.start()
        self._running = True
        self._stopped.clear()

        try:
            while self._running:
                try:
                    await self.run_once()
                except TransportError as e:
                    logger.error("Error in reaper loop", extra={"error": str(e)})

                try:
                    await asyncio.wait_for(self._stopped.wait(), self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.transport.stop()

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False
        self._stopped.set()

    async def run_once(self) -> CleanupReport:
        """
        Run one maintenance pass (for testing or cron-style execution).

        Returns:
            CleanupReport: What was removed.
        """
        return await self.transport.perform_cleanup()


async def run_async() -> None:
    """Run the reaper asynchronously."""
    setup_logging()

    reaper = Reaper()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    await reaper.start()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
