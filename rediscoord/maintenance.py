"""
Periodic maintenance for coordination keys.

Sweeps expired or corrupted sessions, lock keys without expiry and
rate-limit keys without expiry.

Usage:
    rediscoord-maintenance
    rediscoord-maintenance --once
    rediscoord-maintenance --interval 300
"""

import argparse
import asyncio
import logging
import signal
import sys

from redis.exceptions import RedisError

from rediscoord.config import get_settings
from rediscoord.dependencies import (
    get_lock_manager,
    get_rate_limiter,
    get_session_manager,
    open_client,
)
from rediscoord.exceptions import CoordinationError
from rediscoord.logging_config import setup_logging
from rediscoord.redis.client import RedisClient

logger = logging.getLogger(__name__)


async def run_cleanup(redis: RedisClient) -> dict[str, int]:
    """Run every cleanup pass once and report how many keys each removed."""
    sessions = await get_session_manager(redis).cleanup()
    locks = await get_lock_manager(redis).cleanup_locks()
    rate_limits = await get_rate_limiter(redis).cleanup()

    logger.info(
        f"Maintenance pass: {sessions} session(s), {locks} lock(s), "
        f"{rate_limits} rate limit key(s) removed"
    )
    return {"sessions": sessions, "locks": locks, "rate_limits": rate_limits}


class MaintenanceRunner:
    """Runs cleanup passes on an interval until stopped."""

    def __init__(self, redis: RedisClient, interval: float):
        self.redis = redis
        self.interval = interval
        self._stop = asyncio.Event()

    def stop(self) -> None:
        logger.info("Stopping maintenance...")
        self._stop.set()

    async def run(self) -> None:
        logger.info(f"Starting maintenance every {self.interval}s")
        while not self._stop.is_set():
            try:
                await run_cleanup(self.redis)
            except (CoordinationError, RedisError) as e:
                logger.error(f"Maintenance pass failed: {e}")

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Maintenance stopped")


async def run(once: bool, interval: float) -> None:
    """Main entry point."""
    async with open_client() as redis:
        if once:
            await run_cleanup(redis)
            return

        runner = MaintenanceRunner(redis, interval)

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, runner.stop)

        await runner.run()


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Redis coordination maintenance")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cleanup pass and exit",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.maintenance_interval_seconds,
        help=f"Seconds between passes (default: {settings.maintenance_interval_seconds})",
    )
    args = parser.parse_args(argv)

    setup_logging(settings.log_level)

    try:
        asyncio.run(run(args.once, args.interval))
    except (CoordinationError, RedisError) as e:
        logger.error(f"Maintenance error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
