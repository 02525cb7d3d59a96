#!/usr/bin/env python3
"""
Marketplace Orders - Standalone Expiration Sweeper

Runs the order expiration scheduler as its own service, for deployments
where the API runs with ORDER_SWEEP_ENABLED=false. Uses the same database
configuration as the API.
"""
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone

# Setup logging first
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

# Validate required environment variables
REQUIRED_VARS = ["DATABASE_URL"]
missing = [var for var in REQUIRED_VARS if not os.getenv(var)]
if missing:
    logger.error(f"Missing required environment variables: {missing}")
    sys.exit(1)

# Import after env validation
from marketplace.core.database import engine
from marketplace.jobs.order_expiration import order_expiration_scheduler

# Graceful shutdown flag
_shutdown = asyncio.Event()


def handle_shutdown(signum: int):
    """Handle shutdown signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    _shutdown.set()


async def main():
    """Main entry point for the sweeper service."""
    logger.info("=" * 60)
    logger.info("Marketplace Orders Expiration Sweeper")
    logger.info("=" * 60)
    logger.info(f"Started at: {datetime.now(timezone.utc).isoformat()}")
    logger.info(f"Interval: {order_expiration_scheduler.interval_seconds:g}s")

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, handle_shutdown, signum)

    try:
        await order_expiration_scheduler.start()
        logger.info("Sweeper running. Press Ctrl+C to stop.")
        await _shutdown.wait()
    finally:
        logger.info("Stopping order expiration scheduler...")
        await order_expiration_scheduler.stop()
        await engine.dispose()
        logger.info("Sweeper stopped.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
