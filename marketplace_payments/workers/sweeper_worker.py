"""
Processing sweeper background worker.

Runs a sweep pass every `sweep_interval_seconds` until SIGINT/SIGTERM.
"""
import argparse
import asyncio
import signal
from typing import Any, Optional

import structlog

from marketplace_payments.config import get_settings
from marketplace_payments.container import build_container
from marketplace_payments.database.connection import close_db, init_db
from marketplace_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_processing_sweeper(interval_seconds: Optional[int] = None) -> None:
    """
    Start the processing sweeper worker.

    Args:
        interval_seconds: Seconds between passes (defaults to settings)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.sweep_interval_seconds

    logger.info("processing_sweeper_starting", interval_seconds=interval)

    await init_db()
    container = build_container(settings)
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("processing_sweeper_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await container.sweeper.sweep_once()
            except Exception as e:
                # Keep the worker alive across a failed pass
                logger.error("processing_sweep_error", error=str(e))

            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        await container.aclose()
        await close_db()
        logger.info("processing_sweeper_stopped")


def main() -> None:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="Processing sweeper worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweep passes"
    )
    args = parser.parse_args()

    asyncio.run(start_processing_sweeper(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
