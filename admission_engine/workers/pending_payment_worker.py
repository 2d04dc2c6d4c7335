"""
Pending payment background worker.

Runs the sweeper every `sweep_interval_seconds` until SIGINT/SIGTERM.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from admission_engine.config import Settings, get_settings
from admission_engine.core.engine import ReconciliationEngine
from admission_engine.database.connection import close_db
from admission_engine.factory import build_engine
from admission_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(engine: ReconciliationEngine) -> None:
    """Run one sweep. Failures are logged and the worker keeps going."""
    try:
        counts = await engine.sweep_pending_payments()
    except Exception as e:
        logger.error("pending_payment_sweep_failed", error=str(e), exc_info=True)
        return

    if counts["skipped"]:
        logger.warning("pending_payments_left_unreconciled", skipped=counts["skipped"])


async def start_pending_payment_worker(
    settings: Optional[Settings] = None,
    engine: Optional[ReconciliationEngine] = None,
    once: bool = False,
) -> None:
    """
    Start the pending payment worker.

    Args:
        settings: Optional settings (uses cached settings if not provided)
        engine: Optional prebuilt engine
        once: Run a single sweep and return
    """
    settings = settings or get_settings()
    setup_logging(settings)
    engine = engine or build_engine(settings)
    interval = settings.sweep_interval_seconds

    logger.info("pending_payment_worker_starting", interval_seconds=interval, once=once)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("pending_payment_worker_shutdown_signal_received", signal=sig)
        running = False

    if not once:
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            await run_sweep(engine)
            if once:
                break

            # Sleep in short steps so a shutdown signal is noticed quickly
            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 1.0)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        await engine.close()
        logger.info("pending_payment_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Pending payment sweeper")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    async def _run() -> None:
        try:
            await start_pending_payment_worker(once=args.once)
        finally:
            await close_db()

    asyncio.run(_run())


if __name__ == "__main__":
    main()
