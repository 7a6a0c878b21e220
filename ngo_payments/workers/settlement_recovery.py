"""
Stuck-settlement recovery worker.

ECPay is told "1|OK" even when applying a verified payment fails locally,
so nothing upstream will resend it. This worker periodically re-drives
settlement for transactions that are still processing but whose stored
callback reported success.
"""
import asyncio
import signal
from typing import Any, Dict

from ngo_payments.config import get_settings
from ngo_payments.core.reconciliation import ReconciliationEngine
from ngo_payments.database.connection import get_session_factory
from ngo_payments.monitoring.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def run_settlement_recovery(min_age_seconds: int | None = None) -> Dict[str, Any]:
    """
    Run one recovery pass.

    Args:
        min_age_seconds: Skip callbacks stored more recently than this

    Returns:
        Dict[str, Any]: Recovery result
    """
    settings = get_settings()
    if min_age_seconds is None:
        min_age_seconds = settings.reconciliation_retry_min_age_seconds

    logger.info("settlement_recovery_started", min_age_seconds=min_age_seconds)

    engine = ReconciliationEngine()
    session_factory = get_session_factory()
    async with session_factory() as db:
        result = await engine.recover_stuck_settlements(db, min_age_seconds)

    if result["failed"]:
        logger.warning(
            "settlement_recovery_incomplete",
            failed_trade_nos=result["failed"],
        )

    return result


async def start_settlement_recovery_worker(interval_seconds: int | None = None) -> None:
    """
    Start the recovery worker. Runs until SIGINT/SIGTERM.

    Args:
        interval_seconds: Seconds between passes (defaults to settings)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.reconciliation_retry_interval_seconds

    logger.info("settlement_recovery_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("settlement_recovery_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_settlement_recovery()
            except Exception as e:
                logger.error("settlement_recovery_execution_error", error=str(e))
                # Continue running even if one pass fails

            waited = 0
            while waited < interval and running:
                sleep_time = min(interval - waited, 5)  # Check for shutdown every 5 s
                await asyncio.sleep(sleep_time)
                waited += sleep_time

    finally:
        logger.info("settlement_recovery_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Stuck settlement recovery worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between recovery passes"
    )
    args = parser.parse_args()

    asyncio.run(start_settlement_recovery_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
