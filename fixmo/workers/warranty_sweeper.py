"""
Warranty sweeper - auto-completes in-warranty/backjob appointments whose
warranty lapsed with no claim holding it paused. Runs every 6 hours by default.
"""
import asyncio
import logging
from datetime import datetime, timezone

from fixmo.utils.logging import correlation_scope

logger = logging.getLogger(__name__)

WORKER_NAME = "warranty_sweeper"


async def _heartbeat(interval: int):
    """Store heartbeat timestamp in Redis."""
    try:
        from fixmo.utils.redis_client import get_redis
        from fixmo.workers.health import heartbeat_key
        redis = await get_redis()
        await redis.set(
            heartbeat_key(WORKER_NAME),
            datetime.now(timezone.utc).isoformat(),
            ex=interval * 2,
        )
    except Exception:
        pass


async def run_warranty_sweeper():
    """Main sweeper loop. Runs continuously."""
    from fixmo.config import get_settings
    settings = get_settings()
    interval = settings.warranty_sweep_interval_seconds
    logger.info("Warranty sweeper started (interval=%ds)", interval, extra={"worker": WORKER_NAME})

    if not settings.run_sweeps_on_startup:
        await _heartbeat(interval)
        await asyncio.sleep(interval)

    while True:
        try:
            with correlation_scope(WORKER_NAME):
                await sweep_cycle()
        except Exception as e:
            logger.error("Warranty sweeper error: %s", str(e), exc_info=True, extra={"worker": WORKER_NAME})

        await _heartbeat(interval)
        await asyncio.sleep(interval)


async def sweep_cycle() -> dict[str, int]:
    """Complete every lapsed, unpaused warranty. Returns the sweep summary."""
    from fixmo.database import async_session_factory
    from fixmo.services.warranty_sweep import sweep_expired_warranties

    async with async_session_factory() as db:
        summary = await sweep_expired_warranties(db)

    if summary["appointments_completed"] or summary["errors"]:
        logger.info(
            "Warranty sweep: completed=%d backjobs_cancelled=%d errors=%d",
            summary["appointments_completed"], summary["backjobs_cancelled"], summary["errors"],
            extra={"worker": WORKER_NAME},
        )
    return summary
