"""
Conversation reconciler - re-derives every conversation's open/closed status
from the current appointments. Runs hourly by default.

- closed but a live appointment or warranty exists -> reopened
- active but nothing licenses messaging any more -> closed
- lapsed in-warranty appointments met on the way are completed
"""
import asyncio
import logging
from datetime import datetime, timezone

from fixmo.utils.logging import correlation_scope

logger = logging.getLogger(__name__)

WORKER_NAME = "conversation_reconciler"


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


async def run_conversation_reconciler():
    """Main reconciler loop. Runs continuously."""
    from fixmo.config import get_settings
    settings = get_settings()
    interval = settings.conversation_reconcile_interval_seconds
    logger.info("Conversation reconciler started (interval=%ds)", interval, extra={"worker": WORKER_NAME})

    if not settings.run_sweeps_on_startup:
        await _heartbeat(interval)
        await asyncio.sleep(interval)

    while True:
        try:
            with correlation_scope(WORKER_NAME):
                await reconcile_cycle()
        except Exception as e:
            logger.error("Conversation reconciler error: %s", str(e), exc_info=True, extra={"worker": WORKER_NAME})

        await _heartbeat(interval)
        await asyncio.sleep(interval)


async def reconcile_cycle() -> dict[str, int]:
    """One full pass over every conversation. Returns the reconcile summary."""
    from fixmo.database import async_session_factory
    from fixmo.services.conversations import reconcile_conversations

    async with async_session_factory() as db:
        summary = await reconcile_conversations(db)
        await db.commit()

    if summary["reopened"] or summary["closed"] or summary["appointments_completed"]:
        logger.info(
            "Conversation reconcile: checked=%d reopened=%d closed=%d appointments_completed=%d",
            summary["checked"], summary["reopened"], summary["closed"], summary["appointments_completed"],
            extra={"worker": WORKER_NAME},
        )
    return summary
