"""
Outbox dispatcher - delivers committed domain events (email, push, real-time).
Polls every 30 seconds by default, oldest events first.

Each event gets one delivery attempt. Channel failures are recorded on the
row in last_error and the event is still marked sent; an event whose handler
blew up is marked failed and left for inspection.
"""
import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy import select

from fixmo.utils.logging import correlation_scope

logger = logging.getLogger(__name__)

WORKER_NAME = "outbox_dispatcher"


async def _heartbeat(interval: int):
    """Store heartbeat timestamp in Redis."""
    try:
        from fixmo.utils.redis_client import get_redis
        from fixmo.workers.health import heartbeat_key
        redis = await get_redis()
        await redis.set(
            heartbeat_key(WORKER_NAME),
            datetime.now(timezone.utc).isoformat(),
            ex=max(interval * 10, 300),
        )
    except Exception:
        pass


async def run_outbox_dispatcher():
    """Main dispatcher loop. Runs continuously."""
    from fixmo.config import get_settings
    interval = get_settings().outbox_poll_interval_seconds
    logger.info("Outbox dispatcher started (interval=%ds)", interval, extra={"worker": WORKER_NAME})

    while True:
        try:
            with correlation_scope(WORKER_NAME):
                processed = await dispatch_pending_events()
            if processed > 0:
                logger.info("Outbox dispatcher delivered %d event(s)", processed, extra={"worker": WORKER_NAME})
        except Exception as e:
            logger.error("Outbox dispatcher error: %s", str(e), exc_info=True, extra={"worker": WORKER_NAME})

        await _heartbeat(interval)
        await asyncio.sleep(interval)


async def dispatch_pending_events() -> int:
    """Deliver one batch of pending events. Returns count processed."""
    from fixmo.config import get_settings
    from fixmo.database import async_session_factory
    from fixmo.models.outbox import OutboxEvent
    from fixmo.services.notifications import deliver_event

    batch_size = get_settings().outbox_batch_size
    processed = 0

    async with async_session_factory() as db:
        result = await db.execute(
            select(OutboxEvent.id)
            .where(OutboxEvent.status == "pending")
            .order_by(OutboxEvent.created_at)
            .limit(batch_size)
        )
        event_ids = result.scalars().all()

        for event_id in event_ids:
            event = await db.get(OutboxEvent, event_id)
            event_type = event.event_type
            try:
                errors = await deliver_event(db, event)
            except Exception as e:
                logger.error(
                    "Event %s (%s) delivery failed: %s", str(event_id)[:8], event_type, str(e),
                    exc_info=True, extra={"event_type": event_type},
                )
                await db.rollback()
                event = await db.get(OutboxEvent, event_id)
                event.attempts = (event.attempts or 0) + 1
                event.status = "failed"
                event.last_error = str(e)[:1000]
            else:
                event.attempts = (event.attempts or 0) + 1
                event.status = "sent"
                event.last_error = "; ".join(errors)[:1000] if errors else None
                if errors:
                    logger.warning(
                        "Event %s (%s) delivered with errors: %s",
                        str(event.id)[:8], event.event_type, event.last_error,
                        extra={"event_type": event.event_type},
                    )
            event.dispatched_at = datetime.now(timezone.utc)
            await db.commit()
            processed += 1

    return processed
