"""
Per-appointment Redis lock around warranty claim creation.

SET NX EX with a random token; release is a compare-and-delete so a holder
whose TTL lapsed never frees someone else's lock. When Redis is unreachable
the block runs unlocked and the partial unique index on approved backjobs
is the only guard.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.1

RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class LockTimeoutError(Exception):
    """The lock stayed held by someone else for the whole wait."""


def lock_key(appointment_id) -> str:
    return f"fixmo:lock:appointment:{appointment_id}"


@asynccontextmanager
async def appointment_lock(appointment_id, ttl: int = 30, wait: float = 5.0):
    """
    async with appointment_lock(appointment.id, ttl=30, wait=5.0):
        ...  # check for an approved claim, then insert

    Raises LockTimeoutError if the lock cannot be taken within `wait` seconds.
    """
    key = lock_key(appointment_id)
    token = uuid.uuid4().hex

    if not await _acquire_lock(key, token, ttl, wait):
        raise LockTimeoutError(f"Appointment {str(appointment_id)[:8]} is locked by another claim")
    try:
        yield
    finally:
        await _release_lock(key, token)


async def _acquire_lock(key: str, value: str, ttl: int, wait: float) -> bool:
    try:
        from fixmo.utils.redis_client import get_redis
        redis = await get_redis()
    except Exception as e:
        logger.warning("Redis unavailable for %s, continuing unlocked: %s", key, str(e))
        return True

    retries = int(wait / POLL_SECONDS)
    for attempt in range(retries + 1):
        try:
            if await redis.set(key, value, nx=True, ex=ttl):
                return True
        except Exception as e:
            logger.warning("Redis error locking %s, continuing unlocked: %s", key, str(e))
            return True
        if attempt < retries:
            await asyncio.sleep(POLL_SECONDS)

    logger.warning("Timed out after %.1fs waiting for %s", wait, key)
    return False


async def _release_lock(key: str, value: str) -> None:
    try:
        from fixmo.utils.redis_client import get_redis
        redis = await get_redis()
        released = await redis.eval(RELEASE_SCRIPT, 1, key, value)
    except Exception as e:
        logger.warning("Redis error releasing %s: %s", key, str(e))
        return
    if not released:
        logger.warning("Lock %s expired before release; raise BACKJOB_LOCK_TTL_SECONDS", key)
