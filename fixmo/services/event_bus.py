"""
Real-time broadcast via Redis pub/sub.

The socket gateway subscribes to one channel per user and forwards whatever
arrives to that user's open connections. Publishing is best-effort: nobody
listening, or Redis being down, is not an error for the caller.
"""
import json
import logging
from typing import Any, Optional

from fixmo.utils.redis_client import get_redis

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "fixmo:realtime"


def user_channel(user_type: str, user_id) -> str:
    return f"{CHANNEL_PREFIX}:{user_type}:{user_id}"


async def publish_to_user(
    user_type: str, user_id, event_type: str, data: Optional[dict[str, Any]] = None
) -> bool:
    """Publish one event to a user's channel. Returns False if it could not be published."""
    payload = json.dumps({"type": event_type, "data": data or {}})
    try:
        redis = await get_redis()
        await redis.publish(user_channel(user_type, user_id), payload)
        logger.debug("Broadcast %s to %s %s", event_type, user_type, str(user_id)[:8])
        return True
    except Exception as e:
        logger.warning("Failed to broadcast %s to %s %s: %s", event_type, user_type, str(user_id)[:8], str(e))
        return False


async def broadcast_to_participants(
    customer_id, provider_id, event_type: str, data: Optional[dict[str, Any]] = None
) -> int:
    """Publish to both sides of a conversation. Returns how many publishes succeeded."""
    delivered = 0
    if await publish_to_user("customer", customer_id, event_type, data):
        delivered += 1
    if await publish_to_user("provider", provider_id, event_type, data):
        delivered += 1
    return delivered
