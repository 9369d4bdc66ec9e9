"""
Process-wide async Redis client used for appointment locks, worker heartbeats
and real-time fan-out. Created on first use; closed in the app lifespan.
"""
_client = None


async def get_redis():
    global _client
    if _client is None:
        import redis.asyncio as aioredis
        from fixmo.config import get_settings
        settings = get_settings()
        _client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout_seconds,
            health_check_interval=30,
        )
    return _client


async def close_redis() -> None:
    global _client
    client, _client = _client, None
    if client is not None:
        await client.aclose()
