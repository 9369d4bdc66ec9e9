"""
Worker heartbeat lookup shared by /health/ready and the admin warranty status.

Each worker writes fixmo:worker_health:<name> with a TTL spanning several cycles,
so a missing key means the worker skipped at least one cycle.
"""

WORKER_NAMES = ("conversation_reconciler", "warranty_sweeper", "outbox_dispatcher")


def heartbeat_key(name: str) -> str:
    return f"fixmo:worker_health:{name}"


async def worker_heartbeats() -> dict[str, dict]:
    """Map worker name to {"healthy", "last_heartbeat"}; raises if Redis is unreachable."""
    from fixmo.utils.redis_client import get_redis
    redis = await get_redis()

    workers = {}
    for name in WORKER_NAMES:
        heartbeat = await redis.get(heartbeat_key(name))
        workers[name] = {"healthy": heartbeat is not None, "last_heartbeat": heartbeat}
    return workers
