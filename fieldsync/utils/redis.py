"""
Shared async Redis connection (realtime fan-out, worker heartbeats, alert cooldowns).
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

KEY_PREFIX = "fieldsync"
HEARTBEAT_TTL_SECONDS = 300

_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from fieldsync.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def worker_health_key(worker_name: str) -> str:
    return f"{KEY_PREFIX}:worker_health:{worker_name}"


async def heartbeat(worker_name: str) -> None:
    """Store a heartbeat timestamp for a background worker."""
    try:
        redis = await get_redis()
        await redis.set(
            worker_health_key(worker_name),
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.debug("Heartbeat for %s failed: %s", worker_name, str(e))
