import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ridepool.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


async def ping_redis() -> bool:
    """True when the shared pool answers PING."""
    try:
        return bool(await (await get_redis()).ping())
    except (RedisError, OSError):
        return False


# ---------------------------------------------------------------------------
# Key helpers (live locations)
# ---------------------------------------------------------------------------

LIVE_RIDES_KEY = "live:rides"


def location_records_key(ride_id: str) -> str:
    """Hash user_id -> JSON LiveLocation."""
    return f"ride:{ride_id}:locations"


def sharing_sessions_key(ride_id: str) -> str:
    """Hash user_id -> open sharing session id."""
    return f"ride:{ride_id}:sharing"


def location_events_channel(ride_id: str) -> str:
    return f"ride:{ride_id}:locations:events"
