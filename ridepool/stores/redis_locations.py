"""
Redis-backed LocationStore.

Keys used:
  ride:{ride_id}:locations         – hash user_id -> JSON LiveLocation
  ride:{ride_id}:sharing           – hash user_id -> open sharing session id
  ride:{ride_id}:locations:events  – pub/sub channel, one message per change
  live:rides                       – set of ride ids with records or sessions
"""
import json
import logging
import uuid
from datetime import datetime
from typing import AsyncIterator

import redis.asyncio as aioredis

from ridepool.domain import LiveLocation, Role
from ridepool.redis_client import (
    LIVE_RIDES_KEY,
    location_events_channel,
    location_records_key,
    sharing_sessions_key,
)
from ridepool.stores.interfaces import LocationStore

logger = logging.getLogger(__name__)

# KEYS: sessions hash, records hash, live rides set
# ARGV: user_id, session_id, encoded record, ride_id, events channel
UPSERT_IF_SESSION = """
if redis.call("HGET", KEYS[1], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call("HSET", KEYS[2], ARGV[1], ARGV[3])
redis.call("SADD", KEYS[3], ARGV[4])
redis.call("PUBLISH", ARGV[5], ARGV[1])
return 1
"""


def encode_location(location: LiveLocation) -> str:
    return json.dumps(
        {
            "lat": location.latitude,
            "lng": location.longitude,
            "role": location.role.value,
            "updated_at": location.updated_at.isoformat(),
        }
    )


def decode_location(ride_id: str, user_id: str, raw: str) -> LiveLocation:
    data = json.loads(raw)
    return LiveLocation(
        ride_id=ride_id,
        user_id=user_id,
        latitude=float(data["lat"]),
        longitude=float(data["lng"]),
        role=Role(data["role"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


class RedisLocationStore(LocationStore):
    def __init__(self, redis: aioredis.Redis, poll_seconds: float = 1.0) -> None:
        self._redis = redis
        self._poll_seconds = poll_seconds

    async def upsert_if_session(self, location: LiveLocation, session_id: str) -> bool:
        written = await self._redis.eval(
            UPSERT_IF_SESSION,
            3,
            sharing_sessions_key(location.ride_id),
            location_records_key(location.ride_id),
            LIVE_RIDES_KEY,
            location.user_id,
            session_id,
            encode_location(location),
            location.ride_id,
            location_events_channel(location.ride_id),
        )
        return bool(written)

    async def delete(self, ride_id: str, user_id: str) -> None:
        removed = await self._redis.hdel(location_records_key(ride_id), user_id)
        if removed:
            await self._redis.publish(location_events_channel(ride_id), user_id)

    async def snapshot(self, ride_id: str) -> list[LiveLocation]:
        raw = await self._redis.hgetall(location_records_key(ride_id))
        return [decode_location(ride_id, user_id, value) for user_id, value in raw.items()]

    async def watch(self, ride_id: str) -> AsyncIterator[list[LiveLocation]]:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(location_events_channel(ride_id))
        try:
            yield await self.snapshot(ride_id)
            while True:
                # Bounded wait so a cancelled consumer is noticed promptly.
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_seconds
                )
                if message is None:
                    continue
                yield await self.snapshot(ride_id)
        finally:
            await pubsub.unsubscribe(location_events_channel(ride_id))
            await pubsub.aclose()

    async def open_session(self, ride_id: str, user_id: str) -> str:
        session_id = uuid.uuid4().hex
        async with self._redis.pipeline(transaction=True) as pipe:
            await (
                pipe.hset(sharing_sessions_key(ride_id), user_id, session_id)
                .sadd(LIVE_RIDES_KEY, ride_id)
                .execute()
            )
        return session_id

    async def current_session(self, ride_id: str, user_id: str) -> str | None:
        return await self._redis.hget(sharing_sessions_key(ride_id), user_id)

    async def close_session(self, ride_id: str, user_id: str) -> None:
        await self._redis.hdel(sharing_sessions_key(ride_id), user_id)

    async def clear_ride(self, ride_id: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            await (
                pipe.delete(location_records_key(ride_id), sharing_sessions_key(ride_id))
                .srem(LIVE_RIDES_KEY, ride_id)
                .publish(location_events_channel(ride_id), "*")
                .execute()
            )
        logger.info("Cleared live locations for ride=%s", ride_id)

    async def live_ride_ids(self) -> list[str]:
        return sorted(await self._redis.smembers(LIVE_RIDES_KEY))
