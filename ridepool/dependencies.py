"""
Wires stores and services for a request (or a background job).

store_backend "sql":    PostgreSQL rides/bookings/payments, Redis locations,
                        change feed and idempotency keys.
store_backend "memory": everything in-process, shared by all requests.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import AsyncIterator

from ridepool.config import get_settings
from ridepool.database import AsyncSessionLocal
from ridepool.middleware.idempotency import (
    IdempotencyCache,
    MemoryIdempotencyCache,
    RedisIdempotencyCache,
)
from ridepool.redis_client import get_redis
from ridepool.services.lifecycle import RideLifecycle
from ridepool.services.live_location import LiveLocationHub, SharingTasks
from ridepool.services.notifications import ChangeFeed, MemoryChangeFeed, RedisChangeFeed
from ridepool.services.payment import PaymentService
from ridepool.services.payment_gate import PaymentGate
from ridepool.services.seat_ledger import SeatLedger
from ridepool.services.sweeper import CompletionSweeper
from ridepool.stores.interfaces import LocationStore, PaymentStore, RideStore
from ridepool.stores.memory_store import MemoryLocationStore, MemoryPaymentStore, MemoryRideStore
from ridepool.stores.redis_locations import RedisLocationStore
from ridepool.stores.sql_store import SqlPaymentStore, SqlRideStore

settings = get_settings()

# Tasks pumping PositionSources live as long as the process, not the request.
sharing_tasks = SharingTasks()


@dataclass
class Engine:
    rides: RideStore
    locations: LocationStore
    feed: ChangeFeed
    idempotency: IdempotencyCache
    ledger: SeatLedger
    gate: PaymentGate
    lifecycle: RideLifecycle
    hub: LiveLocationHub
    payments: PaymentService
    sweeper: CompletionSweeper


def build_engine(
    rides: RideStore,
    payments: PaymentStore,
    locations: LocationStore,
    feed: ChangeFeed,
    idempotency: IdempotencyCache,
    tasks: SharingTasks | None = None,
) -> Engine:
    retries = settings.store_conflict_max_retries
    gate = PaymentGate(rides, feed, max_retries=retries)
    hub = LiveLocationHub(rides, locations, tasks=tasks or sharing_tasks)
    lifecycle = RideLifecycle(
        rides,
        gate,
        feed,
        hub=hub,
        refund_paid_on_cancel=settings.refund_paid_on_cancel,
        max_retries=retries,
    )
    return Engine(
        rides=rides,
        locations=locations,
        feed=feed,
        idempotency=idempotency,
        ledger=SeatLedger(
            rides, feed, max_retries=retries, max_seats_per_booking=settings.max_seats_per_booking
        ),
        gate=gate,
        lifecycle=lifecycle,
        hub=hub,
        payments=PaymentService(rides, payments, gate),
        sweeper=CompletionSweeper(rides, lifecycle, locations),
    )


@lru_cache
def memory_engine() -> Engine:
    return build_engine(
        MemoryRideStore(),
        MemoryPaymentStore(),
        MemoryLocationStore(),
        MemoryChangeFeed(),
        MemoryIdempotencyCache(),
    )


async def get_engine() -> AsyncIterator[Engine]:
    if settings.store_backend == "memory":
        yield memory_engine()
        return

    redis = await get_redis()
    async with AsyncSessionLocal() as db:
        yield build_engine(
            SqlRideStore(db),
            SqlPaymentStore(db),
            RedisLocationStore(redis, poll_seconds=settings.live_feed_poll_seconds),
            RedisChangeFeed(redis),
            RedisIdempotencyCache(redis),
        )


engine_scope = asynccontextmanager(get_engine)


@asynccontextmanager
async def sweeper_scope() -> AsyncIterator[CompletionSweeper]:
    async with engine_scope() as engine:
        yield engine.sweeper
