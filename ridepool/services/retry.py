import logging
from typing import Awaitable, Callable, TypeVar

from ridepool.domain.errors import StoreConflictError, TransientStoreConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_on_conflict(
    operation: str,
    attempt: Callable[[], Awaitable[T]],
    max_retries: int,
) -> T:
    """
    Runs `attempt` (read, validate, conditional write) until its write lands.
    A lost compare-and-set is retried up to `max_retries` times, then surfaced
    as StoreConflictError. Every other error propagates unchanged.
    """
    for n in range(1, max_retries + 2):
        try:
            return await attempt()
        except TransientStoreConflict as exc:
            logger.info("Store conflict during %s (attempt %d): %s", operation, n, exc)
    logger.warning("Giving up on %s after %d conflicting attempts", operation, max_retries + 1)
    raise StoreConflictError(operation)
