"""
Conflict retry - Bounded retries of read-modify-write operations.

Every status and finalizer mutation goes through apply_with_retry so a
concurrent writer never causes a lost update: the object is re-read,
mutated and conditionally written until the write lands or the retry
budget is spent.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from cluster import ManagedCluster, ObjectKey
from store import ConflictError, ManagedObjectStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryBackoff:
    """Backoff policy for conflict retries."""

    steps: int = 5  # total attempts, including the first
    duration: float = 0.01  # initial sleep in seconds
    factor: float = 1.0  # multiplier applied after each sleep
    jitter: float = 0.1  # adds up to jitter * duration to each sleep
    cap: Optional[float] = None  # upper bound on the un-jittered sleep

    def delays(self):
        """Yield the sleep before each retry (steps - 1 values)."""
        duration = self.duration
        for _ in range(max(self.steps - 1, 0)):
            sleep = duration
            if self.jitter > 0:
                sleep = duration + random.random() * self.jitter * duration
            yield sleep
            if self.factor > 0:
                duration = duration * self.factor
                if self.cap is not None:
                    duration = min(duration, self.cap)


DEFAULT_RETRY = RetryBackoff()


def compute_backoff_delay(
    retry_count: int,
    base_delay: float = 60,
    max_delay: float = 3600,
    jitter_factor: float = 0.1,
) -> float:
    """
    Exponential backoff with jitter for failed reconciliations.

    Args:
        retry_count: Number of consecutive failures so far
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds, applied before jitter
        jitter_factor: Jitter factor ±X (0.1 = ±10%)

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (2 ** min(retry_count, 10)), max_delay)
    return delay * (1 + (random.random() * 2 - 1) * jitter_factor)


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    backoff: RetryBackoff = DEFAULT_RETRY,
) -> T:
    """
    Run an operation, retrying it while it fails with a version conflict.

    Any error other than ConflictError is raised immediately. When the
    retry budget is exhausted the last ConflictError is raised.
    """
    delays = backoff.delays()
    attempt = 1
    while True:
        try:
            return await operation()
        except ConflictError:
            delay = next(delays, None)
            if delay is None:
                logger.warning(f"Giving up after {attempt} conflicting write attempts")
                raise
            logger.debug(f"Write conflict on attempt {attempt}, retrying in {delay:.3f}s")
            attempt += 1
            await asyncio.sleep(delay)


@dataclass(frozen=True)
class ReadModifyWrite:
    """
    A read-modify-write operation on one cluster.

    ``mutate`` receives the freshly read cluster and edits it in place.
    ``subresource`` selects the write: None for metadata, "status" for the
    status subresource.
    """

    key: ObjectKey
    mutate: Callable[[ManagedCluster], None]
    subresource: Optional[str] = None


async def apply_with_retry(
    store: ManagedObjectStore,
    rmw: ReadModifyWrite,
    backoff: RetryBackoff = DEFAULT_RETRY,
) -> ManagedCluster:
    """Apply a ReadModifyWrite, re-reading and retrying on conflict."""
    if rmw.subresource not in (None, "status"):
        raise ValueError(f"Unsupported subresource: {rmw.subresource}")

    async def attempt() -> ManagedCluster:
        cluster = await store.get(rmw.key)
        rmw.mutate(cluster)
        if rmw.subresource == "status":
            return await store.update_status(cluster)
        return await store.update(cluster)

    return await retry_on_conflict(attempt, backoff)
