"""
Durable Queue

Ordered FIFO of pending jobs. The Redis list backend is durable; the
in-memory fallback loses everything on restart.
"""
import hmac
import logging
from collections import deque
from typing import List, Optional, Protocol

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ..config import DeployerSettings
from .errors import QueueUnavailable
from .models import QueuedJob

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    durable: bool

    async def enqueue(self, job: QueuedJob) -> int: ...

    async def dequeue(self) -> Optional[QueuedJob]: ...

    async def peek(self, limit: int) -> List[QueuedJob]: ...

    async def length(self) -> int: ...

    async def clear(self) -> None: ...


def _decode(raw) -> Optional[QueuedJob]:
    try:
        return QueuedJob.model_validate_json(raw)
    except (ValidationError, ValueError):
        return None


class RedisJobQueue:
    """FIFO over a Redis list: RPUSH to the tail, LPOP from the head."""

    durable = True

    def __init__(self, redis_client: redis.Redis, queue_key: str = "gpu_jobs"):
        self.redis = redis_client
        self.queue_key = queue_key

    async def enqueue(self, job: QueuedJob) -> int:
        try:
            return int(await self.redis.rpush(self.queue_key, job.model_dump_json()))
        except RedisError as e:
            raise QueueUnavailable(f"queue store unreachable: {e}") from e

    async def dequeue(self) -> Optional[QueuedJob]:
        """Pop the head. Destructive: a crash after this loses the job."""
        while True:
            try:
                raw = await self.redis.lpop(self.queue_key)
            except RedisError as e:
                raise QueueUnavailable(f"queue store unreachable: {e}") from e
            if raw is None:
                return None
            job = _decode(raw)
            if job is not None:
                return job
            logger.warning(f"Dropping malformed queue entry from {self.queue_key}")

    async def peek(self, limit: int) -> List[QueuedJob]:
        if limit <= 0:
            return []
        try:
            entries = await self.redis.lrange(self.queue_key, 0, limit - 1)
        except RedisError as e:
            raise QueueUnavailable(f"queue store unreachable: {e}") from e
        return [job for job in (_decode(raw) for raw in entries) if job is not None]

    async def length(self) -> int:
        try:
            return int(await self.redis.llen(self.queue_key))
        except RedisError as e:
            raise QueueUnavailable(f"queue store unreachable: {e}") from e

    async def clear(self) -> None:
        try:
            await self.redis.delete(self.queue_key)
        except RedisError as e:
            raise QueueUnavailable(f"queue store unreachable: {e}") from e


class InMemoryJobQueue:
    """Non-durable fallback. A restart loses every entry."""

    durable = False

    def __init__(self):
        self._items: deque = deque()
        logger.warning("Using in-memory job queue: no durability, restart loses all entries")

    async def enqueue(self, job: QueuedJob) -> int:
        self._items.append(job)
        return len(self._items)

    async def dequeue(self) -> Optional[QueuedJob]:
        return self._items.popleft() if self._items else None

    async def peek(self, limit: int) -> List[QueuedJob]:
        return list(self._items)[:max(0, limit)]

    async def length(self) -> int:
        return len(self._items)

    async def clear(self) -> None:
        self._items.clear()


class UnavailableJobQueue:
    """Queueing is enabled but no store is configured and fallback is off."""

    durable = False

    async def enqueue(self, job: QueuedJob) -> int:
        raise QueueUnavailable("no queue store configured")

    async def dequeue(self) -> Optional[QueuedJob]:
        raise QueueUnavailable("no queue store configured")

    async def peek(self, limit: int) -> List[QueuedJob]:
        raise QueueUnavailable("no queue store configured")

    async def length(self) -> int:
        raise QueueUnavailable("no queue store configured")

    async def clear(self) -> None:
        raise QueueUnavailable("no queue store configured")


def build_queue(settings: DeployerSettings, redis_client: Optional[redis.Redis]) -> JobQueue:
    """Select the queue backend once, from configuration presence."""
    if redis_client is not None:
        return RedisJobQueue(redis_client, settings.queue_key)
    if settings.queue_memory_fallback:
        return InMemoryJobQueue()
    return UnavailableJobQueue()


def check_admin_token(configured: Optional[str], supplied: Optional[str]) -> bool:
    """Exact match of a shared secret; a missing side always denies."""
    if not configured or not supplied:
        return False
    return hmac.compare_digest(configured.encode("utf-8"), supplied.encode("utf-8"))
