"""
Idempotency Engine

Replays the first response for a repeated ``Idempotency-Key`` so a client
retry never provisions a second deployment.
"""
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class IdempotencyEngine:
    """
    Stores idempotency_key -> response body mappings in Redis with TTL.

    Lookups and writes fail open: a Redis error lets the request proceed.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 86400):
        """
        Args:
            redis_client: Redis async client
            ttl_seconds: Time-to-live for idempotency keys (default: 24 hours)
        """
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = "idempotency:"

    async def lookup(self, idempotency_key: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return the stored response for a key, or None."""
        if not idempotency_key:
            return None

        try:
            stored = await self.redis.get(f"{self.key_prefix}{idempotency_key}")
        except RedisError as e:
            logger.error(f"Error checking idempotency key {idempotency_key}: {e}")
            return None

        if not stored:
            return None
        if isinstance(stored, bytes):
            stored = stored.decode("utf-8")
        try:
            body = json.loads(stored)
        except ValueError:
            logger.warning(f"Discarding unreadable idempotency record {idempotency_key}")
            return None
        if not isinstance(body, dict):
            return None

        logger.info(f"Idempotency key found: {idempotency_key}")
        return body

    async def remember(self, idempotency_key: Optional[str], body: Dict[str, Any]) -> bool:
        """Store a response body for a key. Returns False if nothing was stored."""
        if not idempotency_key:
            return False

        try:
            # NX keeps the first response if two retries race
            await self.redis.set(
                f"{self.key_prefix}{idempotency_key}",
                json.dumps(body, default=str),
                ex=self.ttl_seconds,
                nx=True,
            )
        except RedisError as e:
            logger.error(f"Error storing idempotency key {idempotency_key}: {e}")
            return False

        logger.debug(f"Stored idempotency key {idempotency_key} (TTL: {self.ttl_seconds}s)")
        return True
