"""Backing store client.

Thin wrapper around ``redis.asyncio`` that owns the connection, builds the
key layout shared by all queues and surfaces an unreachable store as a
``FatalError``.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .errors import FatalError

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "events"


class RedisStore:
    """Connection to the shared Redis used as the durable queue medium."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        prefix: str = "myfamily:queue",
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.prefix = prefix.rstrip(":")
        self._redis: Optional[redis.Redis] = client
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._redis is not None

    @property
    def client(self) -> redis.Redis:
        if self._redis is None:
            raise FatalError("Backing store is not connected")
        return self._redis

    async def connect(self) -> None:
        """
        Connect to Redis and verify it answers.

        Raises:
            FatalError: If the store is unreachable
        """
        if self._connected:
            return
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        try:
            await self._redis.ping()
        except (RedisError, OSError) as e:
            self._connected = False
            raise FatalError(f"Redis unavailable at {self.safe_url()}: {e}") from e
        self._connected = True
        logger.info(f"Connected to Redis at {self.safe_url()}")

    async def ping(self) -> bool:
        """Health probe; never raises."""
        if self._redis is None:
            return False
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._connected = False
            logger.info("Disconnected from Redis")

    # ==================== Keys ====================

    def key(self, *parts: str) -> str:
        """Build a namespaced key, e.g. ``key("notifications", "waiting")``."""
        return ":".join([self.prefix, *parts])

    @property
    def events_channel(self) -> str:
        return self.key(EVENTS_CHANNEL)

    # ==================== Pub/Sub ====================

    async def publish(self, message: dict[str, Any]) -> None:
        """Publish a lifecycle event for other processes; failures are logged only."""
        try:
            await self.client.publish(self.events_channel, json.dumps(message, default=str))
        except (RedisError, OSError) as e:
            logger.warning(f"Failed to publish event {message.get('type')}: {e}")

    def safe_url(self) -> str:
        return self.redis_url.split("@")[-1] if "@" in self.redis_url else self.redis_url
