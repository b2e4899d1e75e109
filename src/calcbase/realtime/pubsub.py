"""Redis pub/sub publisher for realtime document ops.

Ops for a record document are published on two channels:
- ``{collection}`` - every document of the collection
- ``{collection}.{doc_id}`` - one document
"""

import asyncio
from typing import Any, Optional

import orjson
import redis.asyncio as redis

from calcbase.core.config import settings
from calcbase.core.logging import get_logger

logger = get_logger(__name__)


class RedisPubSubManager:
    """Publishes realtime messages to Redis channels.

    The connection is created lazily; when Redis is unreachable, publishing
    logs a warning and reports failure instead of raising.
    """

    def __init__(self, redis_url: Optional[str] = None) -> None:
        """Initialize Redis pub/sub manager."""
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None
        self._lock = asyncio.Lock()

    async def get_redis(self) -> Optional[redis.Redis]:
        """Get or create Redis connection.

        Returns:
            Redis client instance or None if connection fails
        """
        if self._redis is None:
            try:
                client = redis.from_url(
                    self.redis_url,
                    max_connections=settings.redis_max_connections,
                    decode_responses=True,
                )
                await client.ping()
                self._redis = client
                logger.info(f"Redis pub/sub connected: {self.redis_url}")
            except (redis.RedisError, OSError) as e:
                logger.warning(f"Failed to connect to Redis for pub/sub: {e}")
                self._redis = None
        return self._redis

    async def publish(self, channel: str, message: dict[str, Any]) -> bool:
        """Publish a message to a Redis channel.

        Args:
            channel: Channel name to publish to
            message: Message data (JSON serialized)

        Returns:
            True if published successfully, False otherwise
        """
        try:
            redis_client = await self.get_redis()
            if not redis_client:
                return False

            receivers = await redis_client.publish(channel, orjson.dumps(message, default=str))
            if receivers > 0:
                logger.debug(f"Published to {channel}")
            else:
                logger.debug(f"Published to {channel} but no subscribers")
            return True

        except (redis.RedisError, OSError, TypeError) as e:
            logger.warning(f"Failed to publish to {channel}: {e}")
            return False

    async def close(self) -> None:
        """Close the Redis connection."""
        async with self._lock:
            if self._redis:
                try:
                    await self._redis.aclose()
                except (redis.RedisError, OSError) as e:
                    logger.warning(f"Error closing Redis connection: {e}")
                self._redis = None
                logger.info("Redis pub/sub manager closed")

    @property
    def is_connected(self) -> bool:
        """Check if Redis is connected."""
        return self._redis is not None


# Global pub/sub manager instance
pubsub_manager = RedisPubSubManager()


def get_pubsub_manager() -> RedisPubSubManager:
    """Get the global pub/sub manager instance."""
    return pubsub_manager
