"""
Redis client.

Async Redis wrapper for cache keys and progress pub/sub.
"""

import json
from typing import Any, Optional

import redis.asyncio as redis

from shared.config import settings
from shared.errors import ConfigError, RetryableError
from shared.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "reelpipe:cache:"


class RedisClient:
    """Redis client wrapper with key prefixing and JSON helpers."""

    def __init__(self, url: Optional[str] = None):
        """Initialize Redis client."""
        url = url or settings.redis_url
        if not url:
            raise ConfigError("REDIS_URL is required for the Redis client")
        try:
            self.client = redis.from_url(url, decode_responses=False)
            self.prefix = KEY_PREFIX
        except Exception as e:
            raise ConfigError(f"Failed to initialize Redis client: {str(e)}") from e

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        """Set a string value with optional expiry in seconds."""
        try:
            return bool(await self.client.set(self._key(key), value.encode("utf-8"), ex=ex))
        except Exception as e:
            raise RetryableError(f"Failed to set Redis key {key}: {str(e)}") from e

    async def get(self, key: str) -> Optional[str]:
        """Get a string value, or None if missing."""
        try:
            value = await self.client.get(self._key(key))
        except Exception as e:
            raise RetryableError(f"Failed to get Redis key {key}: {str(e)}") from e
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        try:
            return await self.client.delete(self._key(key)) > 0
        except Exception as e:
            raise RetryableError(f"Failed to delete Redis key {key}: {str(e)}") from e

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return await self.set(key, json.dumps(value), ex=ttl)

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise RetryableError(f"Failed to decode JSON for Redis key {key}: {str(e)}") from e

    async def publish(self, channel: str, message: Any) -> int:
        """
        Publish a JSON message on a pub/sub channel.

        Channels are not prefixed so that non-Python producers can publish
        on the same names.

        Returns:
            Number of subscribers that received the message
        """
        try:
            return await self.client.publish(channel, json.dumps(message, default=str).encode("utf-8"))
        except Exception as e:
            raise RetryableError(f"Failed to publish to Redis channel {channel}: {str(e)}") from e

    def pubsub(self):
        """New pub/sub connection."""
        return self.client.pubsub()

    async def health_check(self) -> bool:
        try:
            await self.client.ping()
            return True
        except Exception:
            return False

    async def close(self) -> None:
        await self.client.aclose()
