import redis.asyncio as aioredis
import json
import logging
from typing import Any, AsyncIterator, Optional
from proctorhub.core.config import settings

logger = logging.getLogger(__name__)


def session_channel(session_id: str) -> str:
    """Pub/sub channel carrying state changes and signals for one session"""
    return f"proctoring:session:{session_id}"


class CacheManager:
    """Redis access for cached values and the per-session push channel"""

    def __init__(self):
        self.redis_url = getattr(settings, 'redis_url', 'redis://localhost:6379/0')
        self.default_ttl = getattr(settings, 'cache_default_ttl', 300)
        self.enabled = getattr(settings, 'cache_enabled', True)

        self._async_client = None

    async def get_async_client(self) -> aioredis.Redis:
        """Get asynchronous Redis client"""
        if self._async_client is None:
            try:
                self._async_client = aioredis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )
                await self._async_client.ping()
            except Exception as e:
                logger.warning(f"Failed to create async Redis client: {e}")
                self._async_client = None
                raise
        return self._async_client

    def _serialize_value(self, value: Any) -> str:
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache serialization error: {e}")
            return json.dumps(str(value))

    def _deserialize_value(self, value: str) -> Any:
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Cache deserialization error: {e}, value: {value}")
            return value

    def _forget_client_on(self, error: Exception):
        if "connection" in str(error).lower() or "timeout" in str(error).lower():
            self._async_client = None


    async def aget(self, key: str) -> Optional[Any]:
        """Get value from cache (async)"""
        if not self.enabled:
            return None
        try:
            client = await self.get_async_client()
            value = await client.get(key)
            return self._deserialize_value(value) if value else None
        except Exception as e:
            logger.warning(f"Async cache get error for key '{key}': {e}")
            self._forget_client_on(e)
            return None

    async def aset(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache (async)"""
        if not self.enabled:
            return False
        try:
            client = await self.get_async_client()
            ttl = ttl or self.default_ttl
            result = await client.setex(key, ttl, self._serialize_value(value))
            return bool(result)
        except Exception as e:
            logger.warning(f"Async cache set error for key '{key}': {e}")
            self._forget_client_on(e)
            return False


    async def apublish(self, channel: str, message: dict) -> int:
        """Publish a JSON message; returns the number of receivers (0 on failure)"""
        if not self.enabled:
            return 0
        try:
            client = await self.get_async_client()
            return await client.publish(channel, self._serialize_value(message))
        except Exception as e:
            logger.warning(f"Publish to '{channel}' failed: {e}")
            self._forget_client_on(e)
            return 0

    async def asubscribe(self, channel: str) -> AsyncIterator[dict]:
        """Yield decoded messages published on a channel until the caller stops iterating"""
        client = await self.get_async_client()
        pubsub = client.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for raw in pubsub.listen():
                if raw.get("type") != "message":
                    continue
                yield self._deserialize_value(raw.get("data"))
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()


    async def ahealth_check(self) -> bool:
        """Check Redis connection health (async)"""
        if not self.enabled:
            return False
        try:
            client = await self.get_async_client()
            return await client.ping()
        except Exception as e:
            logger.warning(f"Cache health check failed: {e}")
            return False

    async def aclose(self):
        if self._async_client is not None:
            await self._async_client.aclose()
            self._async_client = None


cache = CacheManager()
