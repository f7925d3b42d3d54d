"""
Key-value backends for the session cache.

The cache talks to its backing store only through `CacheBackend`, so tests and
local runs can use the in-memory implementation while deployments use Redis.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class StoreUnavailableError(Exception):
    """Raised when the backing store cannot be reached."""


class CacheBackend(ABC):
    """Abstract async key-value store with per-key expiry."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """
        Read a value.

        Args:
            key: Cache key.

        Returns:
            Stored string, or None if missing or expired.
        """
        ...

    @abstractmethod
    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        """
        Write a value and (re)set its expiry.

        Args:
            key: Cache key.
            ttl_seconds: Lifetime in seconds from now.
            value: Serialized value.
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key immediately."""
        ...

    @abstractmethod
    async def keys(self, prefix: str) -> list[str]:
        """List live keys starting with `prefix`."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryCacheBackend(CacheBackend):
    """
    Process-local backend with monotonic expiry.

    Suitable for tests and single-process development. Each instance is
    independent; nothing is shared at module level.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._data: dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> str | None:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str) -> list[str]:
        return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]

    def ttl(self, key: str) -> float | None:
        """Seconds until `key` expires, or None if absent."""
        if self._live(key) is None:
            return None
        return self._data[key][1] - self._clock()


class RedisCacheBackend(CacheBackend):
    """Backend over an injected `redis.asyncio.Redis` client."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCacheBackend:
        from redis.asyncio import Redis

        return cls(Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        try:
            value = await self._client.get(key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error(f"Redis GET failed for {key}: {e}")
            raise StoreUnavailableError(str(e)) from e
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        try:
            await self._client.setex(key, ttl_seconds, value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error(f"Redis SETEX failed for {key}: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error(f"Redis DEL failed for {key}: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def keys(self, prefix: str) -> list[str]:
        found: list[str] = []
        try:
            async for key in self._client.scan_iter(match=f"{prefix}*"):
                found.append(key.decode("utf-8") if isinstance(key, bytes) else key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(str(e)) from e
        return found

    async def close(self) -> None:
        await self._client.aclose()
