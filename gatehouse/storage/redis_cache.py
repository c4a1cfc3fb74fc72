from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis import Redis

# Atomic counter whose expiry is only set by the write that creates it, so
# later increments inside the window never push the window forward.
_INCR_EXPIRE_ON_FIRST_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

# GETDEL fallback for servers older than 6.2
_POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""


class CacheStore(Protocol):
    """TTL-capable key/value store shared by tickets, rate buckets and the refresh registry."""

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def incr_with_expiry_on_first_write(self, key: str, ttl_seconds: int) -> int: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


class RedisCache:
    """Thin async Redis wrapper for tickets, rate buckets and the refresh registry."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_expire = self.client.register_script(_INCR_EXPIRE_ON_FIRST_SCRIPT)
        self._pop = self.client.register_script(_POP_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete ``key`` so only one caller can claim it."""
        return await self._pop(keys=[key])

    async def incr_with_expiry_on_first_write(self, key: str, ttl_seconds: int) -> int:
        return int(await self._incr_expire(keys=[key], args=[max(1, int(ttl_seconds))]))

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in whole seconds; None when missing or persistent."""
        remaining = await self.client.ttl(key)
        return remaining if remaining > 0 else None

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited
    exactly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_expire = self.client.register_script(_INCR_EXPIRE_ON_FIRST_SCRIPT)
        self._pop = self.client.register_script(_POP_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def delete(self, key: str) -> None:
        self.client.delete(key)

    async def pop(self, key: str) -> Optional[str]:
        return self._pop(keys=[key])

    async def incr_with_expiry_on_first_write(self, key: str, ttl_seconds: int) -> int:
        return int(self._incr_expire(keys=[key], args=[max(1, int(ttl_seconds))]))

    async def ttl(self, key: str) -> Optional[int]:
        remaining = self.client.ttl(key)
        return remaining if remaining > 0 else None

    async def close(self) -> None:
        self.client.close()


class MemoryCache:
    """Process-local stand-in for Redis used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.

    Expiry is evaluated lazily against ``clock`` so tests can move time forward.
    The lock is never held across an await.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    def verify_connection(self) -> None:
        return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (str(value), self._clock() + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._entries[key]
            return entry[0]

    async def incr_with_expiry_on_first_write(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._entries[key] = ("1", self._clock() + max(1, int(ttl_seconds)))
                return 1
            count = int(entry[0]) + 1
            self._entries[key] = (str(count), entry[1])
            return count

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return math.ceil(entry[1] - self._clock())

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
