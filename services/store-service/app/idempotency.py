import asyncio
import logging
import time
from typing import Protocol

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class IdempotencyStore(Protocol):
    async def seen(self, key: str) -> bool: ...

    async def mark(self, key: str, ttl: int) -> None: ...

    async def discard(self, key: str) -> None: ...

    async def claim(self, key: str, ttl: int) -> bool:
        """Mark ``key`` unless it is already live. True when this caller won it."""
        ...


class MemoryIdempotencyStore:
    """
    Process-local key -> expiry map.

    Only sound for a single instance; run RedisIdempotencyStore when the
    service is scaled out.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries: dict[str, float] = {}

    async def seen(self, key: str) -> bool:
        expires = self._entries.get(key)
        if expires is None:
            return False
        if expires <= self._clock():
            self._entries.pop(key, None)
            return False
        return True

    async def mark(self, key: str, ttl: int) -> None:
        self._entries[key] = self._clock() + ttl

    async def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    async def claim(self, key: str, ttl: int) -> bool:
        # no await between the check and the write, so this is atomic on one loop
        if await self.seen(key):
            return False
        self._entries[key] = self._clock() + ttl
        return True

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, exp in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisIdempotencyStore:
    def __init__(self, redis, prefix: str = "webhook:seen:"):
        self._redis = redis
        self._prefix = prefix

    async def seen(self, key: str) -> bool:
        return bool(await self._redis.exists(self._prefix + key))

    async def mark(self, key: str, ttl: int) -> None:
        await self._redis.set(self._prefix + key, "1", ex=ttl)

    async def discard(self, key: str) -> None:
        await self._redis.delete(self._prefix + key)

    async def claim(self, key: str, ttl: int) -> bool:
        return bool(await self._redis.set(self._prefix + key, "1", ex=ttl, nx=True))


async def sweep_forever(store: MemoryIdempotencyStore, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        removed = store.sweep()
        if removed:
            logger.debug("idempotency sweep removed=%s", removed)
