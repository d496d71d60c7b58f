"""KV persistence port and its implementations.

Every piece of cross-request state (threat scores, blocklist entries,
attacker profiles, incident lists, settings) goes through the `KVStore`
interface.  Production uses Redis; tests and local development use the
in-memory implementation, which honours the same TTL semantics.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from nkshield.errors import StoreUnavailableError

logger = logging.getLogger("nkshield.store")


class KVStore(ABC):
    """Base class for all KV backends.

    Values are JSON-compatible Python objects.  Set members are strings.
    List indices follow Redis semantics (inclusive stop, negative indices
    count from the end).
    """

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Return the value stored at key, or None."""
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ex: int | None = None) -> None:
        """Store value at key, optionally expiring after `ex` seconds."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def incrby(self, key: str, amount: int) -> int:
        """Atomically add amount to the integer at key and return the result."""
        ...

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> None:
        ...

    @abstractmethod
    async def sadd(self, key: str, member: str) -> None:
        ...

    @abstractmethod
    async def srem(self, key: str, member: str) -> None:
        ...

    @abstractmethod
    async def smembers(self, key: str) -> set[str]:
        ...

    @abstractmethod
    async def lpush(self, key: str, value: Any) -> int:
        """Prepend value to the list at key and return the new length."""
        ...

    @abstractmethod
    async def ltrim(self, key: str, start: int, stop: int) -> None:
        ...

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> list[Any]:
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None


def _redis_slice(items: list, start: int, stop: int) -> list:
    """Apply Redis-style inclusive [start, stop] indexing to a list."""
    length = len(items)
    if start < 0:
        start = max(length + start, 0)
    if stop < 0:
        stop = length + stop
    if start > stop or start >= length:
        return []
    return items[start : stop + 1]


class MemoryKVStore(KVStore):
    """In-process KV store with TTL support.

    The clock is injectable so tests can move time forward and observe
    expiry without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, Any] = {}
        self._expiry: dict[str, float] = {}

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    def _read(self, key: str, default: Any = None) -> Any:
        self._purge(key)
        return self._data.get(key, default)

    async def get(self, key: str) -> Any:
        value = self._read(key)
        if isinstance(value, set):
            return None
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ex: int | None = None) -> None:
        self._data[key] = copy.deepcopy(value)
        if ex is not None:
            self._expiry[key] = self._clock() + ex
        else:
            self._expiry.pop(key, None)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._expiry.pop(key, None)

    async def incrby(self, key: str, amount: int) -> int:
        current = self._read(key, 0)
        try:
            value = int(current) + amount
        except (TypeError, ValueError) as e:
            raise StoreUnavailableError(f"value at {key!r} is not an integer") from e
        self._data[key] = value
        return value

    async def expire(self, key: str, seconds: int) -> None:
        self._purge(key)
        if key in self._data:
            self._expiry[key] = self._clock() + seconds

    async def sadd(self, key: str, member: str) -> None:
        members = self._read(key)
        if not isinstance(members, set):
            members = set()
            self._data[key] = members
        members.add(member)

    async def srem(self, key: str, member: str) -> None:
        members = self._read(key)
        if isinstance(members, set):
            members.discard(member)

    async def smembers(self, key: str) -> set[str]:
        members = self._read(key)
        return set(members) if isinstance(members, set) else set()

    async def lpush(self, key: str, value: Any) -> int:
        items = self._read(key)
        if not isinstance(items, list):
            items = []
            self._data[key] = items
        items.insert(0, copy.deepcopy(value))
        return len(items)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        items = self._read(key)
        if isinstance(items, list):
            self._data[key] = _redis_slice(items, start, stop)

    async def lrange(self, key: str, start: int, stop: int) -> list[Any]:
        items = self._read(key)
        if not isinstance(items, list):
            return []
        return copy.deepcopy(_redis_slice(items, start, stop))


class RedisKVStore(KVStore):
    """Redis-backed KV store (values JSON-encoded)."""

    def __init__(self, url: str):
        self._url = url
        self._client: aioredis.Redis | None = None

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self._url, decode_responses=True)
        return self._client

    @staticmethod
    def _decode(raw: Any) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return raw

    async def _call(self, op: str, *args, **kwargs) -> Any:
        try:
            return await getattr(self._get_client(), op)(*args, **kwargs)
        except RedisError as e:
            logger.error(f"Redis {op} failed: {e}")
            raise StoreUnavailableError(f"redis {op} failed") from e

    async def get(self, key: str) -> Any:
        return self._decode(await self._call("get", key))

    async def set(self, key: str, value: Any, ex: int | None = None) -> None:
        await self._call("set", key, json.dumps(value), ex=ex)

    async def delete(self, key: str) -> None:
        await self._call("delete", key)

    async def incrby(self, key: str, amount: int) -> int:
        return int(await self._call("incrby", key, amount))

    async def expire(self, key: str, seconds: int) -> None:
        await self._call("expire", key, seconds)

    async def sadd(self, key: str, member: str) -> None:
        await self._call("sadd", key, member)

    async def srem(self, key: str, member: str) -> None:
        await self._call("srem", key, member)

    async def smembers(self, key: str) -> set[str]:
        return set(await self._call("smembers", key) or ())

    async def lpush(self, key: str, value: Any) -> int:
        return int(await self._call("lpush", key, json.dumps(value)))

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        await self._call("ltrim", key, start, stop)

    async def lrange(self, key: str, start: int, stop: int) -> list[Any]:
        raw = await self._call("lrange", key, start, stop) or []
        return [self._decode(item) for item in raw]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_store(redis_url: str | None) -> KVStore:
    """Build the KV backend for the given configuration."""
    if redis_url:
        logger.info("Using Redis KV store")
        return RedisKVStore(redis_url)
    logger.warning("REDIS_URL not set, using in-memory KV store (state is per-process)")
    return MemoryKVStore()
