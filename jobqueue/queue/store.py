"""Key-value store used as the queue's persistence layer.

The queue only talks to the `KeyValueStore` protocol, so any backend that
offers strings with TTLs, counters and sorted sets can be plugged in.
`RedisStore` is the production implementation.
"""

import logging
from typing import Awaitable, Optional, Protocol, TypeVar, Union

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ScoredMember = tuple[str, float]


class KeyValueStore(Protocol):
    """Operations the queue needs from its backing store."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def delete(self, key: str) -> int: ...

    async def incrby(self, key: str, amount: int = 1) -> int: ...

    async def zadd(self, key: str, score: float, member: str) -> int: ...

    async def zrem(self, key: str, member: str) -> int: ...

    async def zrange(
        self,
        key: str,
        start: int,
        stop: int,
        rev: bool = False,
        withscores: bool = False,
    ) -> Union[list[str], list[ScoredMember]]: ...

    async def zrangebyscore(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: int = 0,
        count: Optional[int] = None,
    ) -> list[str]:
        """Members scored within [min_score, max_score]; equal scores in name order."""
        ...

    async def zcard(self, key: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RedisStore:
    """`KeyValueStore` backed by `redis.asyncio`.

    Connection and timeout errors are re-raised as `StoreUnavailableError`.
    """

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisStore":
        client = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        return cls(client)

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning(f"Redis {operation} failed: {e}")
            raise StoreUnavailableError(operation, e) from e

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self._redis.get(key))

    async def set(self, key: str, value: str) -> None:
        await self._call("set", self._redis.set(key, value))

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        await self._call("setex", self._redis.setex(key, ttl_seconds, value))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        result = await self._call("set", self._redis.set(key, value, nx=True, ex=ttl_seconds))
        return bool(result)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._call("expire", self._redis.expire(key, ttl_seconds)))

    async def delete(self, key: str) -> int:
        return await self._call("delete", self._redis.delete(key))

    async def incrby(self, key: str, amount: int = 1) -> int:
        return await self._call("incrby", self._redis.incrby(key, amount))

    async def zadd(self, key: str, score: float, member: str) -> int:
        return await self._call("zadd", self._redis.zadd(key, {member: score}))

    async def zrem(self, key: str, member: str) -> int:
        # ZREM is atomic: of two concurrent callers only one gets 1 back
        return await self._call("zrem", self._redis.zrem(key, member))

    async def zrange(
        self,
        key: str,
        start: int,
        stop: int,
        rev: bool = False,
        withscores: bool = False,
    ) -> Union[list[str], list[ScoredMember]]:
        result = await self._call(
            "zrange",
            self._redis.zrange(key, start, stop, desc=rev, withscores=withscores),
        )
        if withscores:
            return [(member, float(score)) for member, score in result]
        return list(result)

    async def zrangebyscore(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: int = 0,
        count: Optional[int] = None,
    ) -> list[str]:
        if count is None:
            call = self._redis.zrangebyscore(key, min_score, max_score)
        else:
            call = self._redis.zrangebyscore(key, min_score, max_score, start=offset, num=count)
        return list(await self._call("zrangebyscore", call))

    async def zcard(self, key: str) -> int:
        return await self._call("zcard", self._redis.zcard(key))

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._redis.ping()))

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("Disconnected from Redis")
