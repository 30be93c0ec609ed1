from __future__ import annotations

import json
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import CacheTierUnavailable

SNAPSHOT_PREFIX = "snapshot:"
PORTFOLIO_PREFIX = "portfolio:"
PRICE_PREFIX = "price:"
ALL_SNAPSHOTS_KEY = "all_snapshots"


def snapshot_key(portfolio_id: str) -> str:
    return f"{SNAPSHOT_PREFIX}{portfolio_id.strip().lower()}"


def portfolio_key(portfolio_id: str) -> str:
    return f"{PORTFOLIO_PREFIX}{portfolio_id.strip().lower()}"


def price_key(ticker: str) -> str:
    return f"{PRICE_PREFIX}{ticker.strip().upper()}"


def _decode(raw) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


class RedisFastTier:
    """Key/value view over Redis. Values are JSON documents.

    Every Redis failure (connection refused, timeout, bad payload) surfaces
    as CacheTierUnavailable("fast", ...); callers decide whether to swallow it.
    """

    tier = "fast"

    def __init__(self, url: str | None = None, client: aioredis.Redis | None = None):
        if client is None and not url:
            raise ValueError("RedisFastTier needs a url or a client")
        self._redis = client or aioredis.from_url(url, decode_responses=True)

    async def aclose(self):
        await self._redis.aclose()

    async def get(self, key: str) -> Any:
        try:
            return _decode(await self._redis.get(key))
        except (RedisError, OSError, ValueError) as exc:
            raise CacheTierUnavailable(self.tier, "get", exc) from exc

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        try:
            await self._redis.set(key, json.dumps(value, default=str), ex=ttl_seconds)
        except (RedisError, OSError) as exc:
            raise CacheTierUnavailable(self.tier, "set", exc) from exc

    async def mget(self, keys: list[str]) -> list[Any]:
        if not keys:
            return []
        try:
            return [_decode(raw) for raw in await self._redis.mget(keys)]
        except (RedisError, OSError, ValueError) as exc:
            raise CacheTierUnavailable(self.tier, "mget", exc) from exc

    async def pipeline_set(self, items: dict[str, Any]) -> None:
        if not items:
            return
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                for key, value in items.items():
                    pipe.set(key, json.dumps(value, default=str))
                await pipe.execute()
        except (RedisError, OSError) as exc:
            raise CacheTierUnavailable(self.tier, "pipeline_set", exc) from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._redis.delete(*keys)
        except (RedisError, OSError) as exc:
            raise CacheTierUnavailable(self.tier, "delete", exc) from exc

    # the all_snapshots index lets get_all use one mget
    async def add_member(self, key: str, member: str) -> None:
        try:
            await self._redis.sadd(key, member)
        except (RedisError, OSError) as exc:
            raise CacheTierUnavailable(self.tier, "sadd", exc) from exc

    async def remove_member(self, key: str, member: str) -> None:
        try:
            await self._redis.srem(key, member)
        except (RedisError, OSError) as exc:
            raise CacheTierUnavailable(self.tier, "srem", exc) from exc

    async def members(self, key: str) -> set[str]:
        try:
            return set(await self._redis.smembers(key))
        except (RedisError, OSError) as exc:
            raise CacheTierUnavailable(self.tier, "smembers", exc) from exc
