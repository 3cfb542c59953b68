"""
Aggregate Store

Key-value backends for the metrics ledger:
- RedisMetricsStore: production store; counter deltas are applied by a
  server-side Lua script so concurrent workers never lose updates
- InMemoryMetricsStore: single-process store that serializes updates
  per key with asyncio locks

Counters are integer cents. A delta may carry a dedupe token; a token
is applied at most once per key, which makes refund decrements safe to
replay after a crash between the metrics write and the DB commit.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, Optional, Tuple

import structlog
from redis.asyncio import Redis, ConnectionPool

from orderflow.config import get_settings

logger = structlog.get_logger(__name__)
settings = get_settings()

REVENUE_FIELD = "revenue_cents"
ORDER_COUNT_FIELD = "order_count"
# Written only by full recomputes; an incremental delta invalidates them
AVERAGE_FIELD = "average_order_value_cents"
GENERATED_AT_FIELD = "generated_at"

# Global Redis connection
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Initialize Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    _redis_pool = ConnectionPool.from_url(
        settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        decode_responses=settings.redis.decode_responses,
    )

    _redis_client = Redis(connection_pool=_redis_pool)

    try:
        await _redis_client.ping()
        logger.info("Redis connection established")
    except Exception as e:
        logger.error("Redis connection failed", error=str(e))
        raise

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None

    logger.info("Redis connection closed")


def get_redis() -> Redis:
    """Get Redis client instance"""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


class MetricsStore(ABC):
    """Storage contract used by MetricsLedger"""

    @abstractmethod
    async def apply_delta(
        self,
        key: str,
        revenue_cents: int,
        order_count: int,
        ttl_seconds: int,
        token: Optional[str] = None,
    ) -> Tuple[int, int]:
        """
        Atomically add deltas to a counter hash, flooring both at zero.

        Returns:
            (revenue_cents, order_count) after the update
        """

    @abstractmethod
    async def replace(self, key: str, fields: Dict[str, Any], ttl_seconds: int) -> None:
        """Overwrite a counter hash with a freshly computed snapshot"""

    @abstractmethod
    async def read(self, key: str) -> Optional[Dict[str, str]]:
        pass

    @abstractmethod
    async def put_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def get_json(self, key: str) -> Optional[Any]:
        pass


# KEYS[1] counter hash, KEYS[2] optional dedupe marker
# ARGV[1] revenue delta (cents), ARGV[2] order count delta, ARGV[3] ttl seconds
_APPLY_DELTA_LUA = """
local revenue = tonumber(redis.call('HGET', KEYS[1], 'revenue_cents') or '0')
local count = tonumber(redis.call('HGET', KEYS[1], 'order_count') or '0')
if #KEYS > 1 then
    if not redis.call('SET', KEYS[2], '1', 'NX', 'EX', ARGV[3]) then
        return {revenue, count}
    end
end
revenue = revenue + tonumber(ARGV[1])
if revenue < 0 then revenue = 0 end
count = count + tonumber(ARGV[2])
if count < 0 then count = 0 end
redis.call('HSET', KEYS[1], 'revenue_cents', revenue, 'order_count', count)
redis.call('HDEL', KEYS[1], 'average_order_value_cents', 'generated_at')
redis.call('EXPIRE', KEYS[1], ARGV[3])
return {revenue, count}
"""


class RedisMetricsStore(MetricsStore):
    """
    Redis-backed aggregate store.

    Example:
        store = RedisMetricsStore(get_redis())
        await store.apply_delta("kpis:overall", -3500, 0, ttl)
    """

    def __init__(self, client: Redis):
        self._client = client
        self._apply_delta = client.register_script(_APPLY_DELTA_LUA)

    @staticmethod
    def _marker_key(key: str, token: str) -> str:
        return f"{key}:applied:{token}"

    async def apply_delta(
        self,
        key: str,
        revenue_cents: int,
        order_count: int,
        ttl_seconds: int,
        token: Optional[str] = None,
    ) -> Tuple[int, int]:
        keys = [key] if token is None else [key, self._marker_key(key, token)]
        revenue, count = await self._apply_delta(
            keys=keys,
            args=[revenue_cents, order_count, ttl_seconds],
        )
        return int(revenue), int(count)

    async def replace(self, key: str, fields: Dict[str, Any], ttl_seconds: int) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(key, mapping={k: str(v) for k, v in fields.items()})
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def read(self, key: str) -> Optional[Dict[str, str]]:
        data = await self._client.hgetall(key)
        return data or None

    async def put_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._client.set(key, json.dumps(value, default=str), ex=ttl_seconds)

    async def get_json(self, key: str) -> Optional[Any]:
        value = await self._client.get(key)
        if value is None:
            return None
        return json.loads(value)


class InMemoryMetricsStore(MetricsStore):
    """
    Process-local aggregate store.

    Only offers get/put on plain dicts, so every read-modify-write runs
    under a per-key lock.
    """

    def __init__(self):
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._values: Dict[str, str] = {}
        self._expiry: Dict[str, float] = {}
        self._tokens: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _expired(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._hashes.pop(key, None)
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return True
        return False

    def _touch(self, key: str, ttl_seconds: int) -> None:
        self._expiry[key] = time.monotonic() + ttl_seconds

    async def apply_delta(
        self,
        key: str,
        revenue_cents: int,
        order_count: int,
        ttl_seconds: int,
        token: Optional[str] = None,
    ) -> Tuple[int, int]:
        async with self._locks[key]:
            self._expired(key)
            current = self._hashes.setdefault(key, {})
            revenue = int(current.get(REVENUE_FIELD, 0))
            count = int(current.get(ORDER_COUNT_FIELD, 0))

            if token is not None:
                marker = f"{key}:applied:{token}"
                if self._tokens.get(marker, 0) > time.monotonic():
                    return revenue, count
                self._tokens[marker] = time.monotonic() + ttl_seconds

            revenue = max(0, revenue + revenue_cents)
            count = max(0, count + order_count)
            current[REVENUE_FIELD] = str(revenue)
            current[ORDER_COUNT_FIELD] = str(count)
            current.pop(AVERAGE_FIELD, None)
            current.pop(GENERATED_AT_FIELD, None)
            self._touch(key, ttl_seconds)
            return revenue, count

    async def replace(self, key: str, fields: Dict[str, Any], ttl_seconds: int) -> None:
        async with self._locks[key]:
            self._hashes[key] = {k: str(v) for k, v in fields.items()}
            self._touch(key, ttl_seconds)

    async def read(self, key: str) -> Optional[Dict[str, str]]:
        if self._expired(key):
            return None
        data = self._hashes.get(key)
        return dict(data) if data else None

    async def put_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._values[key] = json.dumps(value, default=str)
        self._touch(key, ttl_seconds)

    async def get_json(self, key: str) -> Optional[Any]:
        if self._expired(key):
            return None
        value = self._values.get(key)
        return json.loads(value) if value is not None else None
