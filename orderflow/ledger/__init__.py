"""
Ledger Module

Stock reservations, customer stats and the aggregate metrics ledger.
"""
from .store import InMemoryMetricsStore, MetricsStore, RedisMetricsStore, init_redis, close_redis, get_redis
from .metrics import MetricsLedger, scope_keys_for

__all__ = [
    "InMemoryMetricsStore",
    "MetricsStore",
    "RedisMetricsStore",
    "init_redis",
    "close_redis",
    "get_redis",
    "MetricsLedger",
    "scope_keys_for",
]
