"""
Aggregate Metrics Ledger

Incrementally maintained revenue / order-count counters keyed by scope:

- kpis:daily:YYYY-MM-DD
- kpis:monthly:YYYY-MM
- kpis:yearly:YYYY
- kpis:overall

plus the cached top-customers leaderboard snapshot. The ledger owns no
state of its own; it translates amounts to cents and delegates atomic
updates to a MetricsStore.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

import structlog

from orderflow.config import get_settings
from orderflow.ledger.store import (
    AVERAGE_FIELD,
    GENERATED_AT_FIELD,
    ORDER_COUNT_FIELD,
    REVENUE_FIELD,
    MetricsStore,
)
from orderflow.processing.schemas import LeaderboardEntry, MetricsSnapshot

logger = structlog.get_logger(__name__)
settings = get_settings()

OVERALL_KEY = "kpis:overall"
LEADERBOARD_KEY = "leaderboard:top_customers"

_CENT = Decimal("0.01")


def daily_key(day: date) -> str:
    return f"kpis:daily:{day.isoformat()}"


def monthly_key(year: int, month: int) -> str:
    return f"kpis:monthly:{year:04d}-{month:02d}"


def yearly_key(year: int) -> str:
    return f"kpis:yearly:{year:04d}"


def scope_keys_for(moment: datetime) -> List[str]:
    """All scope keys an event at ``moment`` contributes to."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return [
        daily_key(moment.date()),
        monthly_key(moment.year, moment.month),
        yearly_key(moment.year),
        OVERALL_KEY,
    ]


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(_CENT)


class MetricsLedger:
    """
    Scope-keyed revenue counters.

    Example:
        ledger = MetricsLedger(RedisMetricsStore(get_redis()))
        await ledger.decrement_revenue(scope_keys_for(refund.created_at), Decimal("35.00"))
        overall = await ledger.get_overall()
    """

    def __init__(self, store: MetricsStore, ttl_seconds: Optional[int] = None):
        self.store = store
        self.ttl_seconds = ttl_seconds or settings.processing.metrics_ttl_seconds

    async def _apply(
        self,
        scope_keys: Iterable[str],
        revenue_cents: int,
        order_count_delta: int,
        token: Optional[str],
    ) -> Dict[str, MetricsSnapshot]:
        results = {}
        for key in scope_keys:
            revenue, count = await self.store.apply_delta(
                key, revenue_cents, order_count_delta, self.ttl_seconds, token=token
            )
            results[key] = MetricsSnapshot(scope_key=key, revenue=from_cents(revenue), order_count=count)
        return results

    async def increment_revenue(
        self,
        scope_keys: Iterable[str],
        amount: Decimal,
        order_count_delta: int = 1,
        token: Optional[str] = None,
    ) -> Dict[str, MetricsSnapshot]:
        """Add revenue (and orders) to every scope key."""
        if amount < 0:
            raise ValueError("increment amount must not be negative")
        return await self._apply(scope_keys, to_cents(amount), order_count_delta, token)

    async def decrement_revenue(
        self,
        scope_keys: Iterable[str],
        amount: Decimal,
        order_count_delta: int = 0,
        token: Optional[str] = None,
    ) -> Dict[str, MetricsSnapshot]:
        """
        Subtract revenue from every scope key, clamped at zero.

        Args:
            scope_keys: Keys from scope_keys_for()
            amount: Positive amount to subtract
            order_count_delta: Orders to subtract (refunds leave counts alone)
            token: Dedupe token; a token is applied once per key
        """
        if amount < 0:
            raise ValueError("decrement amount must not be negative")
        results = await self._apply(scope_keys, -to_cents(amount), -order_count_delta, token)
        logger.info(
            "Revenue decremented",
            amount=str(amount),
            scopes=list(results),
            token=token,
        )
        return results

    async def put_snapshot(
        self,
        scope_key: str,
        revenue: Decimal,
        order_count: int,
        average_order_value: Optional[Decimal] = None,
    ) -> MetricsSnapshot:
        """Overwrite a scope with a full recompute."""
        generated_at = datetime.now(timezone.utc)
        fields = {
            REVENUE_FIELD: max(0, to_cents(revenue)),
            ORDER_COUNT_FIELD: max(0, order_count),
            GENERATED_AT_FIELD: generated_at.isoformat(),
        }
        if average_order_value is not None:
            fields[AVERAGE_FIELD] = to_cents(average_order_value)
        await self.store.replace(scope_key, fields, self.ttl_seconds)
        return self._snapshot(scope_key, {k: str(v) for k, v in fields.items()})

    @staticmethod
    def _snapshot(scope_key: str, data: Optional[Dict[str, str]]) -> MetricsSnapshot:
        if not data:
            return MetricsSnapshot(scope_key=scope_key)
        average = data.get(AVERAGE_FIELD)
        generated_at = data.get(GENERATED_AT_FIELD)
        return MetricsSnapshot(
            scope_key=scope_key,
            revenue=from_cents(int(data.get(REVENUE_FIELD, 0))),
            order_count=int(data.get(ORDER_COUNT_FIELD, 0)),
            average_order_value=from_cents(int(average)) if average is not None else None,
            generated_at=datetime.fromisoformat(generated_at) if generated_at else None,
        )

    async def get_snapshot(self, scope_key: str) -> MetricsSnapshot:
        return self._snapshot(scope_key, await self.store.read(scope_key))

    # -------------------------------------------------------------------------
    # Read API
    # -------------------------------------------------------------------------

    async def get_daily(self, day: date) -> MetricsSnapshot:
        return await self.get_snapshot(daily_key(day))

    async def get_monthly(self, year: int, month: int) -> MetricsSnapshot:
        return await self.get_snapshot(monthly_key(year, month))

    async def get_yearly(self, year: int) -> MetricsSnapshot:
        return await self.get_snapshot(yearly_key(year))

    async def get_overall(self) -> MetricsSnapshot:
        return await self.get_snapshot(OVERALL_KEY)

    async def put_leaderboard(self, entries: List[LeaderboardEntry]) -> None:
        await self.store.put_json(
            LEADERBOARD_KEY,
            [entry.model_dump(mode="json") for entry in entries],
            self.ttl_seconds,
        )

    async def get_leaderboard(self, limit: int = 10) -> List[LeaderboardEntry]:
        data = await self.store.get_json(LEADERBOARD_KEY) or []
        return [LeaderboardEntry.model_validate(item) for item in data[:limit]]
