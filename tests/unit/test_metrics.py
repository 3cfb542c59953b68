"""
Unit Tests - Metrics Ledger
"""
import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import fakeredis
import pytest

from orderflow.ledger.metrics import (
    LEADERBOARD_KEY,
    OVERALL_KEY,
    MetricsLedger,
    from_cents,
    scope_keys_for,
    to_cents,
)
from orderflow.ledger.store import InMemoryMetricsStore, RedisMetricsStore
from orderflow.processing.schemas import LeaderboardEntry


@pytest.fixture(params=["memory", "redis"])
async def store(request):
    """Every ledger test runs against both aggregate stores"""
    if request.param == "memory":
        yield InMemoryMetricsStore()
        return

    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield RedisMetricsStore(client)
    await client.aclose()


class TestScopeKeys:
    """Tests for scope key derivation"""

    def test_keys_for_moment(self):
        """Test daily, monthly, yearly and overall keys"""
        keys = scope_keys_for(datetime(2024, 3, 7, 15, 30, tzinfo=timezone.utc))

        assert keys == [
            "kpis:daily:2024-03-07",
            "kpis:monthly:2024-03",
            "kpis:yearly:2024",
            OVERALL_KEY,
        ]

    def test_aware_moment_is_normalized_to_utc(self):
        """Test a non-UTC timestamp lands on its UTC day"""
        moment = datetime(2024, 1, 1, 1, 0, tzinfo=timezone(timedelta(hours=5)))

        assert scope_keys_for(moment)[0] == "kpis:daily:2023-12-31"

    def test_cents_conversion(self):
        """Test amounts round to the nearest cent"""
        assert to_cents(Decimal("35.00")) == 3500
        assert to_cents(Decimal("0.005")) == 1
        assert from_cents(1999) == Decimal("19.99")


class TestIncrementDecrement:
    """Tests for incremental counter updates"""

    async def test_increment_every_scope(self, ledger):
        """Test an increment lands on all four keys"""
        keys = scope_keys_for(datetime(2024, 3, 7, tzinfo=timezone.utc))

        await ledger.increment_revenue(keys, Decimal("35.00"))

        daily = await ledger.get_daily(date(2024, 3, 7))
        monthly = await ledger.get_monthly(2024, 3)
        yearly = await ledger.get_yearly(2024)
        overall = await ledger.get_overall()
        for snapshot in (daily, monthly, yearly, overall):
            assert snapshot.revenue == Decimal("35.00")
            assert snapshot.order_count == 1

    async def test_decrement_leaves_order_count(self, ledger):
        """Test refunds subtract revenue only"""
        keys = scope_keys_for(datetime(2024, 3, 7, tzinfo=timezone.utc))
        await ledger.increment_revenue(keys, Decimal("35.00"))

        result = await ledger.decrement_revenue(keys, Decimal("20.00"))

        assert result[OVERALL_KEY].revenue == Decimal("15.00")
        assert result[OVERALL_KEY].order_count == 1

    async def test_decrement_floors_at_zero(self, ledger):
        """Test revenue never goes negative"""
        keys = scope_keys_for(datetime(2024, 3, 7, tzinfo=timezone.utc))
        await ledger.increment_revenue(keys, Decimal("10.00"))

        await ledger.decrement_revenue(keys, Decimal("35.00"))
        await ledger.decrement_revenue(keys, Decimal("5.00"))

        assert (await ledger.get_overall()).revenue == Decimal("0.00")

    async def test_decrement_on_empty_scope(self, ledger):
        """Test decrementing an unseen key stays at zero"""
        keys = scope_keys_for(datetime(2024, 3, 7, tzinfo=timezone.utc))

        await ledger.decrement_revenue(keys, Decimal("12.34"))

        assert (await ledger.get_daily(date(2024, 3, 7))).revenue == Decimal("0.00")

    async def test_negative_amounts_rejected(self, ledger):
        """Test direction is carried by the method, not the sign"""
        with pytest.raises(ValueError):
            await ledger.decrement_revenue([OVERALL_KEY], Decimal("-1.00"))
        with pytest.raises(ValueError):
            await ledger.increment_revenue([OVERALL_KEY], Decimal("-1.00"))

    async def test_token_applies_once_per_key(self, ledger):
        """Test a replayed decrement with the same token is ignored"""
        keys = scope_keys_for(datetime(2024, 3, 7, tzinfo=timezone.utc))
        await ledger.increment_revenue(keys, Decimal("50.00"))

        await ledger.decrement_revenue(keys, Decimal("20.00"), token="refund:1")
        await ledger.decrement_revenue(keys, Decimal("20.00"), token="refund:1")
        await ledger.decrement_revenue(keys, Decimal("5.00"), token="refund:2")

        assert (await ledger.get_overall()).revenue == Decimal("25.00")
        assert (await ledger.get_monthly(2024, 3)).revenue == Decimal("25.00")

    async def test_concurrent_updates_are_not_lost(self, ledger):
        """Test the sum of all applied deltas survives concurrent workers"""
        keys = [OVERALL_KEY]

        await asyncio.gather(*[
            ledger.increment_revenue(keys, Decimal("1.25")) for _ in range(50)
        ])
        await asyncio.gather(*[
            ledger.decrement_revenue(keys, Decimal("0.25")) for _ in range(20)
        ])

        overall = await ledger.get_overall()
        assert overall.revenue == Decimal("57.50")
        assert overall.order_count == 50


class TestSnapshots:
    """Tests for full-recompute writes and the leaderboard"""

    async def test_put_snapshot_overwrites(self, ledger):
        """Test a snapshot replaces the counters instead of adding"""
        await ledger.increment_revenue([OVERALL_KEY], Decimal("100.00"))

        await ledger.put_snapshot(OVERALL_KEY, Decimal("40.00"), 2, Decimal("20.00"))
        await ledger.put_snapshot(OVERALL_KEY, Decimal("40.00"), 2, Decimal("20.00"))

        overall = await ledger.get_overall()
        assert overall.revenue == Decimal("40.00")
        assert overall.order_count == 2
        assert overall.average_order_value == Decimal("20.00")
        assert overall.generated_at is not None

    async def test_missing_scope_reads_as_zero(self, ledger):
        """Test an unseen key yields an empty snapshot"""
        snapshot = await ledger.get_yearly(1999)

        assert snapshot.revenue == Decimal("0.00")
        assert snapshot.order_count == 0
        assert snapshot.average_order_value is None

    async def test_leaderboard_limit(self, ledger, store):
        """Test the read API truncates to the requested size"""
        entries = [
            LeaderboardEntry(
                customer_id=i,
                name=f"Customer {i}",
                email=f"c{i}@example.com",
                total_spent=Decimal(100 - i),
                total_orders=1,
            )
            for i in range(1, 6)
        ]
        await ledger.put_leaderboard(entries)

        top = await ledger.get_leaderboard(limit=3)

        assert [entry.customer_id for entry in top] == [1, 2, 3]
        assert top[0].total_spent == Decimal("99")
        assert await store.get_json(LEADERBOARD_KEY) is not None

    async def test_expired_keys_read_as_empty(self):
        """Test the TTL is honored by the in-memory store"""
        ledger = MetricsLedger(InMemoryMetricsStore(), ttl_seconds=1)
        await ledger.increment_revenue([OVERALL_KEY], Decimal("5.00"))

        ledger.store._expiry[OVERALL_KEY] = 0

        assert (await ledger.get_overall()).revenue == Decimal("0.00")

    async def test_delta_clears_recompute_fields(self, ledger):
        """Test an incremental update drops the average and timestamp of the last recompute"""
        await ledger.put_snapshot(OVERALL_KEY, Decimal("35.00"), 1, Decimal("35.00"))

        await ledger.decrement_revenue([OVERALL_KEY], Decimal("35.00"))

        overall = await ledger.get_overall()
        assert overall.revenue == Decimal("0.00")
        assert overall.order_count == 1
        assert overall.average_order_value is None
        assert overall.generated_at is None

    async def test_replayed_token_keeps_recompute_fields(self, ledger):
        """Test a deduped delta leaves the stored snapshot untouched"""
        await ledger.decrement_revenue([OVERALL_KEY], Decimal("5.00"), token="refund:9")
        await ledger.put_snapshot(OVERALL_KEY, Decimal("40.00"), 2, Decimal("20.00"))

        await ledger.decrement_revenue([OVERALL_KEY], Decimal("5.00"), token="refund:9")

        overall = await ledger.get_overall()
        assert overall.revenue == Decimal("40.00")
        assert overall.average_order_value == Decimal("20.00")


class TestRedisMetricsStore:
    """Tests for key expiry in the Redis store"""

    @pytest.fixture
    async def client(self):
        client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
        yield client
        await client.aclose()

    async def test_delta_sets_expiry(self, client):
        """Test counters and dedupe markers expire with the configured TTL"""
        store = RedisMetricsStore(client)

        await store.apply_delta(OVERALL_KEY, 3500, 1, 600, token="refund:1")

        assert 0 < await client.ttl(OVERALL_KEY) <= 600
        assert 0 < await client.ttl(f"{OVERALL_KEY}:applied:refund:1") <= 600

    async def test_snapshot_and_leaderboard_expire(self, client):
        """Test full-recompute writes carry the ledger TTL"""
        ledger = MetricsLedger(RedisMetricsStore(client), ttl_seconds=900)

        await ledger.put_snapshot(OVERALL_KEY, Decimal("10.00"), 1, Decimal("10.00"))
        await ledger.put_leaderboard([])

        assert 0 < await client.ttl(OVERALL_KEY) <= 900
        assert 0 < await client.ttl(LEADERBOARD_KEY) <= 900
