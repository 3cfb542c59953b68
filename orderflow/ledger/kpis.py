"""
KPI and Leaderboard Recompute

Batch jobs that rebuild metrics snapshots from the relational store.
Unlike the refund pipeline's incremental decrements these overwrite
their keys, so running them twice for the same date is harmless.
"""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.config import get_settings
from orderflow.database.models import (
    FULFILLED_ORDER_STATUSES,
    Customer,
    Order,
    Refund,
    RefundType,
)
from orderflow.ledger.customers import to_decimal
from orderflow.ledger.metrics import (
    OVERALL_KEY,
    MetricsLedger,
    daily_key,
    monthly_key,
    yearly_key,
)
from orderflow.processing.schemas import LeaderboardEntry, MetricsSnapshot

logger = structlog.get_logger(__name__)
settings = get_settings()

Window = Tuple[Optional[datetime], Optional[datetime]]


def _day_window(day: date) -> Window:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _month_window(year: int, month: int) -> Window:
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc) if month == 12 else datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def _year_window(year: int) -> Window:
    return datetime(year, 1, 1, tzinfo=timezone.utc), datetime(year + 1, 1, 1, tzinfo=timezone.utc)


async def compute_window_kpis(session: AsyncSession, window: Window) -> Tuple[Decimal, int]:
    """
    Revenue and order count for orders created in ``window``.

    Revenue counts fulfilled orders, net of settled partial refunds
    created in the same window. Fully refunded orders are cancelled and
    drop out on their own.
    """
    start, end = window

    order_query = select(
        func.coalesce(func.sum(Order.total_amount), 0),
        func.count(Order.id),
    ).where(Order.status.in_(FULFILLED_ORDER_STATUSES))

    refund_query = (
        select(func.coalesce(func.sum(Refund.refund_amount), 0))
        .join(Order, Refund.order_id == Order.id)
        .where(
            Order.status.in_(FULFILLED_ORDER_STATUSES),
            Refund.type == RefundType.PARTIAL,
            Refund.settled_clause(),
        )
    )

    if start is not None:
        order_query = order_query.where(Order.created_at >= start)
        refund_query = refund_query.where(Refund.created_at >= start)
    if end is not None:
        order_query = order_query.where(Order.created_at < end)
        refund_query = refund_query.where(Refund.created_at < end)

    gross, order_count = (await session.execute(order_query)).one()
    refunded = await session.scalar(refund_query)

    revenue = max(Decimal("0.00"), to_decimal(gross) - to_decimal(refunded))
    return revenue, int(order_count)


async def generate_daily_kpis(
    session: AsyncSession,
    ledger: MetricsLedger,
    day: date,
) -> Dict[str, MetricsSnapshot]:
    """
    Rebuild the daily snapshot for ``day`` and the month, year and
    overall snapshots that contain it.

    Returns:
        Snapshots written, keyed by scope key
    """
    windows = {
        daily_key(day): _day_window(day),
        monthly_key(day.year, day.month): _month_window(day.year, day.month),
        yearly_key(day.year): _year_window(day.year),
        OVERALL_KEY: (None, None),
    }

    written = {}
    for scope_key, window in windows.items():
        revenue, order_count = await compute_window_kpis(session, window)
        average = (revenue / order_count).quantize(Decimal("0.01")) if order_count else Decimal("0.00")
        written[scope_key] = await ledger.put_snapshot(scope_key, revenue, order_count, average)

    daily = written[daily_key(day)]
    logger.info(
        "Daily KPIs generated",
        date=day.isoformat(),
        revenue=str(daily.revenue),
        order_count=daily.order_count,
        average_order_value=str(daily.average_order_value),
    )
    return written


async def recompute_leaderboard(
    session: AsyncSession,
    ledger: MetricsLedger,
    limit: Optional[int] = None,
) -> List[LeaderboardEntry]:
    """Snapshot the top customers by total_spent into the ledger."""
    limit = limit or settings.processing.leaderboard_size

    result = await session.execute(
        select(Customer)
        .order_by(Customer.total_spent.desc(), Customer.id)
        .limit(limit)
    )
    entries = [
        LeaderboardEntry(
            customer_id=customer.id,
            name=customer.name,
            email=customer.email,
            total_spent=to_decimal(customer.total_spent),
            total_orders=customer.total_orders,
        )
        for customer in result.scalars()
    ]

    await ledger.put_leaderboard(entries)
    logger.info("Leaderboard updated", size=len(entries), limit=limit)
    return entries
