"""
Prefect Workflow Orchestration - Daily KPIs

Scheduled rebuild of the aggregate metrics snapshots:
- Daily, monthly, yearly and overall KPI recompute for a date
- Top-customer leaderboard recompute

Both steps overwrite their keys, so a retried or repeated run for the
same date is harmless.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

from prefect import flow, task, get_run_logger

from orderflow.config import get_settings
from orderflow.config.logging import configure_logging
from orderflow.database.connection import close_database, get_db, init_database
from orderflow.ledger.kpis import generate_daily_kpis, recompute_leaderboard
from orderflow.ledger.metrics import MetricsLedger
from orderflow.ledger.store import RedisMetricsStore, close_redis, init_redis

settings = get_settings()


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="generate_daily_kpis",
    description="Recompute KPI snapshots for a date and its month, year and overall scopes",
    retries=3,
    retry_delay_seconds=60,
)
async def kpis_task(ledger: MetricsLedger, process_date: date) -> dict:
    logger = get_run_logger()

    async with get_db() as db:
        snapshots = await generate_daily_kpis(db, ledger, process_date)

    for scope_key, snapshot in snapshots.items():
        logger.info(f"{scope_key}: revenue={snapshot.revenue} orders={snapshot.order_count}")

    return {key: snapshot.model_dump(mode="json") for key, snapshot in snapshots.items()}


@task(
    name="recompute_leaderboard",
    description="Snapshot the top customers by total spent",
    retries=3,
    retry_delay_seconds=60,
)
async def leaderboard_task(ledger: MetricsLedger, limit: Optional[int] = None) -> int:
    logger = get_run_logger()

    async with get_db() as db:
        entries = await recompute_leaderboard(db, ledger, limit)

    logger.info(f"Leaderboard updated with {len(entries)} customers")
    return len(entries)


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="daily_kpis",
    description="Daily KPI and leaderboard recompute",
    retries=1,
    retry_delay_seconds=300,
)
async def daily_kpis_flow(process_date: Optional[date] = None) -> dict:
    """
    Daily KPI recompute.

    Steps:
    1. Recompute daily/monthly/yearly/overall snapshots
    2. Recompute the leaderboard
    """
    logger = get_run_logger()

    process_date = process_date or (datetime.now(timezone.utc) - timedelta(days=1)).date()
    logger.info(f"Starting daily KPIs for {process_date}")

    await init_database()
    redis = await init_redis()
    ledger = MetricsLedger(RedisMetricsStore(redis))

    try:
        kpis = await kpis_task(ledger, process_date)
        leaderboard_size = await leaderboard_task(ledger, settings.processing.leaderboard_size)
    finally:
        await close_redis()
        await close_database()

    return {
        "process_date": process_date.isoformat(),
        "kpis": kpis,
        "leaderboard_size": leaderboard_size,
        "status": "success",
    }


if __name__ == "__main__":
    import asyncio

    configure_logging()
    asyncio.run(daily_kpis_flow())
