"""
Metrics API Endpoints

Read-only views over the aggregate metrics ledger. Values are
eventually consistent with in-flight jobs.
"""

from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Query

from orderflow.ledger.metrics import MetricsLedger
from orderflow.processing.schemas import LeaderboardEntry, MetricsSnapshot
from orderflow.serving.api.dependencies import get_ledger

router = APIRouter()


@router.get("/daily/{day}", response_model=MetricsSnapshot)
async def get_daily(day: date, ledger: MetricsLedger = Depends(get_ledger)) -> MetricsSnapshot:
    return await ledger.get_daily(day)


@router.get("/monthly/{year}/{month}", response_model=MetricsSnapshot)
async def get_monthly(year: int, month: int, ledger: MetricsLedger = Depends(get_ledger)) -> MetricsSnapshot:
    return await ledger.get_monthly(year, month)


@router.get("/yearly/{year}", response_model=MetricsSnapshot)
async def get_yearly(year: int, ledger: MetricsLedger = Depends(get_ledger)) -> MetricsSnapshot:
    return await ledger.get_yearly(year)


@router.get("/overall", response_model=MetricsSnapshot)
async def get_overall(ledger: MetricsLedger = Depends(get_ledger)) -> MetricsSnapshot:
    return await ledger.get_overall()


@router.get("/leaderboard", response_model=List[LeaderboardEntry])
async def get_leaderboard(
    limit: int = Query(10, ge=1, le=100),
    ledger: MetricsLedger = Depends(get_ledger),
) -> List[LeaderboardEntry]:
    """Top customers by total spent at the last recompute."""
    return await ledger.get_leaderboard(limit)
