"""
api/routes/stats.py

GET /api/stats         — aggregate verdict statistics + live pipeline counters
GET /api/stats/alerts  — recent operational alerts (persisted)
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from ...storage.repository import VerdictRepository
from ..serializers import StatsResponse

router = APIRouter(prefix="/stats", tags=["stats"])


def _get_repo() -> VerdictRepository:
    from ..main import get_repository
    return get_repository()


def _get_pipeline_stats() -> dict:
    from ..main import get_pipeline_stats
    return get_pipeline_stats()


@router.get("", response_model=StatsResponse)
async def get_stats(repo: VerdictRepository = Depends(_get_repo)) -> StatsResponse:
    summary = repo.get_stats_summary()
    return StatsResponse(**summary, pipeline_stats=_get_pipeline_stats())


@router.get("/alerts")
async def get_recent_alerts(
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    repo: VerdictRepository = Depends(_get_repo),
) -> list[dict]:
    return repo.get_alerts(limit=limit)
