"""
api/routes/verdicts.py

GET /api/verdicts             — paginated audit trail with optional filters
GET /api/verdicts/{event_id}  — single verdict lookup
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from ...storage.repository import VerdictRepository
from ..serializers import PaginatedVerdictsResponse, VerdictResponse

router = APIRouter(prefix="/verdicts", tags=["verdicts"])


def _get_repo() -> VerdictRepository:
    """FastAPI dependency — replaced in tests via app.dependency_overrides."""
    from ..main import get_repository
    return get_repository()


@router.get("", response_model=PaginatedVerdictsResponse)
async def list_verdicts(
    limit:          Annotated[int,          Query(ge=1, le=500)] = 100,
    offset:         Annotated[int,          Query(ge=0)]         = 0,
    action:         Annotated[str | None,   Query()]             = None,
    classification: Annotated[str | None,   Query()]             = None,
    subject_key:    Annotated[str | None,   Query()]             = None,
    since:          Annotated[float | None, Query()]             = None,
    repo:           VerdictRepository = Depends(_get_repo),
) -> PaginatedVerdictsResponse:
    """Return a paginated list of verdicts, newest first."""
    filters = dict(action=action, classification=classification, subject_key=subject_key, since=since)
    rows = repo.get_verdicts(limit=limit, offset=offset, **filters)
    total = repo.get_verdict_count(**filters)
    return PaginatedVerdictsResponse(
        items=[VerdictResponse.from_dict(r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
        has_more=(offset + limit) < total,
    )


@router.get("/{event_id}", response_model=VerdictResponse)
async def get_verdict(
    event_id: str,
    repo: VerdictRepository = Depends(_get_repo),
) -> VerdictResponse:
    row = repo.get_verdict_by_id(event_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Verdict {event_id!r} not found")
    return VerdictResponse.from_dict(row)
