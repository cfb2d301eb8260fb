"""
api/routes/intel.py

GET  /api/intel/status     — refresher + IOC cache status
POST /api/intel/watchlist  — queue indicators for background feed lookup
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ...models import IndicatorType
from ...processor import EventProcessor
from ..serializers import WatchlistRequest

router = APIRouter(prefix="/intel", tags=["intel"])


def _get_processor() -> EventProcessor:
    from ..main import get_processor
    return get_processor()


@router.get("/status")
async def intel_status(processor: EventProcessor = Depends(_get_processor)) -> dict:
    if processor.refresher is not None:
        return processor.refresher.status()
    cache = processor.ioc_cache.stats() if processor.ioc_cache is not None else None
    return {"enabled": False, "cache": cache}


@router.post("/watchlist", status_code=202)
async def submit_watchlist(
    req: WatchlistRequest,
    processor: EventProcessor = Depends(_get_processor),
) -> dict:
    if processor.refresher is None:
        raise HTTPException(status_code=503, detail="Threat-intel refresher not configured")
    valid_types = {t.value for t in IndicatorType}
    unknown = sorted({i.type for i in req.indicators if i.type.lower() not in valid_types})
    if unknown:
        raise HTTPException(status_code=422, detail=f"unknown indicator type(s): {unknown}")
    queued = processor.refresher.submit((i.type.lower(), i.value) for i in req.indicators)
    return {"queued": queued, "pending": processor.refresher.pending}
