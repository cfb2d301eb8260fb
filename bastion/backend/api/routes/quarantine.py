"""
api/routes/quarantine.py

GET    /api/quarantine        — active entries, longest-lived first
POST   /api/quarantine        — quarantine a key for N minutes (manual, never shortens)
DELETE /api/quarantine/{key}  — release a key
"""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends, HTTPException

from ...processor import EventProcessor
from ...storage.quarantine_store import QuarantineEntry
from ..serializers import QuarantineEntryResponse, QuarantineRequest

router = APIRouter(prefix="/quarantine", tags=["quarantine"])


def _get_processor() -> EventProcessor:
    from ..main import get_processor
    return get_processor()


def _to_response(entry: QuarantineEntry, now: float) -> QuarantineEntryResponse:
    return QuarantineEntryResponse(**entry.to_dict(now))


@router.get("", response_model=list[QuarantineEntryResponse])
async def list_quarantine(
    processor: EventProcessor = Depends(_get_processor),
) -> list[QuarantineEntryResponse]:
    now = time.time()
    return [_to_response(e, now) for e in processor.quarantine_store.active(now)]


@router.post("", response_model=QuarantineEntryResponse, status_code=201)
async def add_quarantine(
    req: QuarantineRequest,
    processor: EventProcessor = Depends(_get_processor),
) -> QuarantineEntryResponse:
    now = time.time()
    entry = processor.quarantine_store.quarantine(
        req.key,
        reason=req.reason,
        risk_score=req.risk_score,
        ttl_seconds=req.minutes * 60,
        auto=False,
        now=now,
    )
    return _to_response(entry, now)


@router.delete("/{key}")
async def release_quarantine(
    key: str,
    processor: EventProcessor = Depends(_get_processor),
) -> dict:
    if not processor.quarantine_store.release(key):
        raise HTTPException(status_code=404, detail=f"{key!r} is not quarantined")
    return {"released": key}
