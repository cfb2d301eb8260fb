"""
api/routes/events.py

POST /api/events/http     — HTTP descriptor    {ip, method, uri, query, headers, body, user_agent}
POST /api/events/access   — access request     {user_id, device_id, resource, context{...}}
POST /api/events/network  — network flow       {src_ip, dst_ip, dst_port, protocol, bytes}

Always 200 with a Verdict: a malformed descriptor is itself a decision
(fail-safe Block with status_code 400/413), not an API error.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from ...models import EventKind
from ...processor import EventProcessor
from ..serializers import VerdictResponse

router = APIRouter(prefix="/events", tags=["events"])


def _get_processor() -> EventProcessor:
    """FastAPI dependency — replaced in tests via app.dependency_overrides."""
    from ..main import get_processor
    return get_processor()


@router.post("/{kind}", response_model=VerdictResponse)
async def submit_event(
    kind: EventKind,
    descriptor: dict[str, Any] = Body(...),
    processor: EventProcessor = Depends(_get_processor),
) -> VerdictResponse:
    """Run one descriptor through the pipeline and return its Verdict."""
    verdict = await processor.process(descriptor, kind)
    return VerdictResponse.from_dict(verdict.to_dict())
