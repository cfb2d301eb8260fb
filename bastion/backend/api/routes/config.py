"""
api/routes/config.py

GET /api/config  — current live thresholds
PUT /api/config  — update thresholds; applies to the next event

An update is validated as a whole. If it is invalid (threshold outside
[0, 100], inverted bands, ...) it is rejected with 422 and the previous
config stays in force.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ...errors import ConfigurationError
from ...processor import EventProcessor
from ..serializers import ConfigResponse, ConfigUpdateRequest

router = APIRouter(prefix="/config", tags=["config"])


def _get_processor() -> EventProcessor:
    from ..main import get_processor
    return get_processor()


@router.get("", response_model=ConfigResponse)
async def read_config(processor: EventProcessor = Depends(_get_processor)) -> ConfigResponse:
    return ConfigResponse(**processor.config().as_dict())


@router.put("", response_model=ConfigResponse)
async def update_config(
    update: ConfigUpdateRequest,
    processor: EventProcessor = Depends(_get_processor),
) -> ConfigResponse:
    """Only provided fields are changed; others remain unchanged."""
    patch = update.model_dump(exclude_none=True)
    try:
        new = processor.config.update(**patch)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ConfigResponse(**new.as_dict())
