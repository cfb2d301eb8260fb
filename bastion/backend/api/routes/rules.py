"""
api/routes/rules.py

GET  /api/rules         — active rule set (version, source, rules)
POST /api/rules         — add or replace a custom rule
POST /api/rules/reload  — hot reload from RULES_PATH (bad file keeps the old set)
POST /api/rules/test    — dry-run labelled HTTP descriptors against the rule set
PUT  /api/rules/{id}/enabled?enabled=... — toggle a rule
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from ...engine.layers.signature import dry_run
from ...errors import ConfigurationError, EventValidationError
from ...models import EventKind
from ...processor import EventProcessor
from ...storage.rule_store import RuleSet, RuleStore
from ..serializers import RuleRequest, RuleResponse, RuleSetResponse, RuleTestRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/rules", tags=["rules"])


def _get_processor() -> EventProcessor:
    from ..main import get_processor
    return get_processor()


def _rule_store(processor: EventProcessor) -> RuleStore:
    if processor.rule_store is None:
        raise HTTPException(status_code=503, detail="Rule store not configured")
    return processor.rule_store


def _ruleset_response(store: RuleStore, ruleset: RuleSet) -> RuleSetResponse:
    return RuleSetResponse(
        version=ruleset.version,
        source=ruleset.source,
        loaded_at=ruleset.loaded_at,
        rules=[RuleResponse(**r.to_dict()) for r in ruleset.rules],
        rejected=list(store.rejected),
    )


@router.get("", response_model=RuleSetResponse)
async def list_rules(processor: EventProcessor = Depends(_get_processor)) -> RuleSetResponse:
    store = _rule_store(processor)
    return _ruleset_response(store, store.snapshot())


@router.post("", response_model=RuleResponse, status_code=201)
async def add_rule(
    req: RuleRequest,
    processor: EventProcessor = Depends(_get_processor),
) -> RuleResponse:
    store = _rule_store(processor)
    try:
        rule = store.add_rule(req.model_dump())
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return RuleResponse(**rule.to_dict())


@router.post("/reload", response_model=RuleSetResponse)
async def reload_rules(processor: EventProcessor = Depends(_get_processor)) -> RuleSetResponse:
    store = _rule_store(processor)
    try:
        ruleset = store.reload()
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=422,
            detail=f"{exc} (version {store.version} still active)",
        ) from exc
    return _ruleset_response(store, ruleset)


@router.put("/{rule_id}/enabled", response_model=RuleResponse)
async def set_rule_enabled(
    rule_id: str,
    enabled: bool = Query(...),
    processor: EventProcessor = Depends(_get_processor),
) -> RuleResponse:
    store = _rule_store(processor)
    if not store.set_enabled(rule_id, enabled):
        raise HTTPException(status_code=404, detail=f"Rule {rule_id!r} not found")
    logger.info("Rule %r %s", rule_id, "enabled" if enabled else "disabled")
    return RuleResponse(**store.snapshot().get(rule_id).to_dict())


@router.post("/test")
async def test_rules(
    req: RuleTestRequest,
    processor: EventProcessor = Depends(_get_processor),
) -> dict:
    """Dry run: no quarantine, no audit record, no trust or correlation updates."""
    store = _rule_store(processor)
    cases = []
    invalid = []
    for index, case in enumerate(req.cases):
        try:
            event = processor.normalizer.normalize(case.request, EventKind.HTTP)
        except EventValidationError as exc:
            invalid.append({"index": index, "error": str(exc)})
            continue
        cases.append((event, case.expected_block))
    report = dry_run(store.snapshot(), cases)
    report["invalid"] = invalid
    return report
