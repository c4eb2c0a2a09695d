"""Ruleset activation and lookup endpoints."""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from rewards_engine.errors import InvalidRuleDefinition, RulesetConflict, RulesetNotFound
from rewards_engine.models import ActivationRequest, CatalogEntry, Ruleset
from rewards_engine.rewards.engine import RewardsEngine

router = APIRouter(prefix="/api")


def _get_engine(request: Request) -> RewardsEngine:
    """Retrieve the rewards engine from application state."""
    return request.app.state.engine


@router.post("/rulesets", response_model=Ruleset, status_code=201)
async def activate_ruleset(body: ActivationRequest, request: Request) -> Ruleset:
    """Activate a ruleset document.

    Returns 409 when the version exists or its range overlaps an active
    ruleset of the same card, 422 when the document is malformed.
    """
    catalog = _get_engine(request).catalog
    try:
        return catalog.activate(body.document, supersedes=body.supersedes)
    except RulesetConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except RulesetNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidRuleDefinition as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/rulesets", response_model=List[CatalogEntry])
async def list_rulesets(
    request: Request,
    card_id: Optional[str] = Query(default=None),
) -> List[CatalogEntry]:
    """List activated rulesets, superseded ones included."""
    return _get_engine(request).catalog.list_rulesets(card_id)


@router.get("/rulesets/{ruleset_id}", response_model=CatalogEntry)
async def get_ruleset(ruleset_id: str, request: Request) -> CatalogEntry:
    try:
        return _get_engine(request).catalog.entry(ruleset_id)
    except RulesetNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
