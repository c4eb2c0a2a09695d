"""Audit endpoints: outcome history and cap balances."""

from fastapi import APIRouter, HTTPException, Query, Request

from rewards_engine.errors import RulesetNotFound
from rewards_engine.models import AuditEntry, CapReport
from rewards_engine.rewards.engine import RewardsEngine

router = APIRouter(prefix="/api")


def _get_engine(request: Request) -> RewardsEngine:
    """Retrieve the rewards engine from application state."""
    return request.app.state.engine


@router.get("/audit", response_model=AuditEntry)
async def get_audit_entry(
    request: Request,
    transaction_id: str = Query(...),
) -> AuditEntry:
    """Current outcome for a transaction plus every outcome it superseded."""
    recorder = _get_engine(request).recorder
    return AuditEntry(
        transaction_id=transaction_id,
        current=recorder.current(transaction_id),
        superseded=recorder.history(transaction_id),
    )


@router.get("/caps/{card_id}/{ruleset_id}/{period_key}", response_model=CapReport)
async def get_cap_report(
    card_id: str,
    ruleset_id: str,
    period_key: str,
    request: Request,
) -> CapReport:
    """Cap balance for one scope, reconciled against its journal."""
    ledger = _get_engine(request).computer.ledger
    try:
        return ledger.reconcile(card_id, ruleset_id, period_key)
    except RulesetNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
