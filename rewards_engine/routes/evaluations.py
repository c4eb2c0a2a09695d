"""Evaluation and replay endpoints used by the job scheduler."""

from typing import List

from fastapi import APIRouter, HTTPException, Request

from rewards_engine.errors import (
    AmbiguousRuleset,
    CapContention,
    OutcomeConflict,
    RulesetNotFound,
    TransactionNotFound,
)
from rewards_engine.models import BatchRequest, BatchResponse, EvaluationResult, ReplayReport
from rewards_engine.rewards.engine import RewardsEngine

router = APIRouter(prefix="/api")


def _get_engine(request: Request) -> RewardsEngine:
    """Retrieve the rewards engine from application state."""
    return request.app.state.engine


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (TransactionNotFound, RulesetNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (AmbiguousRuleset, OutcomeConflict)):
        return HTTPException(status_code=409, detail=str(exc))
    # CapContention: transient, the scheduler retries
    return HTTPException(status_code=503, detail=str(exc))


@router.post("/evaluations/batch", response_model=BatchResponse)
async def evaluate_batch(batch: BatchRequest, request: Request) -> BatchResponse:
    """Evaluate several transactions and summarize their terminal statuses.

    Each transaction is evaluated independently and in the given order.
    """
    try:
        return _get_engine(request).evaluate_batch(batch.transaction_ids)
    except (TransactionNotFound, AmbiguousRuleset, OutcomeConflict, CapContention) as exc:
        raise _http_error(exc) from exc


@router.post("/evaluations/{transaction_id}", response_model=EvaluationResult)
async def evaluate_transaction(transaction_id: str, request: Request) -> EvaluationResult:
    """EvaluateTransaction: rewarded, unmatched-ruleset or invalid-rule-data."""
    try:
        return _get_engine(request).evaluate_transaction(transaction_id)
    except (TransactionNotFound, AmbiguousRuleset, OutcomeConflict, CapContention) as exc:
        raise _http_error(exc) from exc


@router.post("/replays/{ruleset_id}", response_model=ReplayReport)
async def replay_ruleset(ruleset_id: str, request: Request) -> ReplayReport:
    """ReplayForRuleset: re-evaluate everything rewarded under ``ruleset_id``."""
    try:
        return _get_engine(request).replay_for_ruleset(ruleset_id)
    except (RulesetNotFound, TransactionNotFound, AmbiguousRuleset, OutcomeConflict, CapContention) as exc:
        raise _http_error(exc) from exc


@router.get("/replays/{ruleset_id}/transactions", response_model=List[str])
async def list_replay_transactions(ruleset_id: str, request: Request) -> List[str]:
    """Transactions a replay of ``ruleset_id`` would visit, in replay order."""
    try:
        return _get_engine(request).transactions_for_ruleset(ruleset_id)
    except (RulesetNotFound, TransactionNotFound) as exc:
        raise _http_error(exc) from exc
