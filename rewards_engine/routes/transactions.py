"""Transaction registration and per-transaction reward breakdown."""

from fastapi import APIRouter, HTTPException, Request, Response

from rewards_engine.errors import TransactionConflict, TransactionNotFound
from rewards_engine.models import RewardBreakdown, Transaction
from rewards_engine.rewards.engine import RewardsEngine

router = APIRouter(prefix="/api")


def _get_engine(request: Request) -> RewardsEngine:
    """Retrieve the rewards engine from application state."""
    return request.app.state.engine


@router.post("/transactions", response_model=Transaction, status_code=201)
async def register_transaction(
    transaction: Transaction,
    request: Request,
    response: Response,
) -> Transaction:
    """Register a normalized transaction handed over by statement ingestion.

    Re-registering identical data is accepted with 200; different data
    under an existing id is rejected with 409.
    """
    engine = _get_engine(request)
    try:
        created = engine.transactions.add_transaction(transaction)
    except TransactionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not created:
        response.status_code = 200
    return transaction


@router.get("/transactions/{transaction_id}/reward", response_model=RewardBreakdown)
async def get_reward_breakdown(transaction_id: str, request: Request) -> RewardBreakdown:
    """Why did I get this reward, or why none yet."""
    try:
        return _get_engine(request).reward_breakdown(transaction_id)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
