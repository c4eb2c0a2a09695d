"""Card Rewards Engine API.

Computes loyalty points and cashback for card transactions by matching
them against versioned, date-scoped rulesets and enforcing monthly caps.
Every reward carries a justification trace explaining how it was derived.

Run with:
    python3 -m uvicorn rewards_engine.main:app --host 0.0.0.0 --port 8000
"""

import json
import logging
from pathlib import Path
from typing import Dict

import uvicorn
from fastapi import FastAPI

from rewards_engine.config import settings
from rewards_engine.models import Transaction
from rewards_engine.rewards.catalog import ruleset_id_for
from rewards_engine.rewards.engine import build_rewards_engine
from rewards_engine.routes import audit, evaluations, rulesets, transactions
from rewards_engine.storage.memory import MemoryStore
from rewards_engine.storage.sql import SqlStore

logger = logging.getLogger(__name__)

# Resolve the data/ directory relative to this file so the server works
# regardless of which directory uvicorn is launched from.
DATA_DIR = Path(__file__).parent.parent / "data"

app = FastAPI(
    title="Card Rewards Engine API",
    description=(
        "Deterministic, auditable loyalty reward computation. "
        "Selects the effective ruleset, resolves category multipliers, "
        "enforces per-period caps and records one outcome per transaction."
    ),
    version="1.0.0",
)


def _build_store():
    if not settings.database_url:
        return MemoryStore()
    store = SqlStore(settings.database_url, retry_attempts=settings.cap_retry_attempts)
    store.create_all()
    return store


@app.on_event("startup")
async def startup() -> None:
    """Configure logging, build the engine and load seed data."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    store = _build_store()
    engine = build_rewards_engine(
        store,
        points_quantum=settings.points_quantum,
        cashback_quantum=settings.cashback_quantum,
    )

    # Seed rulesets: a list of {"document": {...}, "supersedes": [...]}
    ruleset_path = Path(settings.ruleset_file) if settings.ruleset_file else DATA_DIR / "rulesets.json"
    if ruleset_path.exists():
        with open(ruleset_path, "r") as f:
            for item in json.load(f):
                document = item["document"]
                ruleset_id = ruleset_id_for(document["card_id"], document["version"])
                # A durable store keeps rulesets from earlier runs
                if engine.catalog.repository.get_ruleset(ruleset_id) is None:
                    engine.catalog.activate(document, supersedes=item.get("supersedes"))

    # Seed transactions stand in for the ingestion collaborator's store
    transaction_path = (
        Path(settings.transaction_file) if settings.transaction_file else DATA_DIR / "transactions.json"
    )
    if transaction_path.exists():
        with open(transaction_path, "r") as f:
            for item in json.load(f):
                store.add_transaction(Transaction(**item))

    logger.info("Rewards engine ready (%s)", type(store).__name__)

    # Attach to app state for dependency injection in routes
    app.state.engine = engine
    app.state.store = store


# Mount all API routers
app.include_router(rulesets.router)
app.include_router(transactions.router)
app.include_router(evaluations.router)
app.include_router(audit.router)


@app.get("/health")
async def health_check() -> Dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "healthy"}


def run() -> None:
    uvicorn.run("rewards_engine.main:app", host=settings.app_host, port=settings.app_port, reload=False)


if __name__ == "__main__":
    run()
