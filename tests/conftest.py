"""Shared fixtures for the test suite."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from rewards_engine.main import app
from rewards_engine.models import Transaction
from rewards_engine.rewards.engine import build_rewards_engine
from rewards_engine.storage.memory import MemoryStore

FIXED_NOW = datetime(2026, 4, 1, 9, 30, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def engine(store):
    return build_rewards_engine(store, clock=fixed_clock)


@pytest.fixture
def catalog(engine):
    return engine.catalog


@pytest.fixture
def resolver(engine):
    return engine.catalog.resolver


@pytest.fixture
def ledger(engine):
    return engine.computer.ledger


@pytest.fixture
def computer(engine):
    return engine.computer


@pytest.fixture
def recorder(engine):
    return engine.recorder


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def points_cap(max_value="10000"):
    return {"metric": "points", "period": "calendar_month", "max_value": max_value}


def cashback_cap(max_value="50"):
    return {"metric": "cashback", "period": "calendar_month", "max_value": max_value}


def include(category, codes, rate, **extra):
    return {"category": category, "include_mcc": list(codes), "rate": rate, **extra}


def exclude(category, codes, rate, **extra):
    return {"category": category, "exclude_mcc": list(codes), "rate": rate, **extra}


def make_document(
    card_id="card-a",
    version="v1",
    base_rate="0.01",
    multipliers=None,
    caps=None,
    effective_from="2026-01-01",
    effective_to=None,
    **extra,
) -> dict:
    document = {
        "card_id": card_id,
        "version": version,
        "base_rate": base_rate,
        "multipliers": multipliers if multipliers is not None else [],
        "caps": caps if caps is not None else [],
        "effective_from": effective_from,
        "effective_to": effective_to,
    }
    document.update(extra)
    return document


def make_transaction(
    tx_id="tx-1",
    card_id="card-a",
    posted_on="2026-03-15",
    amount="100.00",
    mcc=5999,
    description=None,
) -> Transaction:
    return Transaction(
        transaction_id=tx_id,
        card_id=card_id,
        posted_on=date.fromisoformat(posted_on),
        amount=Decimal(amount),
        mcc=mcc,
        description=description,
    )
