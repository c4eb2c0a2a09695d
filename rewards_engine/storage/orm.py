"""SQLAlchemy table mappings for ``SqlStore``.

Rows are persistence shapes only; ``sql.py`` converts them to and from the
pydantic models the engine works with.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Date, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from rewards_engine.database import Base

# Decimal amounts are stored as text: SQLite has no exact numeric type and
# cap arithmetic must not drift.

# ----------------------------
# Transactions (ingestion collaborator's records)
# ----------------------------
class TransactionRow(Base):
    __tablename__ = "transactions"

    transaction_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    card_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    posted_on: Mapped[Any] = mapped_column(Date, nullable=False)
    amount: Mapped[str] = mapped_column(String(40), nullable=False)
    mcc: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(512))

# ----------------------------
# Activated rulesets
# ----------------------------
class RulesetRow(Base):
    __tablename__ = "rulesets"

    ruleset_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    card_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    version: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)   # Ruleset.model_dump(mode="json")
    activated_at: Mapped[Any] = mapped_column(DateTime(timezone=True), nullable=False)
    superseded_by: Mapped[Optional[str]] = mapped_column(String(256))

    __table_args__ = (
        UniqueConstraint("card_id", "version", name="uq_ruleset_card_version"),
    )

# ----------------------------
# Cap balances, one row per (card, ruleset, period)
# ----------------------------
class CapBalanceRow(Base):
    __tablename__ = "cap_balances"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    card_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ruleset_id: Mapped[str] = mapped_column(String(256), nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    points: Mapped[str] = mapped_column(String(40), nullable=False, default="0")
    cashback: Mapped[str] = mapped_column(String(40), nullable=False, default="0")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # optimistic lock
    updated_at: Mapped[Any] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("card_id", "ruleset_id", "period_key", name="uq_cap_scope"),
    )

# ----------------------------
# Cap journal (append-only)
# ----------------------------
class CapEntryRow(Base):
    __tablename__ = "cap_entries"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    card_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ruleset_id: Mapped[str] = mapped_column(String(256), nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    metric: Mapped[str] = mapped_column(String(16), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)        # reserve|release|restore
    amount: Mapped[str] = mapped_column(String(40), nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    balance_before: Mapped[Optional[str]] = mapped_column(String(40))
    seq: Mapped[int] = mapped_column(Integer, nullable=False)   # balance version after this entry
    recorded_at: Mapped[Any] = mapped_column(DateTime(timezone=True), nullable=False)

    # One entry per balance version: two writers that read the same
    # version can never both land a journal entry
    __table_args__ = (
        UniqueConstraint("card_id", "ruleset_id", "period_key", "seq", name="uq_cap_entry_seq"),
    )

# ----------------------------
# Current reward outcome per transaction
# ----------------------------
class OutcomeRow(Base):
    __tablename__ = "reward_outcomes"

    transaction_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    ruleset_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)   # RewardOutcome.model_dump(mode="json")

# ----------------------------
# Superseded outcomes (audit trail)
# ----------------------------
class SupersededOutcomeRow(Base):
    __tablename__ = "superseded_outcomes"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    ruleset_id: Mapped[str] = mapped_column(String(256), nullable=False)
    superseded_by: Mapped[str] = mapped_column(String(256), nullable=False)
    superseded_at: Mapped[Any] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)

# ----------------------------
# Non-rewarded evaluation statuses
# ----------------------------
class EvaluationStatusRow(Base):
    __tablename__ = "evaluation_statuses"

    transaction_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(String(1024))
