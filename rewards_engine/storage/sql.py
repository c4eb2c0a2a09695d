"""SQLAlchemy-backed storage.

Cap balances use optimistic concurrency: each row carries a version
number, an update only succeeds against the version it read, and a lost
race is retried from a fresh read. Concurrent workers in separate
processes therefore never jointly overgrant a cap.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from rewards_engine.database import Base, build_engine, build_sessionmaker
from rewards_engine.errors import (
    CapContention,
    InvalidRuleDefinition,
    OutcomeConflict,
    RulesetConflict,
    RulesetNotFound,
    TransactionConflict,
)
from rewards_engine.models import (
    CapBalance,
    CapEntry,
    CatalogEntry,
    EvaluationResult,
    RewardOutcome,
    Ruleset,
    SupersededOutcome,
    Transaction,
)
from rewards_engine.storage.base import (
    CapBalanceStore,
    CapKey,
    CapPlan,
    Holder,
    OutcomeStore,
    RulesetRepository,
    TransactionSource,
)
from rewards_engine.storage.orm import (
    CapBalanceRow,
    CapEntryRow,
    EvaluationStatusRow,
    OutcomeRow,
    RulesetRow,
    SupersededOutcomeRow,
    TransactionRow,
)

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo; everything is written in UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _transaction_from_row(row: TransactionRow) -> Transaction:
    return Transaction(
        transaction_id=row.transaction_id,
        card_id=row.card_id,
        posted_on=row.posted_on,
        amount=Decimal(row.amount),
        mcc=row.mcc,
        description=row.description,
    )


def _entry_from_row(row: RulesetRow) -> CatalogEntry:
    try:
        ruleset = Ruleset.model_validate(row.payload)
    except ValidationError as exc:
        raise InvalidRuleDefinition(f"Stored ruleset {row.ruleset_id} is unreadable: {exc}") from exc
    return CatalogEntry(
        ruleset=ruleset,
        activated_at=_aware(row.activated_at),
        superseded_by=row.superseded_by,
    )


def _balance_from_row(row: CapBalanceRow) -> CapBalance:
    return CapBalance(
        card_id=row.card_id,
        ruleset_id=row.ruleset_id,
        period_key=row.period_key,
        points=Decimal(row.points),
        cashback=Decimal(row.cashback),
    )


def _cap_entry_from_row(row: CapEntryRow) -> CapEntry:
    return CapEntry(
        card_id=row.card_id,
        ruleset_id=row.ruleset_id,
        period_key=row.period_key,
        metric=row.metric,
        kind=row.kind,
        amount=Decimal(row.amount),
        transaction_id=row.transaction_id,
        balance_before=Decimal(row.balance_before) if row.balance_before is not None else None,
        recorded_at=_aware(row.recorded_at),
    )


class SqlStore(TransactionSource, RulesetRepository, CapBalanceStore, OutcomeStore):
    """Durable implementation of every storage interface."""

    def __init__(self, url_or_engine, retry_attempts: int = 5) -> None:
        if isinstance(url_or_engine, Engine):
            self.engine = url_or_engine
        else:
            self.engine = build_engine(url_or_engine)
        self._sessions = build_sessionmaker(self.engine)
        self.retry_attempts = retry_attempts

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    # -- transactions --

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._sessions() as session:
            row = session.get(TransactionRow, transaction_id)
            return _transaction_from_row(row) if row else None

    def add_transaction(self, transaction: Transaction) -> bool:
        existing = self.get_transaction(transaction.transaction_id)
        if existing is None:
            with self._sessions() as session:
                session.add(TransactionRow(
                    transaction_id=transaction.transaction_id,
                    card_id=transaction.card_id,
                    posted_on=transaction.posted_on,
                    amount=str(transaction.amount),
                    mcc=transaction.mcc,
                    description=transaction.description,
                ))
                try:
                    session.commit()
                    return True
                except IntegrityError:
                    session.rollback()
            existing = self.get_transaction(transaction.transaction_id)
        if existing != transaction:
            raise TransactionConflict(
                f"Transaction {transaction.transaction_id} is already registered with different data"
            )
        return False

    # -- rulesets --

    def add_ruleset(self, entry: CatalogEntry, supersedes: Sequence[str] = ()) -> None:
        ruleset = entry.ruleset
        with self._sessions() as session:
            for old_id in supersedes:
                old = session.get(RulesetRow, old_id)
                if old is None:
                    raise RulesetNotFound(old_id)
                old.superseded_by = ruleset.ruleset_id
            session.add(RulesetRow(
                ruleset_id=ruleset.ruleset_id,
                card_id=ruleset.card_id,
                version=ruleset.version,
                payload=ruleset.model_dump(mode="json"),
                activated_at=entry.activated_at,
                superseded_by=entry.superseded_by,
            ))
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise RulesetConflict(f"Ruleset {ruleset.ruleset_id} is already activated") from exc

    def get_ruleset(self, ruleset_id: str) -> Optional[CatalogEntry]:
        with self._sessions() as session:
            row = session.get(RulesetRow, ruleset_id)
            return _entry_from_row(row) if row else None

    def list_rulesets(self, card_id: Optional[str] = None) -> List[CatalogEntry]:
        stmt = select(RulesetRow)
        if card_id is not None:
            stmt = stmt.where(RulesetRow.card_id == card_id)
        with self._sessions() as session:
            entries = [_entry_from_row(row) for row in session.execute(stmt).scalars()]
        return sorted(entries, key=lambda e: (e.ruleset.card_id, e.ruleset.effective_from))

    # -- cap balances --

    @staticmethod
    def _scope(key: CapKey):
        card_id, ruleset_id, period_key = key
        return (
            CapBalanceRow.card_id == card_id,
            CapBalanceRow.ruleset_id == ruleset_id,
            CapBalanceRow.period_key == period_key,
        )

    def _held_entries(self, session, key: CapKey, holder: Optional[Holder]) -> List[CapEntry]:
        if holder is None:
            return []
        card_id, ruleset_id, period_key = key
        metric, transaction_id = holder
        stmt = (
            select(CapEntryRow)
            .where(
                CapEntryRow.card_id == card_id,
                CapEntryRow.ruleset_id == ruleset_id,
                CapEntryRow.period_key == period_key,
                CapEntryRow.metric == metric,
                CapEntryRow.transaction_id == transaction_id,
            )
            .order_by(CapEntryRow.id)
        )
        return [_cap_entry_from_row(r) for r in session.execute(stmt).scalars()]

    def transact(
        self,
        key: CapKey,
        plan: CapPlan,
        holder: Optional[Holder] = None,
    ) -> Tuple[CapBalance, Optional[CapEntry]]:
        card_id, ruleset_id, period_key = key
        for attempt in range(1, self.retry_attempts + 1):
            with self._sessions() as session:
                row = session.execute(select(CapBalanceRow).where(*self._scope(key))).scalar_one_or_none()
                if row is None:
                    before = CapBalance(card_id=card_id, ruleset_id=ruleset_id, period_key=period_key)
                else:
                    before = _balance_from_row(row)

                # The version check below rejects the write if the holder's
                # entries changed after this read
                entry = plan(before, self._held_entries(session, key, holder))
                if entry is None:
                    return before, None
                after = before.apply(entry)

                if row is None:
                    seq = 1
                    session.add(CapBalanceRow(
                        card_id=card_id,
                        ruleset_id=ruleset_id,
                        period_key=period_key,
                        points=str(after.points),
                        cashback=str(after.cashback),
                        version=seq,
                    ))
                else:
                    seq = row.version + 1
                    result = session.execute(
                        update(CapBalanceRow)
                        .where(CapBalanceRow.id == row.id, CapBalanceRow.version == row.version)
                        .values(points=str(after.points), cashback=str(after.cashback), version=seq)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        logger.debug("Cap scope %s changed underneath us (attempt %d)", key, attempt)
                        continue

                session.add(CapEntryRow(
                    card_id=entry.card_id,
                    ruleset_id=entry.ruleset_id,
                    period_key=entry.period_key,
                    metric=entry.metric,
                    kind=entry.kind,
                    amount=str(entry.amount),
                    transaction_id=entry.transaction_id,
                    balance_before=str(entry.balance_before) if entry.balance_before is not None else None,
                    seq=seq,
                    recorded_at=entry.recorded_at,
                ))
                try:
                    session.commit()
                except IntegrityError:
                    # Lost the race to create the scope's first row or its next journal slot
                    session.rollback()
                    logger.debug("Cap scope %s written concurrently (attempt %d)", key, attempt)
                    continue
                return before, entry

        raise CapContention(f"Cap scope {key} still contended after {self.retry_attempts} attempts")

    def get_balance(self, key: CapKey) -> CapBalance:
        with self._sessions() as session:
            row = session.execute(select(CapBalanceRow).where(*self._scope(key))).scalar_one_or_none()
            if row is None:
                card_id, ruleset_id, period_key = key
                return CapBalance(card_id=card_id, ruleset_id=ruleset_id, period_key=period_key)
            return _balance_from_row(row)

    def list_entries(self, key: CapKey) -> List[CapEntry]:
        card_id, ruleset_id, period_key = key
        stmt = (
            select(CapEntryRow)
            .where(
                CapEntryRow.card_id == card_id,
                CapEntryRow.ruleset_id == ruleset_id,
                CapEntryRow.period_key == period_key,
            )
            .order_by(CapEntryRow.id)
        )
        with self._sessions() as session:
            return [_cap_entry_from_row(row) for row in session.execute(stmt).scalars()]

    # -- outcomes --

    def get_outcome(self, transaction_id: str) -> Optional[RewardOutcome]:
        with self._sessions() as session:
            row = session.get(OutcomeRow, transaction_id)
            return RewardOutcome.model_validate(row.payload) if row else None

    def insert_outcome(self, outcome: RewardOutcome) -> Tuple[RewardOutcome, bool]:
        with self._sessions() as session:
            session.add(OutcomeRow(
                transaction_id=outcome.transaction_id,
                ruleset_id=outcome.ruleset_id,
                payload=outcome.model_dump(mode="json"),
            ))
            stale_status = session.get(EvaluationStatusRow, outcome.transaction_id)
            if stale_status is not None:
                session.delete(stale_status)
            try:
                session.commit()
                return outcome, True
            except IntegrityError:
                session.rollback()
        return self.get_outcome(outcome.transaction_id), False

    def supersede_outcome(
        self,
        prior: RewardOutcome,
        new: RewardOutcome,
        superseded_at: datetime,
    ) -> SupersededOutcome:
        archived = SupersededOutcome(outcome=prior, superseded_at=superseded_at, superseded_by=new.ruleset_id)
        with self._sessions() as session:
            result = session.execute(
                update(OutcomeRow)
                .where(
                    OutcomeRow.transaction_id == prior.transaction_id,
                    OutcomeRow.ruleset_id == prior.ruleset_id,
                )
                .values(ruleset_id=new.ruleset_id, payload=new.model_dump(mode="json"))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise OutcomeConflict(
                    f"Transaction {prior.transaction_id} no longer holds an outcome "
                    f"under {prior.ruleset_id}"
                )
            session.add(SupersededOutcomeRow(
                transaction_id=prior.transaction_id,
                ruleset_id=prior.ruleset_id,
                superseded_by=new.ruleset_id,
                superseded_at=superseded_at,
                payload=archived.model_dump(mode="json"),
            ))
            session.commit()
        return archived

    def list_superseded(self, transaction_id: str) -> List[SupersededOutcome]:
        stmt = (
            select(SupersededOutcomeRow)
            .where(SupersededOutcomeRow.transaction_id == transaction_id)
            .order_by(SupersededOutcomeRow.id)
        )
        with self._sessions() as session:
            return [SupersededOutcome.model_validate(row.payload) for row in session.execute(stmt).scalars()]

    def outcomes_for_ruleset(self, ruleset_id: str) -> List[RewardOutcome]:
        stmt = select(OutcomeRow).where(OutcomeRow.ruleset_id == ruleset_id)
        with self._sessions() as session:
            return [RewardOutcome.model_validate(row.payload) for row in session.execute(stmt).scalars()]

    def set_status(self, result: EvaluationResult) -> None:
        with self._sessions() as session:
            session.merge(EvaluationStatusRow(
                transaction_id=result.transaction_id,
                status=result.status,
                detail=result.detail,
            ))
            session.commit()

    def get_status(self, transaction_id: str) -> Optional[EvaluationResult]:
        with self._sessions() as session:
            row = session.get(EvaluationStatusRow, transaction_id)
            if row is None:
                return None
            return EvaluationResult(transaction_id=row.transaction_id, status=row.status, detail=row.detail)
