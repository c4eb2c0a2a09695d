"""In-memory storage for transactions, rulesets, cap balances and outcomes.

Cap balances are keyed by (card, ruleset, period) and each key has its
own lock, so reservations on unrelated scopes never wait on each other.
All data lives in memory and is lost on restart; use ``SqlStore`` when
balances must survive the process.
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from rewards_engine.errors import OutcomeConflict, RulesetConflict, RulesetNotFound, TransactionConflict
from rewards_engine.models import (
    CapBalance,
    CapEntry,
    CatalogEntry,
    EvaluationResult,
    RewardOutcome,
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


def _empty_balance(key: CapKey) -> CapBalance:
    card_id, ruleset_id, period_key = key
    return CapBalance(card_id=card_id, ruleset_id=ruleset_id, period_key=period_key)


class MemoryStore(TransactionSource, RulesetRepository, CapBalanceStore, OutcomeStore):
    """Thread-safe in-memory implementation of every storage interface."""

    def __init__(self) -> None:
        self._transactions: Dict[str, Transaction] = {}
        self._rulesets: Dict[str, CatalogEntry] = {}
        self._rulesets_lock = threading.Lock()

        self._balances: Dict[CapKey, CapBalance] = {}
        self._entries: Dict[CapKey, List[CapEntry]] = {}
        # One lock per cap scope, created on first use
        self._key_locks: Dict[CapKey, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

        # Current outcome per transaction, plus the superseded trail
        self._outcomes: Dict[str, RewardOutcome] = {}
        self._superseded: Dict[str, List[SupersededOutcome]] = {}
        self._statuses: Dict[str, EvaluationResult] = {}
        self._outcomes_lock = threading.Lock()

    # -- transactions --

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self._transactions.get(transaction_id)

    def add_transaction(self, transaction: Transaction) -> bool:
        existing = self._transactions.setdefault(transaction.transaction_id, transaction)
        if existing is transaction:
            return True
        if existing != transaction:
            raise TransactionConflict(
                f"Transaction {transaction.transaction_id} is already registered with different data"
            )
        return False

    def list_transactions(self) -> List[Transaction]:
        return list(self._transactions.values())

    # -- rulesets --

    def add_ruleset(self, entry: CatalogEntry, supersedes: Sequence[str] = ()) -> None:
        ruleset_id = entry.ruleset.ruleset_id
        with self._rulesets_lock:
            if ruleset_id in self._rulesets:
                raise RulesetConflict(f"Ruleset {ruleset_id} is already activated")
            for old_id in supersedes:
                if old_id not in self._rulesets:
                    raise RulesetNotFound(old_id)
            for old_id in supersedes:
                old = self._rulesets[old_id]
                self._rulesets[old_id] = old.model_copy(update={"superseded_by": ruleset_id})
            self._rulesets[ruleset_id] = entry

    def get_ruleset(self, ruleset_id: str) -> Optional[CatalogEntry]:
        return self._rulesets.get(ruleset_id)

    def list_rulesets(self, card_id: Optional[str] = None) -> List[CatalogEntry]:
        entries = list(self._rulesets.values())
        if card_id is not None:
            entries = [e for e in entries if e.ruleset.card_id == card_id]
        return sorted(entries, key=lambda e: (e.ruleset.card_id, e.ruleset.effective_from))

    # -- cap balances --

    def _lock_for(self, key: CapKey) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def transact(
        self,
        key: CapKey,
        plan: CapPlan,
        holder: Optional[Holder] = None,
    ) -> Tuple[CapBalance, Optional[CapEntry]]:
        with self._lock_for(key):
            before = self._balances.get(key) or _empty_balance(key)
            held = []
            if holder is not None:
                metric, transaction_id = holder
                held = [
                    e for e in self._entries.get(key, [])
                    if e.metric == metric and e.transaction_id == transaction_id
                ]
            entry = plan(before, held)
            if entry is not None:
                self._balances[key] = before.apply(entry)
                self._entries.setdefault(key, []).append(entry)
            return before, entry

    def get_balance(self, key: CapKey) -> CapBalance:
        return self._balances.get(key) or _empty_balance(key)

    def list_entries(self, key: CapKey) -> List[CapEntry]:
        return list(self._entries.get(key, []))

    # -- outcomes --

    def get_outcome(self, transaction_id: str) -> Optional[RewardOutcome]:
        return self._outcomes.get(transaction_id)

    def insert_outcome(self, outcome: RewardOutcome) -> Tuple[RewardOutcome, bool]:
        with self._outcomes_lock:
            existing = self._outcomes.get(outcome.transaction_id)
            if existing is not None:
                return existing, False
            self._outcomes[outcome.transaction_id] = outcome
            self._statuses.pop(outcome.transaction_id, None)
            return outcome, True

    def supersede_outcome(
        self,
        prior: RewardOutcome,
        new: RewardOutcome,
        superseded_at: datetime,
    ) -> SupersededOutcome:
        with self._outcomes_lock:
            current = self._outcomes.get(prior.transaction_id)
            if current is None or current.ruleset_id != prior.ruleset_id:
                raise OutcomeConflict(
                    f"Transaction {prior.transaction_id} no longer holds an outcome "
                    f"under {prior.ruleset_id}"
                )
            archived = SupersededOutcome(
                outcome=current,
                superseded_at=superseded_at,
                superseded_by=new.ruleset_id,
            )
            self._superseded.setdefault(prior.transaction_id, []).append(archived)
            self._outcomes[prior.transaction_id] = new
            return archived

    def list_superseded(self, transaction_id: str) -> List[SupersededOutcome]:
        return list(self._superseded.get(transaction_id, []))

    def outcomes_for_ruleset(self, ruleset_id: str) -> List[RewardOutcome]:
        return [o for o in self._outcomes.values() if o.ruleset_id == ruleset_id]

    def set_status(self, result: EvaluationResult) -> None:
        with self._outcomes_lock:
            self._statuses[result.transaction_id] = result

    def get_status(self, transaction_id: str) -> Optional[EvaluationResult]:
        return self._statuses.get(transaction_id)
