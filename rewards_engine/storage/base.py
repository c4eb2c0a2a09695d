"""Abstract read/write interfaces the engine is written against.

``MemoryStore`` and ``SqlStore`` implement all four. Engine components
only ever see the narrow interface they need.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from rewards_engine.models import (
    CapBalance,
    CapEntry,
    CatalogEntry,
    EvaluationResult,
    RewardOutcome,
    SupersededOutcome,
    Transaction,
)

# (card_id, ruleset_id, period_key)
CapKey = Tuple[str, str, str]
# (metric, transaction_id)
Holder = Tuple[str, str]
# Called with the scope balance and the holder's earlier journal entries
CapPlan = Callable[[CapBalance, List[CapEntry]], Optional[CapEntry]]


class TransactionSource(ABC):
    """Read side of the ingestion collaborator's transaction store."""

    @abstractmethod
    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        ...

    @abstractmethod
    def add_transaction(self, transaction: Transaction) -> bool:
        """Register a transaction. Returns False if it was already present.

        Raises TransactionConflict if the id exists with different data.
        """


class RulesetRepository(ABC):
    @abstractmethod
    def add_ruleset(self, entry: CatalogEntry, supersedes: Sequence[str] = ()) -> None:
        """Store a new entry and mark ``supersedes`` as superseded by it, atomically."""

    @abstractmethod
    def get_ruleset(self, ruleset_id: str) -> Optional[CatalogEntry]:
        ...

    @abstractmethod
    def list_rulesets(self, card_id: Optional[str] = None) -> List[CatalogEntry]:
        ...


class CapBalanceStore(ABC):
    @abstractmethod
    def transact(
        self,
        key: CapKey,
        plan: CapPlan,
        holder: Optional[Holder] = None,
    ) -> Tuple[CapBalance, Optional[CapEntry]]:
        """Serialized read-modify-write of one cap balance.

        ``plan`` is called with the current balance (zero if none exists
        yet) and the journal entries ``holder`` already has in this scope,
        oldest first (empty without a holder). It returns the journal
        entry to apply, or None to leave the balance untouched. The entry
        and the updated balance are persisted together. Returns the
        balance as it was before the entry.
        """

    @abstractmethod
    def get_balance(self, key: CapKey) -> CapBalance:
        ...

    @abstractmethod
    def list_entries(self, key: CapKey) -> List[CapEntry]:
        ...


class OutcomeStore(ABC):
    @abstractmethod
    def get_outcome(self, transaction_id: str) -> Optional[RewardOutcome]:
        ...

    @abstractmethod
    def insert_outcome(self, outcome: RewardOutcome) -> Tuple[RewardOutcome, bool]:
        """Insert if the transaction has no current outcome.

        Returns (stored outcome, created). When the transaction already
        has one, it is returned unchanged with created=False.
        """

    @abstractmethod
    def supersede_outcome(
        self,
        prior: RewardOutcome,
        new: RewardOutcome,
        superseded_at: datetime,
    ) -> SupersededOutcome:
        """Swap ``prior`` for ``new`` and archive ``prior``.

        Raises OutcomeConflict if the current outcome is no longer ``prior``.
        """

    @abstractmethod
    def list_superseded(self, transaction_id: str) -> List[SupersededOutcome]:
        ...

    @abstractmethod
    def outcomes_for_ruleset(self, ruleset_id: str) -> List[RewardOutcome]:
        ...

    @abstractmethod
    def set_status(self, result: EvaluationResult) -> None:
        """Remember a non-rewarded terminal status for a transaction."""

    @abstractmethod
    def get_status(self, transaction_id: str) -> Optional[EvaluationResult]:
        ...
