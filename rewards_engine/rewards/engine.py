"""Core rewards orchestrator.

Runs one transaction through the pipeline:
  1. RulesetCatalog  -- select the ruleset effective on the posting date
  2. RuleResolver    -- first matching multiplier rule, else base rate
  3. CapLedger       -- reserve against per-period caps
  4. RewardComputer  -- amounts plus justification trace
  5. RewardRecorder  -- idempotent persistence

A reservation and the persistence of its outcome form one unit. Cap
capacity is held per transaction, so a retried or duplicated evaluation
reuses the hold instead of reserving again. After every persist attempt
the hold is settled against whatever outcome is actually stored: a
failure with nothing stored releases it, and a duplicate keeps only what
the stored outcome grants.
"""

import logging
from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, List, Optional

from rewards_engine.errors import (
    AmbiguousRuleset,
    InvalidRuleDefinition,
    NoApplicableRuleset,
    TransactionNotFound,
)
from rewards_engine.models import (
    BatchResponse,
    BatchSummary,
    EvaluationResult,
    RecordAck,
    ReplayReport,
    RewardBreakdown,
    RewardOutcome,
    Transaction,
)
from rewards_engine.rewards.catalog import RulesetCatalog
from rewards_engine.rewards.computer import RewardComputer
from rewards_engine.rewards.ledger import CapLedger
from rewards_engine.rewards.recorder import RewardRecorder
from rewards_engine.rewards.resolver import RuleResolver
from rewards_engine.storage.base import OutcomeStore, TransactionSource

logger = logging.getLogger(__name__)


class RewardsEngine:
    """Evaluation entry points consumed by the job scheduler."""

    def __init__(
        self,
        transactions: TransactionSource,
        catalog: RulesetCatalog,
        computer: RewardComputer,
        recorder: RewardRecorder,
        outcomes: OutcomeStore,
    ) -> None:
        self.transactions = transactions
        self.catalog = catalog
        self.computer = computer
        self.recorder = recorder
        self.outcomes = outcomes

    def _load(self, transaction_id: str) -> Transaction:
        transaction = self.transactions.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFound(transaction_id)
        return transaction

    def _not_rewarded(self, transaction: Transaction, status: str, error: Exception) -> EvaluationResult:
        result = EvaluationResult(
            transaction_id=transaction.transaction_id,
            status=status,
            detail=str(error),
        )
        self.outcomes.set_status(result)
        return result

    def _commit(self, outcome: RewardOutcome, persist: Callable[[RewardOutcome], RecordAck]) -> EvaluationResult:
        try:
            ack = persist(outcome)
        except Exception:
            recorded = self.recorder.current(outcome.transaction_id)
            if recorded is not None and recorded.ruleset_id != outcome.ruleset_id:
                recorded = None
            self.computer.settle(outcome, recorded)
            raise
        if not ack.created:
            # Another evaluation stored this transaction first
            logger.info(
                "Duplicate evaluation of %s under %s discarded",
                outcome.transaction_id, outcome.ruleset_id,
            )
        self.computer.settle(outcome, ack.outcome)
        return EvaluationResult(
            transaction_id=outcome.transaction_id,
            status="rewarded",
            outcome=ack.outcome,
        )

    def evaluate_transaction(self, transaction_id: str) -> EvaluationResult:
        """EvaluateTransaction: reward one transaction, or report why it cannot be.

        Safe to retry. A transaction that already has an outcome is
        returned as-is without touching any cap balance.
        """
        transaction = self._load(transaction_id)

        existing = self.recorder.current(transaction_id)
        if existing is not None:
            return EvaluationResult(transaction_id=transaction_id, status="rewarded", outcome=existing)

        try:
            ruleset = self.catalog.resolve(transaction.card_id, transaction.posted_on)
            outcome = self.computer.evaluate(transaction, ruleset)
        except NoApplicableRuleset as exc:
            logger.warning("Transaction %s left unrewarded: %s", transaction_id, exc)
            return self._not_rewarded(transaction, "unmatched-ruleset", exc)
        except InvalidRuleDefinition as exc:
            logger.error("Transaction %s hit invalid rule data: %s", transaction_id, exc)
            return self._not_rewarded(transaction, "invalid-rule-data", exc)
        except AmbiguousRuleset as exc:
            logger.error("Data integrity fault evaluating %s: %s", transaction_id, exc)
            raise

        result = self._commit(outcome, self.recorder.record)
        logger.info(
            "Evaluated %s under %s: points=%s cashback=%s",
            transaction_id, result.outcome.ruleset_id, result.outcome.points, result.outcome.cashback,
        )
        return result

    def replay_transaction(self, transaction_id: str) -> EvaluationResult:
        """Re-evaluate one transaction against the ruleset now in effect.

        When the effective ruleset differs from the one behind the current
        outcome, the outcome is replaced and the old grants are returned
        to their cap scope. Safe to retry after any partial failure.
        """
        transaction = self._load(transaction_id)
        current = self.recorder.current(transaction_id)
        if current is None:
            return self.evaluate_transaction(transaction_id)

        try:
            ruleset = self.catalog.resolve(transaction.card_id, transaction.posted_on)
        except NoApplicableRuleset as exc:
            logger.warning(
                "Replay of %s found no covering ruleset; keeping outcome under %s",
                transaction_id, current.ruleset_id,
            )
            return EvaluationResult(
                transaction_id=transaction_id, status="unmatched-ruleset",
                outcome=current, detail=str(exc),
            )
        except InvalidRuleDefinition as exc:
            logger.error("Replay of %s hit invalid rule data: %s", transaction_id, exc)
            return EvaluationResult(
                transaction_id=transaction_id, status="invalid-rule-data",
                outcome=current, detail=str(exc),
            )
        except AmbiguousRuleset as exc:
            logger.error("Data integrity fault replaying %s: %s", transaction_id, exc)
            raise

        if ruleset.ruleset_id == current.ruleset_id:
            return EvaluationResult(transaction_id=transaction_id, status="rewarded", outcome=current)

        outcome = self.computer.evaluate(transaction, ruleset)
        return self._commit(outcome, lambda o: self.recorder.replace(transaction_id, o))

    def transactions_for_ruleset(self, ruleset_id: str) -> List[str]:
        """Transactions rewarded under ``ruleset_id``, in replay order.

        Replay order is (posting date, transaction id) so that caps are
        consumed the same way on every run.
        """
        self.catalog.entry(ruleset_id)
        outcomes = self.recorder.outcomes_for_ruleset(ruleset_id)
        transactions = [self._load(o.transaction_id) for o in outcomes]
        transactions.sort(key=lambda t: (t.posted_on, t.transaction_id))
        return [t.transaction_id for t in transactions]

    def replay_for_ruleset(self, ruleset_id: str) -> ReplayReport:
        """ReplayForRuleset: replay every transaction rewarded under ``ruleset_id``."""
        report = ReplayReport(ruleset_id=ruleset_id, results=[])
        for transaction_id in self.transactions_for_ruleset(ruleset_id):
            result = self.replay_transaction(transaction_id)
            report.results.append(result)
            if result.status == "invalid-rule-data":
                report.invalid += 1
            elif result.status != "rewarded":
                report.unmatched += 1
            elif result.outcome.ruleset_id == ruleset_id:
                report.unchanged += 1
            else:
                report.replaced += 1

        logger.info(
            "Replay of %s: %d replaced, %d unchanged, %d unmatched, %d invalid",
            ruleset_id, report.replaced, report.unchanged, report.unmatched, report.invalid,
        )
        return report

    def evaluate_batch(self, transaction_ids: Iterable[str]) -> BatchResponse:
        results = [self.evaluate_transaction(tid) for tid in transaction_ids]
        counts = Counter(r.status for r in results)
        summary = BatchSummary(
            total=len(results),
            rewarded=counts["rewarded"],
            unmatched=counts["unmatched-ruleset"],
            invalid=counts["invalid-rule-data"],
        )
        return BatchResponse(results=results, summary=summary)

    def reward_breakdown(self, transaction_id: str) -> RewardBreakdown:
        """Per-transaction view for the cardholder: amount with rationale, or why not yet."""
        self._load(transaction_id)

        outcome = self.recorder.current(transaction_id)
        if outcome is not None:
            return RewardBreakdown(
                transaction_id=transaction_id,
                state="rewarded",
                message=f"Earned {outcome.points} points and {outcome.cashback} cashback",
                outcome=outcome,
            )

        status = self.outcomes.get_status(transaction_id)
        if status is None:
            return RewardBreakdown(
                transaction_id=transaction_id,
                state="not-evaluated",
                message="Not yet evaluated",
            )
        if status.status == "invalid-rule-data":
            return RewardBreakdown(
                transaction_id=transaction_id,
                state="invalid-rule-data",
                message="Not yet rewarded: the reward rules for this card are under review",
            )
        return RewardBreakdown(
            transaction_id=transaction_id,
            state="pending-rule-coverage",
            message="Not yet rewarded: pending rule coverage",
        )


def build_rewards_engine(
    store,
    points_quantum: Decimal = Decimal("1"),
    cashback_quantum: Decimal = Decimal("0.01"),
    clock: Optional[Callable[[], datetime]] = None,
) -> RewardsEngine:
    """Wire every component against a store implementing all storage interfaces."""
    resolver = RuleResolver()
    catalog = RulesetCatalog(store, resolver, clock=clock)
    ledger = CapLedger(store, catalog, clock=clock)
    computer = RewardComputer(
        resolver,
        ledger,
        points_quantum=points_quantum,
        cashback_quantum=cashback_quantum,
        clock=clock,
    )
    recorder = RewardRecorder(store, ledger, clock=clock)
    return RewardsEngine(
        transactions=store,
        catalog=catalog,
        computer=computer,
        recorder=recorder,
        outcomes=store,
    )
