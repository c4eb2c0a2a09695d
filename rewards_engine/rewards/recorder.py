"""Idempotent persistence of reward outcomes.

At most one current outcome exists per transaction. Recording the same
(transaction, ruleset) pair twice is a no-op that returns the stored
outcome. Replacing an outcome under a corrected ruleset first reverses
the superseded outcome's cap grants, then archives it so the prior value
stays auditable.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from rewards_engine.errors import OutcomeConflict
from rewards_engine.models import METRICS, RecordAck, RewardOutcome, SupersededOutcome, utc_now
from rewards_engine.rewards.ledger import CapLedger
from rewards_engine.storage.base import OutcomeStore

logger = logging.getLogger(__name__)


class RewardRecorder:
    def __init__(
        self,
        store: OutcomeStore,
        ledger: CapLedger,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self._clock = clock or utc_now

    def record(self, outcome: RewardOutcome) -> RecordAck:
        """Persist ``outcome`` unless the transaction already has one.

        Raises OutcomeConflict if the existing outcome belongs to a
        different ruleset; use ``replace`` for corrections.
        """
        stored, created = self.store.insert_outcome(outcome)
        if created:
            logger.info(
                "Recorded reward for %s under %s: points=%s cashback=%s",
                outcome.transaction_id, outcome.ruleset_id, outcome.points, outcome.cashback,
            )
            return RecordAck(outcome=stored, created=True)

        if stored.ruleset_id != outcome.ruleset_id:
            raise OutcomeConflict(
                f"Transaction {outcome.transaction_id} already rewarded under "
                f"{stored.ruleset_id}; replace it instead of recording under {outcome.ruleset_id}"
            )
        return RecordAck(outcome=stored, created=False)

    def replace(self, transaction_id: str, new_outcome: RewardOutcome) -> RecordAck:
        """Supersede the current outcome with one computed under a new ruleset."""
        if new_outcome.transaction_id != transaction_id:
            raise ValueError(
                f"Outcome is for {new_outcome.transaction_id}, not {transaction_id}"
            )

        prior = self.store.get_outcome(transaction_id)
        if prior is None:
            return self.record(new_outcome)
        if prior.ruleset_id == new_outcome.ruleset_id:
            return RecordAck(outcome=prior, created=False)

        released = self._reverse(prior)
        try:
            superseded = self.store.supersede_outcome(prior, new_outcome, self._clock())
        except Exception:
            self._restore(prior, released)
            raise

        logger.info(
            "Replaced reward for %s: %s -> %s (points %s -> %s, cashback %s -> %s)",
            transaction_id, prior.ruleset_id, new_outcome.ruleset_id,
            prior.points, new_outcome.points, prior.cashback, new_outcome.cashback,
        )
        return RecordAck(outcome=new_outcome, created=True, superseded=superseded)

    def _reverse(self, outcome: RewardOutcome) -> Dict[str, Decimal]:
        released = {}
        for metric in METRICS:
            amount = outcome.amount(metric)
            if amount > 0:
                released[metric] = self.ledger.release(
                    outcome.card_id, outcome.ruleset_id, outcome.period_key,
                    metric, amount, transaction_id=outcome.transaction_id,
                )
        return released

    def _restore(self, outcome: RewardOutcome, released: Dict[str, Decimal]) -> None:
        for metric, amount in released.items():
            self.ledger.restore(
                outcome.card_id, outcome.ruleset_id, outcome.period_key,
                metric, amount, transaction_id=outcome.transaction_id,
            )

    def current(self, transaction_id: str) -> Optional[RewardOutcome]:
        return self.store.get_outcome(transaction_id)

    def history(self, transaction_id: str) -> List[SupersededOutcome]:
        return self.store.list_superseded(transaction_id)

    def outcomes_for_ruleset(self, ruleset_id: str) -> List[RewardOutcome]:
        return self.store.outcomes_for_ruleset(ruleset_id)
