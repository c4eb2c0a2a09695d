"""Reward computation for a single transaction.

The DECISION is deterministic: same transaction + same ruleset + same
prior cap balances = same outcome. Pipeline:
  1. Resolve the rate (first matching multiplier rule, else base rate)
  2. Raw reward = amount x rate, rounded half-up to the tracked unit
  3. Reserve against the points cap, then independently the cashback cap
  4. Assemble the outcome with its justification trace
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from rewards_engine.models import (
    METRICS,
    ZERO,
    Grant,
    Metric,
    RewardOutcome,
    RewardQuote,
    Ruleset,
    TraceStep,
    Transaction,
    utc_now,
)
from rewards_engine.rewards.ledger import CapLedger, period_key
from rewards_engine.rewards.resolver import RuleResolver


def round_half_up(value: Decimal, quantum: Decimal) -> Decimal:
    return value.quantize(quantum, rounding=ROUND_HALF_UP)


class RewardComputer:
    """Combines rule resolution and cap reservation into a RewardOutcome."""

    def __init__(
        self,
        resolver: RuleResolver,
        ledger: CapLedger,
        points_quantum: Decimal = Decimal("1"),
        cashback_quantum: Decimal = Decimal("0.01"),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.resolver = resolver
        self.ledger = ledger
        self.quanta = {"points": points_quantum, "cashback": cashback_quantum}
        self._clock = clock or utc_now

    def quote(self, transaction: Transaction, ruleset: Ruleset) -> RewardQuote:
        """Uncapped amounts. Pure: touches no cap balance."""
        resolved = self.resolver.resolve(ruleset, transaction)
        raw = transaction.amount * resolved.rate
        amounts = {
            metric: round_half_up(raw, self.quanta[metric]) if metric in ruleset.reward_metrics else ZERO
            for metric in METRICS
        }
        return RewardQuote(
            resolved=resolved,
            period_key=period_key("calendar_month", transaction.posted_on),
            points=amounts["points"],
            cashback=amounts["cashback"],
        )

    def evaluate(self, transaction: Transaction, ruleset: Ruleset) -> RewardOutcome:
        """Compute and reserve the reward for ``transaction`` under ``ruleset``.

        If a later reservation fails, earlier ones are released before the
        error propagates, so an aborted evaluation leaves no cap mutation.
        """
        quote = self.quote(transaction, ruleset)
        grants: list[Grant] = []
        try:
            for metric in ruleset.reward_metrics:
                grants.append(
                    self.ledger.reserve(
                        transaction.card_id,
                        ruleset.ruleset_id,
                        quote.period_key,
                        metric,
                        quote.amount(metric),
                        transaction_id=transaction.transaction_id,
                    )
                )
        except Exception:
            for grant in grants:
                self.ledger.release(
                    transaction.card_id, ruleset.ruleset_id, grant.period_key,
                    grant.metric, grant.granted, transaction_id=transaction.transaction_id,
                )
            raise

        granted = {grant.metric: grant.granted for grant in grants}
        return RewardOutcome(
            transaction_id=transaction.transaction_id,
            ruleset_id=ruleset.ruleset_id,
            ruleset_version=ruleset.version,
            card_id=transaction.card_id,
            period_key=quote.period_key,
            points=granted.get("points", ZERO),
            cashback=granted.get("cashback", ZERO),
            trace=self._trace(transaction, ruleset, quote, grants),
            computed_at=self._clock(),
        )

    def release(self, outcome: RewardOutcome) -> None:
        """Return an outcome's grants to the ledger."""
        for metric in METRICS:
            amount = outcome.amount(metric)
            if amount > 0:
                self.ledger.release(
                    outcome.card_id, outcome.ruleset_id, outcome.period_key,
                    metric, amount, transaction_id=outcome.transaction_id,
                )

    def settle(self, outcome: RewardOutcome, recorded: Optional[RewardOutcome]) -> None:
        """Match what ``outcome``'s transaction holds to what ``recorded`` grants.

        ``recorded`` is the stored outcome under the same ruleset, or None
        when nothing was stored, in which case every hold is released.
        """
        for metric in METRICS:
            self.ledger.settle(
                outcome.card_id, outcome.ruleset_id, outcome.period_key,
                metric, outcome.transaction_id,
                recorded.amount(metric) if recorded is not None else ZERO,
            )

    # -- justification trace --

    def _trace(
        self,
        transaction: Transaction,
        ruleset: Ruleset,
        quote: RewardQuote,
        grants: list[Grant],
    ) -> list[TraceStep]:
        resolved = quote.resolved
        steps = [
            TraceStep(
                code="RULESET_SELECTED",
                message=(
                    f"Ruleset {ruleset.ruleset_id} (version {ruleset.version}) is in effect "
                    f"for card {ruleset.card_id} on {transaction.posted_on}"
                ),
                details={
                    "ruleset_id": ruleset.ruleset_id,
                    "version": ruleset.version,
                    "effective_from": ruleset.effective_from.isoformat(),
                    "effective_to": ruleset.effective_to.isoformat() if ruleset.effective_to else "open",
                },
            )
        ]

        if resolved.rule is not None:
            steps.append(TraceStep(
                code="RULE_MATCHED",
                message=f"{resolved.reason}; rate {resolved.rate}",
                details={
                    "category": resolved.rule.category,
                    "position": str(resolved.position),
                    "match": resolved.rule.match.kind,
                    "mcc": str(transaction.mcc),
                    "rate": str(resolved.rate),
                },
            ))
        else:
            steps.append(TraceStep(
                code="BASE_RATE_APPLIED",
                message=f"{resolved.reason}: {resolved.rate}",
                details={"mcc": str(transaction.mcc), "rate": str(resolved.rate)},
            ))

        for grant in grants:
            steps.extend(self._metric_steps(transaction, resolved.rate, grant))
        return steps

    def _metric_steps(self, transaction: Transaction, rate: Decimal, grant: Grant) -> list[TraceStep]:
        metric: Metric = grant.metric
        steps = [TraceStep(
            code="REWARD_COMPUTED",
            message=f"Uncapped {metric}: {transaction.amount} x {rate} = {grant.proposed}",
            details={
                "metric": metric,
                "amount": str(transaction.amount),
                "rate": str(rate),
                "proposed": str(grant.proposed),
            },
        )]

        if grant.cap is None:
            steps.append(TraceStep(
                code="CAP_NOT_CONFIGURED",
                message=f"No {metric} cap configured; granted {grant.granted} in full",
                details={"metric": metric, "granted": str(grant.granted)},
            ))
            return steps

        remaining = max(grant.cap - grant.balance_before, ZERO)
        steps.append(TraceStep(
            code="CAP_CHECKED",
            message=(
                f"Monthly {metric} cap {grant.cap} for {grant.period_key}: "
                f"{grant.balance_before} already granted, {remaining} remaining; "
                f"granted {grant.granted}"
            ),
            details={
                "metric": metric,
                "period_key": grant.period_key,
                "cap": str(grant.cap),
                "balance_before": str(grant.balance_before),
                "remaining": str(remaining),
                "granted": str(grant.granted),
            },
        ))
        if grant.truncated > 0:
            steps.append(TraceStep(
                code="CAP_TRUNCATED",
                message=(
                    f"{metric.capitalize()} reduced from {grant.proposed} to {grant.granted}: "
                    f"{grant.truncated} truncated by the monthly cap"
                ),
                details={
                    "metric": metric,
                    "proposed": str(grant.proposed),
                    "granted": str(grant.granted),
                    "truncated": str(grant.truncated),
                },
            ))
        return steps
