"""Pydantic models for the card rewards engine."""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Metric = Literal["points", "cashback"]
CapPeriod = Literal["calendar_month"]
EvaluationStatus = Literal["rewarded", "unmatched-ruleset", "invalid-rule-data"]
CapEntryKind = Literal["reserve", "release", "restore"]

METRICS: tuple[Metric, ...] = ("points", "cashback")
ZERO = Decimal("0")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Transaction(BaseModel):
    """Normalized purchase record produced by statement ingestion."""
    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(min_length=1)
    card_id: str = Field(min_length=1)
    posted_on: date
    amount: Decimal = Field(ge=0)
    mcc: int = Field(ge=0, le=9999)
    description: Optional[str] = None


# ---------------------------------------------------------------------------
# Ruleset documents (inbound, as published by an administrator)
# ---------------------------------------------------------------------------

class MultiplierDocument(BaseModel):
    """One multiplier entry as written in a ruleset document."""
    model_config = ConfigDict(extra="forbid")

    category: str = Field(min_length=1)
    rate: Decimal = Field(ge=0)
    include_mcc: Optional[list[int]] = None
    exclude_mcc: Optional[list[int]] = None
    priority: Optional[int] = None


class CapDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    metric: Metric
    period: CapPeriod = "calendar_month"
    max_value: Decimal = Field(ge=0)


class RulesetDocument(BaseModel):
    """Structured ruleset definition submitted for activation.

    Every listed field is required; ``effective_to`` must be present but
    may be null for a ruleset that is still active.
    """
    model_config = ConfigDict(extra="forbid")

    card_id: str = Field(min_length=1)
    version: str = Field(min_length=1)
    base_rate: Decimal = Field(ge=0)
    multipliers: list[MultiplierDocument]
    caps: list[CapDocument]
    effective_from: date
    effective_to: Optional[date]
    reward_metrics: list[Metric] = Field(default_factory=lambda: ["points"], min_length=1)

    @model_validator(mode="after")
    def _check_range(self) -> "RulesetDocument":
        if self.effective_to is not None and self.effective_to <= self.effective_from:
            raise ValueError("effective_to must be after effective_from")
        if len(set(self.reward_metrics)) != len(self.reward_metrics):
            raise ValueError("reward_metrics must not repeat a metric")
        return self


# ---------------------------------------------------------------------------
# Activated rulesets
# ---------------------------------------------------------------------------

def _format_codes(codes: frozenset[int]) -> str:
    return "{" + ", ".join(str(c) for c in sorted(codes)) + "}"


class IncludeMcc(BaseModel):
    """Matches when the transaction MCC is one of ``codes``."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["include"] = "include"
    codes: frozenset[int]

    def matches(self, mcc: int) -> bool:
        return mcc in self.codes

    def describe(self, mcc: int) -> str:
        return f"MCC {mcc} is in {_format_codes(self.codes)}"


class ExcludeMcc(BaseModel):
    """Matches when the transaction MCC is not one of ``codes``."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["exclude"] = "exclude"
    codes: frozenset[int]

    def matches(self, mcc: int) -> bool:
        return mcc not in self.codes

    def describe(self, mcc: int) -> str:
        return f"MCC {mcc} is not in {_format_codes(self.codes)}"


MccMatch = Annotated[Union[IncludeMcc, ExcludeMcc], Field(discriminator="kind")]


class MultiplierRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    match: MccMatch
    rate: Decimal = Field(ge=0)
    priority: Optional[int] = None


class CapDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    metric: Metric
    period: CapPeriod = "calendar_month"
    max_value: Decimal = Field(ge=0)


class CapSet(BaseModel):
    """Caps configured for a ruleset, at most one per (metric, period)."""
    model_config = ConfigDict(frozen=True)

    caps: tuple[CapDefinition, ...] = ()

    def for_metric(self, metric: Metric, period: CapPeriod = "calendar_month") -> Optional[CapDefinition]:
        for cap in self.caps:
            if cap.metric == metric and cap.period == period:
                return cap
        return None


class Ruleset(BaseModel):
    """An activated, immutable ruleset version for one card."""
    model_config = ConfigDict(frozen=True)

    ruleset_id: str
    card_id: str
    version: str
    base_rate: Decimal = Field(ge=0)
    multipliers: tuple[MultiplierRule, ...] = ()
    caps: CapSet = CapSet()
    reward_metrics: tuple[Metric, ...] = ("points",)
    effective_from: date
    effective_to: Optional[date] = None

    def covers(self, day: date) -> bool:
        """Half-open containment: effective_from <= day < effective_to."""
        if day < self.effective_from:
            return False
        return self.effective_to is None or day < self.effective_to

    def overlaps(self, other: "Ruleset") -> bool:
        starts_before_other_ends = other.effective_to is None or self.effective_from < other.effective_to
        other_starts_before_end = self.effective_to is None or other.effective_from < self.effective_to
        return starts_before_other_ends and other_starts_before_end


class ActivationRequest(BaseModel):
    """A ruleset document plus the versions it corrects, if any.

    The document is validated by the catalog rather than here so that
    malformed documents surface as InvalidRuleDefinition.
    """

    document: dict
    supersedes: list[str] = Field(default_factory=list)


class CatalogEntry(BaseModel):
    """A ruleset as held by the catalog, with its activation status."""

    ruleset: Ruleset
    activated_at: datetime
    superseded_by: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.superseded_by is None


# ---------------------------------------------------------------------------
# Resolution and reward computation
# ---------------------------------------------------------------------------

class ResolvedRate(BaseModel):
    """Rate selected for a transaction and how it was selected."""

    rate: Decimal
    rule: Optional[MultiplierRule] = None
    position: Optional[int] = None  # 1-based declaration index of the matched rule
    reason: str


class RewardQuote(BaseModel):
    """Uncapped reward amounts for a transaction under one ruleset."""

    resolved: ResolvedRate
    period_key: str
    points: Decimal = ZERO
    cashback: Decimal = ZERO

    def amount(self, metric: Metric) -> Decimal:
        return self.points if metric == "points" else self.cashback


class Grant(BaseModel):
    """Result of a cap reservation for one metric."""

    metric: Metric
    period_key: str
    proposed: Decimal
    granted: Decimal
    balance_before: Decimal
    cap: Optional[Decimal] = None

    @property
    def truncated(self) -> Decimal:
        return self.proposed - self.granted


class TraceStep(BaseModel):
    """One reasoning step in a reward's justification trace."""

    code: str
    message: str
    details: dict[str, str] = Field(default_factory=dict)


class RewardOutcome(BaseModel):
    """Reward granted for one transaction under one ruleset."""

    transaction_id: str
    ruleset_id: str
    ruleset_version: str
    card_id: str
    period_key: str
    points: Decimal = Field(default=ZERO, ge=0)
    cashback: Decimal = Field(default=ZERO, ge=0)
    trace: list[TraceStep]
    computed_at: datetime

    def amount(self, metric: Metric) -> Decimal:
        return self.points if metric == "points" else self.cashback


class SupersededOutcome(BaseModel):
    """A prior outcome replaced after a retroactive ruleset correction."""

    outcome: RewardOutcome
    superseded_at: datetime
    superseded_by: str


class RecordAck(BaseModel):
    outcome: RewardOutcome
    created: bool
    superseded: Optional[SupersededOutcome] = None


# ---------------------------------------------------------------------------
# Cap accounting
# ---------------------------------------------------------------------------

class CapEntry(BaseModel):
    """Journal line for a single cap balance mutation."""

    card_id: str
    ruleset_id: str
    period_key: str
    metric: Metric
    kind: CapEntryKind
    amount: Decimal = Field(ge=0)
    transaction_id: Optional[str] = None
    # Scope balance for the metric just before a reservation
    balance_before: Optional[Decimal] = None
    recorded_at: datetime


class CapBalance(BaseModel):
    """Points and cashback already granted in one (card, ruleset, period)."""

    card_id: str
    ruleset_id: str
    period_key: str
    points: Decimal = ZERO
    cashback: Decimal = ZERO

    def amount(self, metric: Metric) -> Decimal:
        return self.points if metric == "points" else self.cashback

    def apply(self, entry: CapEntry) -> "CapBalance":
        delta = -entry.amount if entry.kind == "release" else entry.amount
        return self.model_copy(update={entry.metric: self.amount(entry.metric) + delta})


class CapReport(BaseModel):
    balance: CapBalance
    caps: list[CapDefinition]
    entries: int
    reconciled: bool


# ---------------------------------------------------------------------------
# Engine results
# ---------------------------------------------------------------------------

class EvaluationResult(BaseModel):
    """Terminal status of one evaluation, reported back to the scheduler."""

    transaction_id: str
    status: EvaluationStatus
    outcome: Optional[RewardOutcome] = None
    detail: Optional[str] = None


class ReplayReport(BaseModel):
    ruleset_id: str
    results: list[EvaluationResult]
    replaced: int = 0
    unchanged: int = 0
    unmatched: int = 0
    invalid: int = 0


class BatchRequest(BaseModel):
    transaction_ids: list[str]


class BatchSummary(BaseModel):
    total: int
    rewarded: int
    unmatched: int
    invalid: int


class BatchResponse(BaseModel):
    results: list[EvaluationResult]
    summary: BatchSummary


class RewardBreakdown(BaseModel):
    """What the cardholder sees for one transaction."""

    transaction_id: str
    state: Literal["rewarded", "pending-rule-coverage", "invalid-rule-data", "not-evaluated"]
    message: str
    outcome: Optional[RewardOutcome] = None


class AuditEntry(BaseModel):
    transaction_id: str
    current: Optional[RewardOutcome] = None
    superseded: list[SupersededOutcome] = Field(default_factory=list)
