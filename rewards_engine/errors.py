"""Exception taxonomy for the rewards engine.

Cap truncation is deliberately absent: a reward cut down by a cap is a
normal outcome recorded in the justification trace, not an error.
"""


class RewardsEngineError(Exception):
    """Base class for every error raised by the engine."""


class NoApplicableRuleset(RewardsEngineError):
    """No active ruleset covers the transaction date for its card."""

    def __init__(self, card_id: str, day) -> None:
        self.card_id = card_id
        self.day = day
        super().__init__(f"No active ruleset for card {card_id} on {day}")


class AmbiguousRuleset(RewardsEngineError):
    """More than one active ruleset covers the same card and date."""

    def __init__(self, card_id: str, day, ruleset_ids: list[str]) -> None:
        self.card_id = card_id
        self.day = day
        self.ruleset_ids = ruleset_ids
        super().__init__(
            f"Rulesets {', '.join(ruleset_ids)} overlap for card {card_id} on {day}"
        )


class InvalidRuleDefinition(RewardsEngineError):
    """Ruleset data is malformed and must not be activated."""


class RulesetConflict(InvalidRuleDefinition):
    """Ruleset collides with the catalog (duplicate version or overlapping range)."""


class RulesetNotFound(RewardsEngineError, KeyError):
    def __str__(self) -> str:
        return f"Ruleset not found: {self.args[0]}"


class TransactionNotFound(RewardsEngineError, KeyError):
    def __str__(self) -> str:
        return f"Transaction not found: {self.args[0]}"


class TransactionConflict(RewardsEngineError):
    """A transaction id was registered again with different data."""


class OutcomeConflict(RewardsEngineError):
    """The transaction already holds an outcome under another ruleset."""


class CapContention(RewardsEngineError):
    """Optimistic cap updates kept losing the race; safe to retry later."""
