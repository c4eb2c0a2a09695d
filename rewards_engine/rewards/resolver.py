"""Multiplier rule resolution.

Rules are tried in priority order and the FIRST one whose MCC match
accepts the transaction wins. Rates are never compared or summed: card
issuers design category rules to be mutually exclusive, and first-match
keeps the decision traceable to a single rule.

Priority order is ``(priority, declaration index)`` ascending, where a
rule without an explicit priority uses its declaration index. With no
priorities set this is plain declaration order.
"""

from typing import Sequence

from rewards_engine.errors import InvalidRuleDefinition
from rewards_engine.models import (
    ExcludeMcc,
    IncludeMcc,
    MultiplierDocument,
    MultiplierRule,
    ResolvedRate,
    Ruleset,
    Transaction,
)

MAX_MCC = 9999


def _check_codes(label: str, codes: Sequence[int]) -> None:
    bad = [c for c in codes if not 0 <= c <= MAX_MCC]
    if bad:
        raise InvalidRuleDefinition(f"Rule '{label}' has out-of-range MCCs: {bad}")


class RuleResolver:
    """Selects the rate that applies to a transaction within a ruleset."""

    def compile_rules(self, documents: Sequence[MultiplierDocument]) -> tuple[MultiplierRule, ...]:
        """Turn document multipliers into tagged match variants.

        A multiplier must carry exactly one of ``include_mcc`` or
        ``exclude_mcc``.
        """
        rules = []
        for index, doc in enumerate(documents, start=1):
            label = f"#{index} {doc.category}"
            has_include = doc.include_mcc is not None
            has_exclude = doc.exclude_mcc is not None
            if has_include and has_exclude:
                raise InvalidRuleDefinition(
                    f"Rule '{label}' mixes include_mcc and exclude_mcc"
                )
            if not has_include and not has_exclude:
                raise InvalidRuleDefinition(
                    f"Rule '{label}' needs include_mcc or exclude_mcc"
                )
            if has_include:
                _check_codes(label, doc.include_mcc)
                match = IncludeMcc(codes=frozenset(doc.include_mcc))
            else:
                _check_codes(label, doc.exclude_mcc)
                match = ExcludeMcc(codes=frozenset(doc.exclude_mcc))
            rules.append(
                MultiplierRule(
                    category=doc.category,
                    match=match,
                    rate=doc.rate,
                    priority=doc.priority,
                )
            )
        return tuple(rules)

    def validate(self, ruleset: Ruleset) -> None:
        """Exhaustive structural check, run once when a ruleset is activated."""
        for index, rule in enumerate(ruleset.multipliers, start=1):
            label = f"#{index} {rule.category}"
            if isinstance(rule.match, IncludeMcc):
                if not rule.match.codes:
                    raise InvalidRuleDefinition(f"Rule '{label}' includes no MCCs and can never match")
            elif isinstance(rule.match, ExcludeMcc):
                pass
            else:
                raise InvalidRuleDefinition(
                    f"Rule '{label}' has unsupported match kind {type(rule.match).__name__}"
                )
            _check_codes(label, sorted(rule.match.codes))

    def ordered_rules(self, ruleset: Ruleset) -> list[tuple[int, MultiplierRule]]:
        """Rules paired with their 1-based declaration index, in evaluation order."""
        indexed = list(enumerate(ruleset.multipliers, start=1))
        indexed.sort(key=lambda item: (
            item[1].priority if item[1].priority is not None else item[0],
            item[0],
        ))
        return indexed

    def resolve(self, ruleset: Ruleset, transaction: Transaction) -> ResolvedRate:
        for position, rule in self.ordered_rules(ruleset):
            if rule.match.matches(transaction.mcc):
                return ResolvedRate(
                    rate=rule.rate,
                    rule=rule,
                    position=position,
                    reason=(
                        f"Rule #{position} '{rule.category}' matched: "
                        f"{rule.match.describe(transaction.mcc)}"
                    ),
                )

        return ResolvedRate(
            rate=ruleset.base_rate,
            reason=f"No multiplier rule matched MCC {transaction.mcc}; base rate applies",
        )
