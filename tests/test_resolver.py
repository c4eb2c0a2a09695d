"""Tests for multiplier rule resolution."""

from decimal import Decimal

import pytest

from rewards_engine.errors import InvalidRuleDefinition
from rewards_engine.models import MultiplierDocument
from rewards_engine.rewards.catalog import build_ruleset, parse_document
from tests.conftest import exclude, include, make_document, make_transaction


def _ruleset(resolver, multipliers, base_rate="0.01"):
    return build_ruleset(parse_document(make_document(base_rate=base_rate, multipliers=multipliers)), resolver)


class TestResolve:
    def test_include_rule_matches(self, resolver):
        ruleset = _ruleset(resolver, [include("dining", [5812, 5813], "0.03")])
        resolved = resolver.resolve(ruleset, make_transaction(mcc=5812))
        assert resolved.rate == Decimal("0.03")
        assert resolved.rule.category == "dining"
        assert resolved.position == 1
        assert "MCC 5812 is in {5812, 5813}" in resolved.reason

    def test_first_match_wins_over_higher_rate(self, resolver):
        """MCC 5732 satisfies both rules; the one declared first applies."""
        ruleset = _ruleset(resolver, [
            include("electronics", [5732], "0.04"),
            exclude("everything-but-utilities", [4900], "0.03"),
        ])
        resolved = resolver.resolve(ruleset, make_transaction(mcc=5732))
        assert resolved.rate == Decimal("0.04")
        assert resolved.position == 1

    def test_first_match_wins_over_lower_rate(self, resolver):
        ruleset = _ruleset(resolver, [
            exclude("everything-but-utilities", [4900], "0.02"),
            include("electronics", [5732], "0.05"),
        ])
        resolved = resolver.resolve(ruleset, make_transaction(mcc=5732))
        assert resolved.rate == Decimal("0.02")
        assert resolved.rule.category == "everything-but-utilities"

    def test_exclude_rule_skips_listed_mcc(self, resolver):
        ruleset = _ruleset(resolver, [
            exclude("everything-but-utilities", [4900], "0.03"),
        ])
        resolved = resolver.resolve(ruleset, make_transaction(mcc=4900))
        assert resolved.rule is None
        assert resolved.rate == Decimal("0.01")

    def test_base_rate_when_nothing_matches(self, resolver):
        ruleset = _ruleset(resolver, [include("dining", [5812], "0.03")], base_rate="0.015")
        resolved = resolver.resolve(ruleset, make_transaction(mcc=5999))
        assert resolved.rate == Decimal("0.015")
        assert resolved.position is None
        assert "base rate applies" in resolved.reason

    def test_no_multipliers_uses_base_rate(self, resolver):
        ruleset = _ruleset(resolver, [])
        assert resolver.resolve(ruleset, make_transaction(mcc=5812)).rate == Decimal("0.01")

    def test_explicit_priority_reorders_rules(self, resolver):
        ruleset = _ruleset(resolver, [
            include("dining", [5812], "0.03"),
            include("restaurant-promo", [5812], "0.05", priority=0),
        ])
        resolved = resolver.resolve(ruleset, make_transaction(mcc=5812))
        assert resolved.rate == Decimal("0.05")
        assert resolved.position == 2

    def test_equal_priority_falls_back_to_declaration_order(self, resolver):
        ruleset = _ruleset(resolver, [
            include("a", [5812], "0.03", priority=5),
            include("b", [5812], "0.05", priority=5),
        ])
        assert resolver.resolve(ruleset, make_transaction(mcc=5812)).rule.category == "a"

    def test_resolution_is_deterministic(self, resolver):
        ruleset = _ruleset(resolver, [
            include("dining", [5812], "0.03"),
            exclude("other", [4900], "0.02"),
        ])
        txn = make_transaction(mcc=5411)
        assert resolver.resolve(ruleset, txn) == resolver.resolve(ruleset, txn)


class TestCompileRules:
    def test_mixed_include_and_exclude_rejected(self, resolver):
        doc = MultiplierDocument(category="bad", rate=Decimal("0.02"), include_mcc=[5812], exclude_mcc=[4900])
        with pytest.raises(InvalidRuleDefinition, match="mixes include_mcc and exclude_mcc"):
            resolver.compile_rules([doc])

    def test_rule_without_match_rejected(self, resolver):
        doc = MultiplierDocument(category="bad", rate=Decimal("0.02"))
        with pytest.raises(InvalidRuleDefinition, match="needs include_mcc or exclude_mcc"):
            resolver.compile_rules([doc])

    def test_out_of_range_mcc_rejected(self, resolver):
        doc = MultiplierDocument(category="bad", rate=Decimal("0.02"), include_mcc=[10000])
        with pytest.raises(InvalidRuleDefinition, match="out-of-range"):
            resolver.compile_rules([doc])

    def test_empty_include_list_rejected(self, resolver):
        with pytest.raises(InvalidRuleDefinition, match="can never match"):
            _ruleset(resolver, [include("nothing", [], "0.02")])

    def test_empty_exclude_list_matches_everything(self, resolver):
        ruleset = _ruleset(resolver, [exclude("all", [], "0.02")])
        assert resolver.resolve(ruleset, make_transaction(mcc=1)).rate == Decimal("0.02")

    def test_compiled_match_kinds(self, resolver):
        rules = resolver.compile_rules([
            MultiplierDocument(category="in", rate=Decimal("0.02"), include_mcc=[1, 2]),
            MultiplierDocument(category="out", rate=Decimal("0.01"), exclude_mcc=[3]),
        ])
        assert [r.match.kind for r in rules] == ["include", "exclude"]
        assert rules[0].match.codes == frozenset({1, 2})
