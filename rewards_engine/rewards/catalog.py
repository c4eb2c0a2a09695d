"""Ruleset catalog: activation and effective-date resolution.

Activated rulesets are immutable. A correction is published as a new
version that lists the versions it ``supersedes``; superseded rulesets
stay in the catalog for audit but no longer take part in resolution.
"""

import logging
import threading
from datetime import date, datetime
from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from rewards_engine.errors import (
    AmbiguousRuleset,
    InvalidRuleDefinition,
    NoApplicableRuleset,
    RulesetConflict,
    RulesetNotFound,
)
from rewards_engine.models import CapDefinition, CapSet, CatalogEntry, Ruleset, RulesetDocument, utc_now
from rewards_engine.rewards.resolver import RuleResolver
from rewards_engine.storage.base import RulesetRepository

logger = logging.getLogger(__name__)


def ruleset_id_for(card_id: str, version: str) -> str:
    return f"{card_id}:{version}"


def parse_document(document: Union[RulesetDocument, Mapping[str, Any]]) -> RulesetDocument:
    if isinstance(document, RulesetDocument):
        return document
    try:
        return RulesetDocument.model_validate(document)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'document'}: {err['msg']}"
            for err in exc.errors()
        )
        raise InvalidRuleDefinition(f"Invalid ruleset document: {problems}") from exc


def build_ruleset(document: RulesetDocument, resolver: RuleResolver) -> Ruleset:
    """Compile a validated document into an activated ruleset."""
    seen = set()
    caps = []
    for cap in document.caps:
        scope = (cap.metric, cap.period)
        if scope in seen:
            raise InvalidRuleDefinition(
                f"Duplicate {cap.period} cap for metric '{cap.metric}'"
            )
        seen.add(scope)
        caps.append(CapDefinition(metric=cap.metric, period=cap.period, max_value=cap.max_value))

    ruleset = Ruleset(
        ruleset_id=ruleset_id_for(document.card_id, document.version),
        card_id=document.card_id,
        version=document.version,
        base_rate=document.base_rate,
        multipliers=resolver.compile_rules(document.multipliers),
        caps=CapSet(caps=tuple(caps)),
        reward_metrics=tuple(document.reward_metrics),
        effective_from=document.effective_from,
        effective_to=document.effective_to,
    )
    resolver.validate(ruleset)
    return ruleset


class RulesetCatalog:
    """Resolves the single ruleset version effective for a card and date."""

    def __init__(
        self,
        repository: RulesetRepository,
        resolver: RuleResolver,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.resolver = resolver
        self._clock = clock or utc_now
        # Serializes the overlap check with the write that follows it
        self._activation_lock = threading.Lock()

    def activate(
        self,
        document: Union[RulesetDocument, Mapping[str, Any]],
        supersedes: Optional[Sequence[str]] = None,
    ) -> Ruleset:
        """Validate and activate a ruleset document.

        Raises InvalidRuleDefinition for malformed data and RulesetConflict
        when the version already exists or its effective range overlaps
        another active ruleset of the same card.
        """
        ruleset = build_ruleset(parse_document(document), self.resolver)
        supersedes = list(supersedes or [])

        with self._activation_lock:
            if self.repository.get_ruleset(ruleset.ruleset_id) is not None:
                raise RulesetConflict(f"Ruleset {ruleset.ruleset_id} is already activated")

            for old_id in supersedes:
                old = self.entry(old_id)
                if old.ruleset.card_id != ruleset.card_id:
                    raise RulesetConflict(
                        f"Ruleset {old_id} belongs to card {old.ruleset.card_id}, "
                        f"not {ruleset.card_id}"
                    )
                if not old.active:
                    raise RulesetConflict(
                        f"Ruleset {old_id} was already superseded by {old.superseded_by}"
                    )

            for other in self._active(ruleset.card_id):
                if other.ruleset_id in supersedes:
                    continue
                if ruleset.overlaps(other):
                    raise RulesetConflict(
                        f"Ruleset {ruleset.ruleset_id} overlaps active ruleset {other.ruleset_id}"
                    )

            entry = CatalogEntry(ruleset=ruleset, activated_at=self._clock())
            self.repository.add_ruleset(entry, supersedes)

        if supersedes:
            logger.info("Activated ruleset %s superseding %s", ruleset.ruleset_id, ", ".join(supersedes))
        else:
            logger.info("Activated ruleset %s", ruleset.ruleset_id)
        return ruleset

    def _active(self, card_id: str) -> List[Ruleset]:
        return [e.ruleset for e in self.repository.list_rulesets(card_id) if e.active]

    def resolve(self, card_id: str, day: date) -> Ruleset:
        matches = [r for r in self._active(card_id) if r.covers(day)]
        if not matches:
            raise NoApplicableRuleset(card_id, day)
        if len(matches) > 1:
            raise AmbiguousRuleset(card_id, day, sorted(r.ruleset_id for r in matches))
        return matches[0]

    def entry(self, ruleset_id: str) -> CatalogEntry:
        entry = self.repository.get_ruleset(ruleset_id)
        if entry is None:
            raise RulesetNotFound(ruleset_id)
        return entry

    def get(self, ruleset_id: str) -> Ruleset:
        return self.entry(ruleset_id).ruleset

    def list_rulesets(self, card_id: Optional[str] = None) -> List[CatalogEntry]:
        return self.repository.list_rulesets(card_id)
