"""Cap accounting per (card, ruleset, accounting period).

Every balance change goes through ``CapBalanceStore.transact``, which
serializes the read-modify-write for one scope. Balances are only
decremented by releasing capacity a transaction holds, either when a
recorded outcome is reversed or when an unrecorded reservation is
settled. Every change is journaled so a balance can be reconciled
against its history.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, List, Optional

from rewards_engine.models import (
    ZERO,
    CapBalance,
    CapEntry,
    CapPeriod,
    CapReport,
    Grant,
    Metric,
    utc_now,
)
from rewards_engine.rewards.catalog import RulesetCatalog
from rewards_engine.storage.base import CapBalanceStore, Holder

logger = logging.getLogger(__name__)


def period_key(period: CapPeriod, day: date) -> str:
    """Accounting period containing ``day``, e.g. "2026-03" for calendar months."""
    if period == "calendar_month":
        return f"{day.year:04d}-{day.month:02d}"
    raise ValueError(f"Unsupported cap period: {period}")


def grant_amount(proposed: Decimal, cap: Optional[Decimal], already_granted: Decimal) -> Decimal:
    """Caps truncate rather than reject: min(proposed, remaining), floored at zero."""
    if cap is None:
        return proposed
    remaining = max(cap - already_granted, ZERO)
    return min(proposed, remaining)


def held_amount(entries: List[CapEntry]) -> Decimal:
    """Capacity a holder still has in a scope, from its journal entries."""
    total = ZERO
    for entry in entries:
        total += -entry.amount if entry.kind == "release" else entry.amount
    return max(total, ZERO)


class CapLedger:
    """Tracks accrued rewards per scope and enforces configured caps.

    Reservations made on behalf of a transaction are held under the key
    (card, ruleset, period, metric, transaction). Reserving again for the
    same key while capacity is still held returns the earlier grant and
    writes nothing, so retrying an evaluation never counts it twice.
    """

    def __init__(
        self,
        store: CapBalanceStore,
        catalog: RulesetCatalog,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self._clock = clock or utc_now

    def _cap_limit(self, ruleset_id: str, metric: Metric) -> Optional[Decimal]:
        cap = self.catalog.get(ruleset_id).caps.for_metric(metric)
        return cap.max_value if cap is not None else None

    def _entry(self, card_id, ruleset_id, period, metric, kind, amount, transaction_id, balance_before=None) -> CapEntry:
        return CapEntry(
            card_id=card_id,
            ruleset_id=ruleset_id,
            period_key=period,
            metric=metric,
            kind=kind,
            amount=amount,
            transaction_id=transaction_id,
            balance_before=balance_before,
            recorded_at=self._clock(),
        )

    @staticmethod
    def _holder(metric: Metric, transaction_id: Optional[str]) -> Optional[Holder]:
        return (metric, transaction_id) if transaction_id else None

    def reserve(
        self,
        card_id: str,
        ruleset_id: str,
        period: str,
        metric: Metric,
        proposed_amount: Decimal,
        transaction_id: Optional[str] = None,
    ) -> Grant:
        """Atomically grant as much of ``proposed_amount`` as the cap allows.

        With a ``transaction_id`` that still holds capacity in this scope,
        the earlier grant is returned unchanged.
        """
        if proposed_amount < 0:
            raise ValueError(f"Cannot reserve a negative amount: {proposed_amount}")
        cap = self._cap_limit(ruleset_id, metric)
        reused: List[CapEntry] = []

        def plan(balance: CapBalance, prior: List[CapEntry]) -> Optional[CapEntry]:
            reused.clear()
            if held_amount(prior) > 0:
                reused.extend(prior)
                return None
            granted = grant_amount(proposed_amount, cap, balance.amount(metric))
            if granted <= 0:
                return None
            return self._entry(
                card_id, ruleset_id, period, metric, "reserve", granted, transaction_id,
                balance_before=balance.amount(metric),
            )

        key = (card_id, ruleset_id, period)
        before, entry = self.store.transact(key, plan, holder=self._holder(metric, transaction_id))
        if reused:
            held = held_amount(reused)
            reserves = [e for e in reused if e.kind == "reserve" and e.balance_before is not None]
            logger.info(
                "Reusing %s %s already held by %s in %s/%s",
                held, metric, transaction_id, ruleset_id, period,
            )
            return Grant(
                metric=metric,
                period_key=period,
                proposed=proposed_amount,
                granted=held,
                balance_before=reserves[-1].balance_before if reserves else before.amount(metric) - held,
                cap=cap,
            )

        grant = Grant(
            metric=metric,
            period_key=period,
            proposed=proposed_amount,
            granted=entry.amount if entry is not None else ZERO,
            balance_before=before.amount(metric),
            cap=cap,
        )
        if grant.truncated > 0:
            logger.warning(
                "Cap truncated %s for %s in %s/%s: proposed %s, granted %s",
                metric, transaction_id or "reservation", ruleset_id, period,
                grant.proposed, grant.granted,
            )
        return grant

    def release(
        self,
        card_id: str,
        ruleset_id: str,
        period: str,
        metric: Metric,
        amount: Decimal,
        transaction_id: Optional[str] = None,
    ) -> Decimal:
        """Return previously granted capacity. Returns the amount actually released.

        With a ``transaction_id`` the release never exceeds what that
        transaction still holds, so releasing twice is harmless.
        """
        if amount < 0:
            raise ValueError(f"Cannot release a negative amount: {amount}")

        def plan(balance: CapBalance, prior: List[CapEntry]) -> Optional[CapEntry]:
            released = min(amount, balance.amount(metric))
            if transaction_id:
                released = min(released, held_amount(prior))
            if released <= 0:
                return None
            return self._entry(card_id, ruleset_id, period, metric, "release", released, transaction_id)

        key = (card_id, ruleset_id, period)
        _, entry = self.store.transact(key, plan, holder=self._holder(metric, transaction_id))
        return entry.amount if entry is not None else ZERO

    def restore(
        self,
        card_id: str,
        ruleset_id: str,
        period: str,
        metric: Metric,
        amount: Decimal,
        transaction_id: Optional[str] = None,
    ) -> None:
        """Re-apply a released amount, ignoring the cap (it was granted before)."""
        if amount <= 0:
            return

        def plan(balance: CapBalance, prior: List[CapEntry]) -> Optional[CapEntry]:
            return self._entry(card_id, ruleset_id, period, metric, "restore", amount, transaction_id)

        self.store.transact((card_id, ruleset_id, period), plan)

    def settle(
        self,
        card_id: str,
        ruleset_id: str,
        period: str,
        metric: Metric,
        transaction_id: str,
        recorded: Decimal,
    ) -> Decimal:
        """Bring what ``transaction_id`` holds in line with its recorded amount.

        Any excess is released; a shortfall is restored without a cap
        check since the recorded amount was granted under the cap. Returns
        the signed change applied to the balance.
        """
        adjustment: List[Decimal] = []

        def plan(balance: CapBalance, prior: List[CapEntry]) -> Optional[CapEntry]:
            adjustment.clear()
            delta = recorded - held_amount(prior)
            if delta < 0:
                delta = -min(-delta, balance.amount(metric))
            if delta == 0:
                return None
            adjustment.append(delta)
            kind = "restore" if delta > 0 else "release"
            return self._entry(card_id, ruleset_id, period, metric, kind, abs(delta), transaction_id)

        self.store.transact((card_id, ruleset_id, period), plan, holder=(metric, transaction_id))
        if not adjustment:
            return ZERO
        logger.info(
            "Settled %s held by %s in %s/%s to %s (change %s)",
            metric, transaction_id, ruleset_id, period, recorded, adjustment[0],
        )
        return adjustment[0]

    def held(self, card_id: str, ruleset_id: str, period: str, metric: Metric, transaction_id: str) -> Decimal:
        entries = self.store.list_entries((card_id, ruleset_id, period))
        return held_amount([e for e in entries if e.metric == metric and e.transaction_id == transaction_id])

    def balance(self, card_id: str, ruleset_id: str, period: str) -> CapBalance:
        return self.store.get_balance((card_id, ruleset_id, period))

    def entries(self, card_id: str, ruleset_id: str, period: str) -> List[CapEntry]:
        return self.store.list_entries((card_id, ruleset_id, period))

    def reconcile(self, card_id: str, ruleset_id: str, period: str) -> CapReport:
        """Recompute a balance from its journal and compare with the stored one."""
        key = (card_id, ruleset_id, period)
        entries = self.store.list_entries(key)
        replayed = CapBalance(card_id=card_id, ruleset_id=ruleset_id, period_key=period)
        for entry in entries:
            replayed = replayed.apply(entry)
        stored = self.store.get_balance(key)
        reconciled = stored.points == replayed.points and stored.cashback == replayed.cashback
        if not reconciled:
            logger.error(
                "Cap balance %s/%s/%s disagrees with its journal: stored %s/%s, journal %s/%s",
                card_id, ruleset_id, period,
                stored.points, stored.cashback, replayed.points, replayed.cashback,
            )
        return CapReport(
            balance=stored,
            caps=list(self.catalog.get(ruleset_id).caps.caps),
            entries=len(entries),
            reconciled=reconciled,
        )
