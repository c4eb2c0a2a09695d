"""Tests for cap accounting."""

import threading
from datetime import date
from decimal import Decimal

import pytest

from rewards_engine.rewards.ledger import grant_amount, period_key
from tests.conftest import cashback_cap, make_document, points_cap

PERIOD = "2026-03"


@pytest.fixture
def capped(catalog):
    """Ruleset card-a:v1 with a 10000 point and 50 cashback monthly cap."""
    return catalog.activate(make_document(
        caps=[points_cap("10000"), cashback_cap("50")],
        reward_metrics=["points", "cashback"],
    ))


@pytest.fixture
def uncapped(catalog):
    return catalog.activate(make_document(card_id="card-u", caps=[]))


class TestPeriodKey:
    def test_calendar_month(self):
        assert period_key("calendar_month", date(2026, 3, 31)) == "2026-03"
        assert period_key("calendar_month", date(2026, 4, 1)) == "2026-04"

    def test_unsupported_period(self):
        with pytest.raises(ValueError):
            period_key("fortnight", date(2026, 3, 1))


class TestGrantAmount:
    def test_no_cap_grants_everything(self):
        assert grant_amount(Decimal("500"), None, Decimal("999999")) == Decimal("500")

    def test_truncates_to_remaining(self):
        assert grant_amount(Decimal("500"), Decimal("10000"), Decimal("9900")) == Decimal("100")

    def test_cap_already_exceeded_grants_zero(self):
        assert grant_amount(Decimal("500"), Decimal("100"), Decimal("150")) == Decimal("0")


class TestReserve:
    def test_reserve_within_cap(self, ledger, capped):
        grant = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("400"), "tx-1")
        assert grant.granted == Decimal("400")
        assert grant.truncated == Decimal("0")
        assert grant.balance_before == Decimal("0")
        assert grant.cap == Decimal("10000")
        assert ledger.balance("card-a", capped.ruleset_id, PERIOD).points == Decimal("400")

    def test_reserve_truncates_at_cap(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("9900"))
        grant = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-2")
        assert grant.granted == Decimal("100")
        assert grant.truncated == Decimal("400")
        assert grant.balance_before == Decimal("9900")
        assert ledger.balance("card-a", capped.ruleset_id, PERIOD).points == Decimal("10000")

    def test_exhausted_cap_grants_zero_without_journal_entry(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("10000"))
        grant = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("5"))
        assert grant.granted == Decimal("0")
        assert len(ledger.entries("card-a", capped.ruleset_id, PERIOD)) == 1

    def test_metrics_are_capped_independently(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("10000"))
        grant = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "cashback", Decimal("12.50"))
        assert grant.granted == Decimal("12.50")

    def test_periods_are_independent(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, "2026-03", "points", Decimal("10000"))
        grant = ledger.reserve("card-a", capped.ruleset_id, "2026-04", "points", Decimal("300"))
        assert grant.granted == Decimal("300")

    def test_uncapped_metric_grants_in_full(self, ledger, uncapped):
        grant = ledger.reserve("card-u", uncapped.ruleset_id, PERIOD, "points", Decimal("1000000"))
        assert grant.granted == Decimal("1000000")
        assert grant.cap is None

    def test_negative_amount_rejected(self, ledger, capped):
        with pytest.raises(ValueError):
            ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("-1"))

    def test_concurrent_reservations_never_exceed_cap(self, ledger, capped):
        grants = []
        grants_lock = threading.Lock()

        def worker():
            for _ in range(20):
                grant = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("100"))
                with grants_lock:
                    grants.append(grant.granted)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        balance = ledger.balance("card-a", capped.ruleset_id, PERIOD)
        assert balance.points == Decimal("10000")
        assert sum(grants) == Decimal("10000")


class TestReleaseAndRestore:
    def test_release_returns_capacity(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("10000"), "tx-1")
        released = ledger.release("card-a", capped.ruleset_id, PERIOD, "points", Decimal("600"), "tx-1")
        assert released == Decimal("600")
        grant = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("1000"))
        assert grant.granted == Decimal("600")

    def test_release_is_clamped_to_balance(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("50"))
        released = ledger.release("card-a", capped.ruleset_id, PERIOD, "points", Decimal("80"))
        assert released == Decimal("50")
        assert ledger.balance("card-a", capped.ruleset_id, PERIOD).points == Decimal("0")

    def test_restore_ignores_cap(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("10000"))
        ledger.restore("card-a", capped.ruleset_id, PERIOD, "points", Decimal("200"))
        assert ledger.balance("card-a", capped.ruleset_id, PERIOD).points == Decimal("10200")

    def test_restore_of_zero_is_noop(self, ledger, capped):
        ledger.restore("card-a", capped.ruleset_id, PERIOD, "points", Decimal("0"))
        assert ledger.entries("card-a", capped.ruleset_id, PERIOD) == []


class TestTransactionHolds:
    def test_retried_reserve_returns_earlier_grant(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("300"), "tx-0")
        first = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1")
        retry = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1")

        assert retry == first
        assert retry.balance_before == Decimal("300")
        assert ledger.balance("card-a", capped.ruleset_id, PERIOD).points == Decimal("800")
        assert len(ledger.entries("card-a", capped.ruleset_id, PERIOD)) == 2

    def test_retried_reserve_keeps_truncation(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("9900"), "tx-0")
        first = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1")
        retry = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1")
        assert retry.granted == first.granted == Decimal("100")
        assert retry.truncated == Decimal("400")

    def test_holds_are_per_metric(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1")
        grant = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "cashback", Decimal("5"), "tx-1")
        assert grant.granted == Decimal("5")
        assert ledger.held("card-a", capped.ruleset_id, PERIOD, "cashback", "tx-1") == Decimal("5")

    def test_released_hold_can_be_reserved_again(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1")
        ledger.release("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1")
        grant = ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1")
        assert grant.granted == Decimal("500")
        assert ledger.balance("card-a", capped.ruleset_id, PERIOD).points == Decimal("500")

    def test_release_twice_is_clamped_to_hold(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("700"), "tx-0")
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1")
        assert ledger.release("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1") == Decimal("500")
        assert ledger.release("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1") == Decimal("0")
        assert ledger.balance("card-a", capped.ruleset_id, PERIOD).points == Decimal("700")

    def test_settle_releases_excess(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1")
        change = ledger.settle("card-a", capped.ruleset_id, PERIOD, "points", "tx-1", Decimal("0"))
        assert change == Decimal("-500")
        assert ledger.held("card-a", capped.ruleset_id, PERIOD, "points", "tx-1") == Decimal("0")
        assert ledger.reconcile("card-a", capped.ruleset_id, PERIOD).reconciled

    def test_settle_restores_shortfall(self, ledger, capped):
        change = ledger.settle("card-a", capped.ruleset_id, PERIOD, "points", "tx-1", Decimal("40"))
        assert change == Decimal("40")
        assert ledger.balance("card-a", capped.ruleset_id, PERIOD).points == Decimal("40")

    def test_settle_matching_hold_writes_nothing(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("500"), "tx-1")
        assert ledger.settle("card-a", capped.ruleset_id, PERIOD, "points", "tx-1", Decimal("500")) == Decimal("0")
        assert len(ledger.entries("card-a", capped.ruleset_id, PERIOD)) == 1


class TestReconcile:
    def test_journal_matches_balance(self, ledger, capped):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("700"), "tx-1")
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "cashback", Decimal("3.25"), "tx-1")
        ledger.release("card-a", capped.ruleset_id, PERIOD, "points", Decimal("200"), "tx-1")
        report = ledger.reconcile("card-a", capped.ruleset_id, PERIOD)
        assert report.reconciled
        assert report.entries == 3
        assert report.balance.points == Decimal("500")
        assert report.balance.cashback == Decimal("3.25")
        assert {c.metric for c in report.caps} == {"points", "cashback"}

    def test_tampered_balance_detected(self, ledger, capped, store):
        ledger.reserve("card-a", capped.ruleset_id, PERIOD, "points", Decimal("700"))
        key = ("card-a", capped.ruleset_id, PERIOD)
        store._balances[key] = store._balances[key].model_copy(update={"points": Decimal("1")})
        assert not ledger.reconcile("card-a", capped.ruleset_id, PERIOD).reconciled

    def test_empty_scope_reconciles(self, ledger, capped):
        report = ledger.reconcile("card-a", capped.ruleset_id, "2030-01")
        assert report.reconciled
        assert report.entries == 0
