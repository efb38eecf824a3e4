"""
Credit ledger tests
"""
from decimal import Decimal

import pytest

from app.core.errors import InsufficientCredits, InvalidRequest, NotFound
from app.db.session import unit_of_work
from app.models.credit import CreditTxn
from app.services import credit_ledger


def _ledger_sum(db, customer_id):
    return sum((t.amount for t in credit_ledger.history(db, customer_id)), Decimal("0"))


class TestCreditLedger:

    def test_seeded_bonus(self, db, seed):
        cid = seed.users["customer"].id
        assert credit_ledger.get_balance(db, cid) == Decimal("50")
        hist = credit_ledger.history(db, cid)
        assert len(hist) == 1
        assert hist[0].txn_type == "bonus"
        assert hist[0].balance_after == Decimal("50")

    def test_use_appends_negative_entry(self, db, seed):
        cid = seed.users["customer"].id
        with unit_of_work(db):
            txn = credit_ledger.use(db, cid, 20, "Test purchase")
        assert txn.amount == Decimal("-20")
        assert txn.balance_after == Decimal("30")
        assert credit_ledger.get_balance(db, cid) == Decimal("30")

    def test_use_above_balance_fails_and_leaves_no_trace(self, db, seed):
        cid = seed.users["customer"].id
        with pytest.raises(InsufficientCredits):
            with unit_of_work(db):
                credit_ledger.use(db, cid, 51, "Too much")
        assert credit_ledger.get_balance(db, cid) == Decimal("50")
        assert db.query(CreditTxn).filter(CreditTxn.customer_id == cid).count() == 1

    def test_exact_balance_can_be_used(self, db, seed):
        cid = seed.users["customer"].id
        with unit_of_work(db):
            credit_ledger.use(db, cid, 50, "All of it")
        assert credit_ledger.get_balance(db, cid) == Decimal("0")

    def test_balance_equals_sum_of_history(self, db, seed):
        cid = seed.users["customer"].id
        with unit_of_work(db):
            credit_ledger.earn(db, cid, 10, "Earned")
        with unit_of_work(db):
            credit_ledger.use(db, cid, 25, "Used")
        with unit_of_work(db):
            credit_ledger.refund(db, cid, Decimal("5.50"), "Refund")
        with unit_of_work(db):
            credit_ledger.bonus(db, cid, 3, "Bonus")

        balance = credit_ledger.get_balance(db, cid)
        assert balance == Decimal("43.50")
        assert balance == _ledger_sum(db, cid)

    def test_history_is_most_recent_first(self, db, seed):
        cid = seed.users["customer"].id
        for amount in (1, 2, 3):
            with unit_of_work(db):
                credit_ledger.earn(db, cid, amount, f"Earn {amount}")
        hist = credit_ledger.history(db, cid)
        assert [t.amount for t in hist[:3]] == [Decimal("3"), Decimal("2"), Decimal("1")]
        assert len(credit_ledger.history(db, cid, limit=2)) == 2

    def test_non_positive_amounts_rejected(self, db, seed):
        cid = seed.users["customer"].id
        with pytest.raises(InvalidRequest):
            credit_ledger.earn(db, cid, 0, "Nothing")
        with pytest.raises(InvalidRequest):
            credit_ledger.use(db, cid, -5, "Negative")

    def test_unknown_customer(self, db, seed):
        with pytest.raises(NotFound):
            credit_ledger.get_balance(db, 999999)

    def test_totals_per_type(self, db, seed):
        cid = seed.users["customer"].id
        with unit_of_work(db):
            credit_ledger.use(db, cid, 20, "Used")
        totals = credit_ledger.get_credit_totals(db, cid)
        assert totals["balance"] == Decimal("30")
        assert totals["ledger_sum"] == Decimal("30")
        assert totals["total_bonus"] == Decimal("50")
        assert totals["total_used"] == Decimal("20")
        assert totals["total_earned"] == Decimal("0")


class TestConcurrentUse:

    def test_stale_balance_cannot_be_spent_twice(self, file_sessions):
        first, second, data = file_sessions
        cid = data.users["customer"].id

        # second session reads the balance before the first spends it
        assert credit_ledger.get_balance(second, cid) == Decimal("50")

        with unit_of_work(first):
            credit_ledger.use(first, cid, 40, "First checkout")

        with pytest.raises(InsufficientCredits):
            with unit_of_work(second):
                credit_ledger.use(second, cid, 40, "Second checkout")

        assert credit_ledger.get_balance(first, cid) == Decimal("10")
