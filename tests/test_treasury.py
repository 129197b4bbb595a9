from datetime import timedelta
from decimal import Decimal

import pytest

from rewardledger.config import TreasuryPolicy
from rewardledger.errors import NotFound, ValidationFailed
from rewardledger.models import ReserveTransaction, utcnow
from rewardledger.services import treasury
from rewardledger.services.treasury import ledger_transaction


def _balances(account):
    return (
        Decimal(account.total_funding),
        Decimal(account.total_distributed),
        Decimal(account.available_funding),
        Decimal(account.token_reserve),
    )


class TestDeposit:
    def test_deposit_buys_tokens_at_price(self, db):
        account = treasury.ensure_treasury_account(db)
        with ledger_transaction(db) as ledger:
            dep = ledger.deposit("250.00", "0.05", deposited_by="owner@example.com", notes="seed")

        db.refresh(account)
        assert Decimal(dep.tokens_purchased) == Decimal("5000")
        assert Decimal(account.available_funding) == Decimal("250.00")
        assert Decimal(account.token_reserve) == Decimal("5000")
        rows = treasury.recent_transactions(db, account.id)
        assert [r.transaction_type for r in rows] == ["deposit"]
        assert Decimal(rows[0].balance_after) == Decimal("250.00")

    @pytest.mark.parametrize("amount,price", [("0", "0.01"), ("-5", "0.01"), ("10", "0")])
    def test_invalid_deposit_is_rejected(self, db, amount, price):
        treasury.ensure_treasury_account(db)
        with pytest.raises(ValidationFailed):
            with ledger_transaction(db) as ledger:
                ledger.deposit(amount, price, deposited_by="owner@example.com")

    def test_missing_account(self, db):
        with pytest.raises(NotFound):
            with ledger_transaction(db):
                pass


class TestDistribute:
    def test_successful_distribution(self, db, funded_treasury):
        with ledger_transaction(db) as ledger:
            result = ledger.distribute("150", "1.50", "test reward", "reward", 1)

        db.refresh(funded_treasury)
        assert result.success
        assert result.remaining_balance == Decimal("998.50")
        assert Decimal(funded_treasury.token_reserve) == Decimal("99850")
        assert Decimal(funded_treasury.total_distributed) == Decimal("1.50")

    def test_reserve_shortfall_leaves_balances_unchanged(self, db):
        account = treasury.ensure_treasury_account(db)
        with ledger_transaction(db) as ledger:
            ledger.deposit("10.00", "0.01", deposited_by="owner@example.com")  # 1000 tokens
        db.refresh(account)
        before = _balances(account)

        with ledger_transaction(db) as ledger:
            result = ledger.distribute("1500", "15.00", "too much")

        db.refresh(account)
        assert not result.success
        assert "Insufficient token reserve" in result.error
        assert _balances(account) == before
        assert Decimal(account.token_reserve) == Decimal("1000")
        assert db.query(ReserveTransaction).filter_by(transaction_type="distribution").count() == 0

    def test_minimum_balance_is_kept(self, db):
        account = treasury.ensure_treasury_account(db)
        with ledger_transaction(db) as ledger:
            ledger.deposit("10.00", "0.01", deposited_by="owner@example.com")

        with ledger_transaction(db) as ledger:
            result = ledger.distribute("950", "9.50", "leaves 0.50")

        assert not result.success
        assert "minimum threshold" in result.error
        db.refresh(account)
        assert Decimal(account.available_funding) == Decimal("10.00")

    def test_custom_policy(self, db, funded_treasury):
        strict = TreasuryPolicy(minimum_balance=Decimal("999.00"))
        with ledger_transaction(db, policy=strict) as ledger:
            assert ledger.check_distribution(Decimal("200"), Decimal("2.00")) is not None
            assert ledger.check_distribution(Decimal("100"), Decimal("1.00")) is None

    def test_exception_rolls_back_whole_unit(self, db, funded_treasury):
        with pytest.raises(RuntimeError):
            with ledger_transaction(db) as ledger:
                ledger.distribute("100", "1.00", "rolled back")
                raise RuntimeError("boom")

        db.refresh(funded_treasury)
        assert Decimal(funded_treasury.available_funding) == Decimal("1000.00")
        assert db.query(ReserveTransaction).count() == 1


class TestAudit:
    def test_replay_matches_live_balance(self, db, funded_treasury):
        with ledger_transaction(db) as ledger:
            ledger.distribute("300", "3.00", "a")
            ledger.distribute("1200", "12.00", "b")
            ledger.refund("200", "2.00", "refund b")
            ledger.adjust("-50", "-0.50", "correction")
            ledger.deposit("20.00", "0.02", deposited_by="owner@example.com")

        db.refresh(funded_treasury)
        report = treasury.audit(db, funded_treasury)
        assert report.consistent, report.problems
        assert report.transactions == 6
        assert report.replayed_balance == Decimal(funded_treasury.available_funding)
        assert report.last_balance_after == report.live_available_funding
        assert report.replayed_token_reserve == Decimal(funded_treasury.token_reserve)

    def test_drift_is_reported(self, db, funded_treasury):
        funded_treasury.available_funding = Decimal("5.00")
        db.commit()
        report = treasury.audit(db, funded_treasury)
        assert not report.consistent
        assert report.problems


class TestReadSide:
    def test_stats_and_status(self, db, funded_treasury):
        with ledger_transaction(db) as ledger:
            ledger.distribute("25000", "250.00", "big")
        db.refresh(funded_treasury)

        s = treasury.stats(funded_treasury)
        assert s.liability_ratio == Decimal("0.2500")
        assert s.is_healthy
        status = treasury.funding_status(funded_treasury)
        assert status["can_distribute_rewards"] is True
        assert status["current_balance"] == Decimal("750.00")

    @pytest.mark.parametrize("available,expected", [("10.00", "critical"), ("60.00", "warning"), ("500.00", "healthy")])
    def test_health_levels(self, db, available, expected):
        account = treasury.ensure_treasury_account(db)
        account.available_funding = Decimal(available)
        assert treasury.health(account).status == expected

    def test_estimated_funding_days(self, db, funded_treasury):
        assert treasury.estimated_funding_days(db, funded_treasury)["estimated_days"] is None
        with ledger_transaction(db) as ledger:
            ledger.distribute("1000", "10.00", "day one")
        db.refresh(funded_treasury)

        estimate = treasury.estimated_funding_days(db, funded_treasury, now=utcnow() + timedelta(minutes=1))
        assert estimate["based_on_daily_average"] == Decimal("10.00")
        assert estimate["estimated_days"] == 99
        assert estimate["confidence"] == "low"

    def test_reconcile_onchain(self, db, funded_treasury):
        covered = treasury.reconcile_onchain(funded_treasury, "100000")
        assert covered["covered"] and covered["drift"] == Decimal("0")
        short = treasury.reconcile_onchain(funded_treasury, "90000")
        assert not short["covered"]
        assert short["drift"] == Decimal("-10000")

    def test_funding_history(self, db, funded_treasury):
        deposits = treasury.funding_history(db, funded_treasury.id)
        assert len(deposits) == 1
        assert Decimal(deposits[0].deposit_amount) == Decimal("1000.00")
