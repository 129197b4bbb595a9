from decimal import Decimal

import pytest

from rewardledger.errors import InvalidTransition, NotFound
from rewardledger.models import Reward
from rewardledger.pricing import PriceQuote
from rewardledger.services import rewards, treasury
from rewardledger.services import wallet as wallets
from rewardledger.services.treasury import ledger_transaction


def test_streak_multiplier_is_capped():
    assert rewards.streak_multiplier(1, Decimal("1.1"), Decimal("3.0")) == Decimal("1")
    assert rewards.streak_multiplier(2, Decimal("1.1"), Decimal("3.0")) == Decimal("1.1")
    assert rewards.streak_multiplier(100, Decimal("1.1"), Decimal("3.0")) == Decimal("3.0")


def test_job_completion_amounts(quote):
    toks, cash = rewards.job_completion_reward("500.00", quote)
    # $2.50 base + 1% of $500
    assert toks == Decimal("750")
    assert cash == Decimal("7.50")
    boosted, _ = rewards.job_completion_reward("500.00", quote, performance_rating=5)
    assert boosted == Decimal("1125")


def test_signup_bonus_is_funded_and_credited(db, funded_treasury, make_user, quote):
    user = make_user()
    with ledger_transaction(db) as ledger:
        result = rewards.grant_signup_bonus(db, ledger, user.id, quote)

    assert result.success
    assert result.token_amount == Decimal("500")
    assert result.reward.status == "confirmed"
    assert wallets.token_balance(db, user.id) == Decimal("500")
    db.refresh(funded_treasury)
    assert Decimal(funded_treasury.available_funding) == Decimal("995.00")


def test_signup_bonus_only_once(db, funded_treasury, make_user, quote):
    user = make_user()
    with ledger_transaction(db) as ledger:
        assert rewards.grant_signup_bonus(db, ledger, user.id, quote).success
    with ledger_transaction(db) as ledger:
        again = rewards.grant_signup_bonus(db, ledger, user.id, quote)

    assert again.already_granted
    assert db.query(Reward).filter_by(user_id=user.id, reward_type=rewards.SIGNUP_BONUS).count() == 1
    assert wallets.token_balance(db, user.id) == Decimal("500")
    db.refresh(funded_treasury)
    assert Decimal(funded_treasury.available_funding) == Decimal("995.00")


def test_referral_bonus_once_per_referred_user(db, funded_treasury, make_user, quote):
    referrer = make_user()
    referred = make_user()
    with ledger_transaction(db) as ledger:
        first = rewards.grant_referral_bonus(db, ledger, referrer.id, referred.id, quote)
    with ledger_transaction(db) as ledger:
        second = rewards.grant_referral_bonus(db, ledger, referrer.id, referred.id, quote)

    assert first.success and first.token_amount == Decimal("1000")
    assert second.already_granted
    db.refresh(referrer)
    assert referrer.referral_count == 1


def test_unfunded_signup_bonus_is_deferred_then_confirmed(db, make_user, quote):
    account = treasury.ensure_treasury_account(db)
    user = make_user()
    with ledger_transaction(db) as ledger:
        result = rewards.grant_signup_bonus(db, ledger, user.id, quote)

    assert not result.success and result.deferred
    assert result.reward.status == "pending"
    assert wallets.token_balance(db, user.id) == Decimal("0")

    with ledger_transaction(db) as ledger:
        ledger.deposit("100.00", "0.01", deposited_by="owner@example.com")
    with ledger_transaction(db) as ledger:
        outcome = rewards.confirm_pending_rewards(db, ledger)

    assert outcome == {"confirmed": 1, "still_pending": 0}
    assert wallets.token_balance(db, user.id) == Decimal("500")
    db.refresh(account)
    assert Decimal(account.available_funding) == Decimal("95.00")


def test_job_completion_idempotent_per_job(db, funded_treasury, make_user, quote):
    user = make_user()
    with ledger_transaction(db) as ledger:
        assert rewards.grant_job_completion(db, ledger, user.id, "J-1", "100.00", quote).success
    with ledger_transaction(db) as ledger:
        assert rewards.grant_job_completion(db, ledger, user.id, "J-1", "100.00", quote).already_granted
    with ledger_transaction(db) as ledger:
        assert rewards.grant_job_completion(db, ledger, user.id, "J-2", "100.00", quote).success


def test_booking_reward(db, funded_treasury, make_user, quote):
    user = make_user()
    with ledger_transaction(db) as ledger:
        result = rewards.grant_booking_reward(db, ledger, user.id, "B-9", "250.00", quote)
    assert result.success
    assert result.cash_value == Decimal("5.00")
    assert result.token_amount == Decimal("500")


def test_redeem_only_confirmed(db, funded_treasury, make_user, quote):
    user = make_user()
    with ledger_transaction(db) as ledger:
        reward = rewards.grant_signup_bonus(db, ledger, user.id, quote).reward
    reward_id = reward.id

    redeemed = rewards.redeem_reward(db, reward_id)
    assert redeemed.status == "redeemed"
    assert redeemed.redeemed_date is not None
    with pytest.raises(InvalidTransition):
        rewards.redeem_reward(db, reward_id)
    with pytest.raises(NotFound):
        rewards.redeem_reward(db, 9999)


def test_degraded_quote_still_prices_rewards(db, funded_treasury, make_user):
    user = make_user()
    fallback = PriceQuote(Decimal("0.05"), "fallback")
    assert fallback.degraded
    with ledger_transaction(db) as ledger:
        result = rewards.grant_signup_bonus(db, ledger, user.id, fallback)
    assert result.token_amount == Decimal("100")
    assert result.reward.meta["price_source"] == "fallback"
