from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from rewardledger.config import MINING_CONFIG
from rewardledger.models import MiningClaim, MiningSession, Reward
from rewardledger.projection import MiningSnapshot, project
from rewardledger.services import mining
from rewardledger.services import wallet as wallets
from rewardledger.services.treasury import ledger_transaction

T0 = datetime(2026, 5, 1, 9, 0, 0)


def _claim(db, quote, user_id, now, claim_type="manual"):
    with ledger_transaction(db) as ledger:
        return mining.claim(db, ledger, user_id, quote, claim_type, now=now)


def test_claim_after_two_hours_credits_144(db, funded_treasury, make_user, quote):
    user = make_user()
    mining.start_mining(db, user.id, now=T0)

    result = _claim(db, quote, user.id, T0 + timedelta(seconds=7200))

    assert result.success
    assert result.base_tokens == Decimal("144.00000000")
    assert result.streak_bonus == Decimal("0")
    assert result.tokens_claimed == Decimal("144.00000000")
    assert wallets.token_balance(db, user.id) == Decimal("144")
    reward = db.query(Reward).filter_by(user_id=user.id, reward_type="mining").one()
    assert reward.status == "confirmed"


def test_accrual_is_capped_per_cycle(db, make_user):
    user = make_user()
    session = mining.start_mining(db, user.id, now=T0)["session"]

    assert mining.accrued_tokens(session, T0 + timedelta(days=3)) == Decimal("1728")
    session.mining_speed = Decimal("1.50")
    assert mining.accrued_tokens(session, T0 + timedelta(days=3)) == Decimal("2592")
    assert mining.accrued_tokens(session, T0 - timedelta(seconds=30)) == Decimal("0")


def test_start_is_idempotent(db, make_user):
    user = make_user()
    first = mining.start_mining(db, user.id, now=T0)["session"]
    second = mining.start_mining(db, user.id, now=T0 + timedelta(hours=1))
    assert second["session"].id == first.id
    assert second["accumulated_tokens"] == Decimal("72")
    assert db.query(MiningSession).count() == 1


def test_claim_without_session(db, funded_treasury, make_user, quote):
    user = make_user()
    result = _claim(db, quote, user.id, T0)
    assert not result.success
    assert result.error == "No active mining session"


def test_consecutive_day_streak_bonus(db, funded_treasury, make_user, quote):
    user = make_user()
    mining.start_mining(db, user.id, now=T0)
    _claim(db, quote, user.id, T0 + timedelta(hours=1))

    next_day = _claim(db, quote, user.id, T0 + timedelta(days=1, hours=1))
    assert next_day.streak_count == 2
    # 24h of accrual hits the cycle cap; bonus is 10% on top of it
    assert next_day.base_tokens == Decimal("1728")
    assert next_day.streak_bonus == Decimal("172.8")
    assert next_day.tokens_claimed == Decimal("1900.8")

    later = _claim(db, quote, user.id, T0 + timedelta(days=4))
    assert later.streak_count == 1
    assert later.streak_bonus == Decimal("0")


def test_second_claim_same_day_has_no_bonus(db, funded_treasury, make_user, quote):
    user = make_user()
    mining.start_mining(db, user.id, now=T0)
    _claim(db, quote, user.id, T0 + timedelta(hours=1))
    again = _claim(db, quote, user.id, T0 + timedelta(hours=2))
    assert again.streak_count == 1
    assert again.tokens_claimed == Decimal("72")


def test_claim_refused_when_treasury_short(db, make_user, quote):
    from rewardledger.services import treasury

    account = treasury.ensure_treasury_account(db)
    with ledger_transaction(db) as ledger:
        ledger.deposit("2.00", "0.01", deposited_by="owner@example.com")  # 200 tokens
    user = make_user()
    mining.start_mining(db, user.id, now=T0)

    result = _claim(db, quote, user.id, T0 + timedelta(hours=3))  # 216 tokens

    assert not result.success
    assert wallets.token_balance(db, user.id) == Decimal("0")
    assert db.query(MiningClaim).count() == 0
    db.refresh(account)
    assert Decimal(account.token_reserve) == Decimal("200")


def test_auto_claim_only_expired_sessions(db, funded_treasury, make_user, quote):
    ripe, fresh = make_user(), make_user()
    mining.start_mining(db, ripe.id, now=T0)
    mining.start_mining(db, fresh.id, now=T0 + timedelta(hours=20))

    with ledger_transaction(db) as ledger:
        outcome = mining.auto_claim_expired(db, ledger, quote, now=T0 + timedelta(hours=25))

    assert outcome == {"claimed": 1, "failed": 0}
    claim = db.query(MiningClaim).one()
    assert claim.user_id == ripe.id and claim.claim_type == "auto"


def test_status_snapshot_drives_projection(db, make_user):
    user = make_user()
    mining.start_mining(db, user.id, now=T0)
    status = mining.mining_stats(db, user.id, now=T0 + timedelta(seconds=100))
    assert status["accumulated_tokens"] == Decimal("2")

    snap = MiningSnapshot.from_status(status, MINING_CONFIG.tokens_per_cycle)
    shown = project(snap, T0 + timedelta(seconds=160))
    assert shown.estimated_tokens == Decimal("3.2")
    assert not shown.capped
    assert shown.seconds_remaining == 86400 - 160

    capped = project(snap, T0 + timedelta(days=2))
    assert capped.capped and capped.estimated_tokens == Decimal("1728")
    assert capped.seconds_remaining == 0


@pytest.mark.parametrize("offset", [-60, 0])
def test_projection_never_runs_backwards(db, make_user, offset):
    user = make_user()
    mining.start_mining(db, user.id, now=T0)
    status = mining.mining_stats(db, user.id, now=T0 + timedelta(seconds=100))
    snap = MiningSnapshot.from_status(status, MINING_CONFIG.tokens_per_cycle)
    assert project(snap, snap.snapshot_at + timedelta(seconds=offset)).estimated_tokens == Decimal("2")
