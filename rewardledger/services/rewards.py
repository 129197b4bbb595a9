# rewardledger/services/rewards.py
"""
Reward issuance.

A reward row is inserted (inside a savepoint) before any money moves, so
the unique indexes on rewards reject a duplicate grant before the treasury
or the wallet is touched. Funded rewards are distributed from the locked
treasury ledger and credited to the wallet in the caller's transaction.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import money
from ..config import REWARD_CONFIG, RewardConfig
from ..errors import InvalidTransition, NotFound, ValidationFailed
from ..models import Reward, User, utcnow
from ..pricing import PriceOracle, PriceQuote
from . import wallet as wallets
from .treasury import TreasuryLedger

SIGNUP_BONUS = "signup_bonus"
DAILY_CHECKIN = "daily_checkin"
REFERRAL_BONUS = "referral_bonus"
JOB_COMPLETION = "job_completion"
BOOKING = "booking"
MINING = "mining"

# Rewards that may be recorded as pending when the treasury cannot fund them yet.
DEFERRABLE = {SIGNUP_BONUS, REFERRAL_BONUS, JOB_COMPLETION, BOOKING}


@dataclass
class RewardResult:
    success: bool
    reward: Optional[Reward] = None
    token_amount: Decimal = money.ZERO_TOKENS
    cash_value: Decimal = money.ZERO_USD
    deferred: bool = False
    already_granted: bool = False
    error: Optional[str] = None


def streak_multiplier(streak: int, per_day: Decimal, cap: Decimal) -> Decimal:
    """per_day ** (streak - 1), capped."""
    if streak < 1:
        streak = 1
    return min(per_day ** (streak - 1), cap)


def daily_reward(streak: int, quote: PriceQuote, config: RewardConfig = REWARD_CONFIG) -> tuple:
    toks = money.tokens(
        config.daily_checkin_tokens * streak_multiplier(streak, config.streak_multiplier, config.max_streak_multiplier)
    )
    return toks, PriceOracle.tokens_to_usd(toks, quote)


def job_completion_reward(job_value_usd, quote: PriceQuote, performance_rating: Optional[int] = None,
                          config: RewardConfig = REWARD_CONFIG) -> tuple:
    job_value_usd = money.usd(job_value_usd)
    if job_value_usd < 0:
        raise ValidationFailed("Job value cannot be negative")
    toks = PriceOracle.usd_to_tokens(config.job_completion_usd, quote)
    toks += PriceOracle.usd_to_tokens(job_value_usd * config.job_value_bonus_percentage, quote)
    if performance_rating is not None and performance_rating >= 5:
        toks = money.tokens(toks * config.performance_multiplier)
    return toks, PriceOracle.tokens_to_usd(toks, quote)


def booking_reward(job_value_usd, quote: PriceQuote, config: RewardConfig = REWARD_CONFIG) -> tuple:
    job_value_usd = money.usd(job_value_usd)
    if job_value_usd <= 0:
        raise ValidationFailed("Booking value must be > 0")
    cash = money.usd(job_value_usd * config.booking_reward_percentage)
    return PriceOracle.usd_to_tokens(cash, quote), cash


def issue_reward(db: Session, ledger: TreasuryLedger, *, user_id: int, reward_type: str,
                 token_amount, cash_value, reference_id: Optional[str] = None,
                 metadata: Optional[dict] = None) -> RewardResult:
    token_amount = money.tokens(token_amount)
    cash_value = money.usd(cash_value)
    if token_amount <= 0:
        raise ValidationFailed("Reward amount must be > 0")

    reason = ledger.check_distribution(token_amount, cash_value)
    if reason and reward_type not in DEFERRABLE:
        logger.warning("{} reward for user {} refused: {}", reward_type, user_id, reason)
        return RewardResult(success=False, error=reason)

    reward = Reward(
        user_id=user_id,
        reward_type=reward_type,
        token_amount=token_amount,
        cash_value=cash_value,
        status="pending",
        reference_id=reference_id,
        meta=metadata,
    )
    try:
        with db.begin_nested():
            db.add(reward)
    except IntegrityError:
        logger.info("{} reward for user {} ({}) already granted", reward_type, user_id, reference_id)
        return RewardResult(success=False, already_granted=True, error="Reward already granted")

    if reason:
        logger.warning("{} reward {} for user {} left pending: {}", reward_type, reward.id, user_id, reason)
        return RewardResult(success=False, reward=reward, token_amount=token_amount,
                            cash_value=cash_value, deferred=True, error=reason)

    _fund(db, ledger, reward)
    return RewardResult(success=True, reward=reward, token_amount=token_amount, cash_value=cash_value)


def _fund(db: Session, ledger: TreasuryLedger, reward: Reward) -> bool:
    dist = ledger.distribute(
        reward.token_amount, reward.cash_value,
        f"{reward.reward_type} reward for user {reward.user_id}",
        "reward", reward.id,
    )
    if not dist.success:
        return False
    reward.status = "confirmed"
    wallets.credit(db, reward.user_id, reward.token_amount, reward.cash_value)
    return True


def grant_signup_bonus(db: Session, ledger: TreasuryLedger, user_id: int, quote: PriceQuote,
                       config: RewardConfig = REWARD_CONFIG) -> RewardResult:
    toks = PriceOracle.usd_to_tokens(config.signup_bonus_usd, quote)
    return issue_reward(
        db, ledger, user_id=user_id, reward_type=SIGNUP_BONUS,
        token_amount=toks, cash_value=config.signup_bonus_usd,
        metadata={"price": str(quote.price), "price_source": quote.source},
    )


def grant_referral_bonus(db: Session, ledger: TreasuryLedger, referrer_id: int, referred_user_id: int,
                         quote: PriceQuote, config: RewardConfig = REWARD_CONFIG) -> RewardResult:
    toks = PriceOracle.usd_to_tokens(config.referral_bonus_usd, quote)
    result = issue_reward(
        db, ledger, user_id=referrer_id, reward_type=REFERRAL_BONUS,
        token_amount=toks, cash_value=config.referral_bonus_usd,
        reference_id=f"user:{referred_user_id}",
        metadata={"referred_user_id": referred_user_id},
    )
    if result.reward is not None:
        db.execute(
            update(User)
            .where(User.id == referrer_id)
            .values(referral_count=User.referral_count + 1)
            .execution_options(synchronize_session=False)
        )
    return result


def grant_job_completion(db: Session, ledger: TreasuryLedger, user_id: int, job_id: str, job_value_usd,
                         quote: PriceQuote, performance_rating: Optional[int] = None) -> RewardResult:
    toks, cash = job_completion_reward(job_value_usd, quote, performance_rating)
    return issue_reward(
        db, ledger, user_id=user_id, reward_type=JOB_COMPLETION,
        token_amount=toks, cash_value=cash, reference_id=f"job:{job_id}",
        metadata={"job_value_usd": str(job_value_usd), "performance_rating": performance_rating},
    )


def grant_booking_reward(db: Session, ledger: TreasuryLedger, user_id: int, booking_id: str, job_value_usd,
                         quote: PriceQuote) -> RewardResult:
    toks, cash = booking_reward(job_value_usd, quote)
    return issue_reward(
        db, ledger, user_id=user_id, reward_type=BOOKING,
        token_amount=toks, cash_value=cash, reference_id=f"booking:{booking_id}",
        metadata={"job_value_usd": str(job_value_usd)},
    )


def confirm_pending_rewards(db: Session, ledger: TreasuryLedger, limit: int = 100) -> dict:
    """pending -> confirmed for every deferred reward the treasury can now fund."""
    pending = db.execute(
        select(Reward).where(Reward.status == "pending").order_by(Reward.id).limit(limit)
    ).scalars().all()
    confirmed, skipped = 0, 0
    for reward in pending:
        if _fund(db, ledger, reward):
            confirmed += 1
        else:
            skipped += 1
    logger.info("Confirmed {} pending reward(s), {} still unfunded", confirmed, skipped)
    return {"confirmed": confirmed, "still_pending": skipped}


def redeem_reward(db: Session, reward_id: int) -> Reward:
    reward = db.get(Reward, reward_id)
    if reward is None:
        raise NotFound("Reward not found")
    if reward.status != "confirmed":
        raise InvalidTransition("reward", reward.status, "redeemed")
    reward.status = "redeemed"
    reward.redeemed_date = utcnow()
    db.commit()
    db.refresh(reward)
    return reward


def history(db: Session, user_id: int, limit: int = 50) -> List[Reward]:
    return list(db.execute(
        select(Reward).where(Reward.user_id == user_id).order_by(Reward.id.desc()).limit(limit)
    ).scalars())
