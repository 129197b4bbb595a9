# rewardledger/services/mining.py
"""
Mining: passive accrual at a fixed rate, capped per 24h cycle, claimed into
the wallet with a consecutive-day streak bonus.

accrued_tokens() is the only accrual used for crediting. It is computed
here from server wall-clock time at claim time; display-side estimates
live in rewardledger.projection and never feed back into a claim.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional, Tuple

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import money
from ..config import MINING_CONFIG, MiningConfig
from ..models import MiningClaim, MiningSession, Reward, utcnow
from ..pricing import PriceOracle, PriceQuote
from . import wallet as wallets
from .rewards import MINING, streak_multiplier
from .treasury import TreasuryLedger


@dataclass
class MiningClaimResult:
    success: bool
    tokens_claimed: Decimal = money.ZERO_TOKENS
    base_tokens: Decimal = money.ZERO_TOKENS
    streak_bonus: Decimal = money.ZERO_TOKENS
    streak_count: int = 0
    new_balance: Decimal = money.ZERO_TOKENS
    claim_id: Optional[int] = None
    error: Optional[str] = None


def active_session(db: Session, user_id: int, for_update: bool = False) -> Optional[MiningSession]:
    stmt = select(MiningSession).where(MiningSession.user_id == user_id, MiningSession.status == "active")
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt.limit(1)).scalar_one_or_none()


def accrued_tokens(session: MiningSession, now: datetime, config: MiningConfig = MINING_CONFIG) -> Decimal:
    """min(carried + whole elapsed seconds * rate * speed, cycle cap * speed)."""
    elapsed = max(0, int((now - session.last_claim_time).total_seconds()))
    speed = money.to_decimal(session.mining_speed or config.default_speed)
    carried = money.tokens(session.accumulated_tokens or 0)
    total = carried + Decimal(elapsed) * config.tokens_per_second * speed
    cap = config.tokens_per_cycle * speed
    return money.tokens(min(total, cap))


def time_remaining(session: MiningSession, now: datetime) -> int:
    """Seconds until the cycle ends."""
    return max(0, int((session.next_claim_at - now).total_seconds()))


def streak_bonus(session: MiningSession, base_tokens: Decimal, today: date,
                 config: MiningConfig = MINING_CONFIG) -> Tuple[int, Decimal]:
    last = session.last_claim_date
    streak = session.streak_count or 0
    if last is None:
        streak = 1
    elif last == today - timedelta(days=1):
        streak += 1
    elif last != today:
        streak = 1
    else:
        # already claimed today; streak unchanged, no bonus
        return streak, money.ZERO_TOKENS
    multiplier = streak_multiplier(streak, config.streak_multiplier, config.max_streak_multiplier)
    return streak, money.tokens(base_tokens * (multiplier - 1))


def start_mining(db: Session, user_id: int, now: Optional[datetime] = None,
                 config: MiningConfig = MINING_CONFIG) -> dict:
    now = now or utcnow()
    session = active_session(db, user_id)
    if session is None:
        session = MiningSession(
            user_id=user_id,
            start_time=now,
            last_claim_time=now,
            next_claim_at=now + timedelta(seconds=config.cycle_seconds),
            mining_speed=config.default_speed,
            accumulated_tokens=money.ZERO_TOKENS,
            streak_count=0,
            status="active",
        )
        db.add(session)
        try:
            db.commit()
        except IntegrityError:
            # uq_active_mining_session: another request started it first
            db.rollback()
            session = active_session(db, user_id)
        else:
            db.refresh(session)
            logger.info("Started mining session {} for user {}", session.id, user_id)
    return {
        "session": session,
        "time_remaining": time_remaining(session, now),
        "accumulated_tokens": accrued_tokens(session, now, config),
    }


def claim(db: Session, ledger: TreasuryLedger, user_id: int, quote: PriceQuote,
          claim_type: str = "manual", now: Optional[datetime] = None,
          config: MiningConfig = MINING_CONFIG) -> MiningClaimResult:
    now = now or utcnow()
    session = active_session(db, user_id, for_update=True)
    if session is None:
        return MiningClaimResult(success=False, error="No active mining session")

    base = accrued_tokens(session, now, config)
    if base <= 0:
        return MiningClaimResult(success=False, error="No tokens to claim yet")

    streak, bonus = streak_bonus(session, base, now.date(), config)
    total = base + bonus
    cash = PriceOracle.tokens_to_usd(total, quote)

    dist = ledger.distribute(total, cash, f"Mining claim - {claim_type}", "mining_claim", session.id)
    if not dist.success:
        return MiningClaimResult(success=False, error=dist.error or "Insufficient treasury funds")

    w = wallets.credit(db, user_id, total, cash)
    row = MiningClaim(
        user_id=user_id,
        session_id=session.id,
        token_amount=total,
        streak_bonus=bonus,
        claim_type=claim_type,
        claim_time=now,
    )
    db.add(row)
    db.flush()
    db.add(Reward(
        user_id=user_id,
        reward_type=MINING,
        token_amount=total,
        cash_value=cash,
        status="confirmed",
        earned_date=now,
        reference_id=f"mining_claim:{row.id}",
        meta={"session_id": session.id, "streak_count": streak, "claim_type": claim_type},
    ))

    session.last_claim_time = now
    session.last_claim_date = now.date()
    session.streak_count = streak
    session.accumulated_tokens = money.ZERO_TOKENS
    session.next_claim_at = now + timedelta(seconds=config.cycle_seconds)
    session.updated_at = now

    logger.info("User {} claimed {} mining tokens ({} base + {} streak bonus, streak {})",
                user_id, total, base, bonus, streak)
    return MiningClaimResult(
        success=True,
        tokens_claimed=total,
        base_tokens=base,
        streak_bonus=bonus,
        streak_count=streak,
        new_balance=money.tokens(w.token_balance),
        claim_id=row.id,
    )


def auto_claim_expired(db: Session, ledger: TreasuryLedger, quote: PriceQuote,
                       now: Optional[datetime] = None) -> dict:
    """Claim for every active session whose cycle has ended."""
    now = now or utcnow()
    user_ids = db.execute(
        select(MiningSession.user_id)
        .where(MiningSession.status == "active", MiningSession.next_claim_at <= now)
    ).scalars().all()
    claimed, failed = 0, 0
    for uid in user_ids:
        if claim(db, ledger, uid, quote, "auto", now).success:
            claimed += 1
        else:
            failed += 1
    logger.info("Auto-claimed {} expired mining session(s), {} failed", claimed, failed)
    return {"claimed": claimed, "failed": failed}


def mining_stats(db: Session, user_id: int, now: Optional[datetime] = None,
                 config: MiningConfig = MINING_CONFIG) -> dict:
    now = now or utcnow()
    session = active_session(db, user_id)
    if session is None:
        return {
            "session_id": None,
            "accumulated_tokens": money.ZERO_TOKENS,
            "time_remaining": 0,
            "total_claimed_today": money.ZERO_TOKENS,
            "mining_speed": config.default_speed,
            "streak_count": 0,
            "next_streak_bonus": money.ZERO_TOKENS,
            "tokens_per_second": config.tokens_per_second,
            "snapshot_at": now,
            "next_claim_at": None,
        }

    accumulated = accrued_tokens(session, now, config)
    start_of_day = datetime.combine(now.date(), datetime.min.time())
    claimed_today = db.execute(
        select(func.coalesce(func.sum(MiningClaim.token_amount), 0))
        .where(MiningClaim.user_id == user_id, MiningClaim.claim_time >= start_of_day)
    ).scalar_one()
    streak, bonus = streak_bonus(session, accumulated, now.date(), config)
    return {
        "session_id": session.id,
        "accumulated_tokens": accumulated,
        "time_remaining": time_remaining(session, now),
        "total_claimed_today": money.tokens(claimed_today),
        "mining_speed": money.to_decimal(session.mining_speed),
        "streak_count": streak,
        "next_streak_bonus": bonus,
        "tokens_per_second": config.tokens_per_second,
        "snapshot_at": now,
        "next_claim_at": session.next_claim_at,
    }
