# rewardledger/services/checkin.py
"""
Daily check-in.

Keyed by (user_id, checkin_date) in UTC. The pre-check gives a friendly
message; uq_daily_checkin_user_date is what actually prevents two check-ins
racing on the same day.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import money
from ..config import REWARD_CONFIG, RewardConfig
from ..models import DailyCheckin, Reward, utcnow
from ..pricing import PriceQuote
from . import rewards
from .fraud import Attempt, DeviceInfo, FraudDetector, device_fingerprint, record_fraud_log
from .treasury import TreasuryLedger


@dataclass
class CheckinResult:
    success: bool
    message: str
    token_amount: Decimal = money.ZERO_TOKENS
    cash_value: Decimal = money.ZERO_USD
    streak_count: int = 0
    risk_score: int = 0
    next_checkin_at: Optional[datetime] = None


def _next_midnight(now: datetime) -> datetime:
    return datetime.combine(now.date() + timedelta(days=1), datetime.min.time())


def _checkin_on(db: Session, user_id: int, day: date) -> Optional[DailyCheckin]:
    return db.execute(
        select(DailyCheckin).where(DailyCheckin.user_id == user_id, DailyCheckin.checkin_date == day)
    ).scalar_one_or_none()


def streak_for(db: Session, user_id: int, day: date, config: RewardConfig = REWARD_CONFIG) -> int:
    """Streak a check-in on `day` would have: yesterday's streak + 1, else 1."""
    yesterday = _checkin_on(db, user_id, day - timedelta(days=1))
    if yesterday is None:
        return 1
    return min((yesterday.streak_count or 1) + 1, config.max_checkin_streak)


def process_checkin(db: Session, ledger: TreasuryLedger, detector: FraudDetector, quote: PriceQuote, *,
                    user_id: int, ip_address: str, user_agent: str,
                    device: Optional[DeviceInfo] = None, now: Optional[datetime] = None) -> CheckinResult:
    now = now or utcnow()
    today = now.date()

    if _checkin_on(db, user_id, today) is not None:
        return CheckinResult(
            success=False,
            message="You have already checked in today. Come back tomorrow!",
            next_checkin_at=_next_midnight(now),
        )

    fingerprint = device_fingerprint(device)
    check = detector.analyze(Attempt(
        user_id=user_id, ip_address=ip_address, user_agent=user_agent,
        device_fingerprint=fingerprint, timestamp=now,
    ))
    if check.risk_score > 0:
        record_fraud_log(
            db, user_id=user_id, event_type="daily_checkin_attempt", check=check,
            ip_address=ip_address, user_agent=user_agent,
            extra={"device_fingerprint": fingerprint, "timestamp": now.isoformat()},
        )
    if check.blocked:
        return CheckinResult(
            success=False,
            message="Check-in temporarily unavailable. Please try again later or contact support.",
            risk_score=check.risk_score,
        )

    streak = streak_for(db, user_id, today)
    toks, cash = rewards.daily_reward(streak, quote)

    checkin = DailyCheckin(
        user_id=user_id,
        checkin_date=today,
        device_fingerprint=fingerprint,
        ip_address=ip_address,
        user_agent=user_agent,
        reward_claimed=True,
        streak_count=streak,
        risk_score=check.risk_score,
    )
    try:
        with db.begin_nested():
            db.add(checkin)
    except IntegrityError:
        return CheckinResult(
            success=False,
            message="You have already checked in today. Come back tomorrow!",
            next_checkin_at=_next_midnight(now),
        )

    result = rewards.issue_reward(
        db, ledger, user_id=user_id, reward_type=rewards.DAILY_CHECKIN,
        token_amount=toks, cash_value=cash, reference_id=today.isoformat(),
        metadata={"streak_count": streak, "risk_score": check.risk_score, "device_fingerprint": fingerprint},
    )
    if not result.success:
        # Undo the check-in row so the user can retry once the treasury is funded.
        db.delete(checkin)
        db.flush()
        return CheckinResult(success=False, message=result.error or "Check-in could not be rewarded",
                             risk_score=check.risk_score)

    logger.info("User {} checked in on {} (streak {}) for {} tokens", user_id, today, streak, toks)
    return CheckinResult(
        success=True,
        message=f"Daily check-in complete! You earned {toks} tokens ({streak} day streak)",
        token_amount=toks,
        cash_value=cash,
        streak_count=streak,
        risk_score=check.risk_score,
        next_checkin_at=_next_midnight(now),
    )


def status(db: Session, user_id: int, quote: PriceQuote, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    today = now.date()
    todays = _checkin_on(db, user_id, today)
    if todays is not None:
        streak = todays.streak_count
        next_streak = streak + 1
        next_at = _next_midnight(now)
    else:
        yesterday = _checkin_on(db, user_id, today - timedelta(days=1))
        streak = yesterday.streak_count if yesterday else 0
        next_streak = streak_for(db, user_id, today)
        next_at = None
    toks, cash = rewards.daily_reward(next_streak, quote)
    return {
        "checked_in_today": todays is not None,
        "streak_count": streak,
        "next_reward": {"token_amount": toks, "cash_value": cash},
        "next_checkin_at": next_at,
    }


def history(db: Session, user_id: int, limit: int = 30) -> List[dict]:
    checkins = db.execute(
        select(DailyCheckin)
        .where(DailyCheckin.user_id == user_id)
        .order_by(DailyCheckin.checkin_date.desc())
        .limit(limit)
    ).scalars().all()
    if not checkins:
        return []
    days = [c.checkin_date.isoformat() for c in checkins]
    paid = {
        r.reference_id: money.tokens(r.token_amount)
        for r in db.execute(
            select(Reward).where(
                Reward.user_id == user_id,
                Reward.reward_type == rewards.DAILY_CHECKIN,
                Reward.reference_id.in_(days),
            )
        ).scalars()
    }
    return [
        {
            "date": c.checkin_date,
            "reward": paid.get(c.checkin_date.isoformat(), money.ZERO_TOKENS),
            "streak_count": c.streak_count,
        }
        for c in checkins
    ]
