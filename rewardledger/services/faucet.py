# rewardledger/services/faucet.py
"""
Crypto faucet: small per-currency rewards on a cooldown.

Every precondition (currency, cooldown, user/IP limits, risk, verified ad)
is evaluated before anything is written. The cooldown is checked under a
row lock on the user's faucet wallet so two concurrent claims serialize.
A verified ad completion pays for exactly one claim; it is spent in the
same transaction as the claim row.
Payout itself is external; claims are recorded pending and moved to paid
or failed afterwards.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import FAUCET_CONFIG, FaucetConfig
from ..errors import InvalidTransition, NotFound, ValidationFailed
from ..models import FaucetClaim, FaucetCurrencyConfig, FaucetWallet, utcnow
from . import advertising

CLAIM_TRANSITIONS = {"pending": {"paid", "failed"}}


@dataclass
class CurrencySettings:
    currency: str
    reward_amount: Decimal
    claim_interval: int
    is_enabled: bool


@dataclass
class FaucetClaimResult:
    success: bool
    claim: Optional[FaucetClaim] = None
    reward_amount: Decimal = Decimal("0")
    cash_value: Decimal = Decimal("0")
    risk_score: int = 0
    next_claim_at: Optional[datetime] = None
    error: Optional[str] = None


def get_faucet_config() -> FaucetConfig:
    """FastAPI dependency; tests swap in their own policy."""
    return FAUCET_CONFIG


def currency_settings(db: Session, currency: str, config: FaucetConfig = FAUCET_CONFIG) -> CurrencySettings:
    currency = currency.upper()
    if currency not in config.currencies:
        raise ValidationFailed(f"Unsupported currency: {currency}")
    row = db.execute(
        select(FaucetCurrencyConfig).where(FaucetCurrencyConfig.currency == currency)
    ).scalar_one_or_none()
    if row is not None:
        return CurrencySettings(currency, Decimal(row.reward_amount), row.claim_interval, row.is_enabled)
    return CurrencySettings(currency, config.default_reward(currency), config.claim_interval, True)


def set_currency_config(db: Session, currency: str, reward_amount, claim_interval: int,
                        is_enabled: bool = True, config: FaucetConfig = FAUCET_CONFIG) -> FaucetCurrencyConfig:
    currency = currency.upper()
    if currency not in config.currencies:
        raise ValidationFailed(f"Unsupported currency: {currency}")
    reward_amount = Decimal(str(reward_amount))
    if reward_amount <= 0 or claim_interval <= 0:
        raise ValidationFailed("Reward amount and claim interval must be > 0")
    row = db.execute(
        select(FaucetCurrencyConfig).where(FaucetCurrencyConfig.currency == currency)
    ).scalar_one_or_none()
    if row is None:
        row = FaucetCurrencyConfig(currency=currency)
        db.add(row)
    row.reward_amount = reward_amount
    row.claim_interval = claim_interval
    row.is_enabled = is_enabled
    db.commit()
    db.refresh(row)
    logger.info("Faucet config for {}: {} every {}s (enabled={})", currency, reward_amount, claim_interval, is_enabled)
    return row


def cash_value(currency: str, amount: Decimal, config: FaucetConfig = FAUCET_CONFIG) -> Decimal:
    rate = config.usd_per_unit.get(currency, Decimal("0"))
    return (amount * rate).quantize(Decimal("0.00000001"))


def _wallet(db: Session, user_id: int, currency: str, for_update: bool = False) -> FaucetWallet:
    stmt = select(FaucetWallet).where(FaucetWallet.user_id == user_id, FaucetWallet.currency == currency)
    if for_update:
        stmt = stmt.with_for_update()
    w = db.execute(stmt).scalar_one_or_none()
    if w is not None:
        return w
    w = FaucetWallet(user_id=user_id, currency=currency, total_earned=0, total_claims=0)
    try:
        with db.begin_nested():
            db.add(w)
    except IntegrityError:
        w = db.execute(stmt).scalar_one()
    return w


def _claims_since(db: Session, since: datetime, *where) -> int:
    return db.execute(
        select(func.count(FaucetClaim.id)).where(FaucetClaim.created_at >= since, *where)
    ).scalar_one()


def risk_score(user_claims_today: int, ip_claims_last_hour: int, config: FaucetConfig = FAUCET_CONFIG) -> int:
    score = 0
    if user_claims_today > 10:
        score += 30
    if user_claims_today > 20:
        score += 40
    if ip_claims_last_hour >= config.abuse.max_claims_per_ip_per_hour:
        score += 50
    return min(score, 100)


def claim(db: Session, *, user_id: int, currency: str, ip_address: str, user_agent: str = "",
          device_fingerprint: Optional[str] = None, ad_session_id: Optional[str] = None,
          now: Optional[datetime] = None, config: FaucetConfig = FAUCET_CONFIG) -> FaucetClaimResult:
    now = now or utcnow()
    settings = currency_settings(db, currency, config)
    if not settings.is_enabled:
        return FaucetClaimResult(success=False, error=f"{settings.currency} faucet is disabled")

    try:
        wallet = _wallet(db, user_id, settings.currency, for_update=True)
        if wallet.last_claim_time is not None:
            ready_at = wallet.last_claim_time + timedelta(seconds=settings.claim_interval)
            if now < ready_at:
                db.rollback()
                return FaucetClaimResult(success=False, next_claim_at=ready_at,
                                         error="Claim cooldown has not elapsed")

        user_today = _claims_since(db, now - timedelta(days=1), FaucetClaim.user_id == user_id)
        if user_today >= config.abuse.max_claims_per_user_per_day:
            db.rollback()
            return FaucetClaimResult(success=False, error="Daily claim limit reached")

        ip_hour = _claims_since(db, now - timedelta(hours=1), FaucetClaim.ip_address == ip_address)
        score = risk_score(user_today, ip_hour, config)
        if ip_hour >= config.abuse.max_claims_per_ip_per_hour:
            db.rollback()
            return FaucetClaimResult(success=False, risk_score=score,
                                     error="Too many claims from this IP address")
        if score > config.abuse.risk_score_threshold:
            db.rollback()
            logger.warning("Faucet claim blocked for user {} (risk {})", user_id, score)
            return FaucetClaimResult(success=False, risk_score=score, error="Claim blocked by risk checks")

        if config.require_ad_completion:
            if not ad_session_id or not advertising.consume_completion(db, user_id, ad_session_id, now):
                db.rollback()
                return FaucetClaimResult(success=False, risk_score=score,
                                         error="A verified ad completion is required")

        value = cash_value(settings.currency, settings.reward_amount, config)
        row = FaucetClaim(
            user_id=user_id,
            currency=settings.currency,
            reward_amount=settings.reward_amount,
            cash_value=value,
            status="pending",
            ip_address=ip_address,
            user_agent=user_agent,
            device_fingerprint=device_fingerprint,
            risk_score=score,
            ad_session_id=ad_session_id,
            created_at=now,
        )
        db.add(row)
        wallet.last_claim_time = now
        wallet.total_claims = (wallet.total_claims or 0) + 1
        wallet.total_earned = Decimal(wallet.total_earned or 0) + settings.reward_amount
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(row)
    logger.info("Faucet claim {} by user {}: {} {} (risk {})",
                row.id, user_id, settings.reward_amount, settings.currency, score)
    return FaucetClaimResult(
        success=True,
        claim=row,
        reward_amount=settings.reward_amount,
        cash_value=value,
        risk_score=score,
        next_claim_at=now + timedelta(seconds=settings.claim_interval),
    )


def update_claim_status(db: Session, claim_id: int, target: str, payout_reference: Optional[str] = None,
                        failure_reason: Optional[str] = None) -> FaucetClaim:
    row = db.get(FaucetClaim, claim_id)
    if row is None:
        raise NotFound("Faucet claim not found")
    if target not in CLAIM_TRANSITIONS.get(row.status, set()):
        raise InvalidTransition("faucet claim", row.status, target)
    row.status = target
    if target == "paid":
        row.payout_reference = payout_reference
    else:
        row.failure_reason = failure_reason
    db.commit()
    db.refresh(row)
    logger.info("Faucet claim {} marked {}", row.id, target)
    return row


def set_payout_address(db: Session, user_id: int, currency: str, address: str,
                       config: FaucetConfig = FAUCET_CONFIG) -> FaucetWallet:
    currency = currency.upper()
    if currency not in config.currencies:
        raise ValidationFailed(f"Unsupported currency: {currency}")
    if len(address.strip()) < 10:
        raise ValidationFailed("Invalid payout address")
    w = _wallet(db, user_id, currency)
    w.payout_address = address.strip()
    db.commit()
    db.refresh(w)
    return w


def status(db: Session, user_id: int, now: Optional[datetime] = None, config: FaucetConfig = FAUCET_CONFIG) -> dict:
    now = now or utcnow()
    wallets = {
        w.currency: w
        for w in db.execute(select(FaucetWallet).where(FaucetWallet.user_id == user_id)).scalars()
    }
    currencies = []
    for cur in config.currencies:
        settings = currency_settings(db, cur, config)
        w = wallets.get(cur)
        next_at = None
        if w is not None and w.last_claim_time is not None:
            ready = w.last_claim_time + timedelta(seconds=settings.claim_interval)
            if ready > now:
                next_at = ready
        currencies.append({
            "currency": cur,
            "reward_amount": settings.reward_amount,
            "cash_value": cash_value(cur, settings.reward_amount, config),
            "claim_interval": settings.claim_interval,
            "enabled": settings.is_enabled,
            "can_claim": settings.is_enabled and next_at is None,
            "next_claim_at": next_at,
            "payout_address": w.payout_address if w else None,
            "total_earned": Decimal(w.total_earned) if w else Decimal("0"),
            "total_claims": w.total_claims if w else 0,
        })
    claims_today = _claims_since(db, now - timedelta(days=1), FaucetClaim.user_id == user_id)
    return {
        "mode": config.mode,
        "require_ad_completion": config.require_ad_completion,
        "claims_today": claims_today,
        "daily_limit": config.abuse.max_claims_per_user_per_day,
        "currencies": currencies,
    }
