# rewardledger/models.py
"""
Ledger tables.

Precision contract: token amounts are Numeric(18, 8), USD amounts
Numeric(10, 2), prices Numeric(20, 12). Every service quantizes to these
scales before writing.

Uniqueness constraints below are the concurrency-safety mechanism for
reward idempotency. They must survive any schema port:

* uq_daily_checkin_user_date   one check-in per user per calendar day
* uq_signup_bonus_per_user     one signup bonus per user (partial index)
* uq_reward_reference          one reward per (user, type, reference_id)
* uq_active_mining_session     one active mining session per user
* wallet_accounts.user_id      one wallet per user
* uq_faucet_wallet             one faucet wallet per (user, currency)
"""
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.sql import func

from .db import Base

TOKEN = Numeric(18, 8)
USD = Numeric(10, 2)
PRICE = Numeric(20, 12)


def utcnow() -> datetime:
    """Naive UTC timestamp; all ledger datetimes are stored as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=True)
    display_name = Column(String)
    role = Column(String, nullable=False, default="employee", server_default="employee")  # business_owner | employee | customer
    referral_code = Column(String, unique=True, index=True)
    referred_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    referral_count = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())


# ---------------------------------------------------------------------------
# Treasury
# ---------------------------------------------------------------------------

class TreasuryAccount(Base):
    __tablename__ = "treasury_accounts"
    id = Column(Integer, primary_key=True, index=True)
    account_name = Column(String, nullable=False, default="Main Treasury")
    total_funding = Column(USD, nullable=False, default=0)
    total_distributed = Column(USD, nullable=False, default=0)
    available_funding = Column(USD, nullable=False, default=0)
    token_reserve = Column(TOKEN, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class FundingDeposit(Base):
    """Immutable record of USD added to the treasury."""
    __tablename__ = "funding_deposits"
    id = Column(Integer, primary_key=True, index=True)
    treasury_account_id = Column(Integer, ForeignKey("treasury_accounts.id"), nullable=False, index=True)
    deposited_by = Column(String, nullable=False)
    deposit_amount = Column(USD, nullable=False)
    tokens_purchased = Column(TOKEN, nullable=False)
    token_price = Column(PRICE, nullable=False)
    price_source = Column(String, nullable=False, default="manual")  # manual | oracle source name
    deposit_method = Column(String, nullable=False, default="manual")  # manual | stripe | bank_transfer | moonshot
    status = Column(String, nullable=False, default="completed")
    external_transaction_id = Column(String)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())


class ReserveTransaction(Base):
    """Append-only audit row snapshotting balances after each treasury mutation."""
    __tablename__ = "reserve_transactions"
    id = Column(Integer, primary_key=True, index=True)
    treasury_account_id = Column(Integer, ForeignKey("treasury_accounts.id"), nullable=False)
    transaction_type = Column(String, nullable=False)  # deposit | distribution | refund | adjustment
    related_entity_type = Column(String)
    related_entity_id = Column(String)
    token_amount = Column(TOKEN, nullable=False)
    cash_value = Column(USD, nullable=False)
    balance_after = Column(USD, nullable=False)
    token_reserve_after = Column(TOKEN, nullable=False)
    description = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("idx_treasury_transactions", "treasury_account_id", "transaction_type"),
    )


class PriceHistory(Base):
    __tablename__ = "price_history"
    id = Column(Integer, primary_key=True, index=True)
    price_usd = Column(PRICE, nullable=False)
    source = Column(String, nullable=False, default="manual")
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


# ---------------------------------------------------------------------------
# Wallets & rewards
# ---------------------------------------------------------------------------

class WalletAccount(Base):
    __tablename__ = "wallet_accounts"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    wallet_address = Column(String)
    token_balance = Column(TOKEN, nullable=False, default=0)
    cash_balance = Column(USD, nullable=False, default=0)
    total_earned = Column(TOKEN, nullable=False, default=0)
    total_redeemed = Column(TOKEN, nullable=False, default=0)
    total_cashed_out = Column(USD, nullable=False, default=0)
    last_activity = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())


class Reward(Base):
    __tablename__ = "rewards"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    reward_type = Column(String, nullable=False)  # signup_bonus | daily_checkin | referral_bonus | job_completion | booking | mining
    token_amount = Column(TOKEN, nullable=False)
    cash_value = Column(USD, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending | confirmed | redeemed
    earned_date = Column(DateTime, nullable=False, default=utcnow)
    redeemed_date = Column(DateTime)
    reference_id = Column(String)
    meta = Column("metadata", JSON)

    __table_args__ = (
        Index("idx_rewards_user_type", "user_id", "reward_type"),
        Index(
            "uq_signup_bonus_per_user", "user_id", "reward_type",
            unique=True,
            postgresql_where=text("reward_type = 'signup_bonus'"),
            sqlite_where=text("reward_type = 'signup_bonus'"),
        ),
        Index(
            "uq_reward_reference", "user_id", "reward_type", "reference_id",
            unique=True,
            postgresql_where=text("reference_id IS NOT NULL"),
            sqlite_where=text("reference_id IS NOT NULL"),
        ),
    )


class DailyCheckin(Base):
    __tablename__ = "daily_checkins"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    checkin_date = Column(Date, nullable=False)
    device_fingerprint = Column(String)
    ip_address = Column(String)
    user_agent = Column(Text)
    reward_claimed = Column(Boolean, nullable=False, default=False)
    streak_count = Column(Integer, nullable=False, default=1)
    risk_score = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "checkin_date", name="uq_daily_checkin_user_date"),
    )


class CashoutRequest(Base):
    __tablename__ = "cashout_requests"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token_amount = Column(TOKEN, nullable=False)
    cash_amount = Column(USD, nullable=False)
    conversion_rate = Column(PRICE, nullable=False)  # USD per token, frozen at request time
    price_source = Column(String, nullable=False, default="manual")  # "fallback" marks a degraded quote
    status = Column(String, nullable=False, default="pending")  # pending | processing | completed | failed | cancelled
    bank_details = Column(Text)  # encrypted JSON
    external_transaction_id = Column(String)
    processed_date = Column(DateTime)
    failure_reason = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())


# ---------------------------------------------------------------------------
# Mining
# ---------------------------------------------------------------------------

class MiningSession(Base):
    __tablename__ = "mining_sessions"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    start_time = Column(DateTime, nullable=False, default=utcnow)
    last_claim_time = Column(DateTime, nullable=False, default=utcnow)
    last_claim_date = Column(Date)
    next_claim_at = Column(DateTime, nullable=False)
    mining_speed = Column(Numeric(6, 2), nullable=False, default=1)
    accumulated_tokens = Column(TOKEN, nullable=False, default=0)
    streak_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="active")
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index(
            "uq_active_mining_session", "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class MiningClaim(Base):
    __tablename__ = "mining_claims"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(Integer, ForeignKey("mining_sessions.id"), nullable=False)
    token_amount = Column(TOKEN, nullable=False)
    streak_bonus = Column(TOKEN, nullable=False, default=0)
    claim_type = Column(String, nullable=False, default="manual")  # auto | manual
    claim_time = Column(DateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Faucet
# ---------------------------------------------------------------------------

class FaucetCurrencyConfig(Base):
    __tablename__ = "faucet_configs"
    id = Column(Integer, primary_key=True, index=True)
    currency = Column(String, unique=True, nullable=False)
    reward_amount = Column(TOKEN, nullable=False)
    claim_interval = Column(Integer, nullable=False, default=3600)
    is_enabled = Column(Boolean, nullable=False, default=True)


class FaucetWallet(Base):
    __tablename__ = "faucet_wallets"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    currency = Column(String, nullable=False)
    payout_address = Column(String)
    total_earned = Column(TOKEN, nullable=False, default=0)
    total_claims = Column(Integer, nullable=False, default=0)
    last_claim_time = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_faucet_wallet"),
    )


class FaucetClaim(Base):
    __tablename__ = "faucet_claims"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    currency = Column(String, nullable=False)
    reward_amount = Column(TOKEN, nullable=False)
    cash_value = Column(Numeric(18, 8), nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending | paid | failed
    ip_address = Column(String, index=True)
    user_agent = Column(Text)
    device_fingerprint = Column(String)
    risk_score = Column(Integer, nullable=False, default=0)
    ad_session_id = Column(String)
    payout_reference = Column(String)
    failure_reason = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


# ---------------------------------------------------------------------------
# Advertising
# ---------------------------------------------------------------------------

class AdImpression(Base):
    __tablename__ = "ad_impressions"
    id = Column(Integer, primary_key=True, index=True)
    placement_id = Column(String, nullable=False)
    network = Column(String, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    session_id = Column(String)
    ip_address = Column(String)
    user_agent = Column(Text)
    is_fallback = Column(Boolean, nullable=False, default=False)
    revenue = Column(Numeric(18, 8), nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AdClick(Base):
    __tablename__ = "ad_clicks"
    id = Column(Integer, primary_key=True, index=True)
    impression_id = Column(Integer, ForeignKey("ad_impressions.id"), nullable=True)
    placement_id = Column(String, nullable=False)
    network = Column(String, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    session_id = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AdCompletion(Base):
    """verified is only ever set by an authenticated network webhook."""
    __tablename__ = "ad_completions"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    impression_id = Column(Integer, ForeignKey("ad_impressions.id"), nullable=False)
    session_id = Column(String, nullable=False, index=True)
    network = Column(String, nullable=False)
    completion_type = Column(String, nullable=False, default="view")  # view | click | conversion
    verified = Column(Boolean, nullable=False, default=False)
    verification_method = Column(String, nullable=False, default="pending_webhook")
    revenue = Column(Numeric(18, 8), nullable=False, default=0)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime)  # set by the one faucet claim it unlocked
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Anti-abuse
# ---------------------------------------------------------------------------

class FraudLog(Base):
    __tablename__ = "fraud_logs"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    event_type = Column(String, nullable=False)
    risk_score = Column(Integer, nullable=False)
    details = Column(JSON, nullable=False)
    ip_address = Column(String)
    user_agent = Column(Text)
    action_taken = Column(String)  # allowed | flagged | requires_verification | blocked
    created_at = Column(DateTime, nullable=False, default=utcnow)
