# rewardledger/services/treasury.py
"""
Treasury ledger.

All mutations go through a TreasuryLedger obtained from ledger_transaction(),
which row-locks the treasury account for the duration of one database
transaction. Each mutation updates the balance columns and appends the
matching ReserveTransaction in that same transaction, so the audit trail
and the live balances commit or roll back together.
"""
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterator, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import money
from ..config import TREASURY_POLICY, TreasuryPolicy
from ..errors import NotFound, ValidationFailed
from ..models import FundingDeposit, ReserveTransaction, TreasuryAccount, utcnow


@dataclass
class DistributionResult:
    success: bool
    tokens_distributed: Decimal = money.ZERO_TOKENS
    cash_value: Decimal = money.ZERO_USD
    remaining_balance: Decimal = money.ZERO_USD
    transaction_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class TreasuryStats:
    total_funding: Decimal
    total_distributed: Decimal
    available_funding: Decimal
    token_reserve: Decimal
    liability_ratio: Decimal
    is_healthy: bool


@dataclass
class HealthCheck:
    status: str  # healthy | warning | critical
    message: str
    recommendations: List[str] = field(default_factory=list)


@dataclass
class AuditReport:
    consistent: bool
    transactions: int
    replayed_balance: Decimal
    replayed_token_reserve: Decimal
    last_balance_after: Optional[Decimal]
    live_available_funding: Decimal
    live_token_reserve: Decimal
    problems: List[str] = field(default_factory=list)


class TreasuryLedger:
    """Ledger state for one locked treasury account inside one transaction."""

    def __init__(self, db: Session, account: TreasuryAccount, policy: TreasuryPolicy = TREASURY_POLICY) -> None:
        self.db = db
        self.account = account
        self.policy = policy

    @classmethod
    def lock(cls, db: Session, account_id: Optional[int] = None,
             policy: TreasuryPolicy = TREASURY_POLICY) -> "TreasuryLedger":
        stmt = select(TreasuryAccount).with_for_update()
        if account_id is not None:
            stmt = stmt.where(TreasuryAccount.id == account_id)
        else:
            stmt = (
                stmt.where(TreasuryAccount.is_active.is_(True))
                .order_by(TreasuryAccount.created_at, TreasuryAccount.id)
                .limit(1)
            )
        account = db.execute(stmt).scalar_one_or_none()
        if account is None:
            raise NotFound("No active treasury account found")
        return cls(db, account, policy)

    # -- balances ----------------------------------------------------------

    @property
    def available_funding(self) -> Decimal:
        return money.usd(self.account.available_funding)

    @property
    def token_reserve(self) -> Decimal:
        return money.tokens(self.account.token_reserve)

    def _append(self, transaction_type: str, token_amount: Decimal, cash_value: Decimal,
                description: str, related_entity_type: Optional[str] = None,
                related_entity_id=None) -> ReserveTransaction:
        tx = ReserveTransaction(
            treasury_account_id=self.account.id,
            transaction_type=transaction_type,
            related_entity_type=related_entity_type,
            related_entity_id=str(related_entity_id) if related_entity_id is not None else None,
            token_amount=token_amount,
            cash_value=cash_value,
            balance_after=self.available_funding,
            token_reserve_after=self.token_reserve,
            description=description,
        )
        self.db.add(tx)
        self.db.flush()
        return tx

    # -- mutations ---------------------------------------------------------

    def deposit(self, amount, token_price, deposited_by: str, method: str = "manual",
                notes: Optional[str] = None, external_transaction_id: Optional[str] = None,
                price_source: str = "manual") -> FundingDeposit:
        amount = money.usd(amount)
        token_price = money.price(token_price)
        if amount <= 0:
            raise ValidationFailed("Deposit amount must be > 0")
        if token_price <= 0:
            raise ValidationFailed("Token price must be > 0")

        tokens_purchased = money.tokens(amount / token_price)

        deposit = FundingDeposit(
            treasury_account_id=self.account.id,
            deposited_by=deposited_by,
            deposit_amount=amount,
            tokens_purchased=tokens_purchased,
            token_price=token_price,
            price_source=price_source,
            deposit_method=method,
            status="completed",
            external_transaction_id=external_transaction_id,
            notes=notes,
        )
        self.db.add(deposit)
        self.db.flush()

        self.account.total_funding = money.usd(self.account.total_funding) + amount
        self.account.available_funding = self.available_funding + amount
        self.account.token_reserve = self.token_reserve + tokens_purchased
        self.account.updated_at = utcnow()

        self._append(
            "deposit", tokens_purchased, amount,
            f"Funding deposit: ${amount} ({tokens_purchased} tokens)",
            "funding_deposit", deposit.id,
        )
        logger.info(
            "Treasury {} deposit ${} -> {} tokens @ {} (available ${}, reserve {})",
            self.account.id, amount, tokens_purchased, token_price,
            self.available_funding, self.token_reserve,
        )
        return deposit

    def check_distribution(self, token_amount: Decimal, cash_value: Decimal) -> Optional[str]:
        """Return the reason a distribution must be refused, or None."""
        if token_amount > self.token_reserve:
            return (f"Insufficient token reserve. Required: {token_amount} tokens, "
                    f"Available: {self.token_reserve} tokens")
        if cash_value > self.available_funding:
            return (f"Insufficient funding. Required: ${cash_value}, "
                    f"Available: ${self.available_funding}")
        remaining = self.available_funding - cash_value
        if remaining < self.policy.minimum_balance:
            return (f"Distribution would leave balance below minimum threshold "
                    f"(${self.policy.minimum_balance}). Remaining would be: ${remaining}")
        return None

    def distribute(self, token_amount, cash_value, description: str,
                   related_entity_type: Optional[str] = None, related_entity_id=None) -> DistributionResult:
        token_amount = money.tokens(token_amount)
        cash_value = money.usd(cash_value)
        if token_amount <= 0:
            raise ValidationFailed("Distribution amount must be > 0")
        if cash_value < 0:
            raise ValidationFailed("Cash value cannot be negative")

        reason = self.check_distribution(token_amount, cash_value)
        if reason:
            logger.warning("Treasury {} refused distribution of {} tokens: {}",
                           self.account.id, token_amount, reason)
            return DistributionResult(success=False, remaining_balance=self.available_funding, error=reason)

        self.account.available_funding = self.available_funding - cash_value
        self.account.token_reserve = self.token_reserve - token_amount
        self.account.total_distributed = money.usd(self.account.total_distributed) + cash_value
        self.account.updated_at = utcnow()

        tx = self._append("distribution", token_amount, cash_value, description,
                          related_entity_type, related_entity_id)
        logger.info("Treasury {} distributed {} tokens (${}) for {} {}; available ${}, reserve {}",
                    self.account.id, token_amount, cash_value, related_entity_type,
                    related_entity_id, self.available_funding, self.token_reserve)
        return DistributionResult(
            success=True,
            tokens_distributed=token_amount,
            cash_value=cash_value,
            remaining_balance=self.available_funding,
            transaction_id=tx.id,
        )

    def refund(self, token_amount, cash_value, description: str,
               related_entity_type: Optional[str] = None, related_entity_id=None) -> ReserveTransaction:
        """Return previously distributed tokens to the reserve."""
        token_amount = money.tokens(token_amount)
        cash_value = money.usd(cash_value)
        if token_amount <= 0 or cash_value < 0:
            raise ValidationFailed("Refund amounts must be positive")
        if cash_value > money.usd(self.account.total_distributed):
            raise ValidationFailed("Refund exceeds total distributed")

        self.account.available_funding = self.available_funding + cash_value
        self.account.token_reserve = self.token_reserve + token_amount
        self.account.total_distributed = money.usd(self.account.total_distributed) - cash_value
        self.account.updated_at = utcnow()

        tx = self._append("refund", token_amount, cash_value, description,
                          related_entity_type, related_entity_id)
        logger.info("Treasury {} refund of {} tokens (${})", self.account.id, token_amount, cash_value)
        return tx

    def adjust(self, token_delta, cash_delta, description: str) -> ReserveTransaction:
        """Signed administrative correction applied to funding and reserve."""
        token_delta = money.tokens(token_delta)
        cash_delta = money.usd(cash_delta)
        if token_delta == 0 and cash_delta == 0:
            raise ValidationFailed("Adjustment must change something")
        if self.token_reserve + token_delta < 0:
            raise ValidationFailed("Adjustment would make the token reserve negative")
        if self.available_funding + cash_delta < 0:
            raise ValidationFailed("Adjustment would make available funding negative")

        self.account.total_funding = money.usd(self.account.total_funding) + cash_delta
        self.account.available_funding = self.available_funding + cash_delta
        self.account.token_reserve = self.token_reserve + token_delta
        self.account.updated_at = utcnow()

        tx = self._append("adjustment", token_delta, cash_delta, description, "adjustment", None)
        logger.info("Treasury {} adjustment tokens {} cash ${}", self.account.id, token_delta, cash_delta)
        return tx


@contextmanager
def ledger_transaction(db: Session, account_id: Optional[int] = None,
                       policy: TreasuryPolicy = TREASURY_POLICY) -> Iterator[TreasuryLedger]:
    """Lock the treasury row, yield the ledger, commit or roll back as one unit."""
    try:
        ledger = TreasuryLedger.lock(db, account_id, policy)
        yield ledger
        db.commit()
    except Exception:
        db.rollback()
        raise


def ensure_treasury_account(db: Session, name: str = "Main Treasury") -> TreasuryAccount:
    account = db.execute(
        select(TreasuryAccount)
        .where(TreasuryAccount.is_active.is_(True))
        .order_by(TreasuryAccount.created_at, TreasuryAccount.id)
        .limit(1)
    ).scalar_one_or_none()
    if account is not None:
        return account
    account = TreasuryAccount(
        account_name=name,
        total_funding=money.ZERO_USD,
        total_distributed=money.ZERO_USD,
        available_funding=money.ZERO_USD,
        token_reserve=money.ZERO_TOKENS,
        is_active=True,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info("Created treasury account {} ({})", account.id, name)
    return account


def get_account(db: Session, account_id: Optional[int] = None) -> TreasuryAccount:
    if account_id is not None:
        account = db.get(TreasuryAccount, account_id)
    else:
        account = db.execute(
            select(TreasuryAccount)
            .where(TreasuryAccount.is_active.is_(True))
            .order_by(TreasuryAccount.created_at, TreasuryAccount.id)
            .limit(1)
        ).scalar_one_or_none()
    if account is None:
        raise NotFound("No active treasury account found")
    return account


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

def stats(account: TreasuryAccount, policy: TreasuryPolicy = TREASURY_POLICY) -> TreasuryStats:
    total_funding = money.usd(account.total_funding)
    total_distributed = money.usd(account.total_distributed)
    available = money.usd(account.available_funding)
    ratio = (total_distributed / total_funding).quantize(Decimal("0.0001")) if total_funding > 0 else Decimal("0")
    return TreasuryStats(
        total_funding=total_funding,
        total_distributed=total_distributed,
        available_funding=available,
        token_reserve=money.tokens(account.token_reserve),
        liability_ratio=ratio,
        is_healthy=available >= policy.minimum_balance,
    )


def health(account: TreasuryAccount, policy: TreasuryPolicy = TREASURY_POLICY) -> HealthCheck:
    available = money.usd(account.available_funding)
    if available < policy.critical_threshold:
        return HealthCheck(
            status="critical",
            message=f"Treasury balance critically low: ${available}",
            recommendations=[
                "Deposit funds immediately to continue reward distributions",
                "Consider temporarily disabling signup bonuses to preserve funds",
                "Review and optimize reward amounts if necessary",
            ],
        )
    if available < policy.warning_threshold:
        return HealthCheck(
            status="warning",
            message=f"Treasury balance is low: ${available}",
            recommendations=[
                "Plan to deposit additional funds soon",
                "Monitor daily distribution rates closely",
            ],
        )
    return HealthCheck(
        status="healthy",
        message=f"Treasury is well-funded: ${available} available",
        recommendations=["Continue monitoring treasury balance regularly"],
    )


def funding_status(account: TreasuryAccount, policy: TreasuryPolicy = TREASURY_POLICY) -> dict:
    available = money.usd(account.available_funding)
    return {
        "can_distribute_rewards": available >= policy.minimum_balance,
        "current_balance": available,
        "minimum_balance": policy.minimum_balance,
        "warning_threshold": policy.warning_threshold,
    }


def recent_transactions(db: Session, account_id: int, limit: int = 50) -> List[ReserveTransaction]:
    return list(db.execute(
        select(ReserveTransaction)
        .where(ReserveTransaction.treasury_account_id == account_id)
        .order_by(ReserveTransaction.id.desc())
        .limit(limit)
    ).scalars())


def funding_history(db: Session, account_id: int) -> List[FundingDeposit]:
    return list(db.execute(
        select(FundingDeposit)
        .where(FundingDeposit.treasury_account_id == account_id)
        .order_by(FundingDeposit.id.desc())
    ).scalars())


def estimated_funding_days(db: Session, account: TreasuryAccount, now: Optional[datetime] = None) -> dict:
    """Days of runway at the average daily distribution of the last 30 days."""
    now = now or utcnow()
    since = now - timedelta(days=30)
    rows = db.execute(
        select(ReserveTransaction)
        .where(
            ReserveTransaction.treasury_account_id == account.id,
            ReserveTransaction.transaction_type == "distribution",
            ReserveTransaction.created_at >= since,
        )
    ).scalars().all()

    if not rows:
        return {"estimated_days": None, "based_on_daily_average": money.ZERO_USD, "confidence": "low"}

    total = sum((money.usd(r.cash_value) for r in rows), Decimal("0"))
    active_days = len({r.created_at.date() for r in rows})
    daily_average = money.usd(total / max(1, active_days))
    confidence = "high" if len(rows) > 10 else "medium" if len(rows) > 5 else "low"

    available = money.usd(account.available_funding)
    days = int(available / daily_average) if daily_average > 0 else None
    return {"estimated_days": days, "based_on_daily_average": daily_average, "confidence": confidence}


def audit(db: Session, account: TreasuryAccount) -> AuditReport:
    """Replay the reserve transactions and compare them to the live balances."""
    rows = db.execute(
        select(ReserveTransaction)
        .where(ReserveTransaction.treasury_account_id == account.id)
        .order_by(ReserveTransaction.id)
    ).scalars().all()

    balance = money.ZERO_USD
    reserve = money.ZERO_TOKENS
    problems: List[str] = []
    for r in rows:
        cash = money.usd(r.cash_value)
        toks = money.tokens(r.token_amount)
        if r.transaction_type == "distribution":
            balance -= cash
            reserve -= toks
        else:
            # deposit, refund and signed adjustment all add
            balance += cash
            reserve += toks
        if balance != money.usd(r.balance_after):
            problems.append(f"transaction {r.id}: replayed ${balance} != balance_after ${money.usd(r.balance_after)}")
        if reserve != money.tokens(r.token_reserve_after):
            problems.append(f"transaction {r.id}: replayed reserve {reserve} != {money.tokens(r.token_reserve_after)}")

    live_available = money.usd(account.available_funding)
    live_reserve = money.tokens(account.token_reserve)
    last_after = money.usd(rows[-1].balance_after) if rows else None

    if balance != live_available:
        problems.append(f"replayed balance ${balance} != live available ${live_available}")
    if reserve != live_reserve:
        problems.append(f"replayed reserve {reserve} != live reserve {live_reserve}")
    expected_available = money.usd(account.total_funding) - money.usd(account.total_distributed)
    if expected_available != live_available:
        problems.append(f"total_funding - total_distributed = ${expected_available} != available ${live_available}")

    if problems:
        logger.error("Treasury {} audit found {} problem(s)", account.id, len(problems))

    return AuditReport(
        consistent=not problems,
        transactions=len(rows),
        replayed_balance=balance,
        replayed_token_reserve=reserve,
        last_balance_after=last_after,
        live_available_funding=live_available,
        live_token_reserve=live_reserve,
        problems=problems,
    )


def reconcile_onchain(account: TreasuryAccount, onchain_tokens) -> dict:
    """Compare the ledger token reserve with an externally reported on-chain balance."""
    onchain = money.tokens(onchain_tokens)
    ledger_reserve = money.tokens(account.token_reserve)
    drift = onchain - ledger_reserve
    if drift < 0:
        logger.warning("Treasury {} on-chain balance {} below ledger reserve {}",
                       account.id, onchain, ledger_reserve)
    return {
        "ledger_token_reserve": ledger_reserve,
        "onchain_token_balance": onchain,
        "drift": drift,
        "covered": drift >= 0,
    }
