# rewardledger/services/wallet.py
from decimal import Decimal

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import money
from ..models import WalletAccount, utcnow


def get_or_create_wallet(db: Session, user_id: int) -> WalletAccount:
    """Wallets are created lazily on first reward."""
    w = db.execute(select(WalletAccount).where(WalletAccount.user_id == user_id)).scalar_one_or_none()
    if w is not None:
        return w
    w = WalletAccount(
        user_id=user_id,
        token_balance=money.ZERO_TOKENS,
        cash_balance=money.ZERO_USD,
        total_earned=money.ZERO_TOKENS,
        total_redeemed=money.ZERO_TOKENS,
        total_cashed_out=money.ZERO_USD,
    )
    try:
        with db.begin_nested():
            db.add(w)
    except IntegrityError:
        # created concurrently; wallet_accounts.user_id is unique
        w = db.execute(select(WalletAccount).where(WalletAccount.user_id == user_id)).scalar_one()
    return w


def credit(db: Session, user_id: int, token_amount, cash_value=money.ZERO_USD) -> WalletAccount:
    """Add earned tokens to a user's wallet with an in-database increment."""
    token_amount = money.tokens(token_amount)
    cash_value = money.usd(cash_value)
    w = get_or_create_wallet(db, user_id)
    db.execute(
        update(WalletAccount)
        .where(WalletAccount.id == w.id)
        .values(
            token_balance=WalletAccount.token_balance + token_amount,
            cash_balance=WalletAccount.cash_balance + cash_value,
            total_earned=WalletAccount.total_earned + token_amount,
            last_activity=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.refresh(w)
    return w


def debit_tokens(db: Session, user_id: int, token_amount) -> bool:
    """
    Atomically remove tokens from a wallet.

    Single conditional UPDATE: the balance check and the write happen in one
    statement, so two concurrent debits cannot both pass on the same funds.
    Returns False (nothing changed) when the balance is insufficient.
    """
    token_amount = money.tokens(token_amount)
    result = db.execute(
        update(WalletAccount)
        .where(WalletAccount.user_id == user_id, WalletAccount.token_balance >= token_amount)
        .values(
            token_balance=WalletAccount.token_balance - token_amount,
            last_activity=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Wallet debit of {} tokens refused for user {}: insufficient balance",
                       token_amount, user_id)
        return False
    return True


def restore_tokens(db: Session, user_id: int, token_amount) -> None:
    """Give back tokens held by a failed or cancelled cashout."""
    token_amount = money.tokens(token_amount)
    db.execute(
        update(WalletAccount)
        .where(WalletAccount.user_id == user_id)
        .values(token_balance=WalletAccount.token_balance + token_amount, last_activity=utcnow())
        .execution_options(synchronize_session=False)
    )


def record_cashout_completed(db: Session, user_id: int, token_amount, cash_amount) -> None:
    db.execute(
        update(WalletAccount)
        .where(WalletAccount.user_id == user_id)
        .values(
            total_redeemed=WalletAccount.total_redeemed + money.tokens(token_amount),
            total_cashed_out=WalletAccount.total_cashed_out + money.usd(cash_amount),
            last_activity=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )


def summary(db: Session, user_id: int) -> dict:
    w = db.execute(select(WalletAccount).where(WalletAccount.user_id == user_id)).scalar_one_or_none()
    if w is None:
        return {
            "token_balance": money.ZERO_TOKENS,
            "cash_balance": money.ZERO_USD,
            "total_earned": money.ZERO_TOKENS,
            "total_redeemed": money.ZERO_TOKENS,
            "total_cashed_out": money.ZERO_USD,
        }
    return {
        "token_balance": money.tokens(w.token_balance),
        "cash_balance": money.usd(w.cash_balance),
        "total_earned": money.tokens(w.total_earned),
        "total_redeemed": money.tokens(w.total_redeemed),
        "total_cashed_out": money.usd(w.total_cashed_out),
    }


def token_balance(db: Session, user_id: int) -> Decimal:
    return summary(db, user_id)["token_balance"]
