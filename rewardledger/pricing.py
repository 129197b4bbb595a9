# rewardledger/pricing.py
"""
Token price oracle adapter.

The price feed itself is an external collaborator; the ledger only consumes
"current price". Quotes are read from price_history. When nothing has been
recorded the configured fallback price is used and the quote is marked
degraded so callers can surface it as lower-trust.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import money
from .config import FALLBACK_TOKEN_PRICE
from .errors import ValidationFailed
from .models import PriceHistory


@dataclass(frozen=True)
class PriceQuote:
    price: Decimal
    source: str

    @property
    def degraded(self) -> bool:
        return self.source == "fallback"


class PriceOracle:
    def __init__(self, fallback_price: Decimal = FALLBACK_TOKEN_PRICE) -> None:
        self.fallback_price = money.price(fallback_price)

    def quote(self, db: Session) -> PriceQuote:
        row = db.execute(
            select(PriceHistory).order_by(PriceHistory.created_at.desc(), PriceHistory.id.desc()).limit(1)
        ).scalar_one_or_none()
        if row is None:
            logger.warning("No token price recorded; using fallback {}", self.fallback_price)
            return PriceQuote(self.fallback_price, "fallback")
        return PriceQuote(money.price(row.price_usd), row.source)

    def record(self, db: Session, price_usd, source: str = "manual") -> PriceHistory:
        p = money.price(price_usd)
        if p <= 0:
            raise ValidationFailed("Token price must be > 0")
        row = PriceHistory(price_usd=p, source=source)
        db.add(row)
        db.commit()
        db.refresh(row)
        logger.info("Recorded token price {} from {}", p, source)
        return row

    @staticmethod
    def usd_to_tokens(usd_amount, quote: PriceQuote) -> Decimal:
        return money.tokens(money.to_decimal(usd_amount) / quote.price)

    @staticmethod
    def tokens_to_usd(token_amount, quote: PriceQuote) -> Decimal:
        return money.usd(money.to_decimal(token_amount) * quote.price)


_oracle: Optional[PriceOracle] = None


def get_price_oracle() -> PriceOracle:
    """FastAPI dependency returning the process-wide oracle adapter."""
    global _oracle
    if _oracle is None:
        _oracle = PriceOracle()
    return _oracle
