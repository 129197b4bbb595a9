# rewardledger/services/cashout.py
"""
Cashout requests.

States: pending -> processing -> completed | failed, and pending -> failed |
cancelled. Tokens leave the wallet when the request is accepted (atomic
conditional debit) and come back if it fails or is cancelled. The payout
processor is a simulated stand-in: it only assigns an external reference.
"""
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import money
from ..config import CASHOUT_POLICY, CashoutPolicy
from ..encryption import EncryptionService
from ..errors import InvalidTransition, NotFound, ValidationFailed
from ..models import CashoutRequest, utcnow
from ..pricing import PriceOracle, PriceQuote
from . import wallet as wallets

TRANSITIONS = {
    "pending": {"processing", "failed", "cancelled"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
    "cancelled": set(),
}
REFUNDING = {"failed", "cancelled"}


@dataclass
class CashoutResult:
    success: bool
    request: Optional[CashoutRequest] = None
    error: Optional[str] = None


def validate_bank_details(details: dict) -> List[str]:
    errors = []
    if len((details.get("account_number") or "").strip()) < 4:
        errors.append("Valid account number is required")
    routing = (details.get("routing_number") or "").strip()
    if len(routing) != 9 or not routing.isdigit():
        errors.append("Valid 9-digit routing number is required")
    if len((details.get("account_holder_name") or "").strip()) < 2:
        errors.append("Account holder name is required")
    if len((details.get("bank_name") or "").strip()) < 2:
        errors.append("Bank name is required")
    return errors


def check_eligibility(token_amount: Decimal, policy: CashoutPolicy = CASHOUT_POLICY) -> Optional[str]:
    if token_amount < policy.min_tokens:
        return f"Minimum cashout is {policy.min_tokens} tokens"
    if token_amount > policy.max_tokens:
        return f"Maximum cashout is {policy.max_tokens} tokens per transaction"
    return None


class SimulatedProcessor:
    """Stand-in for the fiat payout provider."""

    def initiate(self, request: CashoutRequest) -> str:
        ref = f"sim_{int(time.time())}_{secrets.token_hex(5)}"
        logger.info("[SIMULATION] cashout {} for user {}: ${} -> {}",
                    request.id, request.user_id, request.cash_amount, ref)
        return ref


def request_cashout(db: Session, *, user_id: int, token_amount, bank_details: dict, quote: PriceQuote,
                    encryption: EncryptionService, processor: Optional[SimulatedProcessor] = None,
                    policy: CashoutPolicy = CASHOUT_POLICY) -> CashoutResult:
    token_amount = money.tokens(token_amount)
    problems = validate_bank_details(bank_details)
    if problems:
        raise ValidationFailed(", ".join(problems))

    reason = check_eligibility(token_amount, policy)
    if reason:
        return CashoutResult(success=False, error=reason)

    cash_amount = PriceOracle.tokens_to_usd(token_amount, quote)

    try:
        if not wallets.debit_tokens(db, user_id, token_amount):
            db.rollback()
            return CashoutResult(success=False, error="Insufficient balance")

        req = CashoutRequest(
            user_id=user_id,
            token_amount=token_amount,
            cash_amount=cash_amount,
            conversion_rate=quote.price,
            price_source=quote.source,
            status="pending",
            bank_details=encryption.encrypt_json(bank_details),
        )
        db.add(req)
        db.flush()
        req.external_transaction_id = (processor or SimulatedProcessor()).initiate(req)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(req)
    logger.info("Cashout {} requested by user {}: {} tokens -> ${} @ {}",
                req.id, user_id, token_amount, cash_amount, quote.price)
    if quote.degraded:
        logger.warning("Cashout {} priced from the fallback quote", req.id)
    return CashoutResult(success=True, request=req)


def transition(db: Session, request_id: int, target: str, failure_reason: Optional[str] = None,
               user_id: Optional[int] = None) -> CashoutRequest:
    """Apply one state-machine step; user_id restricts the change to the owner's request."""
    try:
        req = db.execute(
            select(CashoutRequest).where(CashoutRequest.id == request_id).with_for_update()
        ).scalar_one_or_none()
        if req is None or (user_id is not None and req.user_id != user_id):
            raise NotFound("Cashout request not found")
        if target not in TRANSITIONS.get(req.status, set()):
            raise InvalidTransition("cashout", req.status, target)

        if target in REFUNDING:
            wallets.restore_tokens(db, req.user_id, req.token_amount)
            req.failure_reason = failure_reason or ("Cancelled by user" if target == "cancelled" else None)
        elif target == "completed":
            wallets.record_cashout_completed(db, req.user_id, req.token_amount, req.cash_amount)

        if target in {"completed", "failed", "cancelled"}:
            req.processed_date = utcnow()
        previous = req.status
        req.status = target
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(req)
    logger.info("Cashout {} moved {} -> {}", req.id, previous, target)
    return req


def list_for_user(db: Session, user_id: int) -> List[CashoutRequest]:
    return list(db.execute(
        select(CashoutRequest).where(CashoutRequest.user_id == user_id).order_by(CashoutRequest.id.desc())
    ).scalars())
