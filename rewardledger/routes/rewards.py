from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_admin
from ..config import TOKEN_ADDRESS, TOKEN_NAME, TOKEN_SYMBOL
from ..db import get_db
from ..encryption import EncryptionService, get_encryption_service
from ..models import User
from ..pricing import PriceOracle, get_price_oracle
from ..schemas import (
    BookingIn, CashoutIn, CashoutOut, CashoutStatusUpdate,
    CheckinHistoryItem, CheckinIn, JobCompletionIn, RewardOut,
)
from ..services import cashout, checkin, rewards, treasury
from ..services import wallet as wallets
from ..services.fraud import DeviceInfo, FraudDetector, get_fraud_detector
from . import client_ip, rejected

router = APIRouter(prefix="/api/rewards", tags=["rewards"])


def _reward_response(result: rewards.RewardResult):
    if result.already_granted:
        return rejected(result.error, status_code=409)
    body = {
        "success": result.success,
        "deferred": result.deferred,
        "reward": RewardOut.model_validate(result.reward) if result.reward is not None else None,
        "token_amount": result.token_amount,
        "cash_value": result.cash_value,
        "error": result.error,
    }
    if not result.success and not result.deferred:
        return rejected(result.error)
    return body


# ---------- Check-in ----------

@router.post("/checkin")
def daily_checkin(
    request: Request,
    payload: Optional[CheckinIn] = None,
    db: Session = Depends(get_db),
    oracle: PriceOracle = Depends(get_price_oracle),
    detector: FraudDetector = Depends(get_fraud_detector),
    user: User = Depends(get_current_user),
):
    ua = request.headers.get("user-agent", "")
    device = None
    if payload is not None and payload.device is not None:
        device = DeviceInfo(user_agent=ua, **payload.device.model_dump())
    quote = oracle.quote(db)
    with treasury.ledger_transaction(db) as ledger:
        result = checkin.process_checkin(
            db, ledger, detector, quote,
            user_id=user.id, ip_address=client_ip(request), user_agent=ua, device=device,
        )
    if not result.success:
        return rejected(result.message, risk_score=result.risk_score, next_checkin_at=(
            result.next_checkin_at.isoformat() if result.next_checkin_at else None))
    return result


@router.get("/checkin/status")
def checkin_status(db: Session = Depends(get_db), oracle: PriceOracle = Depends(get_price_oracle),
                   user: User = Depends(get_current_user)):
    return checkin.status(db, user.id, oracle.quote(db))


@router.get("/checkin/history", response_model=List[CheckinHistoryItem])
def checkin_history(limit: int = Query(30, ge=1, le=365), db: Session = Depends(get_db),
                    user: User = Depends(get_current_user)):
    return checkin.history(db, user.id, limit)


# ---------- Wallet & history ----------

@router.get("/wallet")
def wallet(db: Session = Depends(get_db), oracle: PriceOracle = Depends(get_price_oracle),
           user: User = Depends(get_current_user)):
    quote = oracle.quote(db)
    data = wallets.summary(db, user.id)
    data["token_value_usd"] = PriceOracle.tokens_to_usd(data["token_balance"], quote)
    data["token_price"] = quote.price
    data["price_degraded"] = quote.degraded
    return data


@router.get("/history", response_model=List[RewardOut])
def reward_history(limit: int = Query(50, ge=1, le=200), db: Session = Depends(get_db),
                   user: User = Depends(get_current_user)):
    return [RewardOut.model_validate(r) for r in rewards.history(db, user.id, limit)]


@router.get("/token-info")
def token_info(db: Session = Depends(get_db), oracle: PriceOracle = Depends(get_price_oracle),
               _: User = Depends(get_current_user)):
    quote = oracle.quote(db)
    return {
        "symbol": TOKEN_SYMBOL,
        "name": TOKEN_NAME,
        "address": TOKEN_ADDRESS,
        "price_usd": quote.price,
        "price_source": quote.source,
        "price_degraded": quote.degraded,
    }


# ---------- Cashouts ----------

@router.post("/cashout")
def request_cashout(
    payload: CashoutIn,
    db: Session = Depends(get_db),
    oracle: PriceOracle = Depends(get_price_oracle),
    encryption: EncryptionService = Depends(get_encryption_service),
    user: User = Depends(get_current_user),
):
    result = cashout.request_cashout(
        db, user_id=user.id, token_amount=payload.token_amount,
        bank_details=payload.bank_details.model_dump(), quote=oracle.quote(db), encryption=encryption,
    )
    if not result.success:
        return rejected(result.error)
    return {"success": True, "cashout": CashoutOut.model_validate(result.request)}


@router.get("/cashouts", response_model=List[CashoutOut])
def list_cashouts(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [CashoutOut.model_validate(r) for r in cashout.list_for_user(db, user.id)]


@router.post("/cashouts/{cashout_id}/cancel", response_model=CashoutOut)
def cancel_cashout(cashout_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return CashoutOut.model_validate(cashout.transition(db, cashout_id, "cancelled", user_id=user.id))


@router.patch("/cashouts/{cashout_id}/status", response_model=CashoutOut)
def update_cashout_status(cashout_id: int, payload: CashoutStatusUpdate, db: Session = Depends(get_db),
                          _: dict = Depends(require_admin)):
    req = cashout.transition(db, cashout_id, payload.status, failure_reason=payload.failure_reason)
    return CashoutOut.model_validate(req)


# ---------- Admin grants ----------

@router.post("/job-completion")
def job_completion(payload: JobCompletionIn, db: Session = Depends(get_db),
                   oracle: PriceOracle = Depends(get_price_oracle), _: dict = Depends(require_admin)):
    quote = oracle.quote(db)
    with treasury.ledger_transaction(db) as ledger:
        result = rewards.grant_job_completion(
            db, ledger, payload.user_id, payload.job_id, payload.job_value_usd, quote, payload.performance_rating,
        )
        response = _reward_response(result)
    return response


@router.post("/booking")
def booking(payload: BookingIn, db: Session = Depends(get_db),
            oracle: PriceOracle = Depends(get_price_oracle), _: dict = Depends(require_admin)):
    quote = oracle.quote(db)
    with treasury.ledger_transaction(db) as ledger:
        result = rewards.grant_booking_reward(db, ledger, payload.user_id, payload.booking_id,
                                              payload.job_value_usd, quote)
        response = _reward_response(result)
    return response


@router.post("/confirm-pending")
def confirm_pending(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db),
                    _: dict = Depends(require_admin)):
    with treasury.ledger_transaction(db) as ledger:
        return rewards.confirm_pending_rewards(db, ledger, limit)


@router.post("/{reward_id}/redeem", response_model=RewardOut)
def redeem(reward_id: int, db: Session = Depends(get_db), _: dict = Depends(require_admin)):
    return RewardOut.model_validate(rewards.redeem_reward(db, reward_id))
