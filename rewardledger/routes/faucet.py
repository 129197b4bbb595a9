from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_admin
from ..config import FaucetConfig
from ..db import get_db
from ..models import User
from ..schemas import FaucetClaimIn, FaucetClaimOut, FaucetClaimStatusUpdate, FaucetConfigIn, FaucetWalletIn
from ..services import faucet
from ..services.faucet import get_faucet_config
from . import client_ip, rejected

router = APIRouter(prefix="/api/faucet", tags=["faucet"])


@router.get("/status")
def status(db: Session = Depends(get_db), config: FaucetConfig = Depends(get_faucet_config),
           user: User = Depends(get_current_user)):
    return faucet.status(db, user.id, config=config)


@router.post("/claim")
def claim(payload: FaucetClaimIn, request: Request, db: Session = Depends(get_db),
          config: FaucetConfig = Depends(get_faucet_config), user: User = Depends(get_current_user)):
    result = faucet.claim(
        db,
        user_id=user.id,
        currency=payload.currency,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        device_fingerprint=payload.device_fingerprint,
        ad_session_id=payload.ad_session_id,
        config=config,
    )
    if not result.success:
        status_code = 429 if result.next_claim_at is not None else 400
        return rejected(
            result.error, status_code=status_code, risk_score=result.risk_score,
            next_claim_at=result.next_claim_at.isoformat() if result.next_claim_at else None,
        )
    return {
        "success": True,
        "claim": FaucetClaimOut.model_validate(result.claim),
        "next_claim_at": result.next_claim_at,
    }


@router.put("/wallet")
def set_wallet(payload: FaucetWalletIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    w = faucet.set_payout_address(db, user.id, payload.currency, payload.payout_address)
    return {"currency": w.currency, "payout_address": w.payout_address}


@router.patch("/claims/{claim_id}/status", response_model=FaucetClaimOut)
def update_claim_status(claim_id: int, payload: FaucetClaimStatusUpdate, db: Session = Depends(get_db),
                        _: dict = Depends(require_admin)):
    row = faucet.update_claim_status(db, claim_id, payload.status, payload.payout_reference, payload.failure_reason)
    return FaucetClaimOut.model_validate(row)


@router.put("/config/{currency}")
def set_config(currency: str, payload: FaucetConfigIn, db: Session = Depends(get_db),
               _: dict = Depends(require_admin)):
    row = faucet.set_currency_config(db, currency, payload.reward_amount, payload.claim_interval, payload.is_enabled)
    return {
        "currency": row.currency,
        "reward_amount": row.reward_amount,
        "claim_interval": row.claim_interval,
        "is_enabled": row.is_enabled,
    }
