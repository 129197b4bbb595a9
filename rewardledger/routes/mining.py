from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_admin
from ..db import get_db
from ..models import User
from ..pricing import PriceOracle, get_price_oracle
from ..services import mining, treasury
from . import rejected

router = APIRouter(prefix="/api/mining", tags=["mining"])


@router.post("/start")
def start(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    started = mining.start_mining(db, user.id)
    session = started["session"]
    return {
        "session_id": session.id,
        "start_time": session.start_time,
        "next_claim_at": session.next_claim_at,
        "time_remaining": started["time_remaining"],
        "accumulated_tokens": started["accumulated_tokens"],
    }


@router.post("/claim")
def claim(db: Session = Depends(get_db), oracle: PriceOracle = Depends(get_price_oracle),
          user: User = Depends(get_current_user)):
    quote = oracle.quote(db)
    with treasury.ledger_transaction(db) as ledger:
        result = mining.claim(db, ledger, user.id, quote)
    if not result.success:
        return rejected(result.error)
    return result


@router.get("/status")
def status(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return mining.mining_stats(db, user.id)


@router.post("/auto-claim")
def auto_claim(db: Session = Depends(get_db), oracle: PriceOracle = Depends(get_price_oracle),
               _: dict = Depends(require_admin)):
    quote = oracle.quote(db)
    with treasury.ledger_transaction(db) as ledger:
        return mining.auto_claim_expired(db, ledger, quote)
