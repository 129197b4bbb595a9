from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import require_admin
from ..db import get_db
from ..pricing import PriceOracle, get_price_oracle
from ..schemas import AdjustmentIn, DepositIn, DepositOut, PriceIn, ReserveTransactionOut
from ..services import treasury
from . import rejected

router = APIRouter(prefix="/api/treasury", tags=["treasury"])


@router.post("/deposit", response_model=DepositOut)
def deposit(
    payload: DepositIn,
    db: Session = Depends(get_db),
    oracle: PriceOracle = Depends(get_price_oracle),
    claims: dict = Depends(require_admin),
):
    if payload.token_price is not None:
        token_price, source = payload.token_price, "manual"
    else:
        quote = oracle.quote(db)
        if quote.degraded:
            # never mint the reserve at the placeholder price
            return rejected("No token price recorded; pass token_price explicitly", price_source=quote.source)
        token_price, source = quote.price, quote.source
    with treasury.ledger_transaction(db) as ledger:
        dep = ledger.deposit(
            payload.amount, token_price, deposited_by=claims["sub"], method=payload.method,
            notes=payload.notes, external_transaction_id=payload.external_transaction_id,
            price_source=source,
        )
    return DepositOut.model_validate(dep)


@router.post("/adjustment", response_model=ReserveTransactionOut)
def adjustment(payload: AdjustmentIn, db: Session = Depends(get_db), _: dict = Depends(require_admin)):
    with treasury.ledger_transaction(db) as ledger:
        tx = ledger.adjust(payload.token_delta, payload.cash_delta, payload.description)
    return ReserveTransactionOut.model_validate(tx)


@router.post("/price")
def record_price(
    payload: PriceIn,
    db: Session = Depends(get_db),
    oracle: PriceOracle = Depends(get_price_oracle),
    _: dict = Depends(require_admin),
):
    row = oracle.record(db, payload.price_usd, payload.source)
    return {"price_usd": row.price_usd, "source": row.source, "created_at": row.created_at}


@router.get("/summary")
def summary(db: Session = Depends(get_db), oracle: PriceOracle = Depends(get_price_oracle),
            _: dict = Depends(require_admin)):
    account = treasury.get_account(db)
    quote = oracle.quote(db)
    return {
        "account_id": account.id,
        "account_name": account.account_name,
        "stats": treasury.stats(account),
        "token_price": quote.price,
        "price_source": quote.source,
        "price_degraded": quote.degraded,
    }


@router.get("/status")
def status(db: Session = Depends(get_db), _: dict = Depends(require_admin)):
    return treasury.funding_status(treasury.get_account(db))


@router.get("/health")
def health(db: Session = Depends(get_db), _: dict = Depends(require_admin)):
    return treasury.health(treasury.get_account(db))


@router.get("/deposits", response_model=List[DepositOut])
def deposits(db: Session = Depends(get_db), _: dict = Depends(require_admin)):
    account = treasury.get_account(db)
    return [DepositOut.model_validate(d) for d in treasury.funding_history(db, account.id)]


@router.get("/transactions", response_model=List[ReserveTransactionOut])
def transactions(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db),
                 _: dict = Depends(require_admin)):
    account = treasury.get_account(db)
    return [ReserveTransactionOut.model_validate(t) for t in treasury.recent_transactions(db, account.id, limit)]


@router.get("/audit")
def audit(db: Session = Depends(get_db), _: dict = Depends(require_admin)):
    return treasury.audit(db, treasury.get_account(db))


@router.get("/funding-days")
def funding_days(db: Session = Depends(get_db), _: dict = Depends(require_admin)):
    return treasury.estimated_funding_days(db, treasury.get_account(db))


@router.get("/reconcile")
def reconcile(onchain_tokens: Decimal = Query(..., ge=0), db: Session = Depends(get_db),
              _: dict = Depends(require_admin)):
    return treasury.reconcile_onchain(treasury.get_account(db), onchain_tokens)
