from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_admin
from ..db import get_db
from ..models import User
from ..schemas import AdType, ClickIn, CompletionIn, ImpressionIn
from ..services import advertising
from . import client_ip

router = APIRouter(prefix="/api/advertising", tags=["advertising"])


@router.get("/placement")
def placement(ad_type: AdType = "banner", user: User = Depends(get_current_user)):
    chosen = advertising.select_placement(ad_type, user.id)
    return {"placement": chosen, "fallback": chosen is None}


@router.post("/impression")
def impression(payload: ImpressionIn, request: Request, db: Session = Depends(get_db),
               user: User = Depends(get_current_user)):
    row = advertising.track_impression(
        db,
        placement_id=payload.placement_id,
        network=payload.network,
        user_id=user.id,
        session_id=payload.session_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        is_fallback=payload.is_fallback,
    )
    return {"impression_id": row.id, "is_fallback": row.is_fallback}


@router.post("/click")
def click(payload: ClickIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    row = advertising.track_click(
        db,
        impression_id=payload.impression_id,
        placement_id=payload.placement_id,
        network=payload.network,
        user_id=user.id,
        session_id=payload.session_id,
    )
    return {"click_id": row.id}


@router.post("/completion")
def completion(payload: CompletionIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    row = advertising.track_completion(
        db,
        user_id=user.id,
        impression_id=payload.impression_id,
        session_id=payload.session_id,
        completion_type=payload.completion_type,
    )
    return {
        "completion_id": row.id,
        "verified": row.verified,
        "verification_method": row.verification_method,
        "expires_at": row.expires_at,
    }


@router.post("/webhook/{network}")
async def webhook(network: str, request: Request, db: Session = Depends(get_db),
                  x_signature: Optional[str] = Header(default=None)):
    """Signed network callback; the raw body is what the signature covers."""
    raw_body = await request.body()
    return await run_in_threadpool(advertising.process_webhook, db, network, raw_body, x_signature)


@router.get("/stats")
def stats(db: Session = Depends(get_db), _: dict = Depends(require_admin)):
    return advertising.stats(db)
