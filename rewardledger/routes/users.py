# rewardledger/routes/users.py
import secrets
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status as http_status
from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import (
    ROLE_USER, check_password, cookie_kwargs, create_token, get_current_user, hash_password, require_admin,
)
from ..config import SESSION_COOKIE
from ..db import get_db
from ..models import User
from ..pricing import PriceOracle, get_price_oracle
from ..schemas import LoginIn, RegisterIn, RoleUpdate, UserOut
from ..services import rewards, treasury

router = APIRouter(prefix="/api/users", tags=["users"])

# ---------- Helpers ----------

def _to_out(u: User) -> UserOut:
    return UserOut.model_validate(u)


def _new_referral_code(db: Session) -> str:
    while True:
        code = secrets.token_hex(4).upper()
        if db.execute(select(User.id).where(User.referral_code == code)).first() is None:
            return code

# ---------- Routes ----------

@router.post("/register", status_code=http_status.HTTP_201_CREATED)
def register(
    payload: RegisterIn,
    resp: Response,
    db: Session = Depends(get_db),
    oracle: PriceOracle = Depends(get_price_oracle),
):
    """
    Public sign-up. Grants the signup bonus and, when a referral code is
    supplied, the referrer's bonus. Either may be left pending if the
    treasury cannot fund it yet.
    """
    email = payload.email.lower()
    referrer = None
    if payload.referral_code:
        referrer = db.execute(
            select(User).where(User.referral_code == payload.referral_code.upper())
        ).scalar_one_or_none()
        if referrer is None:
            raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail="Unknown referral code")

    quote = oracle.quote(db)
    try:
        with treasury.ledger_transaction(db) as ledger:
            u = User(
                email=email,
                password_hash=hash_password(payload.password),
                display_name=payload.display_name,
                role=payload.role,
                referral_code=_new_referral_code(db),
                referred_by_user_id=referrer.id if referrer else None,
                referral_count=0,
            )
            db.add(u)
            db.flush()
            signup = rewards.grant_signup_bonus(db, ledger, u.id, quote)
            referral = None
            if referrer is not None:
                referral = rewards.grant_referral_bonus(db, ledger, referrer.id, u.id, quote)
    except IntegrityError:
        # users.email is unique; the insert is the only existence check
        if db.execute(select(User.id).where(User.email == email)).first() is None:
            raise
        raise HTTPException(status_code=http_status.HTTP_409_CONFLICT, detail="Email already registered")

    db.refresh(u)
    logger.info("Registered user {} ({})", u.id, u.email)
    resp.set_cookie(key=SESSION_COOKIE, value=create_token(str(u.id), ROLE_USER), **cookie_kwargs())
    return {
        "user": _to_out(u),
        "signup_bonus": {"granted": signup.success, "deferred": signup.deferred, "tokens": signup.token_amount},
        "referral_bonus": None if referral is None else {"granted": referral.success, "deferred": referral.deferred},
    }


@router.post("/login")
def login(payload: LoginIn, resp: Response, db: Session = Depends(get_db)):
    u = db.execute(select(User).where(User.email == payload.email.lower())).scalar_one_or_none()
    if u is None or not check_password(payload.password, u.password_hash):
        raise HTTPException(status_code=http_status.HTTP_401_UNAUTHORIZED, detail="Bad credentials")
    token = create_token(str(u.id), ROLE_USER)
    resp.set_cookie(key=SESSION_COOKIE, value=token, **cookie_kwargs())
    return {"ok": True, "token": token, "user": _to_out(u)}


@router.get("/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)):
    return _to_out(user)


@router.get("", response_model=List[UserOut])
def list_users(
    q: Optional[str] = Query(None, description="Search email or display name"),
    db: Session = Depends(get_db),
    _: dict = Depends(require_admin),
):
    """
    Lists users, newest first.
    Always returns 200 with [] when no rows match.
    """
    stmt = select(User)
    if q:
        like = f"%{q}%"
        stmt = stmt.where(or_(User.email.ilike(like), User.display_name.ilike(like)))
    rows = db.execute(stmt.order_by(User.id.desc())).scalars().all()
    return [_to_out(u) for u in rows]


@router.patch("/{user_id}/role", response_model=UserOut)
def update_role(
    user_id: int,
    payload: RoleUpdate,
    db: Session = Depends(get_db),
    _: dict = Depends(require_admin),
):
    u = db.get(User, user_id)
    if not u:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="User not found")
    u.role = payload.role
    db.commit()
    db.refresh(u)
    return _to_out(u)
