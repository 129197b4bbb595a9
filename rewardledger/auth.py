# rewardledger/auth.py
"""
Session auth.

The operator (role "admin", sub = ADMIN_EMAIL) and database users
(role "user", sub = str(user.id)) carry the same JWT, either in the session
cookie or as an ``Authorization: Bearer`` header.
"""
import hmac
from datetime import datetime, timezone
from typing import Optional

import bcrypt
from fastapi import Cookie, Depends, Header, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .config import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    ADMIN_PASSWORD_HASH,
    IS_PROD,
    JWT_ALGORITHM,
    JWT_SECRET,
    SESSION_COOKIE,
    SESSION_COOKIE_MAX_AGE,
    SESSION_TTL,
)
from .db import get_db
from .models import User

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)


def cookie_kwargs() -> dict:
    """SameSite=None in production, where the frontend runs on another site."""
    kw = dict(httponly=True, path="/", max_age=SESSION_COOKIE_MAX_AGE)
    if IS_PROD:
        kw.update(samesite="none", secure=True)
    else:
        kw.update(samesite="lax", secure=False)
    return kw


# ---------- Passwords ----------

def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(plain: str, hashed: Optional[str]) -> bool:
    """False for a missing or malformed stored hash."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def verify_admin(email: str, password: str) -> bool:
    if email.lower() != ADMIN_EMAIL.lower():
        return False
    if ADMIN_PASSWORD_HASH:
        return check_password(password, ADMIN_PASSWORD_HASH)
    # nothing configured means no operator login at all
    return bool(ADMIN_PASSWORD) and hmac.compare_digest(password.encode("utf-8"), ADMIN_PASSWORD.encode("utf-8"))


# ---------- Tokens ----------

def create_token(sub: str, role: str = ROLE_USER) -> str:
    issued = datetime.now(timezone.utc)
    claims = {"sub": sub, "role": role, "iat": issued, "exp": issued + SESSION_TTL}
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _bearer(authorization: Optional[str]) -> Optional[str]:
    scheme, _, credentials = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def _read_claims(token: str) -> dict:
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise _unauthorized(f"Invalid or expired session: {e}") from e
    if claims.get("role") not in ROLES or not claims.get("sub"):
        raise _unauthorized("Unauthorized subject")
    return claims


# ---------- Dependencies ----------

def require_auth(
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE),
    authorization: Optional[str] = Header(default=None),
) -> dict:
    """Claims of the current session. The cookie takes precedence over a Bearer header."""
    token = session_token or _bearer(authorization)
    if not token:
        raise _unauthorized("Unauthenticated")
    return _read_claims(token)


def require_admin(claims: dict = Depends(require_auth)) -> dict:
    if claims["role"] != ROLE_ADMIN or claims["sub"] != ADMIN_EMAIL:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
    return claims


def get_current_user(claims: dict = Depends(require_auth), db: Session = Depends(get_db)) -> User:
    """The signed-in end user. Operator sessions have no user row and are refused."""
    if claims["role"] != ROLE_USER:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User session required")
    try:
        user_id = int(claims["sub"])
    except (TypeError, ValueError):
        raise _unauthorized("Unauthorized subject")
    user = db.get(User, user_id)
    if user is None:
        raise _unauthorized("User no longer exists")
    return user
