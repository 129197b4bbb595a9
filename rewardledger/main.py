# rewardledger/main.py
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger

from .auth import ADMIN_EMAIL, ROLE_ADMIN, cookie_kwargs, create_token, require_auth, verify_admin
from .config import FRONTEND_ORIGIN, LOG_FILE, LOG_LEVEL, SESSION_COOKIE
from .db import SessionLocal, init_db
from .errors import InvalidTransition, LedgerError, NotFound, SecurityError, ValidationFailed
from .logger import setup_logging
from .routes import advertising, faucet, fraud, mining, rewards, treasury, users
from .schemas import LoginIn
from .services.treasury import ensure_treasury_account

DEV_ORIGINS = ("http://localhost:5173", "http://localhost:3000")
# deploy previews of the dashboard
PREVIEW_ORIGIN_REGEX = r"^https://[a-z0-9-]+\.netlify\.app/?$"


def allowed_origins() -> list:
    extra = [FRONTEND_ORIGIN] if FRONTEND_ORIGIN and FRONTEND_ORIGIN != "*" else []
    return sorted(set(DEV_ORIGINS).union(extra))


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(LOG_LEVEL, LOG_FILE)
    init_db()
    with SessionLocal() as db:
        ensure_treasury_account(db)
    yield


app = FastAPI(title="Reward Ledger API", version="0.1.0", redoc_url=None, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins(),
    allow_origin_regex=PREVIEW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# LedgerError subclasses raised past a router become JSON errors here.
_STATUS_FOR = {
    ValidationFailed: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    SecurityError: status.HTTP_403_FORBIDDEN,
}


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError):
    code = _STATUS_FOR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    if isinstance(exc, SecurityError):
        logger.warning("{} {} refused: {}", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"success": False, "error": str(exc)})


for r in (treasury.router, rewards.router, mining.router, faucet.router, advertising.router, fraud.router,
          users.router):
    app.include_router(r)


@app.get("/", include_in_schema=False)
def index():
    return RedirectResponse(url="/docs")


@app.get("/healthz", include_in_schema=False)
def healthz():
    return {"ok": True}


@app.get("/session")
def session_probe(claims: dict = Depends(require_auth)):
    return {"authenticated": True, "role": claims["role"]}


# ---------- Operator sign-in ----------

@app.post("/login")
def login(payload: LoginIn, resp: Response):
    if not verify_admin(payload.email, payload.password):
        logger.warning("Operator login refused for {}", payload.email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid operator credentials")
    resp.set_cookie(key=SESSION_COOKIE, value=create_token(ADMIN_EMAIL, ROLE_ADMIN), **cookie_kwargs())
    return {"ok": True}


@app.post("/logout")
def logout(resp: Response):
    opts = cookie_kwargs()
    resp.delete_cookie(
        key=SESSION_COOKIE,
        path=opts["path"],
        httponly=opts["httponly"],
        samesite=opts["samesite"],
        secure=opts["secure"],
    )
    return {"ok": True}
