from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from ..config import TRUSTED_PROXY_HOPS


def client_ip(request: Request) -> str:
    """
    Address used for per-IP limits and risk scoring.

    Only the X-Forwarded-For entries appended by our own proxies are
    trusted; anything further left was supplied by the client.
    """
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if not TRUSTED_PROXY_HOPS or not forwarded:
        return peer
    hops = [h.strip() for h in forwarded.split(",") if h.strip()]
    if len(hops) < TRUSTED_PROXY_HOPS:
        return peer
    return hops[-TRUSTED_PROXY_HOPS]


def rejected(error: Optional[str], status_code: int = 400, **extra) -> JSONResponse:
    """Business-rule refusal: nothing changed, caller may fix the cause and retry."""
    body = {"success": False, "error": error or "Request rejected"}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)
