# rewardledger/services/advertising.py
"""
Crypto ad networks: placement, tracking and completion verification.

A completion only unlocks a faucet claim once the ad network has confirmed
it through a signed server-to-server webhook. Client-reported completions
are stored unverified and expire after an hour.
"""
import hashlib
import hmac
import json
import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..config import AD_COMPLETION_TTL_SECONDS, AD_NETWORKS
from ..errors import NotFound, SecurityError, ValidationFailed
from ..models import AdClick, AdCompletion, AdImpression, utcnow

PRIORITY = ("bitmedia", "cointraffic", "aads")
SIZES = {
    "banner": "728x90",
    "video": "640x360",
    "rectangle": "300x250",
    "interstitial": "320x480",
}
COMPLETION_TYPES = {"view", "click", "conversion"}


def network_config(network: str) -> dict:
    if network not in AD_NETWORKS:
        raise NotFound(f"Unknown ad network: {network}")
    display, script_url, publisher_env, secret_env = AD_NETWORKS[network]
    return {
        "name": network,
        "display_name": display,
        "script_url": script_url,
        "publisher_id": os.getenv(publisher_env, ""),
        "webhook_secret": os.getenv(secret_env, ""),
    }


def enabled_networks() -> List[dict]:
    return [cfg for cfg in (network_config(n) for n in PRIORITY) if cfg["publisher_id"]]


def select_placement(ad_type: str = "banner", user_id: Optional[int] = None) -> Optional[dict]:
    """Highest-priority enabled network, or None when no network is configured."""
    if ad_type not in SIZES:
        raise ValidationFailed(f"Unsupported ad type: {ad_type}")
    networks = enabled_networks()
    if not networks:
        return None
    cfg = networks[0]
    return {
        "placement_id": f"{cfg['name']}_{ad_type}",
        "network": cfg["name"],
        "display_name": cfg["display_name"],
        "script_url": cfg["script_url"],
        "publisher_id": cfg["publisher_id"],
        "ad_type": ad_type,
        "size": SIZES[ad_type],
    }


def track_impression(db: Session, *, placement_id: str, network: str, user_id: Optional[int] = None,
                     session_id: Optional[str] = None, ip_address: Optional[str] = None,
                     user_agent: Optional[str] = None, is_fallback: bool = False) -> AdImpression:
    network_config(network)
    row = AdImpression(
        placement_id=placement_id,
        network=network,
        user_id=user_id,
        session_id=session_id,
        ip_address=ip_address,
        user_agent=user_agent,
        is_fallback=is_fallback,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    if is_fallback:
        logger.info("Fallback impression {} on {} (network script unavailable)", row.id, network)
    return row


def track_click(db: Session, *, impression_id: Optional[int], placement_id: str, network: str,
                user_id: Optional[int] = None, session_id: Optional[str] = None) -> AdClick:
    network_config(network)
    row = AdClick(
        impression_id=impression_id,
        placement_id=placement_id,
        network=network,
        user_id=user_id,
        session_id=session_id,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def track_completion(db: Session, *, user_id: int, impression_id: int, session_id: str,
                     completion_type: str = "view", now: Optional[datetime] = None) -> AdCompletion:
    """Record a client-reported completion; it stays unverified until the network webhook arrives."""
    now = now or utcnow()
    if completion_type not in COMPLETION_TYPES:
        raise ValidationFailed(f"Unsupported completion type: {completion_type}")
    impression = db.get(AdImpression, impression_id)
    if impression is None or impression.user_id != user_id:
        raise NotFound("Impression not found")
    if impression.is_fallback:
        raise ValidationFailed("Fallback impressions cannot complete")

    row = AdCompletion(
        user_id=user_id,
        impression_id=impression_id,
        session_id=session_id,
        network=impression.network,
        completion_type=completion_type,
        verified=False,
        verification_method="pending_webhook",
        expires_at=now + timedelta(seconds=AD_COMPLETION_TTL_SECONDS),
        created_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def sign_payload(secret: str, raw_body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(network: str, raw_body: bytes, signature: Optional[str]) -> bool:
    secret = network_config(network)["webhook_secret"]
    if not secret:
        logger.error("Webhook for {} rejected: no webhook secret configured", network)
        return False
    if not signature or not signature.startswith("sha256="):
        logger.warning("Webhook for {} rejected: missing or malformed signature", network)
        return False
    expected = sign_payload(secret, raw_body)
    if not hmac.compare_digest(expected, signature):
        logger.warning("Webhook for {} rejected: invalid signature", network)
        return False
    return True


def process_webhook(db: Session, network: str, raw_body: bytes, signature: Optional[str],
                    now: Optional[datetime] = None) -> dict:
    """
    Mark a completion verified from a signed network callback.

    The body must be signed with the network's secret (``sha256=<hex>``
    HMAC of the raw bytes). Expected fields: session_id, impression_id and
    optionally revenue. Networks retry deliveries, so a completion that is
    already verified is acknowledged without counting its revenue again.
    """
    now = now or utcnow()
    if not verify_signature(network, raw_body, signature):
        raise SecurityError("Invalid webhook signature")
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationFailed("Webhook body must be JSON") from e

    session_id = payload.get("session_id")
    impression_id = payload.get("impression_id")
    if not session_id or impression_id is None:
        raise ValidationFailed("session_id and impression_id are required")
    revenue = Decimal(str(payload.get("revenue", "0")))

    completion = db.execute(
        select(AdCompletion)
        .where(
            AdCompletion.session_id == session_id,
            AdCompletion.impression_id == int(impression_id),
            AdCompletion.network == network,
        )
        .order_by(AdCompletion.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if completion is None:
        raise NotFound("Completion not found")
    if completion.verified:
        logger.info("Duplicate {} webhook for completion {} ignored", network, completion.id)
        return {"completion_id": completion.id, "verified": True, "duplicate": True}
    if completion.expires_at <= now:
        raise ValidationFailed("Completion has expired")

    # conditional so two concurrent deliveries cannot both count revenue
    marked = db.execute(
        update(AdCompletion)
        .where(AdCompletion.id == completion.id, AdCompletion.verified.is_(False))
        .values(verified=True, verification_method="webhook", revenue=revenue)
        .execution_options(synchronize_session=False)
    )
    if marked.rowcount != 1:
        db.rollback()
        return {"completion_id": completion.id, "verified": True, "duplicate": True}
    db.execute(
        update(AdImpression)
        .where(AdImpression.id == completion.impression_id)
        .values(revenue=func.coalesce(AdImpression.revenue, 0) + revenue)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info("Verified ad completion {} from {} webhook (revenue {})", completion.id, network, revenue)
    return {"completion_id": completion.id, "verified": True, "duplicate": False}


def _usable(user_id: int, session_id: str, now: datetime):
    return (
        AdCompletion.user_id == user_id,
        AdCompletion.session_id == session_id,
        AdCompletion.verified.is_(True),
        AdCompletion.verification_method == "webhook",
        AdCompletion.expires_at > now,
        AdCompletion.consumed_at.is_(None),
    )


def verify_completion(db: Session, user_id: int, session_id: str, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    row = db.execute(
        select(AdCompletion.id).where(*_usable(user_id, session_id, now)).limit(1)
    ).scalar_one_or_none()
    return row is not None


def consume_completion(db: Session, user_id: int, session_id: str, now: Optional[datetime] = None) -> bool:
    """
    Spend one verified completion. False when none is usable.

    Runs inside the caller's transaction; the faucet claim commits it
    together with the claim row, so a rolled-back claim keeps the ad usable.
    """
    now = now or utcnow()
    completion_id = db.execute(
        select(AdCompletion.id).where(*_usable(user_id, session_id, now)).order_by(AdCompletion.id).limit(1)
    ).scalar_one_or_none()
    if completion_id is None:
        return False
    spent = db.execute(
        update(AdCompletion)
        .where(AdCompletion.id == completion_id, AdCompletion.consumed_at.is_(None))
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    return spent.rowcount == 1


def stats(db: Session, since: Optional[datetime] = None) -> dict:
    def _count(model, *where):
        stmt = select(func.count(model.id))
        if since is not None:
            stmt = stmt.where(model.created_at >= since)
        return db.execute(stmt.where(*where)).scalar_one()

    impressions = _count(AdImpression, AdImpression.is_fallback.is_(False))
    fallbacks = _count(AdImpression, AdImpression.is_fallback.is_(True))
    clicks = _count(AdClick)
    completions = _count(AdCompletion)
    verified = _count(AdCompletion, AdCompletion.verified.is_(True))

    rev_stmt = select(func.coalesce(func.sum(AdImpression.revenue), 0))
    if since is not None:
        rev_stmt = rev_stmt.where(AdImpression.created_at >= since)
    revenue = Decimal(str(db.execute(rev_stmt).scalar_one()))

    ctr = (Decimal(clicks) / Decimal(impressions) * 100).quantize(Decimal("0.01")) if impressions else Decimal("0")
    rpm = (revenue / Decimal(impressions) * 1000).quantize(Decimal("0.0001")) if impressions else Decimal("0")
    return {
        "impressions": impressions,
        "fallback_impressions": fallbacks,
        "clicks": clicks,
        "completions": completions,
        "verified_completions": verified,
        "revenue": revenue,
        "ctr": ctr,
        "rpm": rpm,
    }
