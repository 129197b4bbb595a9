# rewardledger/services/fraud.py
"""
Anti-abuse risk scoring.

Heuristic score in 0..100 attached to check-ins and faucet claims. The
sliding windows are per-process memory; they are advisory only and reset
on restart. Persistent evidence goes to fraud_logs.
"""
import hashlib
import json
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from loguru import logger
from sqlalchemy.orm import Session

from ..models import FraudLog

HOUR = 3600
DAY = 86400

BOT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"bot", r"crawler", r"spider", r"scraper", r"curl", r"wget", r"python-requests", r"postman")
]
BROWSER_MARKERS = ("Mozilla", "Chrome", "Safari", "Firefox")
PRIVATE_RANGES = ("10.", "172.16.", "192.168.")


@dataclass
class DeviceInfo:
    user_agent: str
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None


@dataclass
class Attempt:
    user_id: int
    ip_address: str
    user_agent: str
    device_fingerprint: str
    timestamp: datetime


@dataclass
class FraudCheck:
    risk_score: int
    blocked: bool
    action_taken: str
    reasons: List[str] = field(default_factory=list)


def device_fingerprint(info: Optional[DeviceInfo]) -> str:
    if info is None:
        return "unknown"
    canonical = json.dumps({
        "userAgent": info.user_agent,
        "screenResolution": info.screen_resolution or "unknown",
        "timezone": info.timezone or "unknown",
        "language": info.language or "unknown",
        "platform": info.platform or "unknown",
    }, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def classify(score: int) -> str:
    if score >= 80:
        return "blocked"
    if score >= 60:
        return "requires_verification"
    if score >= 40:
        return "flagged"
    return "allowed"


class FraudDetector:
    """
    Sliding-window scorer shared by every request of the process.

    Sync handlers run on a threadpool, so the windows and the flagged-IP set
    are only touched under ``_lock``. Keys whose hits have all left the
    24 h window are swept at most once an hour from ``analyze``.
    """

    def __init__(self) -> None:
        self.suspicious_ips: Set[str] = set()
        self._hits: Dict[str, List[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = 0.0

    def flag_suspicious_ip(self, ip_address: str) -> None:
        with self._lock:
            self.suspicious_ips.add(ip_address)
        logger.warning("IP {} flagged as suspicious", ip_address)

    def unflag_suspicious_ip(self, ip_address: str) -> bool:
        with self._lock:
            if ip_address not in self.suspicious_ips:
                return False
            self.suspicious_ips.discard(ip_address)
        logger.info("IP {} no longer flagged", ip_address)
        return True

    def _recent(self, key: str, window: int, now: float) -> int:
        return sum(1 for t in self._hits.get(key, ()) if now - t < window)

    def _track(self, key: str, now: float) -> None:
        hits = [t for t in self._hits.get(key, ()) if now - t < DAY]
        hits.append(now)
        self._hits[key] = hits

    def _sweep(self, now: float) -> None:
        for key in list(self._hits):
            kept = [t for t in self._hits[key] if now - t < DAY]
            if kept:
                self._hits[key] = kept
            else:
                del self._hits[key]
        self._last_sweep = now

    def analyze(self, attempt: Attempt, now: Optional[float] = None) -> FraudCheck:
        now = time.time() if now is None else now
        score = 0
        reasons: List[str] = []

        ip = attempt.ip_address or "unknown"
        with self._lock:
            if now - self._last_sweep >= HOUR:
                self._sweep(now)
            if ip in self.suspicious_ips:
                score += 50
                reasons.append("suspicious_ip")
            ip_hits = self._recent(f"ip:{ip}", HOUR, now)
            user_hits = self._recent(f"user:{attempt.user_id}", HOUR, now)
            self._track(f"user:{attempt.user_id}", now)
            self._track(f"ip:{ip}", now)

        if ip.startswith(PRIVATE_RANGES):
            score += 30
            reasons.append("vpn_detected")
        if ip_hits > 10:
            score += 40
            reasons.append("excessive_requests_from_ip")
        if user_hits > 3:
            score += 60
            reasons.append("too_many_checkin_attempts")

        ua = attempt.user_agent or ""
        if len(ua.strip()) < 10:
            score += 40
            reasons.append("missing_or_invalid_user_agent")
        if any(p.search(ua) for p in BOT_PATTERNS):
            score += 70
            reasons.append("bot_user_agent_detected")
        if len(ua) > 500:
            score += 20
            reasons.append("abnormally_long_user_agent")
        if not any(m in ua for m in BROWSER_MARKERS):
            score += 30
            reasons.append("non_standard_user_agent")

        ts = attempt.timestamp
        if 2 <= ts.hour <= 5:
            score += 15
            reasons.append("unusual_time_pattern")
        if ts.minute == 0 and ts.second == 0:
            score += 10
            reasons.append("precise_timing_pattern")

        score = min(score, 100)
        action = classify(score)
        return FraudCheck(risk_score=score, blocked=action == "blocked", action_taken=action, reasons=reasons)

    def cleanup(self, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        with self._lock:
            self._sweep(now)

    def stats(self) -> dict:
        with self._lock:
            return {
                "suspicious_ips": sorted(self.suspicious_ips),
                "suspicious_ip_count": len(self.suspicious_ips),
                "tracked_keys": len(self._hits),
            }


def record_fraud_log(db: Session, *, user_id: Optional[int], event_type: str, check: FraudCheck,
                     ip_address: Optional[str], user_agent: Optional[str], extra: Optional[dict] = None) -> FraudLog:
    details = {"reasons": check.reasons}
    if extra:
        details.update(extra)
    row = FraudLog(
        user_id=user_id,
        event_type=event_type,
        risk_score=check.risk_score,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent,
        action_taken=check.action_taken,
    )
    db.add(row)
    db.flush()
    if check.action_taken != "allowed":
        logger.warning("Fraud check {} for user {}: score {} ({})",
                       check.action_taken, user_id, check.risk_score, ", ".join(check.reasons))
    return row


_detector = FraudDetector()


def get_fraud_detector() -> FraudDetector:
    """FastAPI dependency returning the process-wide detector."""
    return _detector
