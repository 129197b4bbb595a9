from fastapi import APIRouter, Depends, HTTPException, status

from ..auth import require_admin
from ..schemas import SuspiciousIpIn
from ..services.fraud import FraudDetector, get_fraud_detector

router = APIRouter(prefix="/api/fraud", tags=["fraud"])


@router.get("/stats")
def stats(detector: FraudDetector = Depends(get_fraud_detector), _: dict = Depends(require_admin)):
    return detector.stats()


@router.post("/suspicious-ips", status_code=status.HTTP_201_CREATED)
def flag_ip(payload: SuspiciousIpIn, detector: FraudDetector = Depends(get_fraud_detector),
            _: dict = Depends(require_admin)):
    ip = str(payload.ip_address)
    detector.flag_suspicious_ip(ip)
    return {"ip_address": ip, "flagged": True}


@router.delete("/suspicious-ips/{ip_address}")
def unflag_ip(ip_address: str, detector: FraudDetector = Depends(get_fraud_detector),
              _: dict = Depends(require_admin)):
    if not detector.unflag_suspicious_ip(ip_address):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="IP is not flagged")
    return {"ip_address": ip_address, "flagged": False}
