"""
Health routes — liveness and dependency readiness.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.auth import get_services
from api.services import Services
from common.errors import AppError

logger = logging.getLogger(__name__)

router = APIRouter()

SERVICE_NAME = "pharmachain-api"
VERSION = "1.0.0"
WEI_PER_ETHER = 10 ** 18


@router.get("")
def health():
    return {"status": "ok", "service": SERVICE_NAME, "version": VERSION}


@router.get("/ready")
def ready(services: Services = Depends(get_services)):
    """
    Ledger readiness decides the status code. The revocation store and the
    document store only degrade it.
    """
    checks = {}
    status = "healthy"

    gateway = services.gateway
    if gateway.ready:
        try:
            balance = gateway.get_balance()
            checks["ledger"] = {
                "status": "healthy",
                "network": gateway.network,
                "adminAddress": gateway.admin_address,
                "walletBalance": f"{balance / WEI_PER_ETHER:.4f} ETH",
                "gasPrice": f"{gateway.get_gas_price()} wei",
            }
        except AppError as e:
            checks["ledger"] = {"status": "unhealthy", "error": e.message}
            status = "unhealthy"
    else:
        checks["ledger"] = {"status": "unhealthy", "error": "Ledger gateway not initialized"}
        status = "unhealthy"

    if services.revocations.ping():
        checks["revocationStore"] = {"status": "healthy", "type": type(services.revocations).__name__}
    else:
        checks["revocationStore"] = {"status": "unhealthy"}
        if status == "healthy":
            status = "degraded"

    if services.documents is None:
        checks["ipfs"] = {"status": "unavailable", "note": "IPFS not configured"}
    elif services.documents.ping():
        checks["ipfs"] = {"status": "healthy", "apiUrl": services.documents.api_url}
    else:
        checks["ipfs"] = {"status": "unhealthy", "apiUrl": services.documents.api_url}
        if status == "healthy":
            status = "degraded"

    checks["profileCache"] = {"status": "healthy", **services.profiles.stats()}

    body = {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
        "environment": services.settings.app_env,
        "services": checks,
    }
    return JSONResponse(status_code=503 if status == "unhealthy" else 200, content=body)
