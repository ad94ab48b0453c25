"""
Public verification routes — fingerprint lookup and scanned QR payloads.
"""
import logging
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, ConfigDict, Field

from api.auth import get_services
from api.errors import ok
from api.services import Services
from common.errors import BatchNotFound, StakeholderNotFound, ValidationFailed
from integrity.fingerprint import BATCH
from integrity.payload import PayloadVerification, matches_batch, verify_payload
from ledger.models import Batch, Stakeholder

logger = logging.getLogger(__name__)

router = APIRouter()


class QRVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    qr_data: Union[str, Dict[str, Any]] = Field(alias="qrData")


@router.get("/{fingerprint}")
def verify_fingerprint(
    fingerprint: str = Path(..., min_length=1, max_length=128),
    services: Services = Depends(get_services),
):
    """Is this fingerprint anchored on the ledger? Unknown fingerprints are simply invalid."""
    match = services.gateway.verify_by_fingerprint(fingerprint)
    data = match.to_dict()
    if match.batch is not None:
        data["isExpired"] = match.batch.is_expired()
        data["isRecalled"] = match.batch.is_recalled
    return ok(data)


def _ledger_batch(services: Services, v: PayloadVerification) -> Optional[Batch]:
    """The ledger batch the payload describes: by anchored fingerprint, else by token id."""
    match = services.gateway.verify_by_fingerprint(v.fingerprint)
    if match.is_valid:
        return match.batch
    if v.token_id is None:
        return None
    try:
        batch = services.gateway.get_batch(v.token_id)
    except BatchNotFound:
        return None
    return batch if matches_batch(v, batch) else None


def _ledger_stakeholder(services: Services, v: PayloadVerification) -> Optional[Stakeholder]:
    try:
        stakeholder = services.gateway.get_stakeholder(v.fields["walletAddress"])
    except (StakeholderNotFound, ValidationFailed):
        return None
    agrees = (
        stakeholder.name == v.fields["name"]
        and stakeholder.role.value == v.fields["role"]
        and stakeholder.license_number == v.fields["licenseNumber"]
    )
    return stakeholder if agrees else None


@router.post("/qr")
def verify_qr(body: QRVerifyRequest, services: Services = Depends(get_services)):
    """
    Check a scanned payload's integrity, then whether the ledger still
    agrees with what it describes.
    """
    v = verify_payload(body.qr_data, max_age_days=services.settings.qr_max_age_days)
    data = v.to_dict()

    if v.kind == BATCH:
        batch = _ledger_batch(services, v)
        data["onLedger"] = batch is not None
        if batch is not None:
            data["tokenId"] = batch.token_id
            data["batch"] = batch.to_dict()
            data["isExpired"] = batch.is_expired()
            data["isRecalled"] = batch.is_recalled
    else:
        stakeholder = _ledger_stakeholder(services, v)
        data["onLedger"] = stakeholder is not None
        if stakeholder is not None:
            data["stakeholder"] = stakeholder.to_dict()

    logger.info("QR payload verified: type=%s onLedger=%s stale=%s", v.kind, data["onLedger"], v.stale)
    return ok(data, "QR code verified")
