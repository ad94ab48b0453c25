"""
Batch routes — mint, read, custody transfer, lifecycle status, recall,
QR codes and laboratory results.
"""
import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field

from api.auth import get_current_principal, get_services, require_verified_role
from api.errors import ok
from api.services import Services
from common.errors import ValidationFailed
from identity.guard import Principal
from integrity.payload import batch_payload_for, build_batch_payload
from integrity.render import render_png, render_png_data_url, render_svg
from ledger.models import STATUS_CODEC, BatchStatus, Role

logger = logging.getLogger(__name__)

router = APIRouter()

ADDRESS = r"^0x[0-9a-fA-F]{40}$"


class MintRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    drug_name: str = Field(alias="drugName", min_length=1, max_length=200)
    batch_number: str = Field(alias="batchNumber", min_length=1, max_length=100)
    manufacturing_date: date = Field(alias="manufacturingDate")
    expiry_date: date = Field(alias="expiryDate")
    quantity: int = Field(gt=0)
    document_ref: Optional[str] = Field(default=None, alias="documentRef")
    notes: Optional[str] = None


class TransferRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to_address: str = Field(alias="toAddress", pattern=ADDRESS)
    location: str = Field(min_length=1, max_length=200)


class StatusRequest(BaseModel):
    status: str
    location: str = Field(default="", max_length=200)


class RecallRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class LabResultRequest(BaseModel):
    passed: bool


def _parse_status(value: str) -> BatchStatus:
    try:
        return STATUS_CODEC.parse(value)
    except ValueError:
        raise ValidationFailed(
            f"Unknown batch status: {value}",
            details={"allowed": [s.value for s in BatchStatus]},
        )


@router.get("")
def list_batches(
    manufacturer: Optional[str] = Query(None, pattern=ADDRESS),
    status_filter: Optional[str] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services),
    _: Principal = Depends(get_current_principal),
):
    """List batches, optionally by manufacturer and status, with pagination."""
    batches = services.gateway.list_batches(manufacturer)
    if status_filter:
        wanted = _parse_status(status_filter)
        batches = [b for b in batches if b.status is wanted]
    return ok({
        "total": len(batches),
        "skip": skip,
        "limit": limit,
        "items": [b.to_dict() for b in batches[skip:skip + limit]],
    })


@router.post("", status_code=status.HTTP_201_CREATED)
def mint_batch(
    body: MintRequest,
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_verified_role(Role.MANUFACTURER)),
):
    """
    Mint a new batch token. The QR fingerprint is computed before the mint
    and anchored on the ledger with the batch.
    """
    settings = services.settings
    payload = build_batch_payload(
        batch_number=body.batch_number,
        drug_name=body.drug_name,
        manufacturer=principal.address,
        quantity=body.quantity,
        manufacturing_date=body.manufacturing_date,
        expiry_date=body.expiry_date,
        base_url=settings.frontend_url,
    )

    document_ref = body.document_ref or ""
    if not document_ref and services.documents is not None:
        document_ref = services.documents.put_json(
            {**payload.to_dict(), "notes": body.notes},
            filename=f"{body.batch_number}.json",
        )

    tx = services.gateway.mint_batch(
        drug_name=body.drug_name,
        batch_number=body.batch_number,
        manufacturing_date=body.manufacturing_date,
        expiry_date=body.expiry_date,
        document_ref=document_ref,
        quantity=body.quantity,
        qr_hash=payload.hash,
        actor=principal.address,
    )
    payload.token_id = tx.token_id
    return ok({
        **tx.to_dict(),
        "documentRef": document_ref,
        "qrCode": {
            "hash": payload.hash,
            "verificationUrl": payload.url,
            "payload": payload.to_dict(),
            "dataUrl": render_png_data_url(payload),
        },
    }, "Batch minted successfully")


@router.get("/{token_id}")
def get_batch(
    token_id: int = Path(..., ge=0),
    services: Services = Depends(get_services),
    _: Principal = Depends(get_current_principal),
):
    batch = services.gateway.get_batch(token_id)
    return ok({**batch.to_dict(), "isExpired": batch.is_expired()})


@router.get("/{token_id}/history")
def get_history(
    token_id: int = Path(..., ge=0),
    services: Services = Depends(get_services),
    _: Principal = Depends(get_current_principal),
):
    """Ordered chain of custody for a batch."""
    records = services.gateway.get_transfer_history(token_id)
    return ok({"tokenId": token_id, "transfers": [r.to_dict() for r in records]})


@router.post("/{token_id}/transfer")
def transfer_batch(
    body: TransferRequest,
    token_id: int = Path(..., ge=0),
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_current_principal),
):
    """Transfer custody. Only the current holder may transfer."""
    tx = services.gateway.transfer_batch(token_id, body.to_address, body.location, principal.address)
    return ok(tx.to_dict(), "Batch transferred successfully")


@router.put("/{token_id}/status")
def update_status(
    body: StatusRequest,
    token_id: int = Path(..., ge=0),
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_current_principal),
):
    new_status = _parse_status(body.status)
    tx = services.gateway.update_batch_status(token_id, new_status, body.location, principal.address)
    return ok({**tx.to_dict(), "status": new_status.value}, "Batch status updated")


@router.post("/{token_id}/recall")
def recall_batch(
    body: RecallRequest,
    token_id: int = Path(..., ge=0),
    services: Services = Depends(get_services),
    principal: Principal = Depends(get_current_principal),
):
    """Recall a batch (holder, manufacturer of record or admin)."""
    tx = services.gateway.recall_batch(token_id, body.reason, principal.address)
    return ok({**tx.to_dict(), "status": BatchStatus.RECALLED.value}, "Batch recalled")


@router.get("/{token_id}/qr")
def get_batch_qr(
    token_id: int = Path(..., ge=0),
    fmt: str = Query("json", alias="format", pattern="^(json|png|svg)$"),
    services: Services = Depends(get_services),
    _: Principal = Depends(get_current_principal),
):
    """
    Freshly issued QR payload for an existing batch. Its fingerprint covers a
    new timestamp, so it verifies through POST /api/verify/qr rather than by
    the fingerprint anchored at mint.
    """
    batch = services.gateway.get_batch(token_id)
    payload = batch_payload_for(batch, services.settings.frontend_url)
    if fmt == "png":
        return Response(content=render_png(payload), media_type="image/png")
    if fmt == "svg":
        return Response(content=render_svg(payload), media_type="image/svg+xml")
    return ok({
        "hash": payload.hash,
        "verificationUrl": payload.url,
        "payload": payload.to_dict(),
        "dataUrl": render_png_data_url(payload),
    })


@router.post("/{token_id}/tests", status_code=status.HTTP_201_CREATED)
def submit_test_result(
    body: LabResultRequest,
    token_id: int = Path(..., ge=0),
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_verified_role(Role.LABORATORY)),
):
    tx = services.gateway.submit_test_result(token_id, body.passed, principal.address)
    return ok({**tx.to_dict(), "tokenId": token_id, "passed": body.passed}, "Test result recorded")


@router.get("/{token_id}/tests")
def get_test_results(
    token_id: int = Path(..., ge=0),
    services: Services = Depends(get_services),
    _: Principal = Depends(get_current_principal),
):
    results = services.gateway.get_test_results(token_id)
    return ok({"tokenId": token_id, "results": [r.to_dict() for r in results]})
