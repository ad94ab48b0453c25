"""
Stakeholder routes — registration, directory, verification and QR codes.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field

from api.auth import get_current_principal, get_optional_principal, get_services, require_verified_role
from api.errors import ok
from api.services import Services
from common.errors import InvalidSignature, ValidationFailed
from identity.guard import Principal
from integrity.payload import stakeholder_payload_for
from integrity.render import render_png, render_png_data_url, render_svg
from ledger.models import ROLE_CODEC, Role, normalize_address

logger = logging.getLogger(__name__)

router = APIRouter()

ADDRESS = r"^0x[0-9a-fA-F]{40}$"


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wallet_address: str = Field(alias="walletAddress", pattern=ADDRESS)
    name: str = Field(min_length=1, max_length=200)
    license_number: str = Field(alias="licenseNumber", min_length=1, max_length=100)
    role: str
    # self-registration proves wallet ownership with a signed challenge
    signature: Optional[str] = None
    challenge: Optional[str] = None


class VerifyRequest(BaseModel):
    verified: bool = True


def _parse_role(value: str) -> Role:
    try:
        return ROLE_CODEC.parse(value)
    except ValueError:
        raise ValidationFailed(
            f"Unknown role: {value}",
            details={"allowed": [r.value for r in Role]},
        )


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register_stakeholder(
    body: RegisterRequest,
    services: Services = Depends(get_services),
    principal: Optional[Principal] = Depends(get_optional_principal),
):
    """
    Register a stakeholder. The ledger admin registers anyone (pre-verified);
    everyone else registers their own wallet, pending regulator verification.
    """
    address = normalize_address(body.wallet_address)
    role = _parse_role(body.role)
    gateway = services.gateway

    if principal is not None and principal.address == gateway.admin_address:
        actor = principal.address
    else:
        if not body.signature or not body.challenge:
            raise ValidationFailed("Self-registration requires a signed challenge",
                                   details={"fields": ["signature", "challenge"]})
        message = services.tokens.verify_challenge(body.challenge, address)
        if gateway.recover_signer(message, body.signature) != address:
            services.audit.auth_failure(address, "INVALID_SIGNATURE")
            raise InvalidSignature("Signature does not match wallet address")
        actor = address

    tx = gateway.register_stakeholder(address, body.name, body.license_number, role, actor)
    stakeholder = gateway.get_stakeholder(address)
    services.profiles.put(stakeholder)
    logger.info("Stakeholder registered: %s as %s (verified=%s)", address, role.value, stakeholder.is_verified)
    return ok({**tx.to_dict(), "stakeholder": stakeholder.to_dict()}, "Stakeholder registered successfully")


@router.get("")
def list_stakeholders(
    role: Optional[str] = Query(None),
    verified: Optional[bool] = Query(None),
    services: Services = Depends(get_services),
    _: Principal = Depends(require_verified_role(Role.REGULATOR)),
):
    """Regulator directory of every registered stakeholder."""
    stakeholders = services.gateway.list_stakeholders()
    if role:
        wanted = _parse_role(role)
        stakeholders = [s for s in stakeholders if s.role is wanted]
    if verified is not None:
        stakeholders = [s for s in stakeholders if s.is_verified is verified]
    return ok({"total": len(stakeholders), "items": [s.to_dict() for s in stakeholders]})


@router.get("/{address}")
def get_stakeholder(
    address: str = Path(..., pattern=ADDRESS),
    services: Services = Depends(get_services),
    _: Principal = Depends(get_current_principal),
):
    return ok(services.gateway.get_stakeholder(address).to_dict())


@router.post("/{address}/verify")
def verify_stakeholder(
    body: VerifyRequest,
    address: str = Path(..., pattern=ADDRESS),
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_verified_role(Role.REGULATOR)),
):
    """Set or clear a stakeholder's verified flag."""
    tx = services.gateway.set_stakeholder_verification(address, body.verified, principal.address)
    services.profiles.invalidate(address)
    services.audit.log_verification(principal.address, address.lower(), body.verified)
    return ok({**tx.to_dict(), "walletAddress": address.lower(), "isVerified": body.verified},
              "Stakeholder verification updated")


@router.get("/{address}/qr")
def get_stakeholder_qr(
    address: str = Path(..., pattern=ADDRESS),
    fmt: str = Query("json", alias="format", pattern="^(json|png|svg)$"),
    services: Services = Depends(get_services),
    _: Principal = Depends(get_current_principal),
):
    stakeholder = services.gateway.get_stakeholder(address)
    payload = stakeholder_payload_for(stakeholder, services.settings.frontend_url)
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
