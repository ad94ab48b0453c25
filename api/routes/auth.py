"""
Auth routes — wallet challenge login, refresh, logout and current profile.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from api.auth import get_current_principal, get_services
from api.errors import ok
from api.services import Services
from common.errors import AuthError, InvalidSignature, StakeholderNotFound, TokenExpired, TokenInvalid
from identity.guard import Principal
from ledger.models import normalize_address

logger = logging.getLogger(__name__)

router = APIRouter()


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wallet_address: str = Field(alias="walletAddress", pattern=r"^0x[0-9a-fA-F]{40}$")
    signature: str = Field(min_length=4)
    challenge: str = Field(min_length=1)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(alias="refreshToken", min_length=1)


class LogoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


@router.get("/challenge")
def get_challenge(
    address: str = Query(..., pattern=r"^0x[0-9a-fA-F]{40}$"),
    services: Services = Depends(get_services),
):
    """Issue a short-lived message for the wallet to sign."""
    return ok(services.tokens.issue_challenge(address).to_dict())


@router.post("/login")
def login(body: LoginRequest, services: Services = Depends(get_services)):
    """Authenticate with a signed challenge and return a token pair."""
    address = normalize_address(body.wallet_address)
    logger.info("Login attempt: %s", address)
    try:
        message = services.tokens.verify_challenge(body.challenge, address)
        signer = services.gateway.recover_signer(message, body.signature)
        if signer != address:
            raise InvalidSignature("Signature does not match wallet address")
        stakeholder = services.gateway.get_stakeholder(address)
    except (InvalidSignature, TokenInvalid, TokenExpired) as e:
        services.audit.auth_failure(address, e.code)
        raise
    except StakeholderNotFound:
        services.audit.auth_failure(address, "STAKEHOLDER_NOT_FOUND")
        raise AuthError("Stakeholder not found or not registered")

    services.profiles.put(stakeholder)
    pair = services.tokens.issue_for(stakeholder)
    services.audit.auth_success(address)
    logger.info("User logged in: %s (%s)", address, stakeholder.role.value)
    return ok({"user": stakeholder.to_dict(), **pair.to_dict()}, "Login successful")


@router.post("/refresh")
def refresh(body: RefreshRequest, services: Services = Depends(get_services)):
    """Exchange a refresh token for a new access token."""
    pair = services.tokens.refresh(body.refresh_token, services.gateway.get_stakeholder)
    return ok({"token": pair.access_token, "expiresIn": pair.expires_in}, "Token refreshed successfully")


@router.post("/logout")
def logout(
    body: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    """Revoke the presented access token (and refresh token, if given)."""
    services.tokens.revoke(principal.token)
    services.audit.token_revoked(principal.address, principal.jti)
    if body is not None and body.refresh_token:
        try:
            services.tokens.revoke(body.refresh_token, subject=principal.address)
        except TokenInvalid:
            logger.info("Ignoring invalid or foreign refresh token on logout for %s", principal.address)
    return ok(None, "Logout successful")


@router.get("/me")
def get_me(
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
):
    """Return the caller's current ledger profile."""
    return ok(services.profiles.get(principal.address).to_dict())
