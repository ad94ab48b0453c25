"""
Bearer auth dependencies — current principal and role / verification gates.
"""
import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.services import Services
from common.errors import AppError, TokenInvalid
from identity.guard import Principal
from ledger.models import Role

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> Principal:
    """Verified access token -> Principal. The verified flag is resolved lazily."""
    if credentials is None or not credentials.credentials:
        raise TokenInvalid("Access token required")
    token = credentials.credentials
    claims = services.tokens.verify(token)
    return Principal(
        address=claims.subject,
        role=claims.role,
        is_verified=None,
        name=claims.name,
        jti=claims.jti,
        token=token,
    )


def get_optional_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> Optional[Principal]:
    """Principal when a bearer token is presented, else None. Bad tokens still fail."""
    if credentials is None or not credentials.credentials:
        return None
    return get_current_principal(credentials, services)


def resolve_verified(services: Services, principal: Principal) -> Principal:
    """
    Fill in the verified flag from the profile cache. If the profile cannot
    be loaded the flag stays unknown (None) and verified-only routes refuse.
    """
    try:
        profile = services.profiles.get(principal.address)
        principal.is_verified = profile.is_verified
        principal.name = profile.name
    except AppError as e:
        logger.warning("Profile unavailable for %s (%s) — verification unknown", principal.address, e.code)
        principal.is_verified = None
    return principal


def require_role(*roles: Role):
    """Role-based access control dependency factory."""
    def _check(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> Principal:
        services.guard.authorize(principal, roles, f"{request.method} {request.url.path}")
        return principal
    return _check


def require_verified_role(*roles: Role):
    """Role check followed by a live verified-flag check."""
    def _check(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        services: Services = Depends(get_services),
    ) -> Principal:
        endpoint = f"{request.method} {request.url.path}"
        services.guard.authorize(principal, roles, endpoint)
        resolve_verified(services, principal)
        services.guard.require_verified(principal, endpoint)
        return principal
    return _check
