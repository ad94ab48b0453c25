"""
Audit routes — recent security events for regulators.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.auth import get_services, require_verified_role
from api.errors import ok
from api.services import Services
from identity.guard import Principal
from ledger.models import Role

router = APIRouter()


@router.get("/events")
def list_events(
    limit: int = Query(100, ge=1, le=1000),
    action: Optional[str] = Query(None, description="Action prefix, e.g. access."),
    status: Optional[str] = Query(None, description="success | denied | revoked | error"),
    services: Services = Depends(get_services),
    _: Principal = Depends(require_verified_role(Role.REGULATOR)),
):
    events = services.audit.recent(limit=limit, action_prefix=action, status=status)
    return ok({"total": len(events), "items": events})
