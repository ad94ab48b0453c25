"""
Role-Based Access Guard.

Runs after token verification. Fails closed: a missing or unknown role is
Forbidden, an unknown verified flag is Unverified. The only side effect is
an audit event for every denial.
"""

import logging
from dataclasses import dataclass
from typing import Collection, Optional

from common.errors import Forbidden, Unverified
from identity.audit import AuditLogger
from ledger.models import Role

logger = logging.getLogger(__name__)


@dataclass
class Principal:
    """The authenticated caller as seen by route handlers."""
    address: str
    role: Optional[Role]
    is_verified: Optional[bool]    # None when the profile could not be loaded
    name: Optional[str] = None
    jti: Optional[str] = None
    token: Optional[str] = None

    def to_dict(self):
        return {
            "walletAddress": self.address,
            "role": self.role.value if self.role else None,
            "isVerified": self.is_verified,
            "name": self.name,
        }


class AccessGuard:

    def __init__(self, audit: Optional[AuditLogger] = None):
        self.audit = audit if audit is not None else AuditLogger()

    def authorize(self, principal: Optional[Principal], allowed_roles: Collection[Role], endpoint: str) -> None:
        required = [Role(r).value for r in allowed_roles]
        if principal is None:
            self.audit.access_denied("anonymous", required, endpoint, "unauthenticated")
            raise Forbidden("Authentication required")
        if principal.role is None or not isinstance(principal.role, Role):
            self.audit.access_denied(principal.address, required, endpoint, "role unknown")
            raise Forbidden("Role unknown")
        if principal.role not in allowed_roles:
            self.audit.access_denied(principal.address, required, endpoint, f"role {principal.role.value}")
            raise Forbidden(
                f"Access denied. Required roles: {', '.join(required)}",
                details={"requiredRoles": required, "role": principal.role.value},
            )

    def require_verified(self, principal: Optional[Principal], endpoint: str) -> None:
        if principal is None or principal.is_verified is not True:
            who = principal.address if principal else "anonymous"
            reason = "unverified" if principal and principal.is_verified is False else "verification unknown"
            self.audit.access_denied(who, [], endpoint, reason)
            raise Unverified()
