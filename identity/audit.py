"""
Security audit events.

Denials, revocations and logins go to the ``audit`` logger with structured
``extra`` fields, and into an in-memory ring buffer that regulators can read
back through /api/audit/events.
"""

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Sequence

log = logging.getLogger("audit")


@dataclass
class AuditEvent:
    action: str                        # e.g. "access.denied", "auth.login"
    principal: str = "anonymous"       # wallet address
    resource: Optional[str] = None     # endpoint or token id
    status: str = "success"            # success | denied | revoked | error
    details: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class AuditLogger:

    MAX_BUFFER_SIZE = 1000

    def __init__(self, max_events: int = MAX_BUFFER_SIZE):
        self._buffer: Deque[Dict[str, Any]] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def log(self, event: AuditEvent) -> None:
        with self._lock:
            self._buffer.append(asdict(event))

        extra = {
            "type": "audit",
            "principal": event.principal,
            "action": event.action,
            "status": event.status,
        }
        if event.resource:
            extra["resource"] = event.resource
        if event.details:
            extra["details"] = event.details

        if event.status in ("denied", "revoked", "error"):
            log.warning("audit: %s %s principal=%s resource=%s",
                        event.action, event.status, event.principal, event.resource, extra=extra)
        else:
            log.info("audit: %s %s principal=%s", event.action, event.status, event.principal, extra=extra)

    def access_denied(self, principal: str, required: Sequence[str], endpoint: str, reason: str) -> None:
        self.log(AuditEvent(
            action="access.denied",
            principal=principal,
            resource=endpoint,
            status="denied",
            details={"requiredRoles": list(required), "reason": reason},
        ))

    def auth_success(self, principal: str) -> None:
        self.log(AuditEvent(action="auth.login", principal=principal))

    def auth_failure(self, principal: str, reason: str) -> None:
        self.log(AuditEvent(action="auth.login", principal=principal, status="denied",
                            details={"reason": reason}))

    def token_revoked(self, principal: str, jti: str) -> None:
        self.log(AuditEvent(action="auth.logout", principal=principal, resource=jti, status="revoked"))

    def log_verification(self, principal: str, stakeholder: str, verified: bool) -> None:
        self.log(AuditEvent(action="stakeholder.verify", principal=principal, resource=stakeholder,
                            details={"isVerified": verified}))

    def recent(
        self,
        limit: int = 100,
        action_prefix: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Newest first."""
        with self._lock:
            events = list(self._buffer)
        events.reverse()
        if action_prefix:
            events = [e for e in events if e["action"].startswith(action_prefix)]
        if status:
            events = [e for e in events if e["status"] == status]
        return events[:limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)
