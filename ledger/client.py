"""
Ledger RPC client.

JSON-RPC 2.0 over HTTP (httpx). Every PharmaChain operation is exposed by the
ledger node as ``ledger_<operation>`` with named params. Requests are signed
with HMAC-SHA256 over the raw body using the ledger signing key.

This module only moves bytes: it raises LedgerTransportError for anything
that went wrong on the wire and LedgerRpcError for structured errors the
node returned. Classification into the domain taxonomy happens once, in
ledger/gateway.py.
"""

import hashlib
import hmac
import itertools
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

METHOD_PREFIX = "ledger_"

# JSON-RPC error codes used by the ledger node
REVERT_CODE = 3                  # execution reverted, data.reason carries the revert string
INSUFFICIENT_FUNDS_CODE = -32010


class RevertReason:
    """Revert strings emitted by the PharmaChain ledger contract."""
    BATCH_EXISTS = "Batch number already exists"
    BATCH_NOT_FOUND = "Batch does not exist"
    QR_EXISTS = "QR code hash already registered"
    INVALID_DATES = "Expiry date must be after manufacturing date"
    INVALID_QUANTITY = "Quantity must be positive"
    NOT_MANUFACTURER = "Only verified manufacturers can perform this action"
    NOT_OWNER = "Not the token owner"
    RECALL_DENIED = "Not authorized to recall batch"
    RECALLED = "Batch has been recalled"
    INVALID_TRANSITION = "Invalid status transition"
    RECIPIENT_UNKNOWN = "Recipient not registered"
    STAKEHOLDER_NOT_FOUND = "Stakeholder not found"
    STAKEHOLDER_EXISTS = "Stakeholder already registered"
    REGISTRATION_DENIED = "Not authorized to register stakeholder"
    VERIFICATION_DENIED = "Only regulators can verify stakeholders"
    NOT_LABORATORY = "Only verified laboratories can submit test results"
    INVALID_SIGNATURE = "Invalid signature"


class LedgerTransportError(Exception):
    """The request did not produce a usable JSON-RPC response."""

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


class LedgerRpcError(Exception):
    """A structured error object returned by the ledger node."""

    def __init__(self, code: int, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.reason = reason

    @property
    def is_revert(self) -> bool:
        return self.code == REVERT_CODE

    @property
    def is_insufficient_funds(self) -> bool:
        return self.code == INSUFFICIENT_FUNDS_CODE


class LedgerClient(ABC):
    """Narrow call surface shared by the HTTP client and the local ledger."""

    def connect(self) -> None:
        """Open underlying resources. Called once from LedgerGateway.start()."""

    def close(self) -> None:
        """Release underlying resources."""

    @abstractmethod
    def call(self, method: str, params: Dict[str, Any], *, mutating: bool = False) -> Any:
        """Invoke ``method`` and return the JSON-RPC ``result``."""


def sign_body(signing_key: str, body: bytes) -> str:
    return hmac.new(signing_key.encode("utf-8"), body, hashlib.sha256).hexdigest()


class HttpLedgerClient(LedgerClient):
    """JSON-RPC client for a remote ledger node."""

    def __init__(
        self,
        rpc_url: str,
        signing_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self._signing_key = signing_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self._ids = itertools.count(1)

    def connect(self) -> None:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout, transport=self._transport)
            logger.info("Ledger RPC client opened for %s", self.rpc_url)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info("Ledger RPC client closed")

    def call(self, method: str, params: Dict[str, Any], *, mutating: bool = False) -> Any:
        if self._client is None:
            raise LedgerTransportError("Ledger RPC client is not connected")

        request_id = next(self._ids)
        body = json.dumps({
            "jsonrpc": "2.0",
            "id": request_id,
            "method": METHOD_PREFIX + method,
            "params": params,
        }, separators=(",", ":"), default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Ledger-Signature": sign_body(self._signing_key, body),
        }

        try:
            resp = self._client.post(self.rpc_url, content=body, headers=headers)
            resp.raise_for_status()
        except httpx.TimeoutException:
            logger.error("Ledger RPC %s timed out (mutating=%s)", method, mutating)
            raise LedgerTransportError(f"{method} timed out", timed_out=True)
        except httpx.HTTPStatusError as e:
            logger.error("Ledger RPC HTTP error %s for %s", e.response.status_code, method)
            raise LedgerTransportError(f"{method} failed with HTTP {e.response.status_code}")
        except httpx.RequestError as e:
            logger.error("Ledger RPC network error for %s: %s", method, e)
            raise LedgerTransportError(f"{method} network error: {e}")

        try:
            payload = resp.json()
        except ValueError:
            logger.error("Ledger RPC returned malformed JSON for %s", method)
            raise LedgerTransportError(f"{method} returned malformed JSON")

        if not isinstance(payload, dict):
            raise LedgerTransportError(f"{method} returned a non-object response")

        error = payload.get("error")
        if error:
            data = error.get("data") if isinstance(error, dict) else None
            reason = data.get("reason") if isinstance(data, dict) else None
            raise LedgerRpcError(
                code=int(error.get("code", 0)) if isinstance(error, dict) else 0,
                message=str(error.get("message", "")) if isinstance(error, dict) else str(error),
                reason=reason,
            )

        if "result" not in payload:
            raise LedgerTransportError(f"{method} response missing 'result'")
        return payload["result"]
