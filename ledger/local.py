"""
In-process ledger node for development and tests (LEDGER_RPC_URL=local).

Implements the same ``ledger_<operation>`` surface as a remote node, with the
contract's rules: owner/admin, stakeholder registry, batch tokens, custody
history, fingerprint index and laboratory results. Responses use the ledger
encoding (integer enum codes, epoch seconds, lower-case addresses) so the
gateway decodes them exactly as it would a remote response.

Signatures use a development scheme: ``0x`` + sha256("<address>:<message>")
followed by the 40 hex digits of the signer address. See LocalLedger.sign().
"""

import hashlib
import itertools
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ledger.client import (
    INSUFFICIENT_FUNDS_CODE,
    REVERT_CODE,
    LedgerClient,
    LedgerRpcError,
    RevertReason,
)
from ledger.models import ROLE_CODEC, STATUS_CODEC, ZERO_ADDRESS, BatchStatus, Role
from ledger import lifecycle

logger = logging.getLogger(__name__)

WEI_PER_ETHER = 10 ** 18
DEFAULT_BALANCE_WEI = 10_000 * WEI_PER_ETHER
DEFAULT_GAS_PRICE_WEI = 20_000_000_000  # 20 gwei

GAS_COST = {
    "registerStakeholder":        120_000,
    "setStakeholderVerification":  45_000,
    "mintBatch":                  250_000,
    "transferBatch":               90_000,
    "updateBatchStatus":           60_000,
    "recallBatch":                 70_000,
    "submitTestResult":            80_000,
}


def _revert(reason: str) -> LedgerRpcError:
    return LedgerRpcError(REVERT_CODE, f"execution reverted: {reason}", reason=reason)


class LocalLedger(LedgerClient):
    """Thread-safe in-memory ledger."""

    def __init__(
        self,
        owner: str,
        balance_wei: int = DEFAULT_BALANCE_WEI,
        gas_price_wei: int = DEFAULT_GAS_PRICE_WEI,
        clock: Callable[[], float] = time.time,
    ):
        self.owner = owner.lower()
        self.balance_wei = balance_wei
        self.gas_price_wei = gas_price_wei
        self._clock = clock
        self._lock = threading.RLock()
        self._blocks = itertools.count(1)
        self._token_ids = itertools.count(1)
        self._stakeholders: Dict[str, Dict[str, Any]] = {}
        self._batches: Dict[int, Dict[str, Any]] = {}
        self._batch_numbers: Dict[str, int] = {}
        self._qr_index: Dict[str, int] = {}
        self._history: Dict[int, List[Dict[str, Any]]] = {}
        self._tests: Dict[int, List[Dict[str, Any]]] = {}

    # ── Development signing scheme ───────────────────────────────────────────

    @staticmethod
    def sign(address: str, message: str) -> str:
        address = address.lower()
        digest = hashlib.sha256(f"{address}:{message}".encode("utf-8")).hexdigest()
        return "0x" + digest + address[2:]

    # ── Dispatch ─────────────────────────────────────────────────────────────

    def call(self, method: str, params: Dict[str, Any], *, mutating: bool = False) -> Any:
        handler = getattr(self, f"_rpc_{method}", None)
        if handler is None:
            raise LedgerRpcError(-32601, f"Method not found: {method}")
        with self._lock:
            if method in GAS_COST:
                return self._transact(method, handler, params)
            return handler(**params)

    def _transact(self, method: str, handler: Callable[..., Any], params: Dict[str, Any]) -> Dict[str, Any]:
        params = dict(params)
        gas_price = int(params.pop("gasPrice", self.gas_price_wei))
        gas_limit = int(params.pop("gasLimit", GAS_COST[method]))
        gas_used = GAS_COST[method]
        if gas_used > gas_limit:
            raise _revert("out of gas")
        cost = gas_used * gas_price
        if cost > self.balance_wei:
            raise LedgerRpcError(INSUFFICIENT_FUNDS_CODE, "insufficient funds for gas * price + value")

        logs = handler(**params) or []
        self.balance_wei -= cost
        block = next(self._blocks)
        tx_hash = "0x" + hashlib.sha256(f"{block}:{method}:{sorted(params.items())}".encode("utf-8")).hexdigest()
        return {"txHash": tx_hash, "blockNumber": block, "gasUsed": gas_used, "logs": logs}

    # ── Views ────────────────────────────────────────────────────────────────

    def _rpc_network(self) -> Dict[str, Any]:
        return {"name": "local", "chainId": 31337}

    def _rpc_owner(self) -> str:
        return self.owner

    def _rpc_getBalance(self, address: Optional[str] = None) -> str:
        return str(self.balance_wei)

    def _rpc_getGasPrice(self) -> str:
        return str(self.gas_price_wei)

    def _rpc_recoverSigner(self, message: str, signature: str) -> str:
        sig = (signature or "").lower()
        if not sig.startswith("0x") or len(sig) != 2 + 64 + 40:
            raise _revert(RevertReason.INVALID_SIGNATURE)
        address = "0x" + sig[-40:]
        if self.sign(address, message) != sig:
            raise _revert(RevertReason.INVALID_SIGNATURE)
        return address

    def _rpc_getStakeholder(self, address: str) -> Dict[str, Any]:
        record = self._stakeholders.get(address.lower())
        if record is None:
            raise _revert(RevertReason.STAKEHOLDER_NOT_FOUND)
        return dict(record)

    def _rpc_getAllStakeholders(self) -> List[str]:
        return list(self._stakeholders)

    def _rpc_getBatch(self, tokenId: int) -> Dict[str, Any]:
        return dict(self._batch(tokenId))

    def _rpc_getAllBatches(self) -> List[int]:
        return sorted(self._batches)

    def _rpc_getBatchesByManufacturer(self, manufacturer: str) -> List[int]:
        manufacturer = manufacturer.lower()
        return sorted(tid for tid, b in self._batches.items() if b["manufacturer"] == manufacturer)

    def _rpc_getTransferHistory(self, tokenId: int) -> List[Dict[str, Any]]:
        self._batch(tokenId)
        return [dict(r) for r in self._history.get(int(tokenId), [])]

    def _rpc_getTestResults(self, tokenId: int) -> List[Dict[str, Any]]:
        self._batch(tokenId)
        return [dict(r) for r in self._tests.get(int(tokenId), [])]

    def _rpc_verifyByQRCode(self, qrHash: str) -> int:
        # 0 is the contract's "not found" value
        return self._qr_index.get(qrHash, 0)

    # ── Mutations ────────────────────────────────────────────────────────────

    def _rpc_registerStakeholder(self, address: str, name: str, licenseNumber: str, role: int, actor: str):
        address, actor = address.lower(), actor.lower()
        if actor not in (self.owner, address):
            raise _revert(RevertReason.REGISTRATION_DENIED)
        if address in self._stakeholders:
            raise _revert(RevertReason.STAKEHOLDER_EXISTS)
        ROLE_CODEC.decode(role)
        self._stakeholders[address] = {
            "walletAddress": address,
            "name": name,
            "licenseNumber": licenseNumber,
            "role": int(role),
            # admin registrations are pre-verified, self-registrations pend
            "isVerified": actor == self.owner,
            "registrationDate": int(self._clock()),
        }
        return [{"event": "StakeholderRegistered", "args": {"walletAddress": address, "role": int(role)}}]

    def _rpc_setStakeholderVerification(self, address: str, verified: bool, actor: str):
        address, actor = address.lower(), actor.lower()
        if actor != self.owner and not self._has_role(actor, Role.REGULATOR):
            raise _revert(RevertReason.VERIFICATION_DENIED)
        record = self._stakeholders.get(address)
        if record is None:
            raise _revert(RevertReason.STAKEHOLDER_NOT_FOUND)
        record["isVerified"] = bool(verified)
        return [{"event": "StakeholderVerified", "args": {"walletAddress": address, "isVerified": bool(verified)}}]

    def _rpc_mintBatch(
        self,
        drugName: str,
        batchNumber: str,
        manufacturingDate: int,
        expiryDate: int,
        documentRef: str,
        quantity: int,
        qrHash: str,
        actor: str,
    ):
        actor = actor.lower()
        if not self._has_role(actor, Role.MANUFACTURER):
            raise _revert(RevertReason.NOT_MANUFACTURER)
        if batchNumber in self._batch_numbers:
            raise _revert(RevertReason.BATCH_EXISTS)
        if qrHash in self._qr_index:
            raise _revert(RevertReason.QR_EXISTS)
        if int(expiryDate) <= int(manufacturingDate):
            raise _revert(RevertReason.INVALID_DATES)
        if int(quantity) <= 0:
            raise _revert(RevertReason.INVALID_QUANTITY)

        token_id = next(self._token_ids)
        self._batches[token_id] = {
            "tokenId": token_id,
            "drugName": drugName,
            "batchNumber": batchNumber,
            "manufacturingDate": int(manufacturingDate),
            "expiryDate": int(expiryDate),
            "manufacturer": actor,
            "documentRef": documentRef,
            "status": STATUS_CODEC.encode(BatchStatus.MANUFACTURED),
            "quantity": int(quantity),
            "qrCodeHash": qrHash,
            "holder": actor,
        }
        self._batch_numbers[batchNumber] = token_id
        self._qr_index[qrHash] = token_id
        self._history[token_id] = []
        logger.debug("Local ledger minted token %d (%s)", token_id, batchNumber)
        return [
            {"event": "Transfer", "args": {"from": ZERO_ADDRESS, "to": actor, "tokenId": token_id}},
            {"event": "BatchMinted", "args": {"tokenId": token_id, "batchNumber": batchNumber, "manufacturer": actor}},
        ]

    def _rpc_transferBatch(self, tokenId: int, to: str, location: str, actor: str):
        batch = self._batch(tokenId)
        to, actor = to.lower(), actor.lower()
        if batch["holder"] != actor:
            raise _revert(RevertReason.NOT_OWNER)
        if batch["status"] == STATUS_CODEC.encode(BatchStatus.RECALLED):
            raise _revert(RevertReason.RECALLED)
        if to not in self._stakeholders:
            raise _revert(RevertReason.RECIPIENT_UNKNOWN)
        batch["holder"] = to
        self._history[batch["tokenId"]].append({
            "from": actor, "to": to, "location": location, "timestamp": int(self._clock()),
        })
        return [{"event": "BatchTransferred", "args": {"tokenId": batch["tokenId"], "from": actor, "to": to}}]

    def _rpc_updateBatchStatus(self, tokenId: int, status: int, location: str, actor: str):
        batch = self._batch(tokenId)
        if batch["holder"] != actor.lower():
            raise _revert(RevertReason.NOT_OWNER)
        current = STATUS_CODEC.decode(batch["status"])
        if not lifecycle.is_allowed(current, STATUS_CODEC.decode(status)):
            raise _revert(RevertReason.INVALID_TRANSITION)
        batch["status"] = int(status)
        return [{"event": "BatchStatusUpdated", "args": {"tokenId": batch["tokenId"], "status": int(status), "location": location}}]

    def _rpc_recallBatch(self, tokenId: int, reason: str, actor: str):
        batch = self._batch(tokenId)
        actor = actor.lower()
        if actor not in (batch["holder"], batch["manufacturer"], self.owner):
            raise _revert(RevertReason.RECALL_DENIED)
        if batch["status"] == STATUS_CODEC.encode(BatchStatus.RECALLED):
            raise _revert(RevertReason.INVALID_TRANSITION)
        batch["status"] = STATUS_CODEC.encode(BatchStatus.RECALLED)
        return [{"event": "BatchRecalled", "args": {"tokenId": batch["tokenId"], "reason": reason, "recalledBy": actor}}]

    def _rpc_submitTestResult(self, tokenId: int, passed: bool, actor: str):
        batch = self._batch(tokenId)
        actor = actor.lower()
        if not self._has_role(actor, Role.LABORATORY):
            raise _revert(RevertReason.NOT_LABORATORY)
        self._tests.setdefault(batch["tokenId"], []).append({
            "tokenId": batch["tokenId"],
            "passed": bool(passed),
            "laboratory": actor,
            "timestamp": int(self._clock()),
        })
        return [{"event": "TestResultSubmitted", "args": {"tokenId": batch["tokenId"], "passed": bool(passed)}}]

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _batch(self, token_id: Any) -> Dict[str, Any]:
        try:
            return self._batches[int(token_id)]
        except (KeyError, TypeError, ValueError):
            raise _revert(RevertReason.BATCH_NOT_FOUND)

    def _has_role(self, address: str, role: Role) -> bool:
        record = self._stakeholders.get(address)
        return bool(
            record
            and record["isVerified"]
            and record["role"] == ROLE_CODEC.encode(role)
        )
