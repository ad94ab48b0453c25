"""
Ledger Gateway — PharmaChain

The single translation point between domain operations and the ledger's call
surface. Owns:
  - explicit connect / readiness (start, close, ready)
  - gas parameters attached to every mutation
  - read retries with exponential backoff (mutations are never retried)
  - enum encode/decode through ledger.models codecs
  - classification of transport and revert errors into common.errors
  - read-then-authorize-then-write checks, serialized per token id
"""

import datetime
import logging
import re
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Type

from common.errors import (
    AppError,
    BatchAlreadyExists,
    BatchNotFound,
    BatchRecalled,
    ExecutionReverted,
    Forbidden,
    InsufficientFunds,
    InvalidSignature,
    InvalidTransition,
    LedgerError,
    LedgerOutcomeUnknown,
    LedgerUnavailable,
    StakeholderAlreadyExists,
    StakeholderNotFound,
    TransferNotAllowed,
    ValidationFailed,
)
from ledger import lifecycle
from ledger.client import LedgerClient, LedgerRpcError, LedgerTransportError, RevertReason
from ledger.models import (
    ROLE_CODEC,
    STATUS_CODEC,
    ZERO_ADDRESS,
    Batch,
    BatchStatus,
    FingerprintMatch,
    Role,
    Stakeholder,
    TestResult,
    TransferRecord,
    TxResult,
    from_epoch,
    normalize_address,
    to_epoch,
)

logger = logging.getLogger(__name__)

FINGERPRINT_PATTERN = re.compile(r"^[0-9a-f]{64}$")

# Revert reason -> domain error. Built once; nothing else inspects reason strings.
REVERT_ERRORS: Dict[str, Type[AppError]] = {
    RevertReason.BATCH_EXISTS:          BatchAlreadyExists,
    RevertReason.QR_EXISTS:             BatchAlreadyExists,
    RevertReason.BATCH_NOT_FOUND:       BatchNotFound,
    RevertReason.INVALID_DATES:         ValidationFailed,
    RevertReason.INVALID_QUANTITY:      ValidationFailed,
    RevertReason.NOT_MANUFACTURER:      Forbidden,
    RevertReason.NOT_OWNER:             TransferNotAllowed,
    RevertReason.RECALL_DENIED:         TransferNotAllowed,
    RevertReason.RECALLED:              BatchRecalled,
    RevertReason.INVALID_TRANSITION:    InvalidTransition,
    RevertReason.RECIPIENT_UNKNOWN:     StakeholderNotFound,
    RevertReason.STAKEHOLDER_NOT_FOUND: StakeholderNotFound,
    RevertReason.STAKEHOLDER_EXISTS:    StakeholderAlreadyExists,
    RevertReason.REGISTRATION_DENIED:   Forbidden,
    RevertReason.VERIFICATION_DENIED:   Forbidden,
    RevertReason.NOT_LABORATORY:        Forbidden,
    RevertReason.INVALID_SIGNATURE:     InvalidSignature,
}


def classify_rpc_error(error: LedgerRpcError) -> AppError:
    """Map a structured ledger error onto the domain taxonomy."""
    if error.is_insufficient_funds:
        return InsufficientFunds()
    if error.is_revert:
        error_cls = REVERT_ERRORS.get(error.reason or "")
        if error_cls is not None:
            return error_cls(error.reason)
        return ExecutionReverted(
            f"Ledger transaction reverted: {error.reason or error.message}",
            details={"reason": error.reason},
        )
    return LedgerError(f"Ledger error {error.code}: {error.message}")


class LedgerGateway:
    """Domain operations over a LedgerClient."""

    def __init__(
        self,
        client: LedgerClient,
        gas_limit: int = 500_000,
        gas_price: int = 20_000_000_000,
        admin_address: Optional[str] = None,
        read_retries: int = 2,
        retry_backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self.gas_limit = gas_limit
        self.gas_price = gas_price
        self.admin_address = admin_address.lower() if admin_address else None
        self.read_retries = read_retries
        self.retry_backoff = retry_backoff
        self._sleep = sleep
        self._ready = False
        self._network: Dict[str, Any] = {}
        # token id -> [lock, holders waiting or inside]
        self._locks: Dict[int, List[Any]] = {}
        self._locks_guard = threading.Lock()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Connect once and probe the node. Raises LedgerUnavailable on failure."""
        logger.info("Initializing ledger gateway...")
        self._client.connect()
        self._ready = True
        try:
            self._network = self._read("network", {}) or {}
            if self.admin_address is None:
                self.admin_address = str(self._read("owner", {})).lower()
        except AppError:
            self._ready = False
            raise
        logger.info(
            "Connected to ledger network: %s (chain id %s), admin %s",
            self._network.get("name"), self._network.get("chainId"), self.admin_address,
        )

    def close(self) -> None:
        self._ready = False
        self._client.close()
        logger.info("Ledger gateway closed")

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def network(self) -> Dict[str, Any]:
        return dict(self._network)

    def _ensure_ready(self) -> None:
        if not self._ready:
            raise LedgerUnavailable("Ledger gateway not initialized")

    # ── Call plumbing ────────────────────────────────────────────────────────

    def _read(self, method: str, params: Dict[str, Any]) -> Any:
        self._ensure_ready()
        attempts = self.read_retries + 1
        for attempt in range(attempts):
            try:
                return self._client.call(method, params)
            except LedgerRpcError as e:
                raise classify_rpc_error(e)
            except LedgerTransportError as e:
                if attempt == attempts - 1:
                    logger.error("Ledger read %s failed after %d attempts: %s", method, attempts, e)
                    raise LedgerUnavailable(f"Ledger unavailable: {method}")
                delay = self.retry_backoff * (2 ** attempt)
                logger.warning("Ledger read %s failed (%s); retrying in %.2fs", method, e, delay)
                self._sleep(delay)

    def _write(self, method: str, params: Dict[str, Any]) -> TxResult:
        self._ensure_ready()
        params = dict(params, gasLimit=self.gas_limit, gasPrice=self.gas_price)
        try:
            receipt = self._client.call(method, params, mutating=True)
        except LedgerRpcError as e:
            logger.warning("Ledger %s rejected: %s", method, e.reason or e.message)
            raise classify_rpc_error(e)
        except LedgerTransportError as e:
            if e.timed_out:
                raise LedgerOutcomeUnknown(details={"operation": method})
            raise LedgerUnavailable(f"Ledger unavailable: {method}")

        try:
            result = TxResult(
                tx_ref=str(receipt["txHash"]),
                block_number=int(receipt.get("blockNumber", 0)),
                gas_used=int(receipt.get("gasUsed", 0)),
                events=list(receipt.get("logs") or []),
            )
        except (KeyError, TypeError, ValueError, AttributeError):
            # committed or not, we cannot tell from this receipt
            raise LedgerOutcomeUnknown(
                "Ledger returned an unreadable receipt; outcome unknown",
                details={"operation": method},
            )
        logger.info(
            "Ledger transaction %s confirmed: tx=%s block=%d gas=%d",
            method, result.tx_ref, result.block_number, result.gas_used,
        )
        return result

    @contextmanager
    def _token_lock(self, token_id: int) -> Iterator[None]:
        key = int(token_id)
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    # ── Decoding ─────────────────────────────────────────────────────────────

    @staticmethod
    def _decode_batch(raw: Dict[str, Any]) -> Batch:
        try:
            return Batch(
                token_id=int(raw["tokenId"]),
                drug_name=raw["drugName"],
                batch_number=raw["batchNumber"],
                manufacturing_date=from_epoch(raw["manufacturingDate"]).date(),
                expiry_date=from_epoch(raw["expiryDate"]).date(),
                manufacturer=str(raw["manufacturer"]).lower(),
                document_ref=raw.get("documentRef", ""),
                quantity=int(raw["quantity"]),
                qr_hash=raw.get("qrCodeHash", ""),
                status=STATUS_CODEC.decode(raw["status"]),
                holder=str(raw.get("holder") or raw["manufacturer"]).lower(),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"Malformed batch record from ledger: {e}")

    @staticmethod
    def _decode_stakeholder(raw: Dict[str, Any]) -> Stakeholder:
        try:
            return Stakeholder(
                address=str(raw["walletAddress"]).lower(),
                name=raw["name"],
                license_number=raw.get("licenseNumber", ""),
                role=ROLE_CODEC.decode(raw["role"]),
                is_verified=bool(raw["isVerified"]),
                registered_at=from_epoch(raw["registrationDate"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"Malformed stakeholder record from ledger: {e}")

    @staticmethod
    def _address(value: str, field_name: str) -> str:
        try:
            return normalize_address(value)
        except ValueError:
            raise ValidationFailed(f"{field_name} is not a valid address", details={"field": field_name})

    # ── Batches ──────────────────────────────────────────────────────────────

    def mint_batch(
        self,
        drug_name: str,
        batch_number: str,
        manufacturing_date: datetime.date,
        expiry_date: datetime.date,
        document_ref: str,
        quantity: int,
        qr_hash: str,
        actor: str,
    ) -> TxResult:
        """
        Mint a batch token. The token id is read from the BatchMinted event in
        the receipt, since it only exists once the ledger processed the call.
        """
        actor = self._address(actor, "actor")
        if not batch_number or not drug_name:
            raise ValidationFailed("Drug name and batch number are required")
        if quantity <= 0:
            raise ValidationFailed("Quantity must be positive", details={"quantity": quantity})
        if expiry_date <= manufacturing_date:
            raise ValidationFailed(
                "Expiry date must be after manufacturing date",
                details={"manufacturingDate": str(manufacturing_date), "expiryDate": str(expiry_date)},
            )

        logger.info("Minting new batch: %s (%s) for %s", batch_number, drug_name, actor)
        result = self._write("mintBatch", {
            "drugName": drug_name,
            "batchNumber": batch_number,
            "manufacturingDate": to_epoch(manufacturing_date),
            "expiryDate": to_epoch(expiry_date),
            "documentRef": document_ref,
            "quantity": int(quantity),
            "qrHash": qr_hash,
            "actor": actor,
        })
        result.token_id = self._minted_token_id(result)
        if result.token_id is None:
            raise LedgerError(
                "Mint confirmed but no BatchMinted event was found in the receipt",
                details={"transactionHash": result.tx_ref},
            )
        logger.info("Batch %s minted as token %d", batch_number, result.token_id)
        return result

    @staticmethod
    def _minted_token_id(result: TxResult) -> Optional[int]:
        for log in result.events:
            args = log.get("args") or {}
            if log.get("event") == "BatchMinted":
                return int(args["tokenId"])
        for log in result.events:
            args = log.get("args") or {}
            if log.get("event") == "Transfer" and str(args.get("from", "")).lower() == ZERO_ADDRESS:
                return int(args["tokenId"])
        return None

    def get_batch(self, token_id: int) -> Batch:
        raw = self._read("getBatch", {"tokenId": int(token_id)})
        return self._decode_batch(raw)

    def list_batches(self, manufacturer: Optional[str] = None) -> List[Batch]:
        if manufacturer:
            ids = self._read("getBatchesByManufacturer", {"manufacturer": self._address(manufacturer, "manufacturer")})
        else:
            ids = self._read("getAllBatches", {})
        batches = []
        for token_id in ids or []:
            try:
                batches.append(self.get_batch(token_id))
            except BatchNotFound:
                logger.warning("Batch %s listed but not retrievable — skipping", token_id)
        return batches

    def get_transfer_history(self, token_id: int) -> List[TransferRecord]:
        rows = self._read("getTransferHistory", {"tokenId": int(token_id)}) or []
        return [
            TransferRecord(
                from_address=str(r["from"]).lower(),
                to_address=str(r["to"]).lower(),
                location=r.get("location", ""),
                timestamp=from_epoch(r["timestamp"]),
            )
            for r in rows
        ]

    def transfer_batch(self, token_id: int, to_address: str, new_location: str, actor: str) -> TxResult:
        """Transfer custody. Only the current holder may transfer."""
        actor = self._address(actor, "actor")
        to_address = self._address(to_address, "toAddress")

        with self._token_lock(token_id):
            batch = self.get_batch(token_id)
            if batch.holder != actor:
                raise TransferNotAllowed(
                    "Only the current holder can transfer this batch",
                    details={"tokenId": batch.token_id},
                )
            if batch.is_recalled:
                raise BatchRecalled(f"Batch {batch.batch_number} has been recalled")
            if to_address == actor:
                raise ValidationFailed("Cannot transfer a batch to its current holder")
            self.get_stakeholder(to_address)

            logger.info("Transferring batch %d: %s -> %s (%s)", batch.token_id, actor, to_address, new_location)
            return self._write("transferBatch", {
                "tokenId": batch.token_id,
                "to": to_address,
                "location": new_location,
                "actor": actor,
            })

    def update_batch_status(self, token_id: int, new_status: BatchStatus, location: str, actor: str) -> TxResult:
        """Advance the batch through the lifecycle. Only the current holder may."""
        actor = self._address(actor, "actor")
        with self._token_lock(token_id):
            batch = self.get_batch(token_id)
            if batch.holder != actor:
                raise TransferNotAllowed(
                    "Only the current holder can update batch status",
                    details={"tokenId": batch.token_id},
                )
            lifecycle.check_transition(batch.status, new_status)

            logger.info("Updating batch %d status: %s -> %s", batch.token_id, batch.status.value, new_status.value)
            return self._write("updateBatchStatus", {
                "tokenId": batch.token_id,
                "status": STATUS_CODEC.encode(new_status),
                "location": location,
                "actor": actor,
            })

    def recall_batch(self, token_id: int, reason: str, actor: str) -> TxResult:
        """Recall a batch: current holder, manufacturer of record or admin."""
        actor = self._address(actor, "actor")
        with self._token_lock(token_id):
            batch = self.get_batch(token_id)
            if actor not in (batch.holder, batch.manufacturer, self.admin_address):
                raise TransferNotAllowed(
                    "Not authorized to recall batch",
                    details={"tokenId": batch.token_id},
                )
            lifecycle.check_transition(batch.status, BatchStatus.RECALLED)

            logger.warning("Recalling batch %d (%s): %s", batch.token_id, batch.batch_number, reason)
            return self._write("recallBatch", {
                "tokenId": batch.token_id,
                "reason": reason,
                "actor": actor,
            })

    def verify_by_fingerprint(self, fingerprint: str) -> FingerprintMatch:
        """
        Look a batch up by QR fingerprint. Unknown fingerprints come back as
        is_valid=False, never as an exception.

        The ledger answers 0 for "not found", which is indistinguishable from a
        ledger whose ids start at 0. Instead of trusting the id, the batch it
        points at must carry the same fingerprint.
        """
        fingerprint = (fingerprint or "").strip().lower()
        if not FINGERPRINT_PATTERN.match(fingerprint):
            return FingerprintMatch(is_valid=False)

        raw_id = self._read("verifyByQRCode", {"qrHash": fingerprint})
        try:
            token_id = int(raw_id)
        except (TypeError, ValueError):
            return FingerprintMatch(is_valid=False)
        if token_id < 0:
            return FingerprintMatch(is_valid=False)

        try:
            batch = self.get_batch(token_id)
        except BatchNotFound:
            return FingerprintMatch(is_valid=False)
        if batch.qr_hash.lower() != fingerprint:
            if token_id != 0:
                logger.warning("Ledger fingerprint index points token %d at a different hash", token_id)
            return FingerprintMatch(is_valid=False)
        return FingerprintMatch(is_valid=True, token_id=batch.token_id, batch=batch)

    # ── Laboratory ───────────────────────────────────────────────────────────

    def submit_test_result(self, token_id: int, passed: bool, actor: str) -> TxResult:
        actor = self._address(actor, "actor")
        batch = self.get_batch(token_id)
        if batch.is_recalled:
            raise BatchRecalled(f"Batch {batch.batch_number} has been recalled")
        logger.info("Submitting test result for batch %d: passed=%s", batch.token_id, passed)
        return self._write("submitTestResult", {"tokenId": batch.token_id, "passed": bool(passed), "actor": actor})

    def get_test_results(self, token_id: int) -> List[TestResult]:
        rows = self._read("getTestResults", {"tokenId": int(token_id)}) or []
        return [
            TestResult(
                token_id=int(r["tokenId"]),
                passed=bool(r["passed"]),
                laboratory=str(r["laboratory"]).lower(),
                timestamp=from_epoch(r["timestamp"]),
            )
            for r in rows
        ]

    # ── Stakeholders ─────────────────────────────────────────────────────────

    def register_stakeholder(self, address: str, name: str, license_number: str, role: Role, actor: str) -> TxResult:
        address = self._address(address, "walletAddress")
        actor = self._address(actor, "actor")
        logger.info("Registering stakeholder %s (%s) as %s", address, name, role.value)
        return self._write("registerStakeholder", {
            "address": address,
            "name": name,
            "licenseNumber": license_number,
            "role": ROLE_CODEC.encode(role),
            "actor": actor,
        })

    def set_stakeholder_verification(self, address: str, verified: bool, actor: str) -> TxResult:
        address = self._address(address, "walletAddress")
        actor = self._address(actor, "actor")
        logger.info("Setting stakeholder %s verified=%s (by %s)", address, verified, actor)
        return self._write("setStakeholderVerification", {
            "address": address,
            "verified": bool(verified),
            "actor": actor,
        })

    def get_stakeholder(self, address: str) -> Stakeholder:
        raw = self._read("getStakeholder", {"address": self._address(address, "walletAddress")})
        return self._decode_stakeholder(raw)

    def list_stakeholders(self) -> List[Stakeholder]:
        stakeholders = []
        for address in self._read("getAllStakeholders", {}) or []:
            try:
                stakeholders.append(self.get_stakeholder(address))
            except StakeholderNotFound:
                logger.warning("Stakeholder %s listed but not retrievable — skipping", address)
        return stakeholders

    def recover_signer(self, message: str, signature: str) -> str:
        """Address that produced ``signature`` over ``message``."""
        return str(self._read("recoverSigner", {"message": message, "signature": signature})).lower()

    # ── Operational reads ────────────────────────────────────────────────────

    def get_balance(self, address: Optional[str] = None) -> int:
        params = {"address": self._address(address, "address")} if address else {}
        return int(self._read("getBalance", params))

    def get_gas_price(self) -> int:
        """Current fee estimate; falls back to the configured price."""
        try:
            return int(self._read("getGasPrice", {}))
        except LedgerUnavailable:
            logger.warning("Gas price unavailable — using configured %d wei", self.gas_price)
            return self.gas_price
