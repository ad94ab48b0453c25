"""
QR payloads — shareable, fingerprinted descriptors of batches and stakeholders.

A payload is the covered fields (see integrity.fingerprint) plus display-only
extras: ``url`` (verification link), ``tokenId`` (known only after mint) and
``hash`` (the fingerprint). Changing any covered field invalidates the hash;
changing an extra does not.
"""

import hmac
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from common.errors import IntegrityCheckFailed, MalformedPayload
from integrity.fingerprint import (
    BATCH,
    SCHEMA_VERSION,
    STAKEHOLDER,
    covered_fields,
    fingerprint,
)
from ledger.models import Batch, Stakeholder

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000
DEFAULT_MAX_AGE_DAYS = 365
HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")

# covered field -> accepted python type(s)
_FIELD_TYPES: Dict[str, Tuple[type, ...]] = {
    "type": (str,),
    "batchNumber": (str,),
    "drugName": (str,),
    "manufacturer": (str,),
    "quantity": (int,),
    "manufacturingDate": (str,),
    "expiryDate": (str,),
    "walletAddress": (str,),
    "name": (str,),
    "role": (str,),
    "licenseNumber": (str,),
    "timestamp": (int,),
    "version": (str,),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class QRPayload:
    kind: str
    fields: Dict[str, Any]
    url: str
    hash: str
    token_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.fields)
        if self.token_id is not None:
            data["tokenId"] = self.token_id
        data["url"] = self.url
        data["hash"] = self.hash
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


@dataclass
class PayloadVerification:
    is_valid: bool
    kind: Optional[str] = None
    reason: Optional[str] = None
    age_days: Optional[int] = None
    stale: bool = False
    fields: Dict[str, Any] = field(default_factory=dict)
    token_id: Optional[int] = None
    fingerprint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "type": self.kind,
            "reason": self.reason,
            "ageDays": self.age_days,
            "stale": self.stale,
            "tokenId": self.token_id,
            "hash": self.fingerprint,
            **self.fields,
        }


# ── Construction ──────────────────────────────────────────────────────────────

def _iso(value: Union[date, str]) -> str:
    return value.isoformat() if isinstance(value, date) else str(value)


def build_batch_payload(
    batch_number: str,
    drug_name: str,
    manufacturer: str,
    quantity: int,
    manufacturing_date: Union[date, str],
    expiry_date: Union[date, str],
    base_url: str,
    token_id: Optional[int] = None,
    timestamp: Optional[int] = None,
) -> QRPayload:
    fields = {
        "type": BATCH,
        "batchNumber": batch_number,
        "drugName": drug_name,
        "manufacturer": manufacturer.lower(),
        "quantity": int(quantity),
        "manufacturingDate": _iso(manufacturing_date),
        "expiryDate": _iso(expiry_date),
        "timestamp": int(timestamp if timestamp is not None else _now_ms()),
        "version": SCHEMA_VERSION,
    }
    digest = fingerprint(fields, BATCH)
    return QRPayload(
        kind=BATCH,
        fields=fields,
        url=f"{base_url.rstrip('/')}/verify/{digest}",
        hash=digest,
        token_id=token_id,
    )


def batch_payload_for(batch: Batch, base_url: str, timestamp: Optional[int] = None) -> QRPayload:
    return build_batch_payload(
        batch_number=batch.batch_number,
        drug_name=batch.drug_name,
        manufacturer=batch.manufacturer,
        quantity=batch.quantity,
        manufacturing_date=batch.manufacturing_date,
        expiry_date=batch.expiry_date,
        base_url=base_url,
        token_id=batch.token_id,
        timestamp=timestamp,
    )


def build_stakeholder_payload(
    wallet_address: str,
    name: str,
    role: str,
    license_number: str,
    base_url: str,
    timestamp: Optional[int] = None,
) -> QRPayload:
    address = wallet_address.lower()
    fields = {
        "type": STAKEHOLDER,
        "walletAddress": address,
        "name": name,
        "role": getattr(role, "value", role),
        "licenseNumber": license_number,
        "timestamp": int(timestamp if timestamp is not None else _now_ms()),
        "version": SCHEMA_VERSION,
    }
    return QRPayload(
        kind=STAKEHOLDER,
        fields=fields,
        url=f"{base_url.rstrip('/')}/verify/stakeholder/{address}",
        hash=fingerprint(fields, STAKEHOLDER),
    )


def stakeholder_payload_for(stakeholder: Stakeholder, base_url: str, timestamp: Optional[int] = None) -> QRPayload:
    return build_stakeholder_payload(
        wallet_address=stakeholder.address,
        name=stakeholder.name,
        role=stakeholder.role.value,
        license_number=stakeholder.license_number,
        base_url=base_url,
        timestamp=timestamp,
    )


# ── Parsing & verification ────────────────────────────────────────────────────

def parse_payload(raw: Union[str, bytes, Mapping[str, Any]]) -> Dict[str, Any]:
    """Decoded QR text as a dict. Anything that is not a JSON object is malformed."""
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise MalformedPayload("Invalid QR code format")
    if not isinstance(data, dict):
        raise MalformedPayload("QR payload must be a JSON object")
    return data


def _check_fields(data: Mapping[str, Any]) -> str:
    kind = data.get("type")
    if kind not in (BATCH, STAKEHOLDER):
        raise MalformedPayload("Unknown QR payload type", details={"type": kind})
    for name in covered_fields(kind):
        if name not in data:
            raise MalformedPayload(f"Missing required field: {name}", details={"field": name})
        value = data[name]
        # bool is an int subclass; never a valid quantity or timestamp
        if isinstance(value, bool) or not isinstance(value, _FIELD_TYPES[name]):
            raise MalformedPayload(f"Invalid type for field: {name}", details={"field": name})
    if data["version"] != SCHEMA_VERSION:
        raise MalformedPayload("Unsupported QR payload version", details={"version": data["version"]})
    provided = data.get("hash")
    if not isinstance(provided, str) or not HASH_PATTERN.match(provided):
        raise MalformedPayload("Missing or invalid hash", details={"field": "hash"})
    return kind


def verify_payload(
    raw: Union[str, bytes, Mapping[str, Any]],
    max_age_days: int = DEFAULT_MAX_AGE_DAYS,
    now_ms: Optional[int] = None,
    strict: bool = True,
) -> PayloadVerification:
    """
    Recompute the fingerprint and compare in constant time.

    strict=True raises MalformedPayload / IntegrityCheckFailed; strict=False
    reports the failure as is_valid=False with a reason code. Old payloads
    stay valid and are only flagged as stale.
    """
    try:
        data = parse_payload(raw)
        kind = _check_fields(data)
        expected = fingerprint(data, kind)
        if not hmac.compare_digest(expected, data["hash"]):
            logger.warning(
                "QR payload hash verification failed: type=%s id=%s",
                kind, data.get("batchNumber") or data.get("walletAddress"),
            )
            raise IntegrityCheckFailed()
    except (MalformedPayload, IntegrityCheckFailed) as e:
        if strict:
            raise
        return PayloadVerification(is_valid=False, reason=e.code)

    now_ms = now_ms if now_ms is not None else _now_ms()
    age_days = max(0, (now_ms - data["timestamp"]) // MS_PER_DAY)
    stale = age_days > max_age_days
    if stale:
        logger.warning("QR payload is %d days old (limit %d) — still valid", age_days, max_age_days)

    token_id = data.get("tokenId")
    if isinstance(token_id, bool) or not isinstance(token_id, int):
        token_id = None
    return PayloadVerification(
        is_valid=True,
        kind=kind,
        age_days=age_days,
        stale=stale,
        fields={name: data[name] for name in covered_fields(kind)},
        token_id=token_id,
        fingerprint=data["hash"],
    )


def matches_batch(verification: PayloadVerification, batch: Batch) -> bool:
    """True when the payload's covered batch fields agree with the ledger record."""
    if verification.kind != BATCH:
        return False
    f = verification.fields
    return (
        f["batchNumber"] == batch.batch_number
        and f["drugName"] == batch.drug_name
        and f["manufacturer"].lower() == batch.manufacturer
        and f["quantity"] == batch.quantity
        and f["manufacturingDate"] == batch.manufacturing_date.isoformat()
        and f["expiryDate"] == batch.expiry_date.isoformat()
    )
