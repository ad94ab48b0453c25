"""
Deterministic fingerprints for QR payloads.

SHA-256 over compact JSON of an explicitly ordered subset of fields. The
order is fixed per payload kind; keys are never sorted and fields outside
the subset (the fingerprint itself, url, tokenId, display notes) never reach
the digest.
"""

import hashlib
import json
from typing import Any, Dict, Mapping, Tuple

SCHEMA_VERSION = "1.0"

BATCH = "batch"
STAKEHOLDER = "stakeholder"

COVERED_FIELDS: Dict[str, Tuple[str, ...]] = {
    BATCH: (
        "type",
        "batchNumber",
        "drugName",
        "manufacturer",
        "quantity",
        "manufacturingDate",
        "expiryDate",
        "timestamp",
        "version",
    ),
    STAKEHOLDER: (
        "type",
        "walletAddress",
        "name",
        "role",
        "licenseNumber",
        "timestamp",
        "version",
    ),
}


def covered_fields(kind: str) -> Tuple[str, ...]:
    try:
        return COVERED_FIELDS[kind]
    except KeyError:
        raise ValueError(f"Unknown payload kind: {kind!r}")


def canonical_bytes(core_fields: Mapping[str, Any], kind: str) -> bytes:
    """Compact JSON of the covered fields, in covered order. Missing fields raise KeyError."""
    ordered = {name: core_fields[name] for name in covered_fields(kind)}
    return json.dumps(ordered, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def fingerprint(core_fields: Mapping[str, Any], kind: str) -> str:
    """64-char lower-case hex SHA-256 of the covered fields."""
    return hashlib.sha256(canonical_bytes(core_fields, kind)).hexdigest()
