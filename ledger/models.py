"""
Ledger-facing data models for PharmaChain.

Holds the domain enums, the single authoritative enum <-> integer codec used
at the ledger boundary, and the dataclasses returned by ledger/gateway.py.
"""

import datetime
import enum
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, Type, TypeVar, Union

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
ZERO_ADDRESS = "0x" + "0" * 40


class Role(str, enum.Enum):
    MANUFACTURER = "Manufacturer"
    DISTRIBUTOR = "Distributor"
    RETAILER = "Retailer"
    HEALTHCARE_PROVIDER = "HealthcareProvider"
    REGULATOR = "Regulator"
    LABORATORY = "Laboratory"


class BatchStatus(str, enum.Enum):
    MANUFACTURED = "Manufactured"
    IN_TRANSIT = "InTransit"
    DELIVERED = "Delivered"
    DISPENSED = "Dispensed"
    RECALLED = "Recalled"


E = TypeVar("E", bound=enum.Enum)


class EnumCodec(Generic[E]):
    """
    Bidirectional mapping between a domain enum and the small integers the
    ledger stores. Both directions come from one table so they cannot drift.
    """

    def __init__(self, enum_cls: Type[E], table: Dict[E, int]):
        if set(table) != set(enum_cls):
            raise ValueError(f"Codec table for {enum_cls.__name__} must cover every member")
        if len(set(table.values())) != len(table):
            raise ValueError(f"Codec table for {enum_cls.__name__} has duplicate codes")
        self.enum_cls = enum_cls
        self._to_code = dict(table)
        self._from_code = {code: member for member, code in table.items()}

    def encode(self, value: Union[E, str]) -> int:
        member = value if isinstance(value, self.enum_cls) else self.parse(value)
        return self._to_code[member]

    def decode(self, code: Any) -> E:
        try:
            return self._from_code[int(code)]
        except (KeyError, TypeError, ValueError):
            raise ValueError(f"Unknown {self.enum_cls.__name__} code: {code!r}")

    def parse(self, value: str) -> E:
        """Accept the enum value ("InTransit") or member name ("IN_TRANSIT")."""
        for member in self.enum_cls:
            if value == member.value or str(value).upper() == member.name:
                return member
        raise ValueError(f"Unknown {self.enum_cls.__name__}: {value!r}")


ROLE_CODEC: EnumCodec[Role] = EnumCodec(Role, {
    Role.MANUFACTURER:        0,
    Role.DISTRIBUTOR:         1,
    Role.RETAILER:            2,
    Role.HEALTHCARE_PROVIDER: 3,
    Role.REGULATOR:           4,
    Role.LABORATORY:          5,
})

STATUS_CODEC: EnumCodec[BatchStatus] = EnumCodec(BatchStatus, {
    BatchStatus.MANUFACTURED: 0,
    BatchStatus.IN_TRANSIT:   1,
    BatchStatus.DELIVERED:    2,
    BatchStatus.DISPENSED:    3,
    BatchStatus.RECALLED:     4,
})


def normalize_address(address: str) -> str:
    """Lower-case and validate a 0x-prefixed 20-byte hex address."""
    value = (address or "").strip()
    if not ADDRESS_PATTERN.match(value):
        raise ValueError(f"Invalid address: {address!r}")
    return value.lower()


def from_epoch(seconds: Any) -> datetime.datetime:
    """Ledger timestamps are whole seconds since the Unix epoch (UTC)."""
    return datetime.datetime.fromtimestamp(int(seconds), tz=datetime.timezone.utc)


def to_epoch(value: Union[datetime.date, datetime.datetime, int]) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return int(value.timestamp())
    midnight = datetime.datetime(value.year, value.month, value.day, tzinfo=datetime.timezone.utc)
    return int(midnight.timestamp())


@dataclass
class Stakeholder:
    address: str
    name: str
    license_number: str
    role: Role
    is_verified: bool
    registered_at: datetime.datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "walletAddress": self.address,
            "name": self.name,
            "licenseNumber": self.license_number,
            "role": self.role.value,
            "isVerified": self.is_verified,
            "registrationDate": self.registered_at.isoformat(),
        }


@dataclass
class Batch:
    token_id: int
    drug_name: str
    batch_number: str
    manufacturing_date: datetime.date
    expiry_date: datetime.date
    manufacturer: str
    document_ref: str
    quantity: int
    qr_hash: str
    status: BatchStatus
    holder: str

    @property
    def is_recalled(self) -> bool:
        return self.status is BatchStatus.RECALLED

    def is_expired(self, today: Optional[datetime.date] = None) -> bool:
        today = today or datetime.datetime.now(datetime.timezone.utc).date()
        return self.expiry_date < today

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "drugName": self.drug_name,
            "batchNumber": self.batch_number,
            "manufacturingDate": self.manufacturing_date.isoformat(),
            "expiryDate": self.expiry_date.isoformat(),
            "manufacturer": self.manufacturer,
            "documentRef": self.document_ref,
            "quantity": self.quantity,
            "qrCodeHash": self.qr_hash,
            "status": self.status.value,
            "currentHolder": self.holder,
        }


@dataclass
class TransferRecord:
    from_address: str
    to_address: str
    location: str
    timestamp: datetime.datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_address,
            "to": self.to_address,
            "location": self.location,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TestResult:
    __test__ = False  # not a pytest class

    token_id: int
    passed: bool
    laboratory: str
    timestamp: datetime.datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "passed": self.passed,
            "laboratory": self.laboratory,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TxResult:
    """Outcome of a confirmed ledger mutation."""
    tx_ref: str
    block_number: int
    gas_used: int
    token_id: Optional[int] = None
    events: list = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "transactionHash": self.tx_ref,
            "blockNumber": self.block_number,
            "gasUsed": str(self.gas_used),
        }
        if self.token_id is not None:
            data["tokenId"] = self.token_id
        return data


@dataclass
class FingerprintMatch:
    is_valid: bool
    token_id: Optional[int] = None
    batch: Optional[Batch] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "tokenId": self.token_id,
            "batch": self.batch.to_dict() if self.batch else None,
        }
