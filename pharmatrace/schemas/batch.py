"""
Batch Schema

A BatchRecord is the off-chain projection of an on-chain batch token.
The ledger is the system of record for custody and the counterfeit flag;
this record is a cache enriched with product data the ledger never stores.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Custody roles, as assigned by the ledger contract."""
    MANUFACTURER = "Manufacturer"
    DISTRIBUTOR = "Distributor"
    RETAILER = "Retailer"
    PHARMACY = "Pharmacy"


# uint8 role codes used by the contract. 0 means "no role assigned".
ROLE_BY_CODE: dict[int, Role] = {
    1: Role.MANUFACTURER,
    2: Role.DISTRIBUTOR,
    3: Role.RETAILER,
    4: Role.PHARMACY,
}


def role_from_code(code: Any) -> Optional[Role]:
    """Map a contract role code to a Role. Unknown or zero codes map to None."""
    try:
        return ROLE_BY_CODE.get(int(code))
    except (TypeError, ValueError):
        return None


def role_to_code(role: Optional[Role]) -> int:
    if role is None:
        return 0
    for code, value in ROLE_BY_CODE.items():
        if value == role:
            return code
    return 0


class BatchStatus(str, Enum):
    """
    Store-side lifecycle of a batch.

    FLAGGED is terminal but the row stays queryable forever.
    """
    CREATED = "Created"
    IN_TRANSIT = "InTransit"
    IN_STORE = "InStore"
    DELIVERED = "Delivered"
    FLAGGED = "Flagged"


def status_for_role(role: Optional[Role]) -> BatchStatus:
    """Pharmacy custody means the batch reached its last stage."""
    if role == Role.PHARMACY:
        return BatchStatus.DELIVERED
    return BatchStatus.IN_TRANSIT


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase on the wire."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class TransferRecord(CamelModel):
    """
    One custody hand-off in a batch's history.

    History entries are append-only. Nothing mutates or removes them.
    """
    from_address: str = Field(..., alias="from")
    to_address: str = Field(..., alias="to")
    from_role: Optional[Role] = None
    to_role: Optional[Role] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    tx_hash: Optional[str] = None

    @field_validator("from_address", "to_address")
    @classmethod
    def lower_address(cls, v: str) -> str:
        return v.lower()

    def same_leg(self, from_address: str, to_address: str) -> bool:
        """True if this entry records the same (from, to) hand-off."""
        return (
            self.from_address == from_address.lower()
            and self.to_address == to_address.lower()
        )


class BatchRecord(CamelModel):
    """
    Off-chain projection of a batch.

    Identity:
    - batch_id is assigned once and is the correlation key before minting
    - token_id is bound once after mint and never rebound

    Ledger-owned (overwritten whenever the ledger differs):
    - current_owner, current_role, is_counterfeit, metadata_hash
    """
    batch_id: str = Field(..., min_length=1)
    token_id: Optional[int] = Field(default=None, ge=0)
    ledger_address: str = ZERO_ADDRESS

    current_owner: str
    current_role: Role = Role.MANUFACTURER

    manufacturer: str
    manufacturer_name: str = ""

    drug_name: str
    manufacturing_date: date
    expiry_date: date
    quantity: int = Field(default=1, gt=0)

    metadata_hash: str = ""
    metadata_uri: Optional[str] = None
    qa_certificate_hash: Optional[str] = None

    status: BatchStatus = BatchStatus.CREATED
    is_counterfeit: bool = False

    parent_batch_id: Optional[int] = None
    child_batch_ids: list[int] = Field(default_factory=list)

    history: list[TransferRecord] = Field(default_factory=list)

    qr_data: Optional[dict[str, Any]] = None
    qr_signature: Optional[str] = None

    # Set on rows synthesized from a mint event with no prior store row.
    # Product fields on such rows are placeholders until enriched.
    needs_enrichment: bool = False

    # Optimistic concurrency token, incremented by the store on every update
    version: int = 0

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("current_owner", "manufacturer", "ledger_address")
    @classmethod
    def lower_address(cls, v: str) -> str:
        return v.lower()

    @field_validator("metadata_hash")
    @classmethod
    def lower_hash(cls, v: str) -> str:
        return v.lower()

    def identity_fields(self) -> dict[str, Any]:
        """The immutable fields that the metadata hash commits to."""
        return {
            "batchID": self.batch_id,
            "drugName": self.drug_name,
            "manufacturingDate": self.manufacturing_date,
            "expiryDate": self.expiry_date,
            "quantity": self.quantity,
            "manufacturer": self.manufacturer,
        }

    def has_recent_transfer(
        self,
        from_address: str,
        to_address: str,
        now: datetime,
        window_seconds: float,
    ) -> bool:
        """
        Check whether the same (from, to) hand-off was recorded within
        window_seconds of now.
        """
        for entry in self.history:
            if not entry.same_leg(from_address, to_address):
                continue
            ts = entry.timestamp
            if ts.tzinfo is None:
                ts = ts.replace(tzinfo=timezone.utc)
            if abs((now - ts).total_seconds()) < window_seconds:
                return True
        return False

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def to_public(self) -> dict[str, Any]:
        """JSON-ready camelCase document."""
        return self.model_dump(mode="json", by_alias=True)


# ============================================================
# Commands
# ============================================================

class BatchCreate(CamelModel):
    """
    Manufacturer's batch request.

    token_id, ledger_address and metadata_hash are present when the request
    is sent after the mint transaction confirmed.
    """
    batch_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("batchId", "batchID", "batch_id"),
    )
    drug_name: str = Field(..., min_length=1)
    manufacturing_date: date
    expiry_date: date
    quantity: int = Field(default=1, ge=0)
    manufacturer: str = Field(..., min_length=1)
    manufacturer_name: str = ""

    token_id: Optional[int] = Field(default=None, ge=0)
    ledger_address: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ledgerAddress", "contractAddress", "ledger_address"),
    )
    metadata_hash: Optional[str] = None
    metadata_uri: Optional[str] = None

    # Base64 content of the QA certificate; only its hash is kept
    qa_certificate: Optional[str] = None

    def identity_fields(self) -> dict[str, Any]:
        return {
            "batchID": self.batch_id,
            "drugName": self.drug_name,
            "manufacturingDate": self.manufacturing_date,
            "expiryDate": self.expiry_date,
            "quantity": self.quantity,
            "manufacturer": self.manufacturer,
        }


class TransferCreate(CamelModel):
    """A custody hand-off reported by a client after its transaction confirmed."""
    from_address: str = Field(..., alias="from", min_length=1)
    to_address: str = Field(..., alias="to", min_length=1)
    from_role: Role
    to_role: Role
    tx_hash: Optional[str] = None


class BatchEnrichment(CamelModel):
    """Product fields for a row that was synthesized from a mint event."""
    drug_name: str = Field(..., min_length=1)
    manufacturing_date: date
    expiry_date: date
    quantity: int = Field(default=1, gt=0)
    manufacturer_name: Optional[str] = None
