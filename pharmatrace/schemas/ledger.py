"""
Ledger-side Schemas

Typed views of what the batch contract returns and emits.
These are read models only: nothing here is ever written to the ledger.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from .batch import Role


class OnChainBatch(BaseModel):
    """Result of getBatchDetails(tokenId)."""
    token_id: int
    current_owner: str
    current_role: Optional[Role] = None
    batch_id: str
    metadata_hash: str = ""
    metadata_uri: str = ""
    qr_code_uri: str = ""
    timestamp: int = 0  # seconds since epoch, block time of mint
    manufacturer: str

    @field_validator("current_owner", "manufacturer")
    @classmethod
    def lower_address(cls, v: str) -> str:
        return v.lower()

    @property
    def minted_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)


class OnChainTransfer(BaseModel):
    """One entry of getTransferHistory(tokenId)."""
    from_address: str
    to_address: str
    timestamp: int = 0
    from_role: Optional[Role] = None
    to_role: Optional[Role] = None

    @field_validator("from_address", "to_address")
    @classmethod
    def lower_address(cls, v: str) -> str:
        return v.lower()


class LedgerEventType(str, Enum):
    """Contract events the reconciler subscribes to."""
    BATCH_MINTED = "BatchMinted"
    OWNERSHIP_TRANSFERRED = "OwnershipTransferred"
    BATCH_VERIFIED = "BatchVerified"
    CHILD_BATCH_LINKED = "ChildBatchLinked"


class _EventBase(BaseModel):
    block_number: int = 0
    log_index: int = 0
    tx_hash: Optional[str] = None

    @property
    def position(self) -> tuple[int, int]:
        """Ledger emission order."""
        return (self.block_number, self.log_index)


class BatchMinted(_EventBase):
    event_type: LedgerEventType = Field(default=LedgerEventType.BATCH_MINTED, frozen=True)
    token_id: int
    owner: str
    batch_id: str


class OwnershipTransferred(_EventBase):
    event_type: LedgerEventType = Field(default=LedgerEventType.OWNERSHIP_TRANSFERRED, frozen=True)
    token_id: int
    from_address: str
    to_address: str
    new_role: Optional[Role] = None


class BatchVerified(_EventBase):
    event_type: LedgerEventType = Field(default=LedgerEventType.BATCH_VERIFIED, frozen=True)
    token_id: int
    verifier: str
    valid: bool


class ChildBatchLinked(_EventBase):
    event_type: LedgerEventType = Field(default=LedgerEventType.CHILD_BATCH_LINKED, frozen=True)
    parent_id: int
    child_id: int


LedgerEvent = Union[BatchMinted, OwnershipTransferred, BatchVerified, ChildBatchLinked]
