"""
Field Ownership

Who is authoritative for each BatchRecord field.

LEDGER  - the ledger wins unconditionally; the store copy is a cache
BINDING - written once when the token is bound, never rebound
STORE   - off-chain data the ledger does not hold

Every code path that copies ledger state into a record goes through
apply_ledger_snapshot, so the overwrite policy lives in one place.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..schemas import BatchRecord, BatchStatus, Role


class FieldOwner(str, Enum):
    LEDGER = "ledger"
    BINDING = "binding"
    STORE = "store"


FIELD_OWNERSHIP: dict[str, FieldOwner] = {
    "batch_id": FieldOwner.BINDING,
    "token_id": FieldOwner.BINDING,
    "ledger_address": FieldOwner.BINDING,
    "current_owner": FieldOwner.LEDGER,
    "current_role": FieldOwner.LEDGER,
    "is_counterfeit": FieldOwner.LEDGER,
    "metadata_hash": FieldOwner.LEDGER,
}


def owner_of_field(name: str) -> FieldOwner:
    return FIELD_OWNERSHIP.get(name, FieldOwner.STORE)


LEDGER_OWNED_FIELDS = tuple(
    name for name, owner in FIELD_OWNERSHIP.items() if owner == FieldOwner.LEDGER
)


class TokenBindingError(Exception):
    """Raised when a batch is already bound to a different token."""

    def __init__(self, batch_id: str, bound_token_id: int, attempted_token_id: int):
        super().__init__(
            f"Batch {batch_id} is bound to token {bound_token_id}, "
            f"refusing to bind token {attempted_token_id}"
        )
        self.batch_id = batch_id
        self.bound_token_id = bound_token_id
        self.attempted_token_id = attempted_token_id


@dataclass
class LedgerSnapshot:
    """Authoritative values of the ledger-owned fields for one token."""
    current_owner: str
    current_role: Optional[Role]
    metadata_hash: str
    is_counterfeit: bool


def apply_ledger_snapshot(record: BatchRecord, snapshot: LedgerSnapshot) -> list[str]:
    """
    Overwrite ledger-owned fields that differ from the snapshot.

    - An empty ledger hash never replaces a stored one
    - A ledger with no role for the owner leaves current_role alone
    - A counterfeit flag moves the record to FLAGGED

    Returns:
        Names of the fields that changed
    """
    changed = []

    owner = snapshot.current_owner.lower()
    if owner and record.current_owner != owner:
        record.current_owner = owner
        changed.append("current_owner")

    if snapshot.current_role is not None and record.current_role != snapshot.current_role:
        record.current_role = snapshot.current_role
        changed.append("current_role")

    ledger_hash = (snapshot.metadata_hash or "").lower()
    if ledger_hash and record.metadata_hash != ledger_hash:
        record.metadata_hash = ledger_hash
        changed.append("metadata_hash")

    if record.is_counterfeit != snapshot.is_counterfeit:
        record.is_counterfeit = snapshot.is_counterfeit
        changed.append("is_counterfeit")

    if record.is_counterfeit and record.status != BatchStatus.FLAGGED:
        record.status = BatchStatus.FLAGGED
        changed.append("status")

    return changed


def bind_token(record: BatchRecord, token_id: int, ledger_address: Optional[str]) -> bool:
    """
    Bind a token to a record.

    Returns:
        True if the record changed, False if already bound to this token

    Raises:
        TokenBindingError: If bound to a different token
    """
    token_id = int(token_id)
    if record.token_id is not None and record.token_id != token_id:
        raise TokenBindingError(record.batch_id, record.token_id, token_id)

    changed = False
    if record.token_id is None:
        record.token_id = token_id
        changed = True
    if ledger_address and record.ledger_address != ledger_address.lower():
        record.ledger_address = ledger_address.lower()
        changed = True
    return changed
