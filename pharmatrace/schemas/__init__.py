# Schemas for batch records, ledger read models, and verification results.

from .batch import (
    BatchCreate,
    BatchEnrichment,
    BatchRecord,
    BatchStatus,
    CamelModel,
    Role,
    ROLE_BY_CODE,
    TransferCreate,
    TransferRecord,
    ZERO_ADDRESS,
    role_from_code,
    role_to_code,
    status_for_role,
)
from .ledger import (
    BatchMinted,
    BatchVerified,
    ChildBatchLinked,
    LedgerEvent,
    LedgerEventType,
    OnChainBatch,
    OnChainTransfer,
    OwnershipTransferred,
)
from .verification import (
    LedgerCrossCheck,
    MetadataVerification,
    QRPayload,
    QuickVerification,
    VerificationChecks,
    VerificationRequest,
    VerificationResult,
)

__all__ = [
    # Batch
    "BatchCreate",
    "BatchEnrichment",
    "BatchRecord",
    "BatchStatus",
    "CamelModel",
    "Role",
    "ROLE_BY_CODE",
    "TransferCreate",
    "TransferRecord",
    "ZERO_ADDRESS",
    "role_from_code",
    "role_to_code",
    "status_for_role",
    # Ledger
    "BatchMinted",
    "BatchVerified",
    "ChildBatchLinked",
    "LedgerEvent",
    "LedgerEventType",
    "OnChainBatch",
    "OnChainTransfer",
    "OwnershipTransferred",
    # Verification
    "LedgerCrossCheck",
    "MetadataVerification",
    "QRPayload",
    "QuickVerification",
    "VerificationChecks",
    "VerificationRequest",
    "VerificationResult",
]
