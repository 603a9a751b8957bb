
# Core services: hashing, ledger access, reconciliation, verification
from .hasher import IntegrityHasher, CanonicalSerializationError
from .ledger import (
    LedgerReader,
    Web3LedgerReader,
    InMemoryLedgerReader,
    DisabledLedgerReader,
    LedgerConfig,
    LedgerError,
    LedgerUnavailable,
    TokenNotFound,
    call_with_retry,
)
from .signer import QRSigner, SignatureInvalid
from .ownership import (
    FieldOwner,
    FIELD_OWNERSHIP,
    LedgerSnapshot,
    TokenBindingError,
    apply_ledger_snapshot,
    bind_token,
)
from .batches import (
    BatchService,
    BatchServiceError,
    BatchNotFound,
    InvalidBatchRequest,
    EnrichmentRejected,
    find_batch,
)
from .reconciler import (
    ReconciliationService,
    ReconcilerConfig,
    SweepReport,
)
from .verifier import AuthenticityVerifier, InvalidVerificationRequest

__all__ = [
    "IntegrityHasher",
    "CanonicalSerializationError",
    "LedgerReader",
    "Web3LedgerReader",
    "InMemoryLedgerReader",
    "DisabledLedgerReader",
    "LedgerConfig",
    "LedgerError",
    "LedgerUnavailable",
    "TokenNotFound",
    "call_with_retry",
    "QRSigner",
    "SignatureInvalid",
    "FieldOwner",
    "FIELD_OWNERSHIP",
    "LedgerSnapshot",
    "TokenBindingError",
    "apply_ledger_snapshot",
    "bind_token",
    "BatchService",
    "BatchServiceError",
    "BatchNotFound",
    "InvalidBatchRequest",
    "EnrichmentRejected",
    "find_batch",
    "ReconciliationService",
    "ReconcilerConfig",
    "SweepReport",
    "AuthenticityVerifier",
    "InvalidVerificationRequest",
]
