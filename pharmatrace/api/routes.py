"""
API Routes

Batch, transfer, QR, metadata and verification endpoints, plus the
reconciler's operator endpoints.

Handlers are plain (sync) functions: the store and the ledger reader
block, so FastAPI runs them in its threadpool.

Verification answers 200 with the full check breakdown whether or not the
batch is authentic. Only a missing batch (404) or a malformed request (400)
is an HTTP error.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import AliasChoices, Field

from pharmatrace.core import (
    AuthenticityVerifier,
    BatchService,
    IntegrityHasher,
    LedgerReader,
    ReconciliationService,
)
from pharmatrace.schemas import (
    BatchCreate,
    BatchEnrichment,
    BatchStatus,
    CamelModel,
    Role,
    TransferCreate,
    VerificationRequest,
)

from .deps import (
    get_batch_service,
    get_ledger,
    get_reconciler,
    get_verifier,
    service_errors,
)


router = APIRouter(prefix="/api")


# ============================================================
# Request Models
# ============================================================

class BatchReference(CamelModel):
    """Identifies a batch in a request body by tokenId or batchId."""
    token_id: Optional[int] = None
    batch_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("batchId", "batchID", "batch_id"),
    )

    def identifier(self) -> str:
        if self.token_id is not None:
            return str(self.token_id)
        if self.batch_id:
            return self.batch_id
        raise HTTPException(status_code=400, detail="tokenId or batchId required")


class QRStoreRequest(BatchReference):
    qr_data: dict[str, Any]
    qr_signature: str = Field(..., min_length=1)


class MetadataVerifyRequest(BatchReference):
    metadata: dict[str, Any]


# ============================================================
# Batches
# ============================================================

@router.post("/batches", tags=["Batches"])
def create_batch(
    body: BatchCreate,
    response: Response,
    service: BatchService = Depends(get_batch_service),
):
    """
    Register a batch, or attach mint results to an existing one.

    Returns 201 when a new row was created, 200 when the batch existed.
    """
    with service_errors():
        record, created = service.create_batch(body)

    response.status_code = 201 if created else 200
    return {
        "success": True,
        "created": created,
        "batchId": record.batch_id,
        "tokenId": record.token_id,
        "metadataHash": record.metadata_hash,
        "batch": record.to_public(),
    }


@router.get("/batches", tags=["Batches"])
def list_batches(
    owner: Optional[str] = None,
    manufacturer: Optional[str] = None,
    status: Optional[BatchStatus] = None,
    role: Optional[Role] = None,
    service: BatchService = Depends(get_batch_service),
):
    """List batches, newest first."""
    records = service.list_batches(
        owner=owner, manufacturer=manufacturer, status=status, role=role
    )
    return {
        "success": True,
        "batches": [r.to_public() for r in records],
        "count": len(records),
    }


@router.get("/batches/{identifier}", tags=["Batches"])
def get_batch(identifier: str, service: BatchService = Depends(get_batch_service)):
    """Get a batch by token id or batch id."""
    with service_errors():
        record = service.get(identifier)
    return {"success": True, "batch": record.to_public()}


@router.post("/batches/{identifier}/transfer", tags=["Batches"])
def record_transfer(
    identifier: str,
    body: TransferCreate,
    service: BatchService = Depends(get_batch_service),
):
    """Record a confirmed custody hand-off."""
    with service_errors():
        record = service.record_transfer(identifier, body)
    return {"success": True, "batch": record.to_public()}


@router.get("/batches/{identifier}/history", tags=["Batches"])
def batch_history(identifier: str, service: BatchService = Depends(get_batch_service)):
    with service_errors():
        record = service.get(identifier)
    history = [h.model_dump(mode="json", by_alias=True) for h in record.history]
    return {
        "success": True,
        "batchId": record.batch_id,
        "tokenId": record.token_id,
        "history": history,
        "count": len(history),
    }


@router.post("/batches/{identifier}/enrich", tags=["Batches"])
def enrich_batch(
    identifier: str,
    body: BatchEnrichment,
    service: BatchService = Depends(get_batch_service),
):
    """
    Fill in product details on a row created from a mint event.

    Rejected with 422 unless the fields reproduce the ledger-anchored hash.
    """
    with service_errors():
        record = service.enrich(identifier, body)
    return {"success": True, "batch": record.to_public()}


@router.get("/transfers", tags=["Batches"])
def list_transfers(
    token_id: Optional[int] = Query(default=None, alias="tokenId"),
    batch_id: Optional[str] = Query(default=None, alias="batchId"),
    from_address: Optional[str] = Query(default=None, alias="from"),
    to_address: Optional[str] = Query(default=None, alias="to"),
    service: BatchService = Depends(get_batch_service),
):
    with service_errors():
        transfers = service.list_transfers(
            token_id=token_id,
            batch_id=batch_id,
            from_address=from_address,
            to_address=to_address,
        )
    return {"success": True, "transfers": transfers, "count": len(transfers)}


# ============================================================
# Verification
# ============================================================

@router.post("/verify", tags=["Verification"])
def verify_batch(
    body: VerificationRequest,
    verifier: AuthenticityVerifier = Depends(get_verifier),
):
    """
    Full verification: store hash, counterfeit flag, QR signature and
    ledger cross-check.
    """
    with service_errors():
        result = verifier.verify(body)
    return result.to_public()


@router.get("/verify/{identifier}", tags=["Verification"])
def quick_verify(identifier: str, verifier: AuthenticityVerifier = Depends(get_verifier)):
    """Store-only check for scan landing pages."""
    with service_errors():
        result = verifier.quick_verify(identifier)
    return result.model_dump(mode="json", by_alias=True)


# ============================================================
# Metadata
# ============================================================

@router.get("/metadata/{identifier}", tags=["Metadata"])
def get_metadata(identifier: str, service: BatchService = Depends(get_batch_service)):
    with service_errors():
        record = service.get(identifier)

    hash_valid = IntegrityHasher.verify(record, record.metadata_hash)
    document = record.to_public()
    metadata = {
        key: document[key]
        for key in (
            "batchId", "tokenId", "drugName", "manufacturingDate", "expiryDate",
            "quantity", "manufacturer", "manufacturerName", "metadataHash",
            "metadataUri", "qaCertificateHash", "currentOwner", "currentRole",
            "status", "needsEnrichment", "createdAt",
        )
    }
    return {
        "success": True,
        "metadata": metadata,
        "hashValid": hash_valid,
        "message": "Metadata hash verified" if hash_valid else "Metadata hash mismatch detected",
    }


@router.post("/metadata/verify", tags=["Metadata"])
def verify_metadata(
    body: MetadataVerifyRequest,
    verifier: AuthenticityVerifier = Depends(get_verifier),
):
    """Check a metadata document against the batch's stored hash."""
    identifier = body.identifier()
    with service_errors():
        result = verifier.verify_metadata(identifier, body.metadata)
    return {"success": True, **result.model_dump(mode="json", by_alias=True)}


# ============================================================
# QR
# ============================================================

@router.post("/qr", tags=["QR"])
def store_qr(body: QRStoreRequest, service: BatchService = Depends(get_batch_service)):
    identifier = body.identifier()
    with service_errors():
        record = service.store_qr(identifier, body.qr_data, body.qr_signature)
    return {"success": True, "batch": record.to_public()}


@router.get("/qr/{identifier}", tags=["QR"])
def get_qr(identifier: str, service: BatchService = Depends(get_batch_service)):
    with service_errors():
        record = service.get(identifier)
    return {
        "success": True,
        "batchId": record.batch_id,
        "tokenId": record.token_id,
        "qrData": record.qr_data,
        "qrSignature": record.qr_signature,
    }


# ============================================================
# Reconciliation
# ============================================================

@router.get("/reconciliation/status", tags=["Reconciliation"])
def reconciliation_status(reconciler: ReconciliationService = Depends(get_reconciler)):
    return reconciler.status()


@router.post("/reconciliation/sweep", tags=["Reconciliation"])
def reconciliation_sweep(
    reconciler: ReconciliationService = Depends(get_reconciler),
    ledger: LedgerReader = Depends(get_ledger),
):
    """Run a full sweep now and return its report."""
    if not ledger.is_configured:
        raise HTTPException(status_code=503, detail="Ledger is not configured")
    report = reconciler.sweep()
    return {"success": True, "report": report.to_dict()}
