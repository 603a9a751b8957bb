"""
Batch Service

Store-side operations behind the HTTP API: batch requests, transfer
records, QR storage, enrichment and listings.

Writes follow the same rules as the reconciler:
- token binding goes through bind_token (never rebinds)
- transfers are coalesced within the same window
- conflicting writes are re-fetched and retried
"""

import base64
import binascii
from datetime import datetime, timezone
from typing import Any, Optional, Union

from ..db.store import BatchStore, DuplicateKeyError, update_with_retry
from ..observability import get_logger
from ..schemas import (
    BatchCreate,
    BatchEnrichment,
    BatchRecord,
    BatchStatus,
    Role,
    TransferCreate,
    TransferRecord,
    ZERO_ADDRESS,
    status_for_role,
)
from .hasher import IntegrityHasher
from .ownership import bind_token

logger = get_logger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class BatchServiceError(Exception):
    """Base exception for batch service errors."""
    pass


class BatchNotFound(BatchServiceError):
    """Raised when no batch matches an identifier."""

    def __init__(self, identifier: Any):
        super().__init__(f"Batch not found: {identifier}")
        self.identifier = identifier


class InvalidBatchRequest(BatchServiceError):
    """Raised when a request is malformed beyond schema validation."""
    pass


class EnrichmentRejected(BatchServiceError):
    """Raised when enrichment fields do not reproduce the anchored hash."""
    pass


def find_batch(store: BatchStore, identifier: Union[str, int]) -> BatchRecord:
    """
    Resolve a token id or batch id.

    Numeric identifiers are tried as token ids first, then as batch ids.

    Raises:
        BatchNotFound: If neither lookup matches
    """
    text = str(identifier).strip()
    record = None
    if text.isdigit():
        record = store.find_by_token_id(int(text))
    if record is None and text:
        record = store.find_by_batch_id(text)
    if record is None:
        raise BatchNotFound(text)
    return record


class BatchService:
    """
    Off-chain batch operations.

    Usage:
        service = BatchService(store)
        record, created = service.create_batch(BatchCreate(...))
    """

    def __init__(
        self,
        store: BatchStore,
        coalesce_window_seconds: float = 60.0,
        update_attempts: int = 3,
    ):
        self._store = store
        self._coalesce_window_seconds = coalesce_window_seconds
        self._update_attempts = update_attempts

    def _update(self, batch_id: str, mutate) -> BatchRecord:
        record, _ = update_with_retry(
            self._store,
            lambda: self._store.find_by_batch_id(batch_id),
            mutate,
            attempts=self._update_attempts,
        )
        if record is None:
            raise BatchNotFound(batch_id)
        return record

    @staticmethod
    def _certificate_hash(content: Optional[str]) -> Optional[str]:
        if not content:
            return None
        try:
            raw = base64.b64decode(content, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidBatchRequest(f"qaCertificate is not valid base64: {e}") from e
        return IntegrityHasher.file_hash(raw)

    # ---------------------------------------------------------
    # Commands
    # ---------------------------------------------------------

    def create_batch(self, request: BatchCreate) -> tuple[BatchRecord, bool]:
        """
        Create a batch, or update the existing one with mint results.

        Returns:
            Tuple of (record, created)

        Raises:
            TokenBindingError: If the batch is bound to another token
            DuplicateKeyError: If the token id belongs to another batch
        """
        qa_hash = self._certificate_hash(request.qa_certificate)

        if self._store.find_by_batch_id(request.batch_id) is not None:
            return self._merge_existing(request, qa_hash), False

        metadata_hash = request.metadata_hash or IntegrityHasher.compute_hash(request)
        manufacturer = request.manufacturer.lower()
        record = BatchRecord(
            batch_id=request.batch_id,
            token_id=request.token_id,
            ledger_address=request.ledger_address or ZERO_ADDRESS,
            current_owner=manufacturer,
            current_role=Role.MANUFACTURER,
            manufacturer=manufacturer,
            manufacturer_name=request.manufacturer_name,
            drug_name=request.drug_name,
            manufacturing_date=request.manufacturing_date,
            expiry_date=request.expiry_date,
            quantity=request.quantity or 1,
            metadata_hash=metadata_hash,
            metadata_uri=request.metadata_uri,
            qa_certificate_hash=qa_hash,
            status=BatchStatus.CREATED,
        )

        try:
            stored = self._store.insert(record)
        except DuplicateKeyError:
            existing = self._store.find_by_batch_id(request.batch_id)
            if existing is None:
                raise
            logger.info("Batch created concurrently, returning existing", batch_id=request.batch_id)
            return existing, False

        logger.info(
            "Batch created",
            batch_id=stored.batch_id,
            token_id=stored.token_id,
            metadata_hash=stored.metadata_hash,
        )
        return stored, True

    def _merge_existing(self, request: BatchCreate, qa_hash: Optional[str]) -> BatchRecord:
        def apply(record: BatchRecord) -> bool:
            was_bound = record.token_id is not None
            changed = False
            if request.token_id is not None:
                changed = bind_token(record, request.token_id, request.ledger_address)
            elif request.ledger_address and record.ledger_address != request.ledger_address.lower():
                record.ledger_address = request.ledger_address.lower()
                changed = True

            # The ledger owns the hash once a token is bound
            supplied_hash = (request.metadata_hash or "").lower()
            if supplied_hash and not was_bound and record.metadata_hash != supplied_hash:
                record.metadata_hash = supplied_hash
                changed = True

            if request.metadata_uri and record.metadata_uri != request.metadata_uri:
                record.metadata_uri = request.metadata_uri
                changed = True

            if qa_hash and record.qa_certificate_hash != qa_hash:
                record.qa_certificate_hash = qa_hash
                changed = True
            return changed

        record = self._update(request.batch_id, apply)
        logger.info("Batch already exists, merged request", batch_id=record.batch_id, token_id=record.token_id)
        return record

    def record_transfer(self, identifier: Union[str, int], transfer: TransferCreate) -> BatchRecord:
        """
        Record a custody hand-off reported by a client.

        A hand-off already recorded within the coalescing window (by the
        reconciler or a retried request) is not appended again.
        """
        batch_id = find_batch(self._store, identifier).batch_id
        now = datetime.now(timezone.utc)
        to_address = transfer.to_address.lower()

        def apply(record: BatchRecord) -> bool:
            if not record.has_recent_transfer(
                transfer.from_address, to_address, now, self._coalesce_window_seconds
            ):
                record.history.append(TransferRecord(
                    from_address=transfer.from_address,
                    to_address=to_address,
                    from_role=transfer.from_role,
                    to_role=transfer.to_role,
                    timestamp=now,
                    tx_hash=transfer.tx_hash,
                ))
            record.current_owner = to_address
            record.current_role = transfer.to_role
            if record.status != BatchStatus.FLAGGED:
                record.status = status_for_role(transfer.to_role)
            return True

        record = self._update(batch_id, apply)
        logger.info(
            "Transfer recorded",
            batch_id=batch_id,
            token_id=record.token_id,
            to_address=to_address,
            to_role=transfer.to_role.value,
        )
        return record

    def store_qr(
        self,
        identifier: Union[str, int],
        qr_data: dict[str, Any],
        qr_signature: str,
    ) -> BatchRecord:
        batch_id = find_batch(self._store, identifier).batch_id

        def apply(record: BatchRecord) -> bool:
            record.qr_data = qr_data
            record.qr_signature = qr_signature
            return True

        return self._update(batch_id, apply)

    def enrich(self, identifier: Union[str, int], enrichment: BatchEnrichment) -> BatchRecord:
        """
        Replace placeholder product fields on a row.

        Accepted only when the supplied fields, with the row's batch id and
        manufacturer, hash to the ledger-anchored metadata hash.

        Raises:
            EnrichmentRejected: If the hash does not match
        """
        batch_id = find_batch(self._store, identifier).batch_id

        def apply(record: BatchRecord) -> bool:
            candidate = {
                "batchID": record.batch_id,
                "drugName": enrichment.drug_name,
                "manufacturingDate": enrichment.manufacturing_date,
                "expiryDate": enrichment.expiry_date,
                "quantity": enrichment.quantity,
                "manufacturer": record.manufacturer,
            }
            if not IntegrityHasher.verify(candidate, record.metadata_hash):
                raise EnrichmentRejected(
                    f"Fields for batch {record.batch_id} do not match its metadata hash"
                )
            record.drug_name = enrichment.drug_name
            record.manufacturing_date = enrichment.manufacturing_date
            record.expiry_date = enrichment.expiry_date
            record.quantity = enrichment.quantity
            if enrichment.manufacturer_name is not None:
                record.manufacturer_name = enrichment.manufacturer_name
            record.needs_enrichment = False
            return True

        record = self._update(batch_id, apply)
        logger.info("Batch enriched", batch_id=batch_id, token_id=record.token_id)
        return record

    # ---------------------------------------------------------
    # Queries
    # ---------------------------------------------------------

    def get(self, identifier: Union[str, int]) -> BatchRecord:
        return find_batch(self._store, identifier)

    def list_batches(
        self,
        owner: Optional[str] = None,
        manufacturer: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        role: Optional[Role] = None,
    ) -> list[BatchRecord]:
        return self._store.list_batches(
            owner=owner, manufacturer=manufacturer, status=status, role=role
        )

    def history(self, identifier: Union[str, int]) -> list[TransferRecord]:
        return find_batch(self._store, identifier).history

    def list_transfers(
        self,
        token_id: Optional[int] = None,
        batch_id: Optional[str] = None,
        from_address: Optional[str] = None,
        to_address: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """
        Transfer records across batches, optionally for one batch.

        Each entry carries its batchId and tokenId.
        """
        if token_id is not None:
            records = [find_batch(self._store, token_id)]
        elif batch_id:
            records = [find_batch(self._store, batch_id)]
        else:
            records = self._store.list_batches()

        from_address = from_address.lower() if from_address else None
        to_address = to_address.lower() if to_address else None

        transfers = []
        for record in records:
            for entry in record.history:
                if from_address and entry.from_address != from_address:
                    continue
                if to_address and entry.to_address != to_address:
                    continue
                transfers.append({
                    "batchId": record.batch_id,
                    "tokenId": record.token_id,
                    **entry.model_dump(mode="json", by_alias=True),
                })
        return transfers
