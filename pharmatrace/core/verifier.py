"""
Authenticity Verifier

Layered checks for a scanned or looked-up batch:

1. Store hash integrity   - warning on failure (the store may be stale)
2. Counterfeit flag       - blocking
3. QR signature           - blocking; signer must be the batch manufacturer
   QR contract address    - blocking, for signed payloads only; must equal
                            the batch's ledger address
4. Ledger cross-check     - batchId / manufacturer mismatch is blocking,
                            hash mismatch is a warning, owner is informational

VERDICT:
    authentic = batchId matches (or not checked)
                AND manufacturer matches (or not checked)
                AND not counterfeit
                AND no blocking error

A failed verification is a normal result, not an exception. Only a missing
batch or a malformed request raises.
"""

import base64
import binascii
import json
from typing import Any, Mapping, Optional, Union

from ..db.store import BatchStore
from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import (
    BatchRecord,
    LedgerCrossCheck,
    MetadataVerification,
    QRPayload,
    QuickVerification,
    VerificationChecks,
    VerificationRequest,
    VerificationResult,
)
from .batches import BatchNotFound, find_batch
from .hasher import CanonicalSerializationError, IntegrityHasher
from .ledger import LedgerError, LedgerReader, call_with_retry
from .signer import QRSigner, SignatureInvalid

logger = get_logger(__name__)


class InvalidVerificationRequest(Exception):
    """Raised when a verification request cannot identify a batch."""
    pass


class AuthenticityVerifier:
    """
    Per-request verification against the store and the ledger.

    Stateless apart from its collaborators; safe to share across requests
    and to run concurrently with the reconciler.
    """

    def __init__(
        self,
        store: BatchStore,
        ledger: Optional[LedgerReader] = None,
        retries: int = 2,
        backoff_seconds: float = 1.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._retries = retries
        self._backoff_seconds = backoff_seconds
        self._metrics = metrics or get_metrics()

    # ---------------------------------------------------------
    # Request parsing
    # ---------------------------------------------------------

    @staticmethod
    def _parse_qr(payload: Union[QRPayload, str, None]) -> Optional[QRPayload]:
        """
        Accept a parsed payload, its JSON text, or the base64 of that JSON
        (the form printed into QR codes).
        """
        if payload is None or isinstance(payload, QRPayload):
            return payload
        text = payload.strip()
        if not text.startswith("{"):
            try:
                text = base64.b64decode(text, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise InvalidVerificationRequest(f"QR payload is neither JSON nor base64 JSON: {e}") from e
        try:
            return QRPayload.model_validate(json.loads(text))
        except ValueError as e:
            # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors
            raise InvalidVerificationRequest(f"QR payload is not valid JSON: {e}") from e

    def _resolve(self, request: VerificationRequest, qr: Optional[QRPayload]) -> BatchRecord:
        """
        Find the batch: tokenId, then batchId, then the QR's embedded ids.

        Raises:
            InvalidVerificationRequest: If no identifier was supplied
            BatchNotFound: If the identifier matches nothing
        """
        if request.token_id is not None:
            return self._by_token(request.token_id)
        if request.batch_id:
            return self._by_batch(request.batch_id)
        if qr is not None:
            token_id = qr.embedded_token_id()
            if token_id is not None:
                return self._by_token(token_id)
            batch_id = qr.embedded_batch_id()
            if batch_id:
                return self._by_batch(batch_id)
        raise InvalidVerificationRequest("Provide tokenId, batchId or a QR payload that embeds one")

    def _by_token(self, token_id: int) -> BatchRecord:
        record = self._store.find_by_token_id(token_id)
        if record is None:
            raise BatchNotFound(token_id)
        return record

    def _by_batch(self, batch_id: str) -> BatchRecord:
        record = self._store.find_by_batch_id(batch_id)
        if record is None:
            raise BatchNotFound(batch_id)
        return record

    # ---------------------------------------------------------
    # Verification
    # ---------------------------------------------------------

    def verify(self, request: VerificationRequest) -> VerificationResult:
        """
        Run every applicable check and produce the verdict.

        Raises:
            InvalidVerificationRequest: Malformed QR payload or no identifier
            BatchNotFound: No batch matches the identifier
        """
        qr = self._parse_qr(request.qr_payload)
        record = self._resolve(request, qr)

        errors: list[str] = []
        warnings: list[str] = []
        blocking = False

        # 1. Store hash integrity
        store_hash_ok = IntegrityHasher.verify(record, record.metadata_hash)
        if not store_hash_ok:
            warnings.append(
                "Stored metadata hash does not match the batch fields; the store copy may be stale"
            )
        if record.needs_enrichment:
            warnings.append("Product details were not supplied by the manufacturer yet")

        # 2. Counterfeit flag
        not_counterfeit = not record.is_counterfeit
        if record.is_counterfeit:
            errors.append("Batch is flagged as counterfeit")
            blocking = True

        # 3. QR signature and contract
        qr_signature: Optional[bool] = None
        contract_match: Optional[bool] = None
        if qr is not None and qr.signature:
            qr_signature, message = self._check_signature(qr, record, warnings)
            if not qr_signature:
                errors.append(message)
                blocking = True

            contract = qr.embedded_contract()
            if contract:
                contract_match = contract == record.ledger_address
                if not contract_match:
                    errors.append(
                        f"QR contract {contract} does not match the batch ledger address "
                        f"{record.ledger_address}"
                    )
                    blocking = True

        # 4. Ledger cross-check
        ledger_match = self._cross_check(record, errors, warnings)
        if ledger_match is not None:
            if not ledger_match.batch_id_match or not ledger_match.manufacturer_match:
                blocking = True
            if not ledger_match.counterfeit_match and not record.is_counterfeit:
                # The ledger flagged it; the store has not caught up yet
                not_counterfeit = False
                blocking = True

        authentic = (
            (ledger_match is None or ledger_match.batch_id_match)
            and (ledger_match is None or ledger_match.manufacturer_match)
            and not_counterfeit
            and not blocking
        )

        result = VerificationResult(
            authentic=authentic,
            checks=VerificationChecks(
                store_hash_integrity=store_hash_ok,
                counterfeit_flag=not_counterfeit,
                qr_signature=qr_signature,
                contract_match=contract_match,
                ledger_match=ledger_match,
            ),
            errors=errors,
            warnings=warnings,
            batch_id=record.batch_id,
            token_id=record.token_id,
        )

        self._metrics.record_verification(authentic)
        logger.info(
            "Batch verified" if authentic else "Batch failed verification",
            batch_id=record.batch_id,
            token_id=record.token_id,
            authentic=authentic,
            error_count=len(errors),
            warning_count=len(warnings),
        )
        return result

    @staticmethod
    def _check_signature(
        qr: QRPayload,
        record: BatchRecord,
        warnings: list[str],
    ) -> tuple[bool, str]:
        try:
            signer = QRSigner.recover_signer(qr.data, qr.signature)
        except SignatureInvalid as e:
            return False, f"QR signature is invalid: {e}"
        if qr.signer and qr.signer.lower() != signer:
            warnings.append(f"QR names {qr.signer} as signer but was signed by {signer}")
        if signer != record.manufacturer:
            return False, (
                f"QR signature was made by {signer}, not by the batch manufacturer "
                f"{record.manufacturer}"
            )
        return True, ""

    def _cross_check(
        self,
        record: BatchRecord,
        errors: list[str],
        warnings: list[str],
    ) -> Optional[LedgerCrossCheck]:
        """
        Compare the row with the ledger. None if the check was not attempted.
        """
        if record.token_id is None:
            warnings.append("Batch is not minted on the ledger yet")
            return None
        if self._ledger is None or not self._ledger.is_configured:
            return None

        token_id = record.token_id
        try:
            details = self._call(self._ledger.get_batch_details, token_id)
            owner = self._call(self._ledger.owner_of, token_id)
            ledger_counterfeit = self._call(self._ledger.is_counterfeit, token_id)
        except LedgerError as e:
            logger.warning(f"Ledger cross-check skipped: {e}", batch_id=record.batch_id, token_id=token_id)
            errors.append(f"Ledger cross-check could not be completed: {e}")
            return None

        check = LedgerCrossCheck(
            owner_match=owner.lower() == record.current_owner,
            batch_id_match=details.batch_id == record.batch_id,
            manufacturer_match=details.manufacturer == record.manufacturer,
            metadata_hash_match=IntegrityHasher.verify(record, details.metadata_hash),
            counterfeit_match=ledger_counterfeit == record.is_counterfeit,
        )

        if not check.batch_id_match:
            errors.append(
                f"Ledger batch id {details.batch_id} does not match {record.batch_id}"
            )
        if not check.manufacturer_match:
            errors.append(
                f"Ledger manufacturer {details.manufacturer} does not match {record.manufacturer}"
            )
        if not check.metadata_hash_match:
            warnings.append("Batch fields do not reproduce the ledger metadata hash")
        if ledger_counterfeit and not record.is_counterfeit:
            errors.append("Ledger flags batch as counterfeit")
        if not check.owner_match:
            warnings.append("Store owner differs from the ledger owner; custody may be in transit")
        return check

    def _call(self, fn, *args: Any) -> Any:
        return call_with_retry(
            fn, *args, retries=self._retries, backoff_seconds=self._backoff_seconds
        )

    # ---------------------------------------------------------
    # Store-only checks
    # ---------------------------------------------------------

    def quick_verify(self, identifier: Union[str, int]) -> QuickVerification:
        """Hash integrity and counterfeit flag from the store alone."""
        record = find_batch(self._store, identifier)
        hash_ok = IntegrityHasher.verify(record, record.metadata_hash)
        return QuickVerification(
            batch_id=record.batch_id,
            token_id=record.token_id,
            hash_integrity=hash_ok,
            not_counterfeit=not record.is_counterfeit,
            authentic=hash_ok and not record.is_counterfeit,
        )

    def verify_metadata(
        self,
        identifier: Union[str, int],
        metadata: Mapping[str, Any],
    ) -> MetadataVerification:
        """Check a caller-supplied metadata object against the stored hash."""
        record = find_batch(self._store, identifier)
        try:
            computed = IntegrityHasher.compute_hash(metadata)
        except CanonicalSerializationError as e:
            logger.info(f"Metadata cannot be hashed: {e}", batch_id=record.batch_id)
            computed = None
        return MetadataVerification(
            batch_id=record.batch_id,
            token_id=record.token_id,
            computed_hash=computed,
            stored_hash=record.metadata_hash,
            valid=computed is not None and IntegrityHasher.verify(metadata, record.metadata_hash),
        )
