"""
Verification Schemas

Input and output of an authenticity verification.

A verification never answers with a bare boolean. Consumers get the verdict
plus every check that contributed to it, so they can show the user why.
"""

from typing import Any, Optional, Union

from pydantic import AliasChoices, Field

from .batch import CamelModel


class QRPayload(CamelModel):
    """
    Scanned QR content.

    data is the manufacturer-signed document, typically:
    {"type", "batchId", "tokenId", "contract", "verifyUrl", "timestamp"}.
    Key order matters: the signature covers the compact JSON of data
    in the order the signer serialized it.
    """
    data: dict[str, Any]
    signature: Optional[str] = None
    signer: Optional[str] = None

    def embedded_token_id(self) -> Optional[int]:
        value = self.data.get("tokenId")
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    def embedded_batch_id(self) -> Optional[str]:
        value = self.data.get("batchId") or self.data.get("batchID")
        return str(value) if value else None

    def embedded_contract(self) -> Optional[str]:
        value = self.data.get("contract")
        return str(value).lower() if value else None


class VerificationRequest(CamelModel):
    """
    One of token_id, batch_id or qr_payload identifies the batch.

    qr_payload may be the raw scanned string; it is parsed by the verifier.
    """
    qr_payload: Optional[Union[QRPayload, str]] = Field(
        default=None,
        validation_alias=AliasChoices("qrPayload", "qrData", "qr_payload"),
        serialization_alias="qrPayload",
    )
    token_id: Optional[int] = None
    batch_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("batchId", "batchID", "batch_id"),
        serialization_alias="batchId",
    )


class LedgerCrossCheck(CamelModel):
    """Comparison of the store row against the ledger's record."""
    owner_match: bool  # informational only
    batch_id_match: bool
    manufacturer_match: bool
    metadata_hash_match: bool
    counterfeit_match: bool


class VerificationChecks(CamelModel):
    """
    Per-check outcomes. None means the check was not attempted.
    """
    store_hash_integrity: bool
    counterfeit_flag: bool  # True means NOT flagged
    qr_signature: Optional[bool] = None
    contract_match: Optional[bool] = None
    ledger_match: Optional[LedgerCrossCheck] = None


class VerificationResult(CamelModel):
    authentic: bool
    checks: VerificationChecks
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    batch_id: Optional[str] = None
    token_id: Optional[int] = None

    def to_public(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class QuickVerification(CamelModel):
    """Store-only check used by scan landing pages."""
    batch_id: str
    token_id: Optional[int] = None
    hash_integrity: bool
    not_counterfeit: bool
    authentic: bool


class MetadataVerification(CamelModel):
    """Caller-supplied metadata checked against the stored hash."""
    batch_id: str
    token_id: Optional[int] = None
    computed_hash: Optional[str] = None
    stored_hash: str
    valid: bool
