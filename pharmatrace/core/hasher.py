"""
Integrity Hash Engine

Deterministic canonicalization and SHA-256 hashing of batch identity fields.
Same input → same hash. Always.

The ledger and the store recompute this hash independently and must agree
bit for bit. Every change here must stay compatible with hashes already
anchored on the ledger.

Canonical form:
1. Exactly six keys: batchID, drugName, manufacturingDate, expiryDate,
   quantity, manufacturer
2. batchID, drugName: strings, empty string when missing
3. Dates: YYYY-MM-DD of the UTC calendar day, empty string when missing
4. quantity: integer, 1 when missing or falsy. Integral floats and numeric
   strings are accepted; a fractional quantity is rejected rather than hashed,
   since batch quantities are whole units
5. manufacturer: lower-cased address string
6. JSON output: keys sorted, no whitespace, non-ASCII emitted as-is (UTF-8)
7. Digest: SHA-256 over the UTF-8 bytes, lowercase hex
"""

import hashlib
import hmac
import json
from datetime import date, datetime, timezone
from typing import Any, Mapping


class CanonicalSerializationError(Exception):
    """Raised when batch fields cannot be canonically serialized."""
    pass


class IntegrityHasher:
    """
    Canonical serialization and hashing for batch metadata.

    IMMUTABLE CONTRACT:
    - Equal batch fields always produce equal digests
    - A date object and an ISO string for the same UTC day hash identically
    - Key order of the input never matters
    """

    CANONICAL_KEYS = (
        "batchID",
        "drugName",
        "manufacturingDate",
        "expiryDate",
        "quantity",
        "manufacturer",
    )

    # Accepted spellings for each canonical key, first match wins
    _FIELD_ALIASES = {
        "batchID": ("batchID", "batchId", "batch_id"),
        "drugName": ("drugName", "drug_name"),
        "manufacturingDate": ("manufacturingDate", "manufacturing_date"),
        "expiryDate": ("expiryDate", "expiry_date"),
        "quantity": ("quantity",),
        "manufacturer": ("manufacturer",),
    }

    @classmethod
    def _pick(cls, fields: Mapping[str, Any], key: str) -> Any:
        for alias in cls._FIELD_ALIASES[key]:
            if alias in fields:
                return fields[alias]
        return None

    @classmethod
    def normalize_date(cls, value: Any, path: str = "") -> str:
        """
        Normalize a date-like value to YYYY-MM-DD of its UTC calendar day.

        Accepts date, datetime (naive datetimes are taken as UTC) and
        ISO 8601 strings, with or without a time part.
        """
        if value is None or value == "":
            return ""

        # datetime before date: datetime is a subclass of date
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc).strftime("%Y-%m-%d")

        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")

        if isinstance(value, str):
            text = value.strip()
            if text.endswith("Z") or text.endswith("z"):
                text = text[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError as e:
                raise CanonicalSerializationError(
                    f"Cannot parse date at {path}: {value!r}. "
                    "Use an ISO 8601 date (YYYY-MM-DD) or timestamp."
                ) from e
            return cls.normalize_date(parsed, path)

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Dates must be date, datetime or ISO 8601 strings."
        )

    @classmethod
    def _normalize_quantity(cls, value: Any) -> int:
        if not value:
            return 1
        if isinstance(value, bool):
            raise CanonicalSerializationError("quantity must be an integer, got bool")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError as e:
                raise CanonicalSerializationError(
                    f"quantity must be an integer, got {value!r}"
                ) from e
        raise CanonicalSerializationError(
            f"quantity must be an integer, got {type(value).__name__}"
        )

    @classmethod
    def canonical_fields(cls, fields: Mapping[str, Any] | Any) -> dict[str, Any]:
        """
        Build the six-key canonical object.

        Args:
            fields: Mapping of batch fields, or a BatchRecord

        Returns:
            Dict with exactly the canonical keys
        """
        if hasattr(fields, "identity_fields"):
            fields = fields.identity_fields()

        if not isinstance(fields, Mapping):
            raise CanonicalSerializationError(
                f"Canonicalization requires a mapping, got {type(fields).__name__}"
            )

        batch_id = cls._pick(fields, "batchID")
        drug_name = cls._pick(fields, "drugName")
        manufacturer = cls._pick(fields, "manufacturer")

        return {
            "batchID": str(batch_id) if batch_id else "",
            "drugName": str(drug_name) if drug_name else "",
            "manufacturingDate": cls.normalize_date(
                cls._pick(fields, "manufacturingDate"), "manufacturingDate"
            ),
            "expiryDate": cls.normalize_date(
                cls._pick(fields, "expiryDate"), "expiryDate"
            ),
            "quantity": cls._normalize_quantity(cls._pick(fields, "quantity")),
            "manufacturer": str(manufacturer).lower() if manufacturer else "",
        }

    @classmethod
    def canonicalize(cls, fields: Mapping[str, Any] | Any) -> str:
        """
        Convert batch fields to the canonical JSON string.

        Both hashing and verification go through this string.
        """
        canonical = cls.canonical_fields(fields)
        return json.dumps(
            canonical,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )

    @classmethod
    def compute_hash(cls, fields: Mapping[str, Any] | Any) -> str:
        """
        Hash batch identity fields.

        Returns:
            64 lowercase hex characters
        """
        canonical = cls.canonicalize(fields)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def verify(cls, fields: Mapping[str, Any] | Any, expected_hash: str | None) -> bool:
        """
        Check fields against an expected hash (case-insensitive).

        Fields that cannot be canonicalized never verify.
        """
        if not expected_hash:
            return False
        try:
            computed = cls.compute_hash(fields)
        except CanonicalSerializationError:
            return False
        return cls._constant_time_compare(computed, expected_hash.lower())

    @staticmethod
    def file_hash(content: bytes) -> str:
        """Plain SHA-256 over raw bytes, for attached documents."""
        return hashlib.sha256(content).hexdigest()

    @classmethod
    def verify_file(cls, content: bytes, expected_hash: str | None) -> bool:
        if not expected_hash:
            return False
        return cls._constant_time_compare(cls.file_hash(content), expected_hash.lower())

    @staticmethod
    def _constant_time_compare(a: str, b: str) -> bool:
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
