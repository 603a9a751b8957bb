"""
Tests for the Integrity Hash Engine

The store and the ledger recompute the metadata hash independently.
Anything that changes the canonical form breaks every anchored batch.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from pharmatrace.core import CanonicalSerializationError, IntegrityHasher


MANUFACTURER = "0x1111111111111111111111111111111111111111"


def sample_fields(**overrides):
    fields = {
        "batchID": "B1",
        "drugName": "Amoxicillin 500mg",
        "manufacturingDate": "2024-01-05",
        "expiryDate": "2026-01-05",
        "quantity": 100,
        "manufacturer": MANUFACTURER,
    }
    fields.update(overrides)
    return fields


class TestCanonicalForm:
    """Test the six-key canonical object."""

    def test_exactly_six_sorted_keys(self):
        canonical = IntegrityHasher.canonicalize(sample_fields(extra="ignored"))
        assert canonical == (
            '{"batchID":"B1","drugName":"Amoxicillin 500mg","expiryDate":"2026-01-05",'
            f'"manufacturer":"{MANUFACTURER}","manufacturingDate":"2024-01-05","quantity":100}}'
        )

    def test_no_whitespace_in_output(self):
        canonical = IntegrityHasher.canonicalize(sample_fields(drugName="Amox"))
        assert ", " not in canonical
        assert ": " not in canonical

    def test_key_order_irrelevant(self):
        fields = sample_fields()
        reversed_fields = dict(reversed(list(fields.items())))
        assert IntegrityHasher.compute_hash(fields) == IntegrityHasher.compute_hash(reversed_fields)

    def test_missing_fields_become_defaults(self):
        canonical = IntegrityHasher.canonical_fields({"batchID": "B1"})
        assert canonical == {
            "batchID": "B1",
            "drugName": "",
            "manufacturingDate": "",
            "expiryDate": "",
            "quantity": 1,
            "manufacturer": "",
        }

    def test_snake_case_spellings_accepted(self):
        snake = {
            "batch_id": "B1",
            "drug_name": "Amoxicillin 500mg",
            "manufacturing_date": "2024-01-05",
            "expiry_date": "2026-01-05",
            "quantity": 100,
            "manufacturer": MANUFACTURER,
        }
        assert IntegrityHasher.compute_hash(snake) == IntegrityHasher.compute_hash(sample_fields())

    def test_manufacturer_lower_cased(self):
        upper = sample_fields(manufacturer="0xABCDEFabcdef0000000000000000000000000000")
        lower = sample_fields(manufacturer="0xabcdefabcdef0000000000000000000000000000")
        assert IntegrityHasher.compute_hash(upper) == IntegrityHasher.compute_hash(lower)

    def test_non_ascii_kept_as_utf8(self):
        canonical = IntegrityHasher.canonicalize(sample_fields(drugName="Paracétamol"))
        assert "Paracétamol" in canonical

    def test_non_mapping_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="mapping"):
            IntegrityHasher.canonicalize(["B1"])


class TestDates:
    """Dates hash as the UTC calendar day, whatever their representation."""

    def test_date_object_equals_iso_string(self):
        as_string = sample_fields(manufacturingDate="2024-01-05")
        as_date = sample_fields(manufacturingDate=date(2024, 1, 5))
        assert IntegrityHasher.compute_hash(as_string) == IntegrityHasher.compute_hash(as_date)

    def test_midnight_utc_datetime_equals_date(self):
        as_datetime = sample_fields(
            manufacturingDate=datetime(2024, 1, 5, 0, 0, tzinfo=timezone.utc)
        )
        assert IntegrityHasher.compute_hash(as_datetime) == IntegrityHasher.compute_hash(sample_fields())

    def test_zulu_timestamp_string(self):
        assert IntegrityHasher.normalize_date("2024-01-05T00:00:00.000Z") == "2024-01-05"

    def test_offset_moves_to_utc_day(self):
        """23:30 at UTC-5 is already the next day in UTC."""
        minus5 = timezone(timedelta(hours=-5))
        value = datetime(2024, 1, 5, 23, 30, tzinfo=minus5)
        assert IntegrityHasher.normalize_date(value) == "2024-01-06"
        assert IntegrityHasher.normalize_date("2024-01-05T23:30:00-05:00") == "2024-01-06"

    def test_naive_datetime_taken_as_utc(self):
        assert IntegrityHasher.normalize_date(datetime(2024, 1, 5, 23, 59)) == "2024-01-05"

    def test_unparseable_date_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="manufacturingDate"):
            IntegrityHasher.compute_hash(sample_fields(manufacturingDate="next tuesday"))

    def test_unsupported_date_type_rejected(self):
        with pytest.raises(CanonicalSerializationError):
            IntegrityHasher.normalize_date(20240105)


class TestQuantity:

    @pytest.mark.parametrize("value", [None, 0, ""])
    def test_falsy_quantity_is_one(self, value):
        assert IntegrityHasher.canonical_fields(sample_fields(quantity=value))["quantity"] == 1

    def test_numeric_string_and_integral_float(self):
        assert IntegrityHasher.canonical_fields(sample_fields(quantity="100"))["quantity"] == 100
        assert IntegrityHasher.canonical_fields(sample_fields(quantity=100.0))["quantity"] == 100

    def test_bool_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="bool"):
            IntegrityHasher.compute_hash(sample_fields(quantity=True))

    def test_non_numeric_string_rejected(self):
        with pytest.raises(CanonicalSerializationError):
            IntegrityHasher.compute_hash(sample_fields(quantity="lots"))

    def test_fractional_quantity_rejected(self):
        with pytest.raises(CanonicalSerializationError):
            IntegrityHasher.compute_hash(sample_fields(quantity=2.5))
        assert IntegrityHasher.verify(sample_fields(quantity=2.5), "ab" * 32) is False


class TestComputeHash:

    def test_deterministic(self):
        assert IntegrityHasher.compute_hash(sample_fields()) == IntegrityHasher.compute_hash(sample_fields())

    def test_lowercase_hex_sha256(self):
        digest = IntegrityHasher.compute_hash(sample_fields())
        assert len(digest) == 64
        assert digest == digest.lower()
        int(digest, 16)

    def test_any_identity_field_changes_hash(self):
        base = IntegrityHasher.compute_hash(sample_fields())
        assert IntegrityHasher.compute_hash(sample_fields(quantity=99)) != base
        assert IntegrityHasher.compute_hash(sample_fields(expiryDate="2026-01-06")) != base
        assert IntegrityHasher.compute_hash(sample_fields(batchID="B2")) != base

    def test_golden_hash(self):
        """
        GOLDEN TEST: pins the canonical form to a fixed digest.

        If this fails, hashes already anchored on the ledger no longer verify.
        """
        EXPECTED_HASH = "b935ba94d4fb35199690fc6fcdc99d976fd5546acc477a46ce0722c849f8b1d1"
        assert IntegrityHasher.compute_hash(sample_fields()) == EXPECTED_HASH

    def test_golden_hash_of_defaults(self):
        EXPECTED_HASH = "af5a6231bcf7864ec5fb10d534027dec3b2364a9e77f68fa2b11668b8a8d4106"
        assert IntegrityHasher.compute_hash({"batchID": "B1"}) == EXPECTED_HASH


class TestVerify:

    def test_round_trip(self):
        fields = sample_fields()
        assert IntegrityHasher.verify(fields, IntegrityHasher.compute_hash(fields))

    def test_expected_hash_case_insensitive(self):
        fields = sample_fields()
        assert IntegrityHasher.verify(fields, IntegrityHasher.compute_hash(fields).upper())

    def test_mismatch(self):
        expected = IntegrityHasher.compute_hash(sample_fields())
        assert not IntegrityHasher.verify(sample_fields(quantity=5), expected)

    @pytest.mark.parametrize("expected", [None, ""])
    def test_missing_expected_hash_never_verifies(self, expected):
        assert not IntegrityHasher.verify(sample_fields(), expected)

    def test_unhashable_fields_never_verify(self):
        expected = IntegrityHasher.compute_hash(sample_fields())
        assert not IntegrityHasher.verify(sample_fields(expiryDate="soon"), expected)


class TestFileHash:

    def test_plain_sha256(self):
        # sha256("abc")
        assert IntegrityHasher.file_hash(b"abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_verify_file(self):
        digest = IntegrityHasher.file_hash(b"certificate")
        assert IntegrityHasher.verify_file(b"certificate", digest)
        assert not IntegrityHasher.verify_file(b"forged", digest)
