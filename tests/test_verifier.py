"""
Tests for the Authenticity Verifier

A failed verification is a normal result. These tests pin which checks
block the verdict and which only warn.
"""

import base64
import json

import pytest

from pharmatrace.core import (
    AuthenticityVerifier,
    BatchNotFound,
    InMemoryLedgerReader,
    IntegrityHasher,
    InvalidVerificationRequest,
    QRSigner,
)
from pharmatrace.schemas import Role, VerificationRequest

CONTRACT = "0x00000000000000000000000000000000000c0de5"
DISTRIBUTOR = "0x2222222222222222222222222222222222222222"


def qr_document(record, contract=CONTRACT):
    return {
        "type": "pharma-batch",
        "batchId": record.batch_id,
        "tokenId": record.token_id,
        "contract": contract,
        "verifyUrl": f"https://verify.example/batch/{record.token_id}",
        "timestamp": 1704412800000,
    }


def signed_qr(record, private_key, **kwargs):
    data = qr_document(record, **kwargs)
    return {"data": data, "signature": QRSigner.sign(data, private_key)}


class TestVerdict:
    """Which checks block authenticity."""

    def test_authentic_batch(self, verifier, minted_batch, manufacturer_account):
        result = verifier.verify(VerificationRequest(
            token_id=minted_batch.token_id,
            qr_payload=signed_qr(minted_batch, manufacturer_account[0]),
        ))

        assert result.authentic is True
        assert result.errors == []
        assert result.checks.store_hash_integrity is True
        assert result.checks.counterfeit_flag is True
        assert result.checks.qr_signature is True
        assert result.checks.contract_match is True
        ledger_match = result.checks.ledger_match
        assert ledger_match.batch_id_match
        assert ledger_match.manufacturer_match
        assert ledger_match.metadata_hash_match
        assert ledger_match.owner_match
        assert ledger_match.counterfeit_match

    def test_forged_signature(self, verifier, minted_batch):
        forger_key, _ = QRSigner.generate_account()
        result = verifier.verify(VerificationRequest(
            token_id=minted_batch.token_id,
            qr_payload=signed_qr(minted_batch, forger_key),
        ))

        assert result.checks.qr_signature is False
        assert result.authentic is False
        assert any("signature" in e.lower() for e in result.errors)

    def test_malformed_signature_is_a_result_not_an_exception(self, verifier, minted_batch):
        result = verifier.verify(VerificationRequest(
            token_id=minted_batch.token_id,
            qr_payload={"data": qr_document(minted_batch), "signature": "0xdeadbeef"},
        ))
        assert result.checks.qr_signature is False
        assert result.authentic is False

    def test_unsigned_qr_skips_signature_check(self, verifier, minted_batch):
        result = verifier.verify(VerificationRequest(
            qr_payload={"data": qr_document(minted_batch)},
        ))
        assert result.checks.qr_signature is None
        assert result.authentic is True

    def test_unsigned_qr_contract_not_checked(self, verifier, minted_batch):
        result = verifier.verify(VerificationRequest(
            qr_payload={"data": qr_document(minted_batch, contract="0x" + "99" * 20)},
        ))
        assert result.checks.contract_match is None
        assert result.authentic is True

    def test_claimed_signer_differs_warns(self, verifier, minted_batch, manufacturer_account):
        payload = signed_qr(minted_batch, manufacturer_account[0])
        payload["signer"] = DISTRIBUTOR

        result = verifier.verify(VerificationRequest(qr_payload=payload))

        assert result.checks.qr_signature is True
        assert result.authentic is True
        assert any(DISTRIBUTOR in w for w in result.warnings)

    def test_claimed_signer_matches_quietly(self, verifier, minted_batch, manufacturer_account):
        private_key, address = manufacturer_account
        payload = signed_qr(minted_batch, private_key)
        payload["signer"] = address.upper().replace("0X", "0x")

        result = verifier.verify(VerificationRequest(qr_payload=payload))

        assert not any("names" in w for w in result.warnings)

    def test_store_counterfeit_flag_blocks(self, store, verifier, minted_batch, manufacturer_account):
        record = store.find_by_batch_id("B1")
        record.is_counterfeit = True
        store.update(record)

        result = verifier.verify(VerificationRequest(
            token_id=minted_batch.token_id,
            qr_payload=signed_qr(minted_batch, manufacturer_account[0]),
        ))

        assert result.checks.counterfeit_flag is False
        assert result.checks.qr_signature is True
        assert result.authentic is False
        assert any("counterfeit" in e.lower() for e in result.errors)

    def test_ledger_counterfeit_flag_blocks(self, ledger, verifier, minted_batch):
        ledger.flag_counterfeit(minted_batch.token_id)

        result = verifier.verify(VerificationRequest(token_id=minted_batch.token_id))

        assert result.checks.counterfeit_flag is False
        assert result.checks.ledger_match.counterfeit_match is False
        assert result.authentic is False

    def test_stale_store_hash_only_warns(self, store, verifier, minted_batch):
        record = store.find_by_batch_id("B1")
        record.quantity = 50
        store.update(record)

        result = verifier.verify(VerificationRequest(token_id=minted_batch.token_id))

        assert result.checks.store_hash_integrity is False
        assert result.checks.ledger_match.batch_id_match
        assert result.checks.ledger_match.manufacturer_match
        assert result.authentic is True
        assert result.warnings

    def test_contract_mismatch_blocks(self, verifier, minted_batch, manufacturer_account):
        result = verifier.verify(VerificationRequest(
            token_id=minted_batch.token_id,
            qr_payload=signed_qr(minted_batch, manufacturer_account[0], contract="0x" + "99" * 20),
        ))
        assert result.checks.qr_signature is True
        assert result.checks.contract_match is False
        assert result.authentic is False

    def test_ledger_batch_id_mismatch_blocks(self, store, ledger, verifier, batch_service, batch_request, manufacturer):
        batch_service.create_batch(batch_request("B1"))
        token_id = ledger.mint("SOMETHING-ELSE", owner=manufacturer, metadata_hash="aa" * 32)
        batch_service.create_batch(batch_request("B1", token_id=token_id))

        result = verifier.verify(VerificationRequest(batch_id="B1"))

        assert result.checks.ledger_match.batch_id_match is False
        assert result.authentic is False

    def test_ledger_manufacturer_mismatch_blocks(self, ledger, verifier, batch_service, batch_request, manufacturer):
        request = batch_request("B1")
        batch_service.create_batch(request)
        token_id = ledger.mint(
            "B1",
            owner=manufacturer,
            manufacturer="0x" + "77" * 20,
            metadata_hash=IntegrityHasher.compute_hash(request),
        )
        batch_service.create_batch(batch_request("B1", token_id=token_id))

        result = verifier.verify(VerificationRequest(batch_id="B1"))

        assert result.checks.ledger_match.manufacturer_match is False
        assert result.authentic is False

    def test_owner_mismatch_only_warns(self, ledger, verifier, minted_batch):
        ledger.transfer(minted_batch.token_id, DISTRIBUTOR, Role.DISTRIBUTOR)

        result = verifier.verify(VerificationRequest(token_id=minted_batch.token_id))

        assert result.checks.ledger_match.owner_match is False
        assert result.authentic is True
        assert any("owner" in w.lower() for w in result.warnings)


class TestLedgerAvailability:

    def test_unminted_batch_warns(self, verifier, batch_service, batch_request):
        batch_service.create_batch(batch_request("B1"))

        result = verifier.verify(VerificationRequest(batch_id="B1"))

        assert result.checks.ledger_match is None
        assert result.authentic is True
        assert any("not minted" in w for w in result.warnings)

    def test_unreachable_ledger_is_not_blocking(self, ledger, verifier, minted_batch):
        ledger.fail_next_calls = 100

        result = verifier.verify(VerificationRequest(token_id=minted_batch.token_id))

        assert result.checks.ledger_match is None
        assert result.authentic is True
        assert any("ledger" in e.lower() for e in result.errors)

    def test_transient_ledger_failure_retried(self, ledger, verifier, minted_batch):
        ledger.fail_next_calls = 1
        result = verifier.verify(VerificationRequest(token_id=minted_batch.token_id))
        assert result.checks.ledger_match is not None

    def test_unconfigured_ledger_skips_cross_check(self, store, minted_batch, metrics):
        verifier = AuthenticityVerifier(store, InMemoryLedgerReader(address=None), metrics=metrics)
        result = verifier.verify(VerificationRequest(token_id=minted_batch.token_id))
        assert result.checks.ledger_match is None
        assert result.errors == []
        assert result.authentic is True


class TestIdentification:

    def test_token_id_wins_over_qr(self, verifier, batch_service, batch_request, minted_batch):
        batch_service.create_batch(batch_request("B2"))
        result = verifier.verify(VerificationRequest(
            token_id=minted_batch.token_id,
            qr_payload={"data": {"batchId": "B2"}},
        ))
        assert result.batch_id == "B1"

    def test_qr_embedded_token_id(self, verifier, minted_batch):
        result = verifier.verify(VerificationRequest(qr_payload={"data": {"tokenId": str(minted_batch.token_id)}}))
        assert result.batch_id == "B1"

    def test_qr_embedded_batch_id(self, verifier, minted_batch):
        result = verifier.verify(VerificationRequest(qr_payload={"data": {"batchID": "B1"}}))
        assert result.token_id == minted_batch.token_id

    def test_qr_as_json_string(self, verifier, minted_batch, manufacturer_account):
        text = json.dumps(signed_qr(minted_batch, manufacturer_account[0]))
        result = verifier.verify(VerificationRequest(qr_payload=text))
        assert result.checks.qr_signature is True
        assert result.authentic is True

    def test_qr_as_base64_json(self, verifier, minted_batch, manufacturer_account):
        text = json.dumps(signed_qr(minted_batch, manufacturer_account[0]))
        encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
        result = verifier.verify(VerificationRequest(qr_payload=encoded))
        assert result.checks.qr_signature is True

    def test_camel_case_request(self, verifier, minted_batch):
        request = VerificationRequest.model_validate({"batchID": "B1"})
        assert verifier.verify(request).token_id == minted_batch.token_id

    @pytest.mark.parametrize("payload", ["{not json", "%%%not-base64%%%", '{"signature": "0x00"}'])
    def test_malformed_qr(self, verifier, minted_batch, payload):
        with pytest.raises(InvalidVerificationRequest):
            verifier.verify(VerificationRequest(qr_payload=payload))

    def test_no_identifier(self, verifier):
        with pytest.raises(InvalidVerificationRequest):
            verifier.verify(VerificationRequest())

    def test_unknown_batch(self, verifier):
        with pytest.raises(BatchNotFound):
            verifier.verify(VerificationRequest(batch_id="NOPE"))


class TestStoreOnlyChecks:

    def test_quick_verify(self, verifier, minted_batch):
        result = verifier.quick_verify(str(minted_batch.token_id))
        assert result.batch_id == "B1"
        assert result.hash_integrity is True
        assert result.not_counterfeit is True
        assert result.authentic is True

    def test_quick_verify_flagged(self, store, verifier, minted_batch):
        record = store.find_by_batch_id("B1")
        record.is_counterfeit = True
        store.update(record)
        assert verifier.quick_verify("B1").authentic is False

    def test_verify_metadata(self, verifier, minted_batch):
        metadata = minted_batch.identity_fields()
        result = verifier.verify_metadata("B1", metadata)
        assert result.valid is True
        assert result.computed_hash == minted_batch.metadata_hash

    def test_verify_metadata_tampered(self, verifier, minted_batch):
        metadata = {**minted_batch.identity_fields(), "quantity": 1000}
        result = verifier.verify_metadata("B1", metadata)
        assert result.valid is False
        assert result.stored_hash == minted_batch.metadata_hash

    def test_verify_metadata_unhashable(self, verifier, minted_batch):
        metadata = {**minted_batch.identity_fields(), "expiryDate": "whenever"}
        result = verifier.verify_metadata("B1", metadata)
        assert result.valid is False
        assert result.computed_hash is None


class TestMetrics:

    def test_verifications_counted_by_verdict(self, store, verifier, minted_batch, metrics):
        verifier.verify(VerificationRequest(token_id=minted_batch.token_id))
        record = store.find_by_batch_id("B1")
        record.is_counterfeit = True
        store.update(record)
        verifier.verify(VerificationRequest(token_id=minted_batch.token_id))

        assert metrics.verifications_total == 2
        assert metrics.verifications_authentic == 1
        assert metrics.verifications_rejected == 1
