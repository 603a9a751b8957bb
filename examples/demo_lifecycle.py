"""
Demonstration: Complete Batch Lifecycle

A batch of amoxicillin goes from the manufacturer to a pharmacy, is
scanned, and is later flagged as counterfeit on the ledger.

Everything runs in memory: the store, and a stand-in for the contract.

Run with: python -m examples.demo_lifecycle
"""

from datetime import date

from pharmatrace.core import (
    AuthenticityVerifier,
    BatchService,
    InMemoryLedgerReader,
    QRSigner,
    ReconcilerConfig,
    ReconciliationService,
)
from pharmatrace.db import InMemoryBatchStore
from pharmatrace.schemas import BatchCreate, Role, VerificationRequest


CONTRACT = "0x00000000000000000000000000000000000c0de5"
DISTRIBUTOR = "0x2222222222222222222222222222222222222222"
PHARMACY = "0x4444444444444444444444444444444444444444"


def banner(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)


def show_verdict(result) -> None:
    print(f"   Authentic: {result.authentic}")
    for error in result.errors:
        print(f"   [FAIL] {error}")
    for warning in result.warnings:
        print(f"   [WARN] {warning}")
    print()


def main():
    banner("PharmaTrace - Batch Lifecycle Demonstration")
    print()

    store = InMemoryBatchStore()
    ledger = InMemoryLedgerReader(address=CONTRACT)
    service = BatchService(store)
    verifier = AuthenticityVerifier(store, ledger, backoff_seconds=0)
    reconciler = ReconciliationService(
        store, ledger, ReconcilerConfig(start_block=0, ledger_backoff_seconds=0)
    )

    private_key, manufacturer = QRSigner.generate_account()
    print(f"Manufacturer wallet: {manufacturer}")
    print()

    # ================================================================
    # STEP 1: BATCH REQUEST
    # ================================================================
    banner("STEP 1: BATCH REQUEST")

    request = BatchCreate(
        batch_id="AMX-2024-0105",
        drug_name="Amoxicillin 500mg",
        manufacturing_date=date(2024, 1, 5),
        expiry_date=date(2026, 1, 5),
        quantity=1200,
        manufacturer=manufacturer,
        manufacturer_name="Acme Pharma",
    )
    record, created = service.create_batch(request)

    print(f"[OK] Batch stored (created={created})")
    print(f"   Batch ID: {record.batch_id}")
    print(f"   Metadata Hash: {record.metadata_hash[:16]}...")
    print()

    # ================================================================
    # STEP 2: MINT AND BIND
    # ================================================================
    banner("STEP 2: MINT AND BIND")

    token_id = ledger.mint(record.batch_id, owner=manufacturer, metadata_hash=record.metadata_hash)
    reconciler.poll_once()
    record = store.find_by_batch_id(record.batch_id)

    print(f"[OK] Minted as token {token_id}, bound by the reconciler")
    print(f"   Ledger Address: {record.ledger_address}")
    print()

    qr_data = {
        "type": "pharma-batch",
        "batchId": record.batch_id,
        "tokenId": token_id,
        "contract": CONTRACT,
        "verifyUrl": f"https://verify.example/batch/{token_id}",
    }
    qr_signature = QRSigner.sign(qr_data, private_key)
    service.store_qr(token_id, qr_data, qr_signature)
    print(f"[OK] QR signed: {qr_signature[:20]}...")
    print()

    # ================================================================
    # STEP 3: CUSTODY
    # ================================================================
    banner("STEP 3: CUSTODY")

    ledger.transfer(token_id, DISTRIBUTOR, Role.DISTRIBUTOR)
    ledger.transfer(token_id, PHARMACY, Role.PHARMACY)
    reconciler.poll_once()
    record = store.find_by_token_id(token_id)

    for entry in record.history:
        print(f"   {entry.from_address[:10]}... -> {entry.to_address[:10]}... ({entry.to_role.value})")
    print(f"[OK] Status: {record.status.value}")
    print()

    # ================================================================
    # STEP 4: SCAN AT THE PHARMACY
    # ================================================================
    banner("STEP 4: SCAN AT THE PHARMACY")

    scan = VerificationRequest(qr_payload={"data": qr_data, "signature": qr_signature})
    show_verdict(verifier.verify(scan))

    # ================================================================
    # STEP 5: COUNTERFEIT FLAG
    # ================================================================
    banner("STEP 5: COUNTERFEIT FLAG")

    ledger.flag_counterfeit(token_id)
    report = reconciler.sweep()
    print(f"[OK] Sweep: {report.to_dict()}")
    print(f"   Status: {store.find_by_token_id(token_id).status.value}")
    print()

    show_verdict(verifier.verify(scan))

    banner("DEMONSTRATION COMPLETE")


if __name__ == "__main__":
    main()
