"""
Shared fixtures: in-memory store and ledger, services wired to them,
and a real secp256k1 manufacturer account for signing QR payloads.
"""

from datetime import date

import pytest

from pharmatrace.core import (
    AuthenticityVerifier,
    BatchService,
    InMemoryLedgerReader,
    IntegrityHasher,
    QRSigner,
    ReconcilerConfig,
    ReconciliationService,
)
from pharmatrace.db import InMemoryBatchStore
from pharmatrace.observability import MetricsCollector
from pharmatrace.schemas import BatchCreate


CONTRACT = "0x00000000000000000000000000000000000c0de5"
DISTRIBUTOR = "0x2222222222222222222222222222222222222222"
PHARMACY = "0x4444444444444444444444444444444444444444"


@pytest.fixture
def store():
    return InMemoryBatchStore()


@pytest.fixture
def ledger():
    return InMemoryLedgerReader(address=CONTRACT)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def reconciler_config():
    return ReconcilerConfig(
        start_block=0,
        poll_interval_seconds=0.05,
        ledger_backoff_seconds=0,
    )


@pytest.fixture
def reconciler(store, ledger, reconciler_config, metrics):
    service = ReconciliationService(store, ledger, reconciler_config, metrics=metrics)
    yield service
    service.stop()


@pytest.fixture
def batch_service(store):
    return BatchService(store)


@pytest.fixture
def verifier(store, ledger, metrics):
    return AuthenticityVerifier(store, ledger, retries=1, backoff_seconds=0, metrics=metrics)


@pytest.fixture
def manufacturer_account():
    """(private_key, address) of a freshly generated wallet."""
    return QRSigner.generate_account()


@pytest.fixture
def manufacturer(manufacturer_account):
    return manufacturer_account[1]


@pytest.fixture
def batch_request(manufacturer):
    """Build a BatchCreate for the test manufacturer."""
    def _make(batch_id="B1", **overrides):
        fields = {
            "batch_id": batch_id,
            "drug_name": "Amoxicillin 500mg",
            "manufacturing_date": date(2024, 1, 5),
            "expiry_date": date(2026, 1, 5),
            "quantity": 100,
            "manufacturer": manufacturer,
            "manufacturer_name": "Acme Pharma",
        }
        fields.update(overrides)
        return BatchCreate(**fields)
    return _make


@pytest.fixture
def minted_batch(batch_service, ledger, batch_request, manufacturer):
    """
    A batch created in the store, minted on the ledger with the same hash,
    and bound to its token.
    """
    request = batch_request("B1")
    record, _ = batch_service.create_batch(request)
    token_id = ledger.mint(
        "B1",
        owner=manufacturer,
        metadata_hash=IntegrityHasher.compute_hash(request),
    )
    record, _ = batch_service.create_batch(
        batch_request("B1", token_id=token_id, ledger_address=CONTRACT)
    )
    return record
