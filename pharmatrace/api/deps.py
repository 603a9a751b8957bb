"""
Dependency helpers for API routes.

Services live on app.state, wired by the application lifespan.
"""

from contextlib import contextmanager

from fastapi import HTTPException, Request

from pharmatrace.core import (
    AuthenticityVerifier,
    BatchNotFound,
    BatchService,
    EnrichmentRejected,
    InvalidBatchRequest,
    InvalidVerificationRequest,
    LedgerReader,
    ReconciliationService,
    TokenBindingError,
)
from pharmatrace.db import ConcurrencyError, DuplicateKeyError


def get_batch_service(request: Request) -> BatchService:
    return request.app.state.batch_service


def get_verifier(request: Request) -> AuthenticityVerifier:
    return request.app.state.verifier


def get_reconciler(request: Request) -> ReconciliationService:
    return request.app.state.reconciler


def get_ledger(request: Request) -> LedgerReader:
    return request.app.state.ledger


@contextmanager
def service_errors():
    """
    Translate service exceptions to HTTP errors.

    - BatchNotFound: 404
    - InvalidBatchRequest, InvalidVerificationRequest: 400
    - TokenBindingError, DuplicateKeyError, ConcurrencyError: 409
    - EnrichmentRejected: 422
    """
    try:
        yield
    except BatchNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvalidBatchRequest, InvalidVerificationRequest) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (TokenBindingError, DuplicateKeyError, ConcurrencyError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except EnrichmentRejected as e:
        raise HTTPException(status_code=422, detail=str(e))
