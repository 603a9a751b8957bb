"""
PharmaTrace - Pharmaceutical Supply-Chain Provenance

ASGI entry point: `uvicorn pharmatrace.main:app`.

The ledger is the source of truth for custody and the counterfeit flag.
This service keeps a queryable projection of it and verifies batches
against both.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pharmatrace.api import router
from pharmatrace.core import (
    AuthenticityVerifier,
    BatchService,
    LedgerReader,
    ReconcilerConfig,
    ReconciliationService,
)
from pharmatrace.db import BatchStore
from pharmatrace.observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from pharmatrace.services import create_ledger, create_store

# Configured before any module logs
setup_logging()
logger = get_logger(__name__)


DESCRIPTION = """
## Pharmaceutical Supply-Chain Provenance

Off-chain projection of batch tokens minted on the ledger, with
authenticity verification for scanned QR codes.

### Sources of Truth

- **Ledger**: custody owner and role, counterfeit flag, metadata hash
- **Store**: product details the ledger never holds (drug name, dates,
  quantity, QA certificate hash, QR payload)

### Verification

Every verification returns the verdict together with each check:
store hash integrity, counterfeit flag, QR signature, contract address
and the ledger cross-check. A non-authentic batch is a normal 200 answer.

### Storage Backends

- **InMemoryBatchStore**: Development/testing (default)
- **PostgresBatchStore**: Production

Set `DATABASE_URL` or `DATABASE_HOST` to use PostgreSQL, and
`PHARMATRACE_CONTRACT_ADDRESS` to enable ledger reconciliation.
"""


def create_app(
    store: Optional[BatchStore] = None,
    ledger: Optional[LedgerReader] = None,
    reconciler_config: Optional[ReconcilerConfig] = None,
) -> FastAPI:
    """
    Build the application.

    Store and ledger default to the environment-selected implementations;
    tests pass in-memory doubles.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire services onto app.state; run the reconciler while serving."""
        batch_store = store if store is not None else create_store()
        ledger_reader = ledger if ledger is not None else create_ledger()
        config = reconciler_config or ReconcilerConfig.from_env()

        app.state.store = batch_store
        app.state.ledger = ledger_reader
        app.state.batch_service = BatchService(
            batch_store,
            coalesce_window_seconds=config.coalesce_window_seconds,
            update_attempts=config.update_attempts,
        )
        app.state.verifier = AuthenticityVerifier(
            batch_store,
            ledger_reader,
            retries=config.ledger_retries,
            backoff_seconds=config.ledger_backoff_seconds,
        )

        reconciler = ReconciliationService(batch_store, ledger_reader, config)
        app.state.reconciler = reconciler
        reconciler.start()  # Starts background thread if enabled and configured

        logger.info(
            "PharmaTrace ready",
            batch_count=batch_store.count(),
            store_type=type(batch_store).__name__,
            ledger_configured=ledger_reader.is_configured,
            reconciler_running=reconciler.is_running,
        )

        yield

        reconciler.stop()
        logger.info("PharmaTrace stopped")

    app = FastAPI(
        title="PharmaTrace",
        description=DESCRIPTION,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # X-Request-ID and access logging
    app.add_middleware(RequestContextMiddleware)

    # CORS for the dashboard dev servers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",  # Vite dev server
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health():
        """Liveness only; touches neither the store nor the ledger."""
        return {"status": "healthy", "service": "pharmatrace"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request):
        """
        Store row count, ledger block height and reconciler state.

        503 when the store fails or a configured ledger is unreachable.
        """
        health_status = check_health(
            store=request.app.state.store,
            ledger=request.app.state.ledger,
            reconciler=request.app.state.reconciler,
        )
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters for ledger events, sweeps, verifications and requests."""
        return get_metrics().get_summary()

    return app


app = create_app()
