"""
Service Factories

Builds the store and ledger reader from the environment.

Store selection:
- BATCHSTORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

Ledger selection:
- PHARMATRACE_CONTRACT_ADDRESS set: web3 reader against PHARMATRACE_RPC_URL
- Unset: ledger unconfigured; the reconciler stays off and verification
  skips the ledger cross-check
"""

import psycopg2

from .core.ledger import DisabledLedgerReader, LedgerConfig, LedgerReader, Web3LedgerReader
from .db.config import DatabaseConfig, StoreDriver, database_configured, get_store_driver
from .db.store import BatchStore, InMemoryBatchStore, PostgresBatchStore
from .observability import get_logger

logger = get_logger(__name__)


def create_store() -> BatchStore:
    """
    Create the BatchStore selected by configuration.

    Returns:
        InMemoryBatchStore for development/testing
        PostgresBatchStore when a database is configured
    """
    driver = get_store_driver()

    if driver == StoreDriver.MEMORY:
        logger.info("Using in-memory batch store (no persistence)")
        return InMemoryBatchStore()

    if not database_configured():
        logger.warning(f"Driver is {driver.value} but no database configured, using in-memory store")
        return InMemoryBatchStore()

    return create_postgres_store(DatabaseConfig.from_env())


def create_postgres_store(config: DatabaseConfig, init_schema: bool = True) -> PostgresBatchStore:
    """Create a PostgresBatchStore, checking the connection first."""

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    test_conn = connection_factory()
    test_conn.close()

    store = PostgresBatchStore(connection_factory, statement_timeout_ms=config.statement_timeout_ms)
    if init_schema:
        store.init_schema()
    logger.info(
        "PostgreSQL batch store ready",
        database=config.to_url(include_password=False),
    )
    return store


def create_ledger(config: LedgerConfig = None) -> LedgerReader:
    """Create the ledger reader selected by configuration."""
    config = config or LedgerConfig.from_env()
    if not config.is_configured:
        logger.warning("PHARMATRACE_CONTRACT_ADDRESS not set, ledger checks disabled")
        return DisabledLedgerReader()

    reader = Web3LedgerReader(config)
    logger.info("Ledger reader ready", rpc_url=config.rpc_url, contract=reader.address)
    return reader
