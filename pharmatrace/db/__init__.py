"""
Database Layer for PharmaTrace

Provides:
- PostgreSQL schema for the batches table
- BatchStore abstraction (InMemory for dev, Postgres for prod)
- Connection configuration
"""

from .store import (
    BatchStore,
    InMemoryBatchStore,
    PostgresBatchStore,
    BatchStoreError,
    DuplicateKeyError,
    ConcurrencyError,
    SCHEMA_SQL,
    update_with_retry,
)
from .config import DatabaseConfig, StoreDriver, database_configured, get_store_driver

__all__ = [
    "BatchStore",
    "InMemoryBatchStore",
    "PostgresBatchStore",
    "BatchStoreError",
    "DuplicateKeyError",
    "ConcurrencyError",
    "SCHEMA_SQL",
    "update_with_retry",
    "DatabaseConfig",
    "StoreDriver",
    "database_configured",
    "get_store_driver",
]
