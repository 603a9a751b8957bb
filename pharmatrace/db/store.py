"""
Batch Store Abstraction

This module defines the BatchStore interface and provides two implementations:
- InMemoryBatchStore: For development and testing
- PostgresBatchStore: For production with full durability

The store is a cache of ledger state enriched with off-chain product data.
It is not authoritative for ledger-owned fields.

CONCURRENCY CONTRACT:
Every record carries an integer version. update() succeeds only when the
stored version equals record.version, then increments it:

    record = store.find_by_batch_id("B1")
    record.status = BatchStatus.IN_TRANSIT
    store.update(record)   # raises ConcurrencyError if someone wrote first

Callers resolve conflicts by re-fetching and retrying. No lock is ever held
across a ledger call.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Generator, Optional

from psycopg2.extras import Json

from ..schemas import BatchRecord, BatchStatus, Role


# ============================================================
# EXCEPTIONS
# ============================================================

class BatchStoreError(Exception):
    """Base exception for batch store errors."""
    pass


class DuplicateKeyError(BatchStoreError):
    """Raised when an insert collides on batch_id or token_id."""

    def __init__(self, field: str, value: Any):
        super().__init__(f"Duplicate {field}: {value}")
        self.field = field
        self.value = value


class ConcurrencyError(BatchStoreError):
    """Raised when an update loses an optimistic version race."""
    pass


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class BatchStore(ABC):
    """
    Abstract base class for batch storage.

    Implementations must ensure:
    1. batch_id is unique
    2. token_id is unique when present
    3. update() is rejected when the stored version moved on
    4. Returned records are copies; mutating them never changes the store
    """

    @abstractmethod
    def find_by_batch_id(self, batch_id: str) -> Optional[BatchRecord]:
        pass

    @abstractmethod
    def find_by_token_id(self, token_id: int) -> Optional[BatchRecord]:
        pass

    @abstractmethod
    def list_batches(
        self,
        owner: Optional[str] = None,
        manufacturer: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        role: Optional[Role] = None,
    ) -> list[BatchRecord]:
        """
        List batches matching every given filter, newest first.

        Address filters are case-insensitive.
        """
        pass

    @abstractmethod
    def list_bound(self) -> list[BatchRecord]:
        """All records with a token bound, in token order."""
        pass

    @abstractmethod
    def insert(self, record: BatchRecord) -> BatchRecord:
        """
        Insert a new record.

        Raises:
            DuplicateKeyError: If batch_id or token_id already exists
        """
        pass

    @abstractmethod
    def update(self, record: BatchRecord) -> BatchRecord:
        """
        Replace a record if its version is current.

        Returns:
            The stored record with its new version

        Raises:
            ConcurrencyError: If the stored version differs
            DuplicateKeyError: If a newly bound token_id is taken
        """
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    def find_by_owner(self, owner: str) -> list[BatchRecord]:
        return self.list_batches(owner=owner)


def update_with_retry(
    store: BatchStore,
    load: Callable[[], Optional[BatchRecord]],
    mutate: Callable[[BatchRecord], bool],
    attempts: int = 3,
) -> tuple[Optional[BatchRecord], bool]:
    """
    Read-modify-write with re-fetch on version conflicts.

    Args:
        store: Store to write to
        load: Fetches the latest copy of the record (None if missing)
        mutate: Applies changes in place, returns False if nothing changed
        attempts: Total tries before the ConcurrencyError propagates

    Returns:
        Tuple of (record, changed). record is None if load found nothing.
    """
    for attempt in range(1, attempts + 1):
        record = load()
        if record is None:
            return None, False
        if not mutate(record):
            return record, False
        record.touch()
        try:
            return store.update(record), True
        except ConcurrencyError:
            if attempt == attempts:
                raise
    raise ConcurrencyError("update_with_retry needs at least one attempt")


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryBatchStore(BatchStore):
    """
    In-memory implementation of BatchStore.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments without persistence requirements
    """

    def __init__(self):
        self._records: dict[str, BatchRecord] = {}
        self._by_token: dict[int, str] = {}
        self._lock = Lock()

    def find_by_batch_id(self, batch_id: str) -> Optional[BatchRecord]:
        with self._lock:
            record = self._records.get(batch_id)
            return record.model_copy(deep=True) if record else None

    def find_by_token_id(self, token_id: int) -> Optional[BatchRecord]:
        with self._lock:
            batch_id = self._by_token.get(int(token_id))
            if batch_id is None:
                return None
            return self._records[batch_id].model_copy(deep=True)

    def list_batches(
        self,
        owner: Optional[str] = None,
        manufacturer: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        role: Optional[Role] = None,
    ) -> list[BatchRecord]:
        owner = owner.lower() if owner else None
        manufacturer = manufacturer.lower() if manufacturer else None

        with self._lock:
            matches = [
                r.model_copy(deep=True)
                for r in self._records.values()
                if (owner is None or r.current_owner == owner)
                and (manufacturer is None or r.manufacturer == manufacturer)
                and (status is None or r.status == status)
                and (role is None or r.current_role == role)
            ]
        return sorted(matches, key=lambda r: r.created_at, reverse=True)

    def list_bound(self) -> list[BatchRecord]:
        with self._lock:
            return [
                self._records[self._by_token[token_id]].model_copy(deep=True)
                for token_id in sorted(self._by_token)
            ]

    def insert(self, record: BatchRecord) -> BatchRecord:
        with self._lock:
            if record.batch_id in self._records:
                raise DuplicateKeyError("batch_id", record.batch_id)
            if record.token_id is not None and record.token_id in self._by_token:
                raise DuplicateKeyError("token_id", record.token_id)

            stored = record.model_copy(deep=True)
            stored.version = 1
            self._records[stored.batch_id] = stored
            if stored.token_id is not None:
                self._by_token[stored.token_id] = stored.batch_id
            return stored.model_copy(deep=True)

    def update(self, record: BatchRecord) -> BatchRecord:
        with self._lock:
            current = self._records.get(record.batch_id)
            if current is None:
                raise BatchStoreError(f"Batch not found: {record.batch_id}")
            if current.version != record.version:
                raise ConcurrencyError(
                    f"Batch {record.batch_id} changed: expected version "
                    f"{record.version}, found {current.version}"
                )
            if record.token_id is not None:
                holder = self._by_token.get(record.token_id)
                if holder is not None and holder != record.batch_id:
                    raise DuplicateKeyError("token_id", record.token_id)

            stored = record.model_copy(deep=True)
            stored.version = current.version + 1
            stored.updated_at = datetime.now(timezone.utc)

            if current.token_id is not None and current.token_id != stored.token_id:
                self._by_token.pop(current.token_id, None)
            if stored.token_id is not None:
                self._by_token[stored.token_id] = stored.batch_id
            self._records[stored.batch_id] = stored
            return stored.model_copy(deep=True)

    def count(self) -> int:
        return len(self._records)

    def clear(self) -> None:
        """Remove all records (for testing only)."""
        with self._lock:
            self._records.clear()
            self._by_token.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS batches (
    batch_id        TEXT PRIMARY KEY,
    token_id        BIGINT UNIQUE,
    current_owner   TEXT NOT NULL,
    current_role    TEXT NOT NULL,
    manufacturer    TEXT NOT NULL,
    metadata_hash   TEXT NOT NULL DEFAULT '',
    status          TEXT NOT NULL,
    is_counterfeit  BOOLEAN NOT NULL DEFAULT FALSE,
    version         INTEGER NOT NULL DEFAULT 1,
    created_at      TIMESTAMPTZ NOT NULL,
    updated_at      TIMESTAMPTZ NOT NULL,
    document        JSONB NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_batches_current_owner ON batches (current_owner);
CREATE INDEX IF NOT EXISTS idx_batches_manufacturer ON batches (manufacturer);
CREATE INDEX IF NOT EXISTS idx_batches_metadata_hash ON batches (metadata_hash);
CREATE INDEX IF NOT EXISTS idx_batches_is_counterfeit ON batches (is_counterfeit);
"""


class PostgresBatchStore(BatchStore):
    """
    PostgreSQL implementation of BatchStore.

    The full record lives in a JSONB document column. Fields used for
    lookups and uniqueness are mirrored into real columns.

    THREAD SAFETY:
    Every call opens its own connection from connection_factory, so one
    store instance can be shared across threads.

    Usage:
        store = PostgresBatchStore(lambda: psycopg2.connect(dsn))
        store.init_schema()
    """

    STATEMENT_TIMEOUT_MS = 10000

    PGCODE_UNIQUE_VIOLATION = '23505'

    _COLUMNS = "document, version"

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL batch store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
        """
        self._connection_factory = connection_factory
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def _transaction(self) -> Generator[Any, None, None]:
        """Cursor inside a transaction that commits on success, rolls back on error."""
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        try:
            # SET LOCAL keeps the timeout scoped to this transaction
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
            yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            try:
                cursor.close()
            finally:
                conn.close()

    def init_schema(self) -> None:
        """Create the batches table and indexes if missing."""
        with self._transaction() as cursor:
            cursor.execute(SCHEMA_SQL)

    def _duplicate_field(self, e: Exception) -> Optional[str]:
        """Map a unique violation to the colliding field, None for other errors."""
        if getattr(e, 'pgcode', None) != self.PGCODE_UNIQUE_VIOLATION:
            return None
        constraint = getattr(getattr(e, 'diag', None), 'constraint_name', None) or ""
        return "token_id" if "token_id" in constraint else "batch_id"

    def _row_to_record(self, row: tuple) -> BatchRecord:
        document = row[0]
        if isinstance(document, str):
            document = json.loads(document)
        record = BatchRecord.model_validate(document)
        record.version = row[1]
        return record

    def _params(self, record: BatchRecord) -> dict[str, Any]:
        return {
            "batch_id": record.batch_id,
            "token_id": record.token_id,
            "current_owner": record.current_owner,
            "current_role": record.current_role.value,
            "manufacturer": record.manufacturer,
            "metadata_hash": record.metadata_hash,
            "status": record.status.value,
            "is_counterfeit": record.is_counterfeit,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            "document": Json(record.model_dump(mode="json")),
        }

    def _fetch_one(self, where: str, value: Any) -> Optional[BatchRecord]:
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {self._COLUMNS} FROM batches WHERE {where} = %s",
                (value,),
            )
            row = cursor.fetchone()
        return self._row_to_record(row) if row else None

    def find_by_batch_id(self, batch_id: str) -> Optional[BatchRecord]:
        return self._fetch_one("batch_id", batch_id)

    def find_by_token_id(self, token_id: int) -> Optional[BatchRecord]:
        return self._fetch_one("token_id", int(token_id))

    def list_batches(
        self,
        owner: Optional[str] = None,
        manufacturer: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        role: Optional[Role] = None,
    ) -> list[BatchRecord]:
        clauses = []
        params: list[Any] = []
        if owner:
            clauses.append("current_owner = %s")
            params.append(owner.lower())
        if manufacturer:
            clauses.append("manufacturer = %s")
            params.append(manufacturer.lower())
        if status is not None:
            clauses.append("status = %s")
            params.append(BatchStatus(status).value)
        if role is not None:
            clauses.append("current_role = %s")
            params.append(Role(role).value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {self._COLUMNS} FROM batches {where} ORDER BY created_at DESC",
                tuple(params),
            )
            rows = cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    def list_bound(self) -> list[BatchRecord]:
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {self._COLUMNS} FROM batches "
                "WHERE token_id IS NOT NULL ORDER BY token_id"
            )
            rows = cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    def insert(self, record: BatchRecord) -> BatchRecord:
        stored = record.model_copy(deep=True)
        stored.version = 1
        try:
            with self._transaction() as cursor:
                cursor.execute("""
                    INSERT INTO batches (
                        batch_id, token_id, current_owner, current_role,
                        manufacturer, metadata_hash, status, is_counterfeit,
                        version, created_at, updated_at, document
                    ) VALUES (
                        %(batch_id)s, %(token_id)s, %(current_owner)s, %(current_role)s,
                        %(manufacturer)s, %(metadata_hash)s, %(status)s, %(is_counterfeit)s,
                        1, %(created_at)s, %(updated_at)s, %(document)s
                    )
                """, self._params(stored))
        except Exception as e:
            field = self._duplicate_field(e)
            if field is not None:
                value = stored.token_id if field == "token_id" else stored.batch_id
                raise DuplicateKeyError(field, value) from e
            raise
        return stored

    def update(self, record: BatchRecord) -> BatchRecord:
        stored = record.model_copy(deep=True)
        stored.updated_at = datetime.now(timezone.utc)
        params = self._params(stored)
        params["expected_version"] = record.version

        try:
            with self._transaction() as cursor:
                cursor.execute("""
                    UPDATE batches SET
                        token_id = %(token_id)s,
                        current_owner = %(current_owner)s,
                        current_role = %(current_role)s,
                        manufacturer = %(manufacturer)s,
                        metadata_hash = %(metadata_hash)s,
                        status = %(status)s,
                        is_counterfeit = %(is_counterfeit)s,
                        version = version + 1,
                        updated_at = %(updated_at)s,
                        document = %(document)s
                    WHERE batch_id = %(batch_id)s AND version = %(expected_version)s
                    RETURNING version
                """, params)
                row = cursor.fetchone()
        except Exception as e:
            if self._duplicate_field(e) is not None:
                raise DuplicateKeyError("token_id", stored.token_id) from e
            raise

        if row is None:
            raise ConcurrencyError(
                f"Batch {record.batch_id} changed or missing: "
                f"expected version {record.version}"
            )
        stored.version = row[0]
        return stored

    def count(self) -> int:
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) FROM batches")
            return cursor.fetchone()[0]
