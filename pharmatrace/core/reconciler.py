"""
Reconciliation Service

Keeps the batch store eventually consistent with the ledger.

- Startup sweep: every bound row is compared with the ledger and its
  ledger-owned fields are overwritten where they differ
- Event polling: BatchMinted, OwnershipTransferred, ChildBatchLinked and
  BatchVerified are fetched block range by block range and applied in
  ledger order

Every handler catches and logs its own failure. One bad event or row never
stops the loop or the sweep.

CONFIGURATION:
- PHARMATRACE_RECONCILER_ENABLED: Enable the background loop (default: true)
- PHARMATRACE_POLL_INTERVAL_SECONDS: Seconds between polls (default: 5)
- PHARMATRACE_SWEEP_BATCH_SIZE: Concurrent ledger lookups per sweep chunk (default: 10)
- PHARMATRACE_COALESCE_WINDOW_SECONDS: Duplicate transfer window (default: 60)
- PHARMATRACE_MAX_BLOCK_RANGE: Blocks per event query (default: 2000)
- PHARMATRACE_START_BLOCK: First block to poll (default: latest at start)

USAGE:
    reconciler = ReconciliationService(store, ledger)
    reconciler.start()

    # Or drive it by hand
    report = reconciler.sweep()
    reconciler.poll_once()

    reconciler.stop()
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from ..db.store import BatchStore, DuplicateKeyError, update_with_retry
from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import (
    BatchMinted,
    BatchRecord,
    BatchStatus,
    BatchVerified,
    ChildBatchLinked,
    LedgerEvent,
    LedgerEventType,
    OnChainBatch,
    OwnershipTransferred,
    Role,
    TransferRecord,
    ZERO_ADDRESS,
    status_for_role,
)
from .ledger import LedgerReader, TokenNotFound, call_with_retry
from .ownership import (
    LedgerSnapshot,
    TokenBindingError,
    apply_ledger_snapshot,
    bind_token,
)

logger = get_logger(__name__)

# Placeholders for rows discovered only through a mint event
UNKNOWN_DRUG_NAME = "Unknown"
PLACEHOLDER_SHELF_LIFE_DAYS = 365


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


@dataclass
class ReconcilerConfig:
    """Configuration for the reconciliation service."""
    enabled: bool = True
    poll_interval_seconds: float = 5.0
    sweep_batch_size: int = 10
    coalesce_window_seconds: float = 60.0
    max_block_range: int = 2000
    start_block: Optional[int] = None
    ledger_retries: int = 2
    ledger_backoff_seconds: float = 1.0
    update_attempts: int = 3

    @classmethod
    def from_env(cls) -> "ReconcilerConfig":
        """Load configuration from environment variables."""
        start_block = os.environ.get("PHARMATRACE_START_BLOCK")
        return cls(
            enabled=_env_flag("PHARMATRACE_RECONCILER_ENABLED", "true"),
            poll_interval_seconds=float(os.environ.get("PHARMATRACE_POLL_INTERVAL_SECONDS", "5")),
            sweep_batch_size=int(os.environ.get("PHARMATRACE_SWEEP_BATCH_SIZE", "10")),
            coalesce_window_seconds=float(os.environ.get("PHARMATRACE_COALESCE_WINDOW_SECONDS", "60")),
            max_block_range=int(os.environ.get("PHARMATRACE_MAX_BLOCK_RANGE", "2000")),
            start_block=int(start_block) if start_block else None,
            ledger_retries=int(os.environ.get("PHARMATRACE_LEDGER_RETRIES", "2")),
            ledger_backoff_seconds=float(os.environ.get("PHARMATRACE_LEDGER_BACKOFF_SECONDS", "1.0")),
        )


@dataclass
class SweepReport:
    """Outcome counts of one full reconciliation sweep."""
    total: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    interrupted: bool = False

    def add(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ReconciliationService:
    """
    Long-lived service that merges ledger truth into the batch store.

    start() and stop() are idempotent. The background thread runs the
    startup sweep once, then polls for events until stopped.
    """

    def __init__(
        self,
        store: BatchStore,
        ledger: LedgerReader,
        config: Optional[ReconcilerConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._config = config or ReconcilerConfig.from_env()
        self._metrics = metrics or get_metrics()

        self._thread: Optional[threading.Thread] = None
        # One event per worker thread, replaced by start()
        self._stop_event = threading.Event()

        # Next block to fetch events from
        self._cursor: Optional[int] = None
        self._last_block: Optional[int] = None

        self._stats_lock = threading.Lock()
        self._events_handled = 0
        self._events_failed = 0
        self._last_sweep: Optional[SweepReport] = None
        self._last_error: Optional[str] = None

        self._handlers: dict[LedgerEventType, Callable[[Any], None]] = {
            LedgerEventType.BATCH_MINTED: self.handle_batch_minted,
            LedgerEventType.OWNERSHIP_TRANSFERRED: self.handle_ownership_transferred,
            LedgerEventType.BATCH_VERIFIED: self.handle_batch_verified,
            LedgerEventType.CHILD_BATCH_LINKED: self.handle_child_batch_linked,
        }

    @property
    def config(self) -> ReconcilerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    # ---------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------

    def start(self) -> None:
        """Start the background loop."""
        if not self._config.enabled:
            logger.info("Reconciler disabled (set PHARMATRACE_RECONCILER_ENABLED=1 to enable)")
            return

        if not self._ledger.is_configured:
            logger.warning("Reconciler disabled: no ledger contract address configured")
            return

        if self.is_running:
            if self._stop_event.is_set():
                logger.warning("Reconciler still shutting down, not restarting")
            else:
                logger.warning("Reconciler already running")
            return

        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run_loop,
            args=(self._stop_event,),
            name="pharmatrace-reconciler",
            daemon=True,
        )
        self._thread.start()

        logger.info(
            "Reconciler started",
            contract=self._ledger.address,
            poll_interval_seconds=self._config.poll_interval_seconds,
            sweep_batch_size=self._config.sweep_batch_size,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """
        Stop the background loop.

        If the worker does not exit within timeout it keeps its stop signal
        and start() refuses to run a second one until it has.
        """
        if self._thread is None:
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Reconciler thread did not exit in time", timeout_seconds=timeout)
            return

        self._thread = None
        logger.info("Reconciler stopped")

    def _run_loop(self, stop_event: threading.Event) -> None:
        """Background thread main loop."""
        try:
            # Capture the cursor before sweeping so events raised during the
            # sweep are still polled afterwards.
            if self._cursor is None:
                self._cursor = self._initial_cursor()
            self.sweep(stop_event)
        except Exception as e:
            self._last_error = str(e)
            logger.exception(f"Startup reconciliation failed: {e}")

        while not stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                self._last_error = str(e)
                logger.exception(f"Error polling ledger events: {e}")

            stop_event.wait(timeout=self._config.poll_interval_seconds)

    # ---------------------------------------------------------
    # Event polling
    # ---------------------------------------------------------

    def _ledger_call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return call_with_retry(
            fn,
            *args,
            retries=self._config.ledger_retries,
            backoff_seconds=self._config.ledger_backoff_seconds,
        )

    def _initial_cursor(self) -> int:
        if self._config.start_block is not None:
            return self._config.start_block
        return self._ledger_call(self._ledger.block_number) + 1

    def poll_once(self) -> int:
        """
        Fetch and apply events for the next block range.

        The cursor only advances after the range was fetched, so a failed
        fetch is retried from the same block next time.

        Returns:
            Number of events dispatched

        Raises:
            LedgerUnavailable: If the ledger stays unreachable
        """
        if self._cursor is None:
            self._cursor = self._initial_cursor()

        latest = self._ledger_call(self._ledger.block_number)
        if latest < self._cursor:
            return 0

        from_block = self._cursor
        to_block = min(latest, from_block + self._config.max_block_range - 1)
        events = self._ledger_call(self._ledger.get_events, from_block, to_block)

        for event in events:
            self.dispatch(event)

        self._cursor = to_block + 1
        self._last_block = to_block
        if events:
            logger.debug(
                f"Processed {len(events)} ledger events",
                from_block=from_block,
                to_block=to_block,
            )
        return len(events)

    def dispatch(self, event: LedgerEvent) -> bool:
        """
        Apply one ledger event. Never raises.

        Returns:
            True if the handler completed, False if it failed
        """
        event_type = event.event_type.value
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.warning(f"No handler for ledger event {event_type}")
            return False

        try:
            handler(event)
        except Exception as e:
            with self._stats_lock:
                self._events_failed += 1
                self._last_error = str(e)
            self._metrics.record_event(event_type, success=False)
            logger.exception(
                f"Failed to handle {event_type}: {e}",
                event_type=event_type,
                block_number=event.block_number,
                tx_hash=event.tx_hash,
            )
            return False

        with self._stats_lock:
            self._events_handled += 1
        self._metrics.record_event(event_type, success=True)
        return True

    # ---------------------------------------------------------
    # Ledger snapshots
    # ---------------------------------------------------------

    def _fetch_snapshot(
        self,
        token_id: int,
        details: Optional[OnChainBatch] = None,
    ) -> LedgerSnapshot:
        """Read the authoritative ledger-owned fields for a token."""
        if details is None:
            details = self._ledger_call(self._ledger.get_batch_details, token_id)
        owner = self._ledger_call(self._ledger.owner_of, token_id)
        role = details.current_role
        if role is None:
            role = self._ledger_call(self._ledger.get_role, owner)
        return LedgerSnapshot(
            current_owner=owner,
            current_role=role,
            metadata_hash=details.metadata_hash,
            is_counterfeit=self._ledger_call(self._ledger.is_counterfeit, token_id),
        )

    def _update(
        self,
        load: Callable[[], Optional[BatchRecord]],
        mutate: Callable[[BatchRecord], bool],
    ) -> tuple[Optional[BatchRecord], bool]:
        return update_with_retry(
            self._store, load, mutate, attempts=self._config.update_attempts
        )

    # ---------------------------------------------------------
    # Handlers
    # ---------------------------------------------------------

    def handle_batch_minted(self, event: BatchMinted) -> None:
        """
        Bind a minted token to its store row, creating the row if needed.

        The ledger's metadata hash replaces whatever the store computed at
        creation time, since only the ledger's copy is anchored.
        """
        token_id, batch_id = event.token_id, event.batch_id
        details = self._ledger_call(self._ledger.get_batch_details, token_id)
        snapshot = self._fetch_snapshot(token_id, details)

        def bind(record: BatchRecord) -> bool:
            changed = bind_token(record, token_id, self._ledger.address)
            return bool(apply_ledger_snapshot(record, snapshot)) or changed

        existing = self._store.find_by_batch_id(batch_id)
        if existing is not None:
            if existing.token_id is not None and existing.token_id != token_id:
                logger.warning(
                    "Double mint observed, keeping existing binding",
                    batch_id=batch_id,
                    bound_token_id=existing.token_id,
                    token_id=token_id,
                )
                return
            try:
                self._update(lambda: self._store.find_by_batch_id(batch_id), bind)
            except TokenBindingError as e:
                logger.warning(f"Double mint observed: {e}", batch_id=batch_id, token_id=token_id)
                return
            logger.info("Bound minted token to batch", batch_id=batch_id, token_id=token_id)
            return

        if self._store.find_by_token_id(token_id) is not None:
            # Replayed mint for a row that is keyed differently
            self._update(lambda: self._store.find_by_token_id(token_id), bind)
            logger.info("Refreshed batch from replayed mint", batch_id=batch_id, token_id=token_id)
            return

        record = self._synthesize(event, details, snapshot)
        try:
            self._store.insert(record)
        except DuplicateKeyError as e:
            logger.info(
                f"Concurrent insert for minted batch ({e.field}), applying as update",
                batch_id=batch_id,
                token_id=token_id,
            )
            try:
                self._update(
                    lambda: self._store.find_by_batch_id(batch_id)
                    or self._store.find_by_token_id(token_id),
                    bind,
                )
            except TokenBindingError as binding_error:
                logger.warning(
                    f"Double mint observed: {binding_error}",
                    batch_id=batch_id,
                    token_id=token_id,
                )
            return

        logger.info(
            "Created batch from mint event, needs enrichment",
            batch_id=batch_id,
            token_id=token_id,
        )

    def _synthesize(
        self,
        event: BatchMinted,
        details: OnChainBatch,
        snapshot: LedgerSnapshot,
    ) -> BatchRecord:
        """Minimal row for a token minted without a prior batch request."""
        now = datetime.now(timezone.utc)
        minted_at = details.minted_at if details.timestamp else now
        record = BatchRecord(
            batch_id=event.batch_id,
            token_id=event.token_id,
            ledger_address=self._ledger.address or ZERO_ADDRESS,
            current_owner=snapshot.current_owner or event.owner,
            current_role=snapshot.current_role or Role.MANUFACTURER,
            manufacturer=details.manufacturer or event.owner,
            drug_name=UNKNOWN_DRUG_NAME,
            manufacturing_date=minted_at.date(),
            expiry_date=(now + timedelta(days=PLACEHOLDER_SHELF_LIFE_DAYS)).date(),
            quantity=1,
            metadata_hash=details.metadata_hash,
            metadata_uri=details.metadata_uri or None,
            status=BatchStatus.CREATED,
            needs_enrichment=True,
        )
        apply_ledger_snapshot(record, snapshot)
        return record

    def handle_ownership_transferred(self, event: OwnershipTransferred) -> None:
        """
        Refresh custody for a token and append the hand-off to its history.

        Unknown tokens are logged and skipped: the event may arrive before
        the row exists and a later sweep will catch up.
        """
        token_id = event.token_id
        if self._store.find_by_token_id(token_id) is None:
            logger.warning("Transfer for token with no batch row, skipping", token_id=token_id)
            return

        snapshot = self._fetch_snapshot(token_id)
        from_role = self._ledger_from_role(event)
        now = datetime.now(timezone.utc)
        window = self._config.coalesce_window_seconds

        def apply(record: BatchRecord) -> bool:
            changed = False
            if not record.has_recent_transfer(event.from_address, event.to_address, now, window):
                record.history.append(TransferRecord(
                    from_address=event.from_address,
                    to_address=event.to_address,
                    from_role=from_role or record.current_role,
                    to_role=event.new_role,
                    timestamp=now,
                    tx_hash=event.tx_hash,
                ))
                changed = True

            status = status_for_role(event.new_role)
            if record.status != BatchStatus.FLAGGED and record.status != status:
                record.status = status
                changed = True

            return bool(apply_ledger_snapshot(record, snapshot)) or changed

        record, changed = self._update(lambda: self._store.find_by_token_id(token_id), apply)
        if record is None:
            return

        logger.info(
            "Applied ownership transfer" if changed else "Ownership transfer already recorded",
            token_id=token_id,
            batch_id=record.batch_id,
            to_address=event.to_address,
            new_role=event.new_role.value if event.new_role else None,
        )

    def _ledger_from_role(self, event: OwnershipTransferred) -> Optional[Role]:
        """Role the sender held for this hand-off, from the ledger's transfer log."""
        history = self._ledger_call(self._ledger.get_transfer_history, event.token_id)
        for entry in reversed(history):
            if entry.from_address == event.from_address.lower() and entry.to_address == event.to_address.lower():
                return entry.from_role
        return None

    def handle_batch_verified(self, event: BatchVerified) -> None:
        logger.info(
            "On-chain verification recorded",
            token_id=event.token_id,
            verifier=event.verifier,
            valid=event.valid,
        )

    def handle_child_batch_linked(self, event: ChildBatchLinked) -> None:
        """Record a split: the child gets its parent, the parent lists the child."""
        parent_id, child_id = event.parent_id, event.child_id

        def add_child(record: BatchRecord) -> bool:
            if child_id in record.child_batch_ids:
                return False
            record.child_batch_ids.append(child_id)
            return True

        def set_parent(record: BatchRecord) -> bool:
            if record.parent_batch_id == parent_id:
                return False
            record.parent_batch_id = parent_id
            return True

        parent, _ = self._update(lambda: self._store.find_by_token_id(parent_id), add_child)
        if parent is None:
            logger.warning("Parent batch has no row, skipping", token_id=parent_id)

        child, _ = self._update(lambda: self._store.find_by_token_id(child_id), set_parent)
        if child is None:
            logger.warning("Child batch has no row, skipping", token_id=child_id)

    # ---------------------------------------------------------
    # Sweep
    # ---------------------------------------------------------

    def sweep(self, stop_event: Optional[threading.Event] = None) -> SweepReport:
        """
        Reconcile every bound row against the ledger.

        Rows are processed in chunks, each chunk's ledger lookups running
        concurrently. A row whose token is not on the ledger is skipped;
        a row that fails is counted and the sweep moves on.

        When stop_event is set the sweep ends after the current chunk and
        the report is marked interrupted.
        """
        records = self._store.list_bound()
        report = SweepReport(total=len(records))
        width = max(1, self._config.sweep_batch_size)

        with ThreadPoolExecutor(max_workers=width, thread_name_prefix="pharmatrace-sweep") as pool:
            for start in range(0, len(records), width):
                if stop_event is not None and stop_event.is_set():
                    report.interrupted = True
                    break
                chunk = records[start:start + width]
                for outcome in pool.map(self._reconcile_row, chunk):
                    report.add(outcome)

        with self._stats_lock:
            self._last_sweep = report
        self._metrics.record_sweep(report.updated, report.skipped, report.failed)

        outcome = "interrupted" if report.interrupted else "complete"
        logger.info(
            f"Sweep {outcome}: {report.updated} updated, {report.unchanged} unchanged, "
            f"{report.skipped} skipped, {report.failed} failed",
            **report.to_dict(),
        )
        return report

    def _reconcile_row(self, record: BatchRecord) -> str:
        token_id = record.token_id
        try:
            snapshot = self._fetch_snapshot(token_id)
        except TokenNotFound:
            logger.info("Token not on ledger yet, skipping", token_id=token_id, batch_id=record.batch_id)
            return "skipped"
        except Exception as e:
            logger.exception(f"Ledger lookup failed: {e}", token_id=token_id, batch_id=record.batch_id)
            return "failed"

        try:
            stored, changed = self._update(
                lambda: self._store.find_by_token_id(token_id),
                lambda r: bool(apply_ledger_snapshot(r, snapshot)),
            )
        except Exception as e:
            logger.exception(f"Store update failed: {e}", token_id=token_id, batch_id=record.batch_id)
            return "failed"

        if stored is None:
            return "skipped"
        if changed:
            logger.info("Sweep refreshed ledger-owned fields", token_id=token_id, batch_id=record.batch_id)
            return "updated"
        return "unchanged"

    # ---------------------------------------------------------
    # Status
    # ---------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Current reconciler state."""
        with self._stats_lock:
            return {
                "enabled": self._config.enabled and self._ledger.is_configured,
                "running": self.is_running,
                "contract": self._ledger.address,
                "next_block": self._cursor,
                "last_processed_block": self._last_block,
                "events_handled": self._events_handled,
                "events_failed": self._events_failed,
                "last_sweep": self._last_sweep.to_dict() if self._last_sweep else None,
                "last_error": self._last_error,
            }
