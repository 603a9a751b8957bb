"""
Observability: structured logs, request context, counters and health probes.

Logging is configured from the environment:
- PHARMATRACE_LOG_LEVEL   DEBUG, INFO, WARNING, ERROR (default: INFO)
- PHARMATRACE_LOG_FORMAT  json or text (default: json when PHARMATRACE_PRODUCTION is set)
- PHARMATRACE_PRODUCTION  1/true/yes

Keyword arguments given to a logger from get_logger() become fields of the
record, so a reconciler line reads:

    logger.info("Batch bound to token", token_id=7, batch_id="AMX-2024-0105")
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

LATENCY_WINDOW = 1000

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "urllib3", "web3")


# ============================================================
# SETTINGS
# ============================================================

def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class LogSettings:
    level: int = logging.INFO
    json_output: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        level_name = os.environ.get("PHARMATRACE_LOG_LEVEL", "INFO").strip().upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            level = logging.INFO

        fmt = os.environ.get("PHARMATRACE_LOG_FORMAT", "").strip().lower()
        if fmt in ("json", "text"):
            json_output = fmt == "json"
        else:
            json_output = _truthy(os.environ.get("PHARMATRACE_PRODUCTION", ""))

        return cls(level=level, json_output=json_output)


# ============================================================
# FORMATTERS
# ============================================================

# Attributes every LogRecord carries; anything else came in as a field.
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_") and value is not None
    }


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, request_id, fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = request_id_var.get()
        if request_id:
            entry["request_id"] = request_id

        entry.update(_record_fields(record))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ConsoleLogFormatter(logging.Formatter):
    """Single-line output for development, with fields appended as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        request_id = request_id_var.get()
        tag = f" [{request_id[:8]}]" if request_id else ""

        line = f"{stamp} {record.levelname:<7}{tag} {record.name}: {record.getMessage()}"
        fields = _record_fields(record)
        if fields:
            line += "  " + " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """LoggerAdapter that moves arbitrary keyword arguments into `extra`."""

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg, kwargs):
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in self._PASSTHROUGH}
        kwargs["extra"] = {**kwargs.get("extra", {}), **fields}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LogSettings] = None) -> None:
    """Install a single stdout handler on the root logger. Safe to call twice."""
    settings = settings or LogSettings.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLogFormatter() if settings.json_output else ConsoleLogFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT
# ============================================================

_request_logger = get_logger("pharmatrace.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags every log line of a request with its X-Request-ID (generated when
    the caller sends none), echoes the id back, and records latency.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        token = request_id_var.set(request_id)
        label = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception:
                elapsed = _elapsed_ms(started)
                get_metrics().record_request(elapsed, success=False)
                _request_logger.exception(f"{label} -> 500", status_code=500, duration_ms=elapsed)
                raise

            elapsed = _elapsed_ms(started)
            status = response.status_code
            get_metrics().record_request(elapsed, success=status < 500)
            _request_logger.log(
                logging.WARNING if status >= 400 else logging.INFO,
                f"{label} -> {status}",
                status_code=status,
                duration_ms=elapsed,
                client_ip=request.client.host if request.client else None,
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(token)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


# ============================================================
# METRICS
# ============================================================

def _percentile(samples, fraction: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]


@dataclass
class MetricsCollector:
    """
    Process-wide counters, shared by the reconciler thread, sweep workers
    and request handlers. All writes hold the lock.
    """

    events_processed: int = 0
    events_failed: int = 0
    events_by_type: Dict[str, int] = field(default_factory=dict)

    sweeps_run: int = 0
    sweep_rows_updated: int = 0
    sweep_rows_skipped: int = 0
    sweep_rows_failed: int = 0

    verifications_total: int = 0
    verifications_authentic: int = 0
    verifications_rejected: int = 0

    requests_total: int = 0
    requests_failed: int = 0
    request_latencies_ms: Deque[float] = field(
        default_factory=lambda: deque(maxlen=LATENCY_WINDOW)
    )

    started_at: float = field(default_factory=time.monotonic)
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_event(self, event_type: str, success: bool) -> None:
        with self._lock:
            if success:
                self.events_processed += 1
            else:
                self.events_failed += 1
            self.events_by_type[event_type] = self.events_by_type.get(event_type, 0) + 1

    def record_sweep(self, updated: int, skipped: int, failed: int) -> None:
        with self._lock:
            self.sweeps_run += 1
            self.sweep_rows_updated += updated
            self.sweep_rows_skipped += skipped
            self.sweep_rows_failed += failed

    def record_verification(self, authentic: bool) -> None:
        with self._lock:
            self.verifications_total += 1
            if authentic:
                self.verifications_authentic += 1
            else:
                self.verifications_rejected += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            self.requests_failed += 0 if success else 1
            self.request_latencies_ms.append(latency_ms)

    def reset(self) -> None:
        """Back to a freshly constructed collector. Tests only."""
        fresh = MetricsCollector()
        with self._lock:
            for name, value in vars(fresh).items():
                if name != "_lock":
                    setattr(self, name, value)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            latencies = list(self.request_latencies_ms)
            return {
                "uptime_seconds": round(time.monotonic() - self.started_at, 1),
                "events_processed": self.events_processed,
                "events_failed": self.events_failed,
                "events_by_type": dict(self.events_by_type),
                "sweeps_run": self.sweeps_run,
                "sweep_rows_updated": self.sweep_rows_updated,
                "sweep_rows_skipped": self.sweep_rows_skipped,
                "sweep_rows_failed": self.sweep_rows_failed,
                "verifications_total": self.verifications_total,
                "verifications_authentic": self.verifications_authentic,
                "verifications_rejected": self.verifications_rejected,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "request_latency_p50_ms": _percentile(latencies, 0.50),
                "request_latency_p95_ms": _percentile(latencies, 0.95),
            }


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return _metrics


# ============================================================
# HEALTH
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _probe_store(store) -> Dict[str, Any]:
    try:
        return {"status": "healthy", "batch_count": store.count()}
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}


def _probe_ledger(ledger) -> Dict[str, Any]:
    if not ledger.is_configured:
        return {"status": "disabled", "reason": "no contract address"}
    try:
        return {
            "status": "healthy",
            "address": ledger.address,
            "block_number": ledger.block_number(),
        }
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}


def _probe_reconciler(reconciler) -> Dict[str, Any]:
    state = reconciler.status()
    idle_ok = state["running"] or not state["enabled"]
    return {"status": "healthy" if idle_ok else "stopped", **state}


def check_health(store=None, ledger=None, reconciler=None) -> HealthStatus:
    """
    Probe each component that was passed in.

    Only an unhealthy store or an unreachable configured ledger makes the
    result unhealthy. A disabled ledger or a stopped reconciler is reported
    but tolerated, since batch queries still work without them.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if store is not None:
        checks["store"] = _probe_store(store)
    if ledger is not None:
        checks["ledger"] = _probe_ledger(ledger)
    if reconciler is not None:
        checks["reconciler"] = _probe_reconciler(reconciler)

    healthy = all(
        checks[name]["status"] != "unhealthy"
        for name in ("store", "ledger")
        if name in checks
    )
    return HealthStatus(healthy=healthy, checks=checks, duration_ms=_elapsed_ms(started))
