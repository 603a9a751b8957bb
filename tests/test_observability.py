"""
Tests for logging setup, counters and health probes.
"""

import json
import logging

import pytest

from pharmatrace.core import DisabledLedgerReader, InMemoryLedgerReader
from pharmatrace.db import InMemoryBatchStore
from pharmatrace.observability import (
    LATENCY_WINDOW,
    ConsoleLogFormatter,
    JsonLogFormatter,
    LogSettings,
    MetricsCollector,
    check_health,
    get_logger,
    request_id_var,
)


def make_record(logger_name="pharmatrace.test", **fields):
    """Build a LogRecord the way ContextLogger would."""
    captured = []

    class Capture(logging.Handler):
        def emit(self, record):
            captured.append(record)

    base = logging.getLogger(logger_name)
    handler = Capture()
    base.addHandler(handler)
    base.setLevel(logging.DEBUG)
    try:
        get_logger(logger_name).info("Batch bound to token", **fields)
    finally:
        base.removeHandler(handler)
    return captured[0]


class TestLogSettings:

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in ("PHARMATRACE_LOG_LEVEL", "PHARMATRACE_LOG_FORMAT", "PHARMATRACE_PRODUCTION"):
            monkeypatch.delenv(name, raising=False)

    def test_defaults(self):
        settings = LogSettings.from_env()
        assert settings.level == logging.INFO
        assert settings.json_output is False

    def test_production_implies_json(self, monkeypatch):
        monkeypatch.setenv("PHARMATRACE_PRODUCTION", "true")
        assert LogSettings.from_env().json_output is True

    def test_explicit_format_wins(self, monkeypatch):
        monkeypatch.setenv("PHARMATRACE_PRODUCTION", "1")
        monkeypatch.setenv("PHARMATRACE_LOG_FORMAT", "text")
        assert LogSettings.from_env().json_output is False

    def test_level(self, monkeypatch):
        monkeypatch.setenv("PHARMATRACE_LOG_LEVEL", "debug")
        assert LogSettings.from_env().level == logging.DEBUG

    def test_unknown_level_falls_back(self, monkeypatch):
        monkeypatch.setenv("PHARMATRACE_LOG_LEVEL", "chatty")
        assert LogSettings.from_env().level == logging.INFO


class TestFormatters:

    def test_json_carries_fields(self):
        record = make_record(token_id=7, batch_id="B1")
        entry = json.loads(JsonLogFormatter().format(record))
        assert entry["message"] == "Batch bound to token"
        assert entry["token_id"] == 7
        assert entry["batch_id"] == "B1"
        assert entry["level"] == "INFO"
        assert "request_id" not in entry

    def test_json_includes_request_id(self):
        record = make_record()
        token = request_id_var.set("req-42")
        try:
            entry = json.loads(JsonLogFormatter().format(record))
        finally:
            request_id_var.reset(token)
        assert entry["request_id"] == "req-42"

    def test_json_stringifies_unserializable(self):
        record = make_record(owner={1, 2})
        entry = json.loads(JsonLogFormatter().format(record))
        assert isinstance(entry["owner"], str)

    def test_console_appends_fields(self):
        line = ConsoleLogFormatter().format(make_record(token_id=7))
        assert "Batch bound to token" in line
        assert line.endswith("token_id=7")

    def test_none_fields_dropped(self):
        entry = json.loads(JsonLogFormatter().format(make_record(client_ip=None)))
        assert "client_ip" not in entry


class TestMetricsCollector:

    def test_summary_counts(self):
        metrics = MetricsCollector()
        metrics.record_event("BatchMinted", success=True)
        metrics.record_event("BatchMinted", success=False)
        metrics.record_sweep(updated=2, skipped=1, failed=0)
        metrics.record_verification(authentic=False)

        summary = metrics.get_summary()
        assert summary["events_processed"] == 1
        assert summary["events_failed"] == 1
        assert summary["events_by_type"] == {"BatchMinted": 2}
        assert summary["sweep_rows_updated"] == 2
        assert summary["verifications_rejected"] == 1
        assert summary["request_latency_p50_ms"] is None

    def test_latency_window(self):
        metrics = MetricsCollector()
        for i in range(LATENCY_WINDOW + 10):
            metrics.record_request(float(i), success=True)
        assert len(metrics.request_latencies_ms) == LATENCY_WINDOW
        assert metrics.requests_total == LATENCY_WINDOW + 10
        assert metrics.get_summary()["request_latency_p95_ms"] >= 900

    def test_failed_requests(self):
        metrics = MetricsCollector()
        metrics.record_request(5.0, success=False)
        assert metrics.requests_failed == 1

    def test_reset(self):
        metrics = MetricsCollector()
        metrics.record_event("BatchMinted", success=True)
        metrics.record_request(5.0, success=True)
        metrics.reset()
        assert metrics.events_processed == 0
        assert metrics.events_by_type == {}
        assert len(metrics.request_latencies_ms) == 0
        metrics.record_request(1.0, success=True)
        assert metrics.requests_total == 1


class TestCheckHealth:

    def test_liveness_only(self):
        status = check_health()
        assert status.healthy
        assert status.checks == {"liveness": {"status": "healthy"}}

    def test_store_and_ledger(self):
        store = InMemoryBatchStore()
        ledger = InMemoryLedgerReader()
        status = check_health(store=store, ledger=ledger)
        assert status.healthy
        assert status.checks["store"]["batch_count"] == 0
        assert status.checks["ledger"]["block_number"] == 0

    def test_disabled_ledger_tolerated(self):
        status = check_health(store=InMemoryBatchStore(), ledger=DisabledLedgerReader())
        assert status.healthy
        assert status.checks["ledger"]["status"] == "disabled"

    def test_unreachable_ledger_unhealthy(self):
        ledger = InMemoryLedgerReader()
        ledger.fail_next_calls = 1
        status = check_health(ledger=ledger)
        assert not status.healthy
        assert status.checks["ledger"]["status"] == "unhealthy"
