"""Tests for questline's structured logging setup."""

from __future__ import annotations

import json
import logging

import pytest
import structlog
from opentelemetry import trace
from opentelemetry.trace import NonRecordingSpan, SpanContext

from questline.core.logging import (
    _NOISE_LOGGERS,
    _service_context,
    add_otel_context,
    add_service_context,
    configure_logging,
    get_service_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    token = _service_context.set(None)
    yield
    _service_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


class TestProcessors:
    def test_service_context(self):
        configure_logging(service_name="daemon")
        assert get_service_context() == "daemon"
        assert add_service_context(None, "info", {})["service"] == "daemon"

    def test_zeroed_ids_without_span(self):
        result = add_otel_context(None, "info", {"event": "x"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_ids_from_current_span(self):
        span = NonRecordingSpan(SpanContext(trace_id=0xABC, span_id=0x12, is_remote=False))
        with trace.use_span(span):
            result = add_otel_context(None, "info", {"event": "x"})

        assert result["trace_id"] == format(0xABC, "032x")
        assert result["span_id"] == format(0x12, "016x")


class TestConfigureLogging:
    def test_text_format(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_unknown_format_falls_back_to_text(self):
        configure_logging(fmt="yaml")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_level_and_reconfiguration(self):
        configure_logging(level="debug")
        configure_logging(level="warning")
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1

    def test_noise_loggers_are_quieted(self):
        configure_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_log_root_writes_json_files(self, tmp_path):
        configure_logging(fmt="text", log_root=tmp_path, service_name="daemon")

        logging.getLogger("questline.test").info("reconciled %d events", 3)
        logging.getLogger("httpx").warning("slow request")
        for handler in logging.getLogger().handlers:
            handler.flush()
        for handler in logging.getLogger("httpx").handlers:
            handler.flush()

        app_lines = (tmp_path / "questline" / "daemon.log").read_text().splitlines()
        records = [json.loads(line) for line in app_lines]
        record = next(r for r in records if r["event"] == "reconciled 3 events")
        assert record["service"] == "daemon"
        assert record["level"] == "info"

        transport_lines = (tmp_path / "transport" / "daemon.log").read_text().splitlines()
        assert json.loads(transport_lines[-1])["event"] == "slow request"
