from __future__ import annotations

import logging

from opentelemetry.sdk.trace import TracerProvider

from gitsync.core.config import Settings
from gitsync.core.telemetry import _parse_headers, configure_logging, setup_telemetry


def _record(factory) -> logging.LogRecord:
    return factory("gitsync.test", logging.INFO, __file__, 1, "message", (), None)


def test_log_records_carry_trace_ids() -> None:
    configure_logging("INFO")
    factory = logging.getLogRecordFactory()

    outside = _record(factory)
    tracer = TracerProvider().get_tracer(__name__)
    with tracer.start_as_current_span("work") as span:
        inside = _record(factory)

    assert outside.trace_id == "0" * 32
    assert outside.span_id == "0" * 16
    assert inside.trace_id == format(span.get_span_context().trace_id, "032x")
    assert inside.span_id == format(span.get_span_context().span_id, "016x")


def test_configure_logging_installs_factory_once() -> None:
    configure_logging("INFO")
    factory = logging.getLogRecordFactory()
    configure_logging("INFO")

    assert logging.getLogRecordFactory() is factory


def test_parse_headers_skips_malformed_entries() -> None:
    assert _parse_headers("authorization=Bearer abc, x-team = sync ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "sync",
    }
    assert _parse_headers(None) == {}


def test_disabled_telemetry_has_no_provider() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False))

    assert runtime.enabled is False
    assert runtime.provider is None
