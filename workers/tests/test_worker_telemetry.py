from __future__ import annotations

import logging

from opentelemetry.sdk.trace import TracerProvider

from harvester_workers.core.config import Settings
from harvester_workers.core.telemetry import TickContextFilter, setup_worker_telemetry, shutdown_worker_telemetry


def _record() -> logging.LogRecord:
    return logging.LogRecord("harvester_workers.main", logging.INFO, __file__, 1, "datasets refreshed", None, None)


def test_tick_filter_tags_records_with_module_and_trace() -> None:
    tracer = TracerProvider().get_tracer(__name__)
    tick_filter = TickContextFilter("maintenance-7")

    outside = _record()
    assert tick_filter.filter(outside)
    with tracer.start_as_current_span("maintenance.tick") as span:
        inside = _record()
        tick_filter.filter(inside)
        trace_id = format(span.get_span_context().trace_id, "032x")

    assert outside.module_id == "maintenance-7"
    assert outside.trace_id == "-"
    assert inside.module_id == "maintenance-7"
    assert inside.trace_id == trace_id


def test_tracing_can_be_switched_off() -> None:
    provider = setup_worker_telemetry(Settings(otel_enabled=False))

    assert provider is None
    shutdown_worker_telemetry(provider)
