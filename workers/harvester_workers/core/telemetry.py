from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_INSTANCE_ID, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.util.re import parse_env_headers

from harvester_workers.core.config import Settings

# Maintenance calls to the API carry the tick span's context.
_api_call_instrumentor = HTTPXClientInstrumentor()


class TickContextFilter(logging.Filter):
    def __init__(self, module_id: str) -> None:
        super().__init__()
        self.module_id = module_id

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        record.module_id = self.module_id
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "-"
        return True


def configure_worker_logging(settings: Settings) -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler()
    handler.addFilter(TickContextFilter(settings.module_id))
    if settings.log_correlation:
        log_format = "%(asctime)s %(levelname)s %(name)s module=%(module_id)s trace_id=%(trace_id)s %(message)s"
    else:
        log_format = "%(asctime)s %(levelname)s %(name)s module=%(module_id)s %(message)s"
    handler.setFormatter(logging.Formatter(log_format))
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def setup_worker_telemetry(settings: Settings) -> TracerProvider | None:
    if not settings.otel_enabled:
        return None

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                SERVICE_INSTANCE_ID: settings.module_id,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
                "harvester.api_base_url": settings.api_base_url,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    if settings.otel_exporter_otlp_endpoint:
        headers = dict(parse_env_headers(settings.otel_exporter_otlp_headers or ""))
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, headers=headers or None)
    elif os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"):
        exporter = OTLPSpanExporter()
    else:
        exporter = None
        logging.getLogger(__name__).info("maintenance spans are not exported module=%s", settings.module_id)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _api_call_instrumentor.instrument()
    return provider


def shutdown_worker_telemetry(provider: TracerProvider | None) -> None:
    if provider is None:
        return
    _api_call_instrumentor.uninstrument()
    provider.shutdown()
