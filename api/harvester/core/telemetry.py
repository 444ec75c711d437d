from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.util.re import parse_env_headers

from harvester.core.config import Settings

PLAIN_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
CORRELATED_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
OTEL_ENDPOINT_ENV_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")

# Supabase token checks are the API's only outgoing calls.
_supabase_instrumentor = HTTPXClientInstrumentor()


class SpanContextFilter(logging.Filter):
    """Stamp records with the ids of the span that is current when they are emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "-"
        record.span_id = format(context.span_id, "016x") if context.is_valid else "-"
        return True


def configure_api_logging(settings: Settings) -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler()
    if settings.otel_log_correlation:
        handler.addFilter(SpanContextFilter())
        handler.setFormatter(logging.Formatter(CORRELATED_LOG_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(PLAIN_LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def api_resource(settings: Settings) -> Resource:
    return Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "harvester.store": "postgres" if settings.database_url else "memory",
            "harvester.job_lease_seconds": settings.job_lease_seconds,
        }
    )


def build_span_exporter(settings: Settings) -> OTLPSpanExporter | None:
    if settings.otel_exporter_otlp_endpoint:
        headers = parse_env_headers(settings.otel_exporter_otlp_headers or "")
        return OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, headers=dict(headers) or None)
    if any(os.getenv(name) for name in OTEL_ENDPOINT_ENV_VARS):
        # The exporter reads endpoint and headers from the standard OTEL_* variables itself.
        return OTLPSpanExporter()
    return None


def setup_api_telemetry(settings: Settings) -> TracerProvider | None:
    """Install the API tracer provider, or return ``None`` when tracing is off.

    Lease, batch analytics and refresh spans join the maintenance worker's
    trace when its request carries one, hence the parent-based sampler.
    """
    configure_api_logging(settings)
    if not settings.otel_enabled:
        return None

    provider = TracerProvider(
        resource=api_resource(settings),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = build_span_exporter(settings)
    if exporter is None:
        logging.getLogger(__name__).info("no OTLP endpoint configured; spans stay in-process service=%s", settings.otel_service_name)
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    _supabase_instrumentor.instrument()
    return provider


def shutdown_api_telemetry(provider: TracerProvider | None) -> None:
    if provider is None:
        return
    _supabase_instrumentor.uninstrument()
    provider.shutdown()
