from __future__ import annotations

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from crm_api.core.config import get_settings

SERVICE_NAME = "crm-api"

_provider: TracerProvider | None = None
_exporters_configured = False


def _get_or_create_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": get_settings().app_version,
                "deployment.environment": get_settings().app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str = SERVICE_NAME) -> TracerProvider:
    """Install the global tracer provider with the exporters enabled in settings."""
    global _exporters_configured

    provider = _get_or_create_provider(service_name)
    if _exporters_configured:
        return provider

    settings = get_settings()
    if settings.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_configured = True
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def current_trace_ids() -> tuple[str, str] | None:
    """Hex trace and span ids of the active span, if one is recording."""
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None
    return format(span_context.trace_id, "032x"), format(span_context.span_id, "016x")
