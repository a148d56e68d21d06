from __future__ import annotations

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from rowguard import __version__
from rowguard.core.config import Settings, get_settings

try:
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
except Exception:  # pragma: no cover - installed with the otlp extra
    OTLPSpanExporter = None  # type: ignore[assignment]


_provider: TracerProvider | None = None
_exporters_installed = False


def tracer_provider(service_name: str = "rowguard") -> TracerProvider:
    """The process-wide provider, registered globally on first use."""

    global _provider

    if _provider is None:
        _provider = TracerProvider(
            resource=Resource.create({"service.name": service_name, "service.version": __version__})
        )
        trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(settings: Settings | None = None) -> TracerProvider | None:
    global _exporters_installed

    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = tracer_provider(settings.app_name)
    if _exporters_installed:
        return provider

    if settings.otel_exporter_endpoint and OTLPSpanExporter is not None:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = "rowguard") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name, __version__)
