"""OpenTelemetry wiring for the API and the pipeline stages it drives."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.semconv.resource import ResourceAttributes

from pointsweep_api.core.settings import Settings

SERVICE_NAME = "pointsweep-api"
PIPELINE_TRACER = "pointsweep_api.pipeline"

_provider: TracerProvider | None = None


def _exporter(settings: Settings) -> SpanExporter | None:
    if settings.otel_exporter_otlp_endpoint:
        return OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            headers=settings.otel_exporter_otlp_headers or None,
        )
    if settings.tracing_console_export:
        return ConsoleSpanExporter()
    return None


def configure_tracing(app: FastAPI, settings: Settings, *, service_version: str) -> None:
    """Install one tracer provider per process and instrument ``app`` with it."""

    global _provider

    if _provider is None:
        provider = TracerProvider(
            resource=Resource.create(
                {
                    ResourceAttributes.SERVICE_NAME: SERVICE_NAME,
                    ResourceAttributes.SERVICE_VERSION: service_version,
                    ResourceAttributes.DEPLOYMENT_ENVIRONMENT: settings.environment,
                }
            )
        )
        exporter = _exporter(settings)
        if exporter is not None:
            provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
        LoggingInstrumentor().instrument(set_logging_format=False)
        _provider = provider

    FastAPIInstrumentor.instrument_app(app, tracer_provider=_provider)


@contextmanager
def pipeline_span(stage: str, **attributes: Any) -> Iterator[trace.Span]:
    """Span named ``pointsweep.<stage>``; exceptions are recorded on it and re-raised.

    Attribute values that are ``None`` are left off the span.
    """

    tracer = trace.get_tracer(PIPELINE_TRACER, tracer_provider=_provider)
    with tracer.start_as_current_span(f"pointsweep.{stage}") as span:
        for key, value in attributes.items():
            if value is None:
                continue
            span.set_attribute(f"pointsweep.{key}", value if isinstance(value, (str, bool, int, float)) else str(value))
        yield span


__all__ = ["configure_tracing", "pipeline_span"]
