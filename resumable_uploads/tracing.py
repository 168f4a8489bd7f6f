from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from resumable_uploads.config import settings

_tracing_initialized = False
tracer = trace.get_tracer("resumable_uploads")


def setup_tracing(app) -> None:
    global _tracing_initialized
    if _tracing_initialized or not settings.tracing_enabled:
        return

    resource = Resource.create({SERVICE_NAME: settings.tracing_service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    _tracing_initialized = True


def current_trace_id() -> str | None:
    span_context = trace.get_current_span().get_span_context()
    if not span_context or not span_context.is_valid:
        return None
    return format(span_context.trace_id, "032x")


@contextmanager
def chunk_span(upload_id: str, start: int, end: int, total: int) -> Iterator[trace.Span]:
    with tracer.start_as_current_span(
        "chunk.apply",
        attributes={
            "upload.id": upload_id,
            "upload.range.start": start,
            "upload.range.end": end,
            "upload.total": total,
        },
    ) as span:
        yield span
