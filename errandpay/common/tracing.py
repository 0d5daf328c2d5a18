"""OpenTelemetry setup plus the span helper wrapped around provider calls."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from errandpay.common.config import settings


tracer = trace.get_tracer("errandpay")


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider exporting spans over OTLP HTTP."""

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    FastAPIInstrumentor.instrument_app(app)


@contextmanager
def provider_span(operation: str, payment_id: str | None = None):
    """Span around one payment-provider call.

    Without a registered provider this is the no-op tracer, so tests and
    scripts pay nothing for it.
    """

    with tracer.start_as_current_span(f"provider.{operation}") as span:
        span.set_attribute("provider.operation", operation)
        if payment_id:
            span.set_attribute("payment.id", payment_id)
        yield span
