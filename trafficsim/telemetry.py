from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

SERVICE_NAME = "restaurant-traffic-simulator"
TRACER_VERSION = "1.0.0"


def setup_tracing(
    service_name: str = SERVICE_NAME,
    endpoint: Optional[str] = None,
    console: bool = False,
) -> TracerProvider:
    resource = Resource.create({
        "service.name": service_name,
        "app.environment": "demo",
    })

    tracer_provider = TracerProvider(resource=resource)

    # ===== EXPORT =====
    if endpoint:
        tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
        )
    if console:
        tracer_provider.add_span_processor(
            BatchSpanProcessor(ConsoleSpanExporter())
        )

    trace.set_tracer_provider(tracer_provider)
    return tracer_provider


def get_tracer(name: str, tracer_provider=None) -> trace.Tracer:
    return trace.get_tracer(name, TRACER_VERSION, tracer_provider=tracer_provider)


def tracing_enabled(tracer_provider=None) -> bool:
    """True when spans will actually be recorded (an SDK provider is in place)."""
    provider = tracer_provider or trace.get_tracer_provider()
    return isinstance(provider, TracerProvider)
