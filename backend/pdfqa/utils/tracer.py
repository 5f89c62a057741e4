"""OpenTelemetry setup and span helpers for retrieval and answer streaming.

Spans are opened by the retrieval service (``retrieval.retrieve``) and by the
answer stream (``llm.stream``). Until ``initialize_tracing`` installs a provider
the global no-op tracer is used, so tests and disabled deployments pay nothing.
"""
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.openai import OpenAIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.trace import Span, Status, StatusCode

from pdfqa.utils.logger import logger

SERVICE_NAME = "pdfqa"


def get_tracer(name: str = SERVICE_NAME) -> trace.Tracer:
    return trace.get_tracer(name)


def _exporter_for(otlp_endpoint: Optional[str]) -> SpanExporter:
    if otlp_endpoint:
        logger.info(f"Exporting traces over OTLP/HTTP to {otlp_endpoint}")
        return OTLPSpanExporter(endpoint=otlp_endpoint)
    logger.info("Exporting traces to the console")
    return ConsoleSpanExporter()


def initialize_tracing(
    enabled: bool,
    otlp_endpoint: Optional[str] = None,
    service_version: str = "1.0.0",
) -> Optional[TracerProvider]:
    """
    Install a global tracer provider and instrument the OpenAI SDK.

    Args:
        enabled: TRACING_ENABLED setting; nothing is installed when false
        otlp_endpoint: OTLP/HTTP traces URL, console export when empty
        service_version: Reported as ``service.version``

    Returns:
        The installed provider, or None when disabled or setup failed
    """
    if not enabled:
        logger.info("Tracing is disabled")
        return None

    try:
        provider = TracerProvider(
            resource=Resource.create({"service.name": SERVICE_NAME, "service.version": service_version})
        )
        provider.add_span_processor(BatchSpanProcessor(_exporter_for(otlp_endpoint)))
        trace.set_tracer_provider(provider)
        OpenAIInstrumentor().instrument()
    except Exception as e:
        logger.error(f"Failed to initialize tracing: {str(e)}", exc_info=True)
        return None

    return provider


def shutdown_tracing(provider: Optional[TracerProvider]) -> None:
    """Flush pending spans and stop the provider."""
    if provider is None:
        return
    try:
        provider.shutdown()
    except Exception as e:
        logger.warning(f"Error during tracing shutdown: {str(e)}")


def annotate_retrieval(span: Span, tier: str, chunk_count: int, top_similarity: float) -> None:
    """Attach the retrieval result summary to a span."""
    span.set_attribute("retrieval.tier", tier)
    span.set_attribute("retrieval.count", chunk_count)
    span.set_attribute("retrieval.top_similarity", top_similarity)


def mark_failed(span: Span, error: BaseException) -> None:
    """Record an exception on a span and set its status to error."""
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, str(error)))
