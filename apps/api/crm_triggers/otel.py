from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Status, StatusCode

from crm_triggers.context import TriggerScope, get_correlation_id

try:
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
except ImportError:  # pragma: no cover - exporter is an optional extra
    OTLPSpanExporter = None  # type: ignore[assignment]


SERVICE_NAME = "crm-triggers"
TRIGGER_SPAN_PREFIX = "crm.trigger"

_tracer = trace.get_tracer("crm_triggers.triggers")
_provider: TracerProvider | None = None
_exporters_attached = False


def _provider_for(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": os.getenv("APP_VERSION", "0.1.0"),
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str = SERVICE_NAME, enable: bool = True) -> TracerProvider | None:
    """Install the tracer provider and attach exporters configured in the environment, once."""
    global _exporters_attached

    if not enable:
        return None

    provider = _provider_for(service_name)
    if _exporters_attached:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint and OTLPSpanExporter is not None:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


@contextmanager
def trigger_span(scope: TriggerScope, *, batch_size: int) -> Iterator[trace.Span]:
    """Span named ``crm.trigger.<entity_type>.<phase>`` around one handler run.

    A handler exception is recorded on the span and marks it as an error
    before it propagates.
    """
    name = f"{TRIGGER_SPAN_PREFIX}.{scope.entity_type}.{scope.phase}"
    with _tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for key, value in scope.as_fields().items():
            span.set_attribute(key, value)
        span.set_attribute("batch_size", batch_size)
        correlation_id = get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None:
            return
        correlation_raw = dict(scope.get("headers", [])).get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))

    return server_request_hook
