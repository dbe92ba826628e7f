from __future__ import annotations

import os
import uuid
from datetime import datetime
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased


_configured = False
_provider: TracerProvider | None = None


def _sample_ratio() -> float:
    raw = os.getenv("OTEL_TRACES_SAMPLE_RATIO", "1.0")
    try:
        ratio = float(raw)
    except ValueError:
        return 1.0
    return min(max(ratio, 0.0), 1.0)


def _get_or_create_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    resource = Resource.create(
        {
            "service.name": f"stageflow-{service_name}",
            "service.namespace": "stageflow",
            "service.version": os.getenv("APP_VERSION", "0.1.0"),
            "worker.id": os.getenv("WORKER_ID", "local"),
        }
    )
    _provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(_sample_ratio())))
    trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    """Install exporters once per process; "api" and "worker" share the same provider settings."""
    global _configured

    if not enable:
        return None

    provider = _get_or_create_provider(service_name)
    if _configured:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider


def setup_inmemory_otel(service_name: str = "api") -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def set_span_attributes(span: trace.Span, **attributes: Any) -> None:
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (uuid.UUID, datetime)):
            value = str(value)
        span.set_attribute(key, value)


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None:
            return
        headers = dict(scope.get("headers", []))
        set_span_attributes(
            span,
            correlation_id=_header(headers, b"x-correlation-id"),
            organization_id=_header(headers, b"x-organization-id"),
            actor_id=_header(headers, b"x-actor-id"),
        )

    return server_request_hook


def _header(headers: dict[bytes, bytes], name: bytes) -> str | None:
    raw = headers.get(name)
    return raw.decode("utf-8") if raw else None
