"""OpenTelemetry setup for the loyalty core.

Spans go to the OTLP collector named by ``otel_exporter_otlp_endpoint``; with no
collector configured they are recorded but only printed when
``otel_console_export`` is set.
"""

from __future__ import annotations

from typing import Dict

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor

from vcarda_api.core.settings import Settings

_provider: TracerProvider | None = None

# Health probes would otherwise dominate the trace volume.
_EXCLUDED_URLS = "healthz,readyz"


def parse_otlp_headers(raw: str | None) -> Dict[str, str]:
    """Parse ``key=value,key2=value2`` collector headers, skipping malformed pairs."""

    headers: Dict[str, str] = {}
    for pair in (raw or "").split(","):
        key, sep, value = pair.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _build_provider(config: Settings, version: str) -> TracerProvider:
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": config.service_name,
                "service.version": version,
                "deployment.environment": config.environment,
            }
        )
    )
    if config.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(
            endpoint=config.otel_exporter_otlp_endpoint,
            headers=parse_otlp_headers(config.otel_exporter_otlp_headers) or None,
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
    elif config.otel_console_export:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    return provider


def configure_tracing(app: FastAPI, config: Settings, *, version: str) -> None:
    """Install the process-wide tracer provider once, then instrument ``app``."""

    global _provider

    if _provider is None:
        _provider = _build_provider(config, version)
        trace.set_tracer_provider(_provider)
        LoggingInstrumentor().instrument(set_logging_format=False)

    FastAPIInstrumentor.instrument_app(app, tracer_provider=_provider, excluded_urls=_EXCLUDED_URLS)


def loyalty_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


__all__ = ["configure_tracing", "loyalty_tracer", "parse_otlp_headers"]
