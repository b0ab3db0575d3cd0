"""Logging and tracing setup shared by the API process and the job runner."""

from __future__ import annotations

import logging
from logging.config import dictConfig

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from hotelops.core.config import Settings

# Loggers that drown out ticket and queue activity below INFO.
_NOISY_LOGGERS = ("asyncpg", "httpx", "httpcore")

_active_provider: TracerProvider | None = None


def _parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` OTLP header strings, skipping malformed pairs."""

    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, sep, value in pairs if sep and key.strip()}


def configure_logging(settings: Settings) -> logging.Logger:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    quiet = max(level, logging.INFO)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"plain": {"format": settings.log_format}},
            "handlers": {"stream": {"class": "logging.StreamHandler", "formatter": "plain"}},
            "root": {"handlers": ["stream"], "level": level},
            "loggers": {name: {"level": quiet} for name in _NOISY_LOGGERS},
        }
    )

    service_logger = logging.getLogger("hotelops")
    service_logger.setLevel(level)
    return service_logger


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install the OTLP exporter once per process when tracing is enabled."""

    global _active_provider

    if _active_provider is not None or not settings.otel_enabled:
        return None

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "deployment.environment": settings.environment,
        }
    )
    exporter = OTLPSpanExporter(
        endpoint=settings.otel_exporter_otlp_endpoint or None,
        headers=_parse_headers(settings.otel_exporter_otlp_headers) or None,
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _active_provider = provider
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    global _active_provider

    if provider is None:
        return
    provider.shutdown()
    if provider is _active_provider:
        _active_provider = None
