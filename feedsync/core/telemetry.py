from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from feedsync.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
OTLP_ENDPOINT_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def configure_logging() -> None:
    """Install trace-id log correlation and a root handler for the worker process."""
    _install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        _install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(min(1.0, max(0.0, settings.otel_trace_sample_ratio)))),
    )
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    # fetch hops show up as child spans of fetch.request
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    if not settings.otel_exporter_otlp_endpoint and not any(os.getenv(name) for name in OTLP_ENDPOINT_VARS):
        logger.info("no OTLP endpoint configured; spans are not exported")
        return None
    # unset arguments fall back to the exporter's own OTEL_EXPORTER_OTLP_* handling
    return OTLPSpanExporter(
        endpoint=settings.otel_exporter_otlp_endpoint or None,
        headers=parse_headers(settings.otel_exporter_otlp_headers) or None,
    )


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` exporter headers, skipping malformed pairs."""
    if not raw:
        return {}
    parsed: dict[str, str] = {}
    for item in raw.split(","):
        key, separator, value = item.partition("=")
        key = key.strip()
        if separator and key:
            parsed[key] = value.strip()
    return parsed


def _install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
        record.span_id = format(context.span_id, "016x") if context.is_valid else "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
