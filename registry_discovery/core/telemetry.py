"""Tracing and log setup shared by the API process and the pipeline worker."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from registry_discovery.core.config import Settings

logger = logging.getLogger(__name__)

CORRELATED_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
PLAIN_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_EMPTY_TRACE_IDS = ("0" * 32, "0" * 16)
_correlated_factory_installed = False


@dataclass(slots=True)
class TelemetryRuntime:
    provider: TracerProvider | None = None
    app: FastAPI | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_logging(settings: Settings | None = None) -> None:
    correlate = settings is None or settings.otel_log_correlation
    if correlate:
        _install_correlated_record_factory()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=logging.INFO, format=CORRELATED_LOG_FORMAT if correlate else PLAIN_LOG_FORMAT)


def setup_telemetry(settings: Settings, *, service_suffix: str, app: FastAPI | None = None) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime()

    service_name = f"{settings.otel_service_name}-{service_suffix}"
    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name, DEPLOYMENT_ENVIRONMENT: settings.environment}),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = _build_exporter(settings, service_name=service_name)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    # Checker calls are the only outbound HTTP; both processes trace them.
    HTTPXClientInstrumentor().instrument(tracer_provider=provider)
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    return TelemetryRuntime(provider=provider, app=app)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
    HTTPXClientInstrumentor().uninstrument()
    runtime.provider.force_flush()
    runtime.provider.shutdown()


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key=value`` header lists, dropping entries without a key."""
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def _build_exporter(settings: Settings, *, service_name: str) -> OTLPSpanExporter | None:
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers) or None
    if settings.otel_exporter_otlp_endpoint:
        return OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, headers=headers)
    # Without an explicit endpoint the exporter resolves OTEL_EXPORTER_OTLP_* on its own.
    if os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"):
        return OTLPSpanExporter(headers=headers)
    logger.info("otlp endpoint not configured; spans stay local service=%s", service_name)
    return None


def current_trace_ids() -> tuple[str, str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return _EMPTY_TRACE_IDS
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


def _install_correlated_record_factory() -> None:
    global _correlated_factory_installed
    if _correlated_factory_installed:
        return
    wrapped = logging.getLogRecordFactory()

    def correlated_record(*args: object, **kwargs: object) -> logging.LogRecord:
        record = wrapped(*args, **kwargs)
        record.trace_id, record.span_id = current_trace_ids()
        return record

    logging.setLogRecordFactory(correlated_record)
    _correlated_factory_installed = True
