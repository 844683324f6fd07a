"""OpenTelemetry + Prometheus fallback wiring for the usage scanner."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from copilot_usage import config

logger = logging.getLogger("copilot_usage.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_scan_counter: Any | None = None
_scan_latency_hist: Any | None = None
_parser_failure_counter: Any | None = None
_watch_event_counter: Any | None = None
_ingest_counter: Any | None = None

_prom_enabled = False
_prom_scan_counter: Any | None = None
_prom_scan_latency_hist: Any | None = None
_prom_parser_failure_counter: Any | None = None
_prom_watch_event_counter: Any | None = None
_prom_ingest_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _scan_counter, _scan_latency_hist, _parser_failure_counter, _watch_event_counter, _ingest_counter
    global _prom_enabled
    global _prom_scan_counter, _prom_scan_latency_hist, _prom_parser_failure_counter
    global _prom_watch_event_counter, _prom_ingest_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (COPILOT_USAGE_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "copilot-usage"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "copilot_usage",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("copilot_usage")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("copilot_usage")

    _scan_counter = meter.create_counter(
        "copilot_usage_scans_total",
        unit="1",
        description="Count of source scans by outcome",
    )
    _scan_latency_hist = meter.create_histogram(
        "copilot_usage_scan_latency_ms",
        unit="ms",
        description="Latency of full and incremental source scans",
    )
    _parser_failure_counter = meter.create_counter(
        "copilot_usage_parser_failures_total",
        unit="1",
        description="Count of files or records dropped by parsers",
    )
    _watch_event_counter = meter.create_counter(
        "copilot_usage_watch_events_total",
        unit="1",
        description="File change notifications handled by watchers",
    )
    _ingest_counter = meter.create_counter(
        "copilot_usage_ingested_events_total",
        unit="1",
        description="Usage events ingested into the analytics index",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_scan_counter = Counter(
                "copilot_usage_scans_total",
                "Count of source scans by outcome",
                ["source", "result"],
            )
            _prom_scan_latency_hist = Histogram(
                "copilot_usage_scan_latency_ms",
                "Latency of full and incremental source scans",
                ["source", "result"],
            )
            _prom_parser_failure_counter = Counter(
                "copilot_usage_parser_failures_total",
                "Count of files or records dropped by parsers",
                ["parser"],
            )
            _prom_watch_event_counter = Counter(
                "copilot_usage_watch_events_total",
                "File change notifications handled by watchers",
                ["source", "change"],
            )
            _prom_ingest_counter = Counter(
                "copilot_usage_ingested_events_total",
                "Usage events ingested into the analytics index",
                ["mode"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception as exc:  # noqa: BLE001
        logger.debug("FastAPI uninstrument failed: %s", exc)
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Meter provider shutdown failed: %s", exc)
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Trace provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_scan(source: str, result: str, duration_ms: float) -> None:
    labels = _labels(source=source, result=result)
    duration = max(0.0, float(duration_ms))
    if _enabled and _scan_counter is not None:
        _scan_counter.add(1, labels)
    if _enabled and _scan_latency_hist is not None:
        _scan_latency_hist.record(duration, labels)
    if _prom_enabled and _prom_scan_counter is not None:
        _prom_scan_counter.labels(**labels).inc()
    if _prom_enabled and _prom_scan_latency_hist is not None:
        _prom_scan_latency_hist.labels(**labels).observe(duration)


def record_parser_failure(parser: str) -> None:
    labels = _labels(parser=parser)
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(1, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(**labels).inc()


def record_watch_event(source: str, change: str) -> None:
    labels = _labels(source=source, change=change)
    if _enabled and _watch_event_counter is not None:
        _watch_event_counter.add(1, labels)
    if _prom_enabled and _prom_watch_event_counter is not None:
        _prom_watch_event_counter.labels(**labels).inc()


def record_ingest(count: int, replace: bool) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {"mode": "replace" if replace else "merge"}
    if _enabled and _ingest_counter is not None:
        _ingest_counter.add(safe_count, labels)
    if _prom_enabled and _prom_ingest_counter is not None:
        _prom_ingest_counter.labels(**labels).inc(safe_count)
