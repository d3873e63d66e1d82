"""OpenTelemetry + Prometheus fallback wiring for the storylink backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from storylink import config

logger = logging.getLogger("storylink.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_cache_lookup_counter: Any | None = None
_view_latency_hist: Any | None = None
_parser_failure_counter: Any | None = None
_push_counter: Any | None = None

_prom_enabled = False
_prom_cache_lookup_counter: Any | None = None
_prom_view_latency_hist: Any | None = None
_prom_parser_failure_counter: Any | None = None
_prom_push_counter: Any | None = None


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


def _prom_labels(*, project_id: str, **extra: str) -> dict[str, str]:
    labels = {"project": project_id or "unknown"}
    for key, value in extra.items():
        labels[key] = (value or "").strip() or "unknown"
    return labels


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _cache_lookup_counter, _view_latency_hist, _parser_failure_counter, _push_counter
    global _prom_enabled
    global _prom_cache_lookup_counter, _prom_view_latency_hist, _prom_parser_failure_counter, _prom_push_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (STORYLINK_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "storylink-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "storylink",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("storylink.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("storylink.backend")

    _cache_lookup_counter = meter.create_counter(
        "storylink_cache_lookups_total",
        unit="1",
        description="View cache lookups by view type and result",
    )
    _view_latency_hist = meter.create_histogram(
        "storylink_view_build_latency_ms",
        unit="ms",
        description="Latency of recomputing a view on cache miss",
    )
    _parser_failure_counter = meter.create_counter(
        "storylink_parser_failures_total",
        unit="1",
        description="Planning documents skipped because they could not be read",
    )
    _push_counter = meter.create_counter(
        "storylink_push_events_total",
        unit="1",
        description="Events pushed to live subscribers",
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
            _prom_cache_lookup_counter = Counter(
                "storylink_cache_lookups_total",
                "View cache lookups by view type and result",
                ["view", "result", "project"],
            )
            _prom_view_latency_hist = Histogram(
                "storylink_view_build_latency_ms",
                "Latency of recomputing a view on cache miss",
                ["view", "project"],
            )
            _prom_parser_failure_counter = Counter(
                "storylink_parser_failures_total",
                "Planning documents skipped because they could not be read",
                ["parser", "project"],
            )
            _prom_push_counter = Counter(
                "storylink_push_events_total",
                "Events pushed to live subscribers",
                ["event", "project"],
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
    except Exception as exc:
        logger.warning("FastAPI uninstrumentation failed: %s", exc)
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception as exc:
        logger.warning("Meter provider shutdown failed: %s", exc)
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception as exc:
        logger.warning("Trace provider shutdown failed: %s", exc)
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


def record_cache_lookup(view: str, result: str, *, project_id: str, duration_ms: float = 0.0) -> None:
    labels = {
        "view": view or "unknown",
        "result": result or "unknown",
        "project_id": project_id or "unknown",
    }
    if _enabled and _cache_lookup_counter is not None:
        _cache_lookup_counter.add(1, labels)
    if _enabled and _view_latency_hist is not None and duration_ms > 0:
        _view_latency_hist.record(float(duration_ms), {"view": labels["view"], "project_id": labels["project_id"]})
    if _prom_enabled and _prom_cache_lookup_counter is not None:
        prom = _prom_labels(project_id=project_id, view=view, result=result)
        _prom_cache_lookup_counter.labels(**prom).inc()
    if _prom_enabled and _prom_view_latency_hist is not None and duration_ms > 0:
        prom = _prom_labels(project_id=project_id, view=view)
        _prom_view_latency_hist.labels(**prom).observe(float(duration_ms))


def record_parser_failure(parser: str, *, project_id: str) -> None:
    labels = {
        "parser": parser or "unknown",
        "project_id": project_id or "unknown",
    }
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(1, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        prom = _prom_labels(project_id=project_id, parser=parser)
        _prom_parser_failure_counter.labels(**prom).inc()


def record_push(event: str, *, project_id: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {
        "event": event or "unknown",
        "project_id": project_id or "unknown",
    }
    if _enabled and _push_counter is not None:
        _push_counter.add(safe_count, labels)
    if _prom_enabled and _prom_push_counter is not None:
        prom = _prom_labels(project_id=project_id, event=event)
        _prom_push_counter.labels(**prom).inc(safe_count)
