"""OpenTelemetry + Prometheus fallback wiring for the Foundry backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from foundry import config

logger = logging.getLogger("foundry.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_cascade_steps_counter: Any | None = None
_bulk_nodes_counter: Any | None = None
_tree_io_counter: Any | None = None

_prom_enabled = False
_prom_cascade_steps_counter: Any | None = None
_prom_bulk_nodes_counter: Any | None = None
_prom_tree_io_counter: Any | None = None


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
    global _cascade_steps_counter, _bulk_nodes_counter, _tree_io_counter
    global _prom_enabled, _prom_cascade_steps_counter, _prom_bulk_nodes_counter, _prom_tree_io_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (FOUNDRY_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "foundry-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "foundry",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("foundry.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("foundry.backend")

    _cascade_steps_counter = meter.create_counter(
        "foundry_cascade_steps_total",
        unit="1",
        description="Ancestor status changes applied by the status cascade",
    )
    _bulk_nodes_counter = meter.create_counter(
        "foundry_bulk_nodes_total",
        unit="1",
        description="Feature nodes inserted through bulk creation",
    )
    _tree_io_counter = meter.create_counter(
        "foundry_tree_io_total",
        unit="1",
        description="Feature tree import/export operations",
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
            from prometheus_client import Counter, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_cascade_steps_counter = Counter(
                "foundry_cascade_steps_total",
                "Ancestor status changes applied by the status cascade",
                ["result", "project"],
            )
            _prom_bulk_nodes_counter = Counter(
                "foundry_bulk_nodes_total",
                "Feature nodes inserted through bulk creation",
                ["result", "project"],
            )
            _prom_tree_io_counter = Counter(
                "foundry_tree_io_total",
                "Feature tree import/export operations",
                ["direction", "format", "result", "project"],
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


def record_cascade(steps: int, result: str, *, project_id: str) -> None:
    safe_steps = max(0, int(steps))
    labels = {"result": result or "unknown", "project_id": project_id or "unknown"}
    if _enabled and _cascade_steps_counter is not None and safe_steps:
        _cascade_steps_counter.add(safe_steps, labels)
    if _prom_enabled and _prom_cascade_steps_counter is not None and safe_steps:
        _prom_cascade_steps_counter.labels(**_prom_labels(project_id=project_id, result=result)).inc(safe_steps)


def record_bulk_create(created: int, result: str, *, project_id: str) -> None:
    safe_count = max(0, int(created))
    labels = {"result": result or "unknown", "project_id": project_id or "unknown"}
    if _enabled and _bulk_nodes_counter is not None and safe_count:
        _bulk_nodes_counter.add(safe_count, labels)
    if _prom_enabled and _prom_bulk_nodes_counter is not None and safe_count:
        _prom_bulk_nodes_counter.labels(**_prom_labels(project_id=project_id, result=result)).inc(safe_count)


def record_tree_io(direction: str, fmt: str, result: str, *, project_id: str = "") -> None:
    labels = {
        "direction": direction or "unknown",
        "format": fmt or "unknown",
        "result": result or "unknown",
        "project_id": project_id or "unknown",
    }
    if _enabled and _tree_io_counter is not None:
        _tree_io_counter.add(1, labels)
    if _prom_enabled and _prom_tree_io_counter is not None:
        prom = _prom_labels(project_id=project_id, direction=direction, format=fmt, result=result)
        _prom_tree_io_counter.labels(**prom).inc()
