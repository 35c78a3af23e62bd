"""OpenTelemetry + Prometheus fallback wiring for the usagedash backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from usagedash import config

logger = logging.getLogger("usagedash.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_sync_pass_counter: Any | None = None
_sync_latency_hist: Any | None = None
_skipped_line_counter: Any | None = None
_tokens_counter: Any | None = None
_cost_counter: Any | None = None
_cache_counter: Any | None = None

_prom_enabled = False
_prom_sync_pass_counter: Any | None = None
_prom_sync_latency_hist: Any | None = None
_prom_skipped_line_counter: Any | None = None
_prom_tokens_counter: Any | None = None
_prom_cost_counter: Any | None = None
_prom_cache_counter: Any | None = None


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


def _label(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def _cache_namespace(key: str) -> str:
    # Keys embed filter values; only the leading segments are bounded.
    parts = (key or "").split(":", 1)[0].split(".")
    return ".".join(parts[:2]) or "unknown"


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _sync_pass_counter, _sync_latency_hist, _skipped_line_counter
    global _tokens_counter, _cost_counter, _cache_counter
    global _prom_enabled
    global _prom_sync_pass_counter, _prom_sync_latency_hist, _prom_skipped_line_counter
    global _prom_tokens_counter, _prom_cost_counter, _prom_cache_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (USAGEDASH_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "usagedash-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "usagedash",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("usagedash.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("usagedash.backend")

    _sync_pass_counter = meter.create_counter(
        "usagedash_sync_passes_total",
        unit="1",
        description="Count of usage ingestion passes by trigger and result",
    )
    _sync_latency_hist = meter.create_histogram(
        "usagedash_sync_latency_ms",
        unit="ms",
        description="Wall-clock duration of usage ingestion passes",
    )
    _skipped_line_counter = meter.create_counter(
        "usagedash_skipped_lines_total",
        unit="1",
        description="Event log lines that carried no usable usage signal",
    )
    _tokens_counter = meter.create_counter(
        "usagedash_tokens_total",
        unit="1",
        description="Ingested token totals by model and direction",
    )
    _cost_counter = meter.create_counter(
        "usagedash_cost_micros_total",
        unit="usd_micros",
        description="Ingested cost totals by model",
    )
    _cache_counter = meter.create_counter(
        "usagedash_cache_lookups_total",
        unit="1",
        description="Async result cache lookups by namespace and outcome",
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
            _prom_sync_pass_counter = Counter(
                "usagedash_sync_passes_total",
                "Count of usage ingestion passes by trigger and result",
                ["trigger", "result"],
            )
            _prom_sync_latency_hist = Histogram(
                "usagedash_sync_latency_ms",
                "Wall-clock duration of usage ingestion passes",
                ["trigger", "result"],
            )
            _prom_skipped_line_counter = Counter(
                "usagedash_skipped_lines_total",
                "Event log lines that carried no usable usage signal",
                ["agent"],
            )
            _prom_tokens_counter = Counter(
                "usagedash_tokens_total",
                "Ingested token totals by model and direction",
                ["model", "direction"],
            )
            _prom_cost_counter = Counter(
                "usagedash_cost_micros_total",
                "Ingested cost totals by model",
                ["model"],
            )
            _prom_cache_counter = Counter(
                "usagedash_cache_lookups_total",
                "Async result cache lookups by namespace and outcome",
                ["namespace", "result"],
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
    except Exception:
        logger.debug("FastAPI uninstrument failed", exc_info=True)
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception:
        logger.debug("Meter provider shutdown failed", exc_info=True)
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception:
        logger.debug("Trace provider shutdown failed", exc_info=True)
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


def record_sync_pass(trigger: str, result: str, duration_ms: float) -> None:
    labels = {"trigger": _label(trigger), "result": _label(result)}
    latency = max(0.0, float(duration_ms))
    if _enabled and _sync_pass_counter is not None:
        _sync_pass_counter.add(1, labels)
    if _enabled and _sync_latency_hist is not None:
        _sync_latency_hist.record(latency, labels)
    if _prom_enabled and _prom_sync_pass_counter is not None:
        _prom_sync_pass_counter.labels(**labels).inc()
    if _prom_enabled and _prom_sync_latency_hist is not None:
        _prom_sync_latency_hist.labels(**labels).observe(latency)


def record_skipped_lines(agent_id: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {"agent": _label(agent_id)}
    if _enabled and _skipped_line_counter is not None:
        _skipped_line_counter.add(safe_count, labels)
    if _prom_enabled and _prom_skipped_line_counter is not None:
        _prom_skipped_line_counter.labels(**labels).inc(safe_count)


def record_token_cost(
    *,
    model: str,
    token_input: int,
    token_output: int,
    cost_micros: int,
) -> None:
    model_label = _label(model)
    in_tokens = max(0, int(token_input))
    out_tokens = max(0, int(token_output))
    cost = max(0, int(cost_micros))
    if _enabled and _tokens_counter is not None:
        if in_tokens > 0:
            _tokens_counter.add(in_tokens, {"model": model_label, "direction": "input"})
        if out_tokens > 0:
            _tokens_counter.add(out_tokens, {"model": model_label, "direction": "output"})
    if _enabled and _cost_counter is not None and cost > 0:
        _cost_counter.add(cost, {"model": model_label})

    if _prom_enabled and _prom_tokens_counter is not None:
        if in_tokens > 0:
            _prom_tokens_counter.labels(model=model_label, direction="input").inc(in_tokens)
        if out_tokens > 0:
            _prom_tokens_counter.labels(model=model_label, direction="output").inc(out_tokens)
    if _prom_enabled and _prom_cost_counter is not None and cost > 0:
        _prom_cost_counter.labels(model=model_label).inc(cost)


def record_cache_result(key: str, result: str) -> None:
    labels = {"namespace": _cache_namespace(key), "result": _label(result)}
    if _enabled and _cache_counter is not None:
        _cache_counter.add(1, labels)
    if _prom_enabled and _prom_cache_counter is not None:
        _prom_cache_counter.labels(**labels).inc()
