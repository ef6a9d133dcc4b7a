"""Optional OpenTelemetry export with a Prometheus fallback.

Every helper is a no-op until ``initialize`` wires a backend, so the daemon
runs unchanged without the ``otel`` extra installed.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from fastapi import FastAPI

from obsmem import config

logger = logging.getLogger("obsmem.observability")

# name -> (description, instrument kind, label names)
_METRICS: dict[str, tuple[str, str, tuple[str, ...]]] = {
    "obsmem_cycles_total": ("Processing cycles by outcome", "counter", ("result", "project")),
    "obsmem_cycle_latency_ms": ("Wall time of processing cycles", "histogram", ("result", "project")),
    "obsmem_skipped_lines_total": ("Transcript lines that could not be decoded", "counter", ("project",)),
    "obsmem_external_passes_total": (
        "External extraction/compaction passes by outcome", "counter", ("kind", "result", "project"),
    ),
    "obsmem_lock_waits_total": (
        "Cycles that found the observations lock held, by freed or abandoned outcome",
        "counter",
        ("outcome", "project"),
    ),
}


@dataclass
class _Telemetry:
    initialized: bool = False
    tracer: Any = None
    instrumentor: Any = None
    providers: list[Any] = field(default_factory=list)
    otel: dict[str, Any] = field(default_factory=dict)
    prom: dict[str, Any] = field(default_factory=dict)


_state = _Telemetry()


def _signal_endpoint(base: str, signal: str) -> Optional[str]:
    """Point an OTLP/HTTP base URL at ``/v1/<signal>``."""
    base = (base or "").strip().rstrip("/")
    if not base:
        return None
    suffix = f"/v1/{signal}"
    if base.endswith(suffix):
        return base
    if base.endswith("/v1"):
        base = base[: -len("/v1")]
    return base + suffix


def _build_otel_instruments(meter: Any) -> dict[str, Any]:
    instruments: dict[str, Any] = {}
    for name, (description, kind, _labels) in _METRICS.items():
        if kind == "histogram":
            instruments[name] = meter.create_histogram(name, unit="ms", description=description)
        else:
            instruments[name] = meter.create_counter(name, unit="1", description=description)
    return instruments


def _start_prometheus() -> None:
    try:
        from prometheus_client import Counter, Histogram, start_http_server
    except ImportError as exc:
        logger.warning("Prometheus fallback unavailable: %s", exc)
        return
    try:
        start_http_server(config.PROM_PORT)
    except OSError as exc:
        logger.warning("Prometheus fallback not started: %s", exc)
        return

    for name, (description, kind, labels) in _METRICS.items():
        factory = Histogram if kind == "histogram" else Counter
        _state.prom[name] = factory(name, description, list(labels))
    logger.info("Prometheus metrics served on port %s", config.PROM_PORT)


def initialize(app: Optional[FastAPI] = None) -> None:
    if _state.initialized:
        if app is not None and _state.instrumentor is not None:
            _state.instrumentor.instrument_app(app)
        return
    _state.initialized = True

    if config.PROM_PORT > 0:
        _start_prometheus()

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (OBSMEM_OTEL_ENABLED=false)")
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

    service_name = config.OTEL_SERVICE_NAME or "obsmem-daemon"
    resource = Resource.create({"service.name": service_name, "service.namespace": "obsmem"})

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=_signal_endpoint(config.OTEL_ENDPOINT, "traces")))
    )
    trace.set_tracer_provider(tracer_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_signal_endpoint(config.OTEL_ENDPOINT, "metrics"))
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)

    _state.providers = [meter_provider, tracer_provider]
    _state.otel = _build_otel_instruments(metrics.get_meter("obsmem.daemon"))
    _state.tracer = trace.get_tracer("obsmem.daemon")
    _state.instrumentor = FastAPIInstrumentor()
    if app is not None:
        _state.instrumentor.instrument_app(app)

    logger.info("OpenTelemetry exporting to %s as %s", config.OTEL_ENDPOINT, service_name)


def shutdown(app: Optional[FastAPI] = None) -> None:
    if app is not None and _state.instrumentor is not None:
        try:
            _state.instrumentor.uninstrument_app(app)
        except Exception:  # noqa: BLE001
            logger.debug("FastAPI uninstrument failed", exc_info=True)
    for provider in _state.providers:
        try:
            provider.shutdown()
        except Exception:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed", exc_info=True)
    _state.providers = []
    _state.otel = {}
    _state.tracer = None


@contextmanager
def start_span(name: str, attributes: Optional[dict[str, Any]] = None) -> Iterator[Any]:
    if _state.tracer is None:
        yield None
        return
    clean = {key: value for key, value in (attributes or {}).items() if value is not None}
    with _state.tracer.start_as_current_span(name, attributes=clean) as span:
        yield span


def _emit(name: str, value: float, **labels: str) -> None:
    _description, kind, label_names = _METRICS[name]
    values = {key: (labels.get(key) or "").strip() or "unknown" for key in label_names}

    instrument = _state.otel.get(name)
    if instrument is not None:
        if kind == "histogram":
            instrument.record(value, values)
        else:
            instrument.add(value, values)

    prom = _state.prom.get(name)
    if prom is not None:
        bound = prom.labels(**values)
        if kind == "histogram":
            bound.observe(value)
        else:
            bound.inc(value)


def record_cycle(result: str, duration_ms: float, *, project_id: str) -> None:
    _emit("obsmem_cycles_total", 1, result=result, project=project_id)
    _emit("obsmem_cycle_latency_ms", max(0.0, float(duration_ms)), result=result, project=project_id)


def record_skipped_lines(count: int, *, project_id: str) -> None:
    if count > 0:
        _emit("obsmem_skipped_lines_total", count, project=project_id)


def record_pass(kind: str, result: str, *, project_id: str) -> None:
    _emit("obsmem_external_passes_total", 1, kind=kind, result=result, project=project_id)


def record_lock_wait(outcome: str, *, project_id: str) -> None:
    _emit("obsmem_lock_waits_total", 1, outcome=outcome, project=project_id)
