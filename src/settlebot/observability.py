from __future__ import annotations

import atexit
import logging
import re
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]+")

# Instruments emitted by the settlement path; anything else still works but has no description.
METRIC_DESCRIPTIONS: dict[str, str] = {
    "settlement_outcome": "Settlement pipeline outcomes by entry path",
    "reconcile_done": "Reconciler verdicts by reason",
    "lock_acquire": "Settlement lock acquisition attempts",
    "ledger_tx_broadcast": "Ledger transactions broadcast by contract function",
    "ledger_tx_confirmed": "Ledger transactions confirmed successful by kind",
    "settlement_failed": "Settlement attempts recorded as failed",
    "janitor_candidates": "Matches picked up by the janitor",
    "hosting_retry_total": "Retried hosting provider requests",
}


def metric_name(name: str) -> str:
    return _INVALID_NAME_CHARS.sub("_", name).strip("_") or "invalid_metric"


def _attributes(attrs: Mapping[str, Any] | None) -> dict[str, str | bool | int | float]:
    cleaned: dict[str, str | bool | int | float] = {}
    for key, value in (attrs or {}).items():
        if value is None:
            continue
        cleaned[key] = value if isinstance(value, (bool, int, float)) else str(value)
    return cleaned


class Instrumentation:
    """No-op facade; every call site goes through this interface."""

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        yield

    def shutdown(self) -> None:
        return None


class OTelInstrumentation(Instrumentation):
    def __init__(
        self,
        *,
        service_name: str,
        metrics_exporter: str,
        otlp_endpoint: str | None,
        prometheus_port: int,
    ) -> None:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        resource = Resource.create({"service.name": service_name})
        span_exporter = OTLPSpanExporter(endpoint=otlp_endpoint) if otlp_endpoint else None
        self._tracer_provider = TracerProvider(resource=resource)
        if span_exporter is not None:
            self._tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
        trace.set_tracer_provider(self._tracer_provider)
        self._tracer = trace.get_tracer(service_name)

        self._meter_provider = MeterProvider(
            resource=resource,
            metric_readers=_metric_readers(metrics_exporter, otlp_endpoint, prometheus_port),
        )
        metrics.set_meter_provider(self._meter_provider)
        self._meter = metrics.get_meter(service_name)
        self._instruments: dict[tuple[str, str], Any] = {}
        self._instruments_lock = threading.Lock()

    def _instrument(self, kind: str, name: str) -> Any:
        safe_name = metric_name(name)
        with self._instruments_lock:
            instrument = self._instruments.get((kind, safe_name))
            if instrument is None:
                description = METRIC_DESCRIPTIONS.get(safe_name, "")
                if kind == "counter":
                    instrument = self._meter.create_counter(safe_name, description=description)
                else:
                    instrument = self._meter.create_histogram(
                        safe_name, unit="s", description=description
                    )
                self._instruments[(kind, safe_name)] = instrument
        return instrument

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        self._instrument("counter", name).add(value, _attributes(attrs))

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        self._instrument("histogram", name).record(value, _attributes(attrs))

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        started = time.perf_counter()
        with self._tracer.start_as_current_span(name, attributes=_attributes(attrs)):
            try:
                yield
            finally:
                self.histogram(
                    f"{name}_duration_seconds", time.perf_counter() - started, attrs=attrs
                )

    def shutdown(self) -> None:
        self._meter_provider.force_flush()
        self._tracer_provider.force_flush()
        self._meter_provider.shutdown()
        self._tracer_provider.shutdown()


def _metric_readers(exporter: str, otlp_endpoint: str | None, prometheus_port: int) -> list[Any]:
    if exporter == "otlp":
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

        metric_exporter = (
            OTLPMetricExporter(endpoint=otlp_endpoint) if otlp_endpoint else OTLPMetricExporter()
        )
        return [PeriodicExportingMetricReader(metric_exporter)]
    if exporter == "prometheus":
        from opentelemetry.exporter.prometheus import PrometheusMetricReader
        from prometheus_client import start_http_server

        start_http_server(prometheus_port)
        return [PrometheusMetricReader()]
    return []


_LOCK = threading.Lock()
_ACTIVE: Instrumentation = Instrumentation()
_CONFIGURED = False


def configure_instrumentation(
    *,
    enabled: bool,
    service_name: str = "settlebot",
    metrics_exporter: str = "none",
    otlp_endpoint: str | None = None,
    prometheus_port: int = 9464,
) -> Instrumentation:
    """Install the process-wide facade once; later calls return the first result."""
    global _ACTIVE, _CONFIGURED
    with _LOCK:
        if _CONFIGURED:
            return _ACTIVE
        _CONFIGURED = True
        if not enabled:
            return _ACTIVE
        try:
            _ACTIVE = OTelInstrumentation(
                service_name=service_name,
                metrics_exporter=metrics_exporter,
                otlp_endpoint=otlp_endpoint,
                prometheus_port=prometheus_port,
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "observability_setup_failed",
                extra={"extra": {"metrics_exporter": metrics_exporter, "fallback": "noop"}},
            )
        return _ACTIVE


def get_instrumentation() -> Instrumentation:
    return _ACTIVE


@atexit.register
def shutdown_instrumentation() -> None:
    _ACTIVE.shutdown()
