from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from .config import settings

logger = logging.getLogger(__name__)

_METER_NAME = "cimon"


@dataclass
class _Instruments:
    http_requests: Any = None
    http_latency_ms: Any = None
    dispatches: Any = None
    throttle_wait_ms: Any = None


_state = {"attempted": False, "ready": False}
_tracer: Any = None
_instruments = _Instruments()


def otel_enabled() -> bool:
    return bool(settings.otel_enabled) and _state["ready"]


def _resolve_trace_exporter_mode() -> str:
    mode = (settings.otel_traces_exporter or "auto").strip().lower()
    if mode != "auto":
        return mode
    if settings.otel_exporter_otlp_endpoint:
        return "otlp"
    # On Cloud Run, fall back to Cloud Trace when no collector is configured.
    if os.getenv("K_SERVICE"):
        return "gcp_trace"
    return "none"


def _span_exporter(mode: str, endpoint: str | None) -> Any:
    """Return a span exporter for `mode`, or None to keep spans in-process."""

    if mode == "otlp":
        if not endpoint:
            logger.warning("OTEL_TRACES_EXPORTER=otlp without OTEL_EXPORTER_OTLP_ENDPOINT; spans stay local")
            return None
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (  # type: ignore[import-not-found]
            OTLPSpanExporter,
        )

        return OTLPSpanExporter(endpoint=endpoint)
    if mode == "gcp_trace":
        from opentelemetry.exporter.cloud_trace import CloudTraceSpanExporter  # type: ignore[import-not-found]

        return CloudTraceSpanExporter()
    return None


def _build_instruments(meter: Any) -> _Instruments:
    return _Instruments(
        http_requests=meter.create_counter(
            name="cimon.http.server.requests",
            unit="1",
            description="HTTP requests handled by the API",
        ),
        http_latency_ms=meter.create_histogram(
            name="cimon.http.server.duration_ms",
            unit="ms",
            description="HTTP request latency in milliseconds",
        ),
        dispatches=meter.create_counter(
            name="cimon.alerts.dispatches",
            unit="1",
            description="Alert dispatch attempts by channel and outcome",
        ),
        throttle_wait_ms=meter.create_histogram(
            name="cimon.gitlab.throttle.wait_ms",
            unit="ms",
            description="Time a GitLab API request spent queued before execution",
        ),
    )


def setup_otel(app: Any) -> bool:
    """Instrument the FastAPI app with tracing and metrics when OTEL_ENABLED=1.

    Runs once per process. Without the `otel` extra installed this logs a
    warning and every helper below stays a no-op.
    """

    global _tracer, _instruments
    if _state["attempted"]:
        return _state["ready"]
    _state["attempted"] = True

    if not settings.otel_enabled:
        return False

    try:
        from opentelemetry import metrics as otel_metrics  # type: ignore[import-not-found]
        from opentelemetry import trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics import MeterProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader  # type: ignore[import-not-found]
        from opentelemetry.sdk.resources import Resource  # type: ignore[import-not-found]
        from opentelemetry.sdk.trace import TracerProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.trace.export import BatchSpanProcessor  # type: ignore[import-not-found]
    except ImportError as e:
        logger.warning("OTEL_ENABLED=1 but the otel extra is not installed; telemetry disabled. error=%s", e)
        return False

    resource = Resource.create({"service.name": settings.otel_service_name})
    endpoint = settings.otel_exporter_otlp_endpoint

    provider = TracerProvider(resource=resource)
    mode = _resolve_trace_exporter_mode()
    try:
        exporter = _span_exporter(mode, endpoint)
    except ImportError as e:
        logger.warning("OTEL %s exporter unavailable; spans stay local. error=%s", mode, e)
        exporter = None
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    _tracer = trace.get_tracer(_METER_NAME)

    readers: list[Any] = []
    if endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.metric_exporter import (  # type: ignore[import-not-found]
                OTLPMetricExporter,
            )
        except ImportError as e:
            logger.warning("OTLP metric exporter unavailable; metrics stay local. error=%s", e)
        else:
            readers.append(PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=endpoint)))
    otel_metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=readers))
    _instruments = _build_instruments(otel_metrics.get_meter(_METER_NAME))

    _state["ready"] = True
    logger.info("OTEL enabled exporter=%s", mode)
    return True


@contextmanager
def span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    """Start a tracing span when OTEL is active; otherwise no-op."""

    if not _state["ready"] or _tracer is None:
        yield None
        return

    with _tracer.start_as_current_span(name) as s:
        for k, v in _attrs(attributes).items():
            s.set_attribute(k, v)
        yield s


def _attrs(attrs: dict[str, Any] | None) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in (attrs or {}).items():
        if v is None:
            continue
        out[str(k)] = v if isinstance(v, (str, bool, int, float)) else str(v)
    return out


def record_http_request_metric(*, method: str, path: str, status_code: int, latency_ms: float) -> None:
    if not _state["ready"]:
        return
    attrs = _attrs({"http.method": method, "http.route": path, "http.status_code": int(status_code)})
    if _instruments.http_requests is not None:
        _instruments.http_requests.add(1, attributes=attrs)
    if _instruments.http_latency_ms is not None:
        _instruments.http_latency_ms.record(float(latency_ms), attributes=attrs)


def record_dispatch_metric(*, channel: str, sent: bool) -> None:
    if not _state["ready"] or _instruments.dispatches is None:
        return
    _instruments.dispatches.add(1, attributes=_attrs({"alert.channel": channel, "alert.sent": bool(sent)}))


def record_throttle_wait_metric(*, wait_ms: float, priority: int) -> None:
    if not _state["ready"] or _instruments.throttle_wait_ms is None:
        return
    _instruments.throttle_wait_ms.record(float(wait_ms), attributes=_attrs({"throttle.priority": int(priority)}))
