from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Any, Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response


http_logger = logging.getLogger("solarwatch.http")
otel_logger = logging.getLogger("solarwatch.otel")


# -----------------------------
# Request context
# -----------------------------


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_REQUEST_ID_HEADERS = ("X-Request-ID", "X-Correlation-ID")


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def _incoming_request_id(request: Request) -> str:
    for name in _REQUEST_ID_HEADERS:
        value = (request.headers.get(name) or "").strip()
        if value:
            return value
    return uuid.uuid4().hex


def _http_request_payload(request: Request, *, status: int, duration_ms: int) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "requestMethod": request.method,
        "requestUrl": request.url.path,
        "status": status,
        "latency": f"{duration_ms / 1000:.3f}s",
        "remoteIp": request.client.host if request.client else None,
        "userAgent": request.headers.get("user-agent"),
    }
    return {k: v for k, v in payload.items() if v is not None}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag every request with a request_id and log one ``request`` record.

    Devices and reverse proxies may pass their own X-Request-ID; otherwise one
    is generated. It is echoed in the response header.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        rid = _incoming_request_id(request)
        token = request_id_ctx.set(rid)
        started = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            response.headers["X-Request-ID"] = rid
            return response
        except Exception:
            http_logger.exception("request_error")
            raise
        finally:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            http_logger.info(
                "request",
                extra={
                    "httpRequest": _http_request_payload(request, status=status, duration_ms=elapsed_ms),
                    "fields": {"duration_ms": elapsed_ms},
                },
            )
            request_id_ctx.reset(token)


# -----------------------------
# Metrics (no-ops unless OpenTelemetry is enabled)
# -----------------------------


@dataclass
class _OtelRuntime:
    ingest_samples_total: Any | None = None
    alert_dispatches_total: Any | None = None
    watchdog_run_duration_ms: Any | None = None


_otel_runtime: _OtelRuntime | None = None


def record_ingest_metric(*, outcome: str, reason: str | None = None) -> None:
    counter = _otel_runtime.ingest_samples_total if _otel_runtime else None
    if counter is None:
        return
    attrs: dict[str, Any] = {"outcome": outcome}
    if reason:
        attrs["reason"] = reason
    counter.add(1, attributes=attrs)


def record_alert_dispatch_metric(*, alert_type: str, delivered: bool) -> None:
    counter = _otel_runtime.alert_dispatches_total if _otel_runtime else None
    if counter is None:
        return
    counter.add(1, attributes={"alert_type": alert_type, "delivered": bool(delivered)})


def record_watchdog_run_metric(*, duration_ms: float, success: bool) -> None:
    histogram = _otel_runtime.watchdog_run_duration_ms if _otel_runtime else None
    if histogram is None:
        return
    histogram.record(float(duration_ms), attributes={"success": bool(success)})


# -----------------------------
# Logging
# -----------------------------


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover
        record.request_id = get_request_id()
        return True


@dataclass
class JsonLogConfig:
    service_name: str = "solarwatch"


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Structured payloads passed as ``extra={"fields": {...}}`` land under
    "fields"; the request middleware's payload under "httpRequest".
    """

    _OPTIONAL_ATTRS = (("request_id", str), ("fields", dict), ("httpRequest", dict))

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.config.service_name,
        }
        for attr, kind in self._OPTIONAL_ATTRS:
            value = getattr(record, attr, None)
            if value and isinstance(value, kind):
                payload[attr] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def configure_logging(*, level: int, log_format: str) -> None:
    """Install a single stderr handler on the root logger.

    ``log_format`` is ``json`` for log collectors, anything else for plain text.
    Safe to call more than once.
    """

    handler = logging.StreamHandler()
    handler.addFilter(ContextFilter())
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JsonLogConfig()))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


class _ZonedIsoFormatter(logging.Formatter):
    def __init__(self, fmt: str, tz: tzinfo | None) -> None:
        super().__init__(fmt)
        self.tz = tz

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=self.tz)
        if self.tz is None:
            stamp = stamp.astimezone()
        return stamp.isoformat(timespec="seconds")


def open_operational_log(
    logger: logging.Logger, *, log_dir: str, prefix: str, tz: tzinfo | None = None
) -> logging.Handler:
    """Attach a dated append-only file handler (``<prefix>_YYYYMMDD.log``).

    The file date and line timestamps are in ``tz``; host local time when omitted.

    Lines look like ``2026-02-01T09:00:00+09:00 DONE sent=0``. Callers detach
    the handler with :func:`close_operational_log` when the run is over.
    """

    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{prefix}_{datetime.now(tz).strftime('%Y%m%d')}.log"

    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setLevel(logging.INFO)
    handler.setFormatter(_ZonedIsoFormatter("%(asctime)s %(message)s", tz))

    # Operational lines are INFO; keep them even when the process log is quieter.
    if logger.getEffectiveLevel() > logging.INFO:
        handler.previous_level = logger.level  # type: ignore[attr-defined]
        logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    return handler


def close_operational_log(logger: logging.Logger, handler: logging.Handler) -> None:
    logger.removeHandler(handler)
    handler.close()
    previous_level = getattr(handler, "previous_level", None)
    if previous_level is not None:
        logger.setLevel(previous_level)


# -----------------------------
# OpenTelemetry (optional extra)
# -----------------------------


def _build_otel_runtime(meter) -> _OtelRuntime:
    return _OtelRuntime(
        ingest_samples_total=meter.create_counter(
            "solarwatch.ingest.samples",
            unit="{sample}",
            description="Ingested samples by accepted/rejected/failed outcome.",
        ),
        alert_dispatches_total=meter.create_counter(
            "solarwatch.alert.dispatches",
            unit="{event}",
            description="OFFLINE/RECOVER notifications handed to the notifier.",
        ),
        watchdog_run_duration_ms=meter.create_histogram(
            "solarwatch.watchdog.run.duration",
            unit="ms",
            description="Watchdog pass duration.",
        ),
    )


def maybe_instrument_opentelemetry(
    *,
    enabled: bool,
    app,
    service_name: str,
    service_version: str,
    environment: str,
) -> None:
    """Trace HTTP requests and export ingest/alert/watchdog metrics over OTLP.

    Never blocks startup: missing packages or exporter errors are logged and
    the service runs without telemetry. Exporters read the standard OTEL_*
    env vars.
    """

    global _otel_runtime
    _otel_runtime = None
    if not enabled:
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:  # pragma: no cover
        otel_logger.warning(
            "ENABLE_OTEL=1 but OpenTelemetry is not installed",
            extra={"fields": {"hint": "pip install 'solarwatch-telemetry[otel]'"}},
        )
        return

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": service_version,
            "deployment.environment": environment,
        }
    )
    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    readers: list[Any] = []
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        otel_logger.warning("No OTEL_EXPORTER_OTLP_ENDPOINT; spans and metrics stay in-process")
    else:
        try:
            from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

            tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
            readers.append(PeriodicExportingMetricReader(OTLPMetricExporter()))
            otel_logger.info("OTLP export enabled", extra={"fields": {"endpoint": endpoint}})
        except Exception:  # pragma: no cover
            otel_logger.exception("OTLP exporter setup failed")

    try:
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=readers))
        _otel_runtime = _build_otel_runtime(metrics.get_meter(service_name, service_version))
    except Exception:  # pragma: no cover
        otel_logger.exception("OpenTelemetry metrics setup failed")

    try:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)
    except Exception:  # pragma: no cover
        otel_logger.exception("FastAPI instrumentation failed")
