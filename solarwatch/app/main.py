from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, settings as global_settings
from .jobs.watchdog import run_watchdog_pass
from .middleware.limits import BodySizeLimitMiddleware
from .observability import (
    RequestContextMiddleware,
    configure_logging,
    get_request_id,
    maybe_instrument_opentelemetry,
)
from .routes.admin import router as admin_router
from .routes.devices import router as devices_router
from .routes.ingest import router as ingest_router
from .routes.recipients import router as recipients_router
from .version import __version__


logger = logging.getLogger("solarwatch")

# Endpoints that accept a request body.
_LIMITED_PATHS = ["/api/v1/ingest", "/api/v1/recipients"]

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}


def _error_response(
    status_code: int,
    code: str,
    message: str,
    *,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    rid = get_request_id() or "unknown"
    error: dict[str, Any] = {"code": code, "message": message, "request_id": rid}
    if details is not None:
        error["details"] = details
    out_headers = dict(headers or {})
    out_headers.setdefault("X-Request-ID", rid)
    return JSONResponse(status_code=status_code, content={"error": error}, headers=out_headers)


def _install_error_handlers(app: FastAPI) -> None:
    # Device ingest answers with its own {ok, error} envelope; everything
    # else that fails at the HTTP layer uses {"error": {...}}.

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        return _error_response(exc.status_code, "HTTP_ERROR", str(exc.detail), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return _error_response(422, "VALIDATION_ERROR", "Request validation failed", details=exc.errors())

    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            extra={"fields": {"path": str(request.url.path), "method": request.method}},
        )
        return _error_response(500, "INTERNAL", "Internal server error")


def create_app(_settings: Settings | None = None) -> FastAPI:
    # Tests pass their own Settings; production uses the env-loaded module value.
    settings = _settings or global_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _setup_logging(settings)
        scheduler = _start_scheduler(settings) if settings.enable_scheduler else None
        if scheduler is None:
            logger.info("Watchdog scheduler disabled; run `python -m solarwatch.app.jobs.watchdog` from cron")
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
                logger.info("Watchdog scheduler stopped")

    app = FastAPI(
        title="SolarWatch Telemetry API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.enable_docs else None,
        redoc_url="/redoc" if settings.enable_docs else None,
        openapi_url="/openapi.json" if settings.enable_docs else None,
    )
    app.state.settings = settings
    app.state.scheduler = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if settings.max_request_body_bytes > 0:
        app.add_middleware(
            BodySizeLimitMiddleware,
            max_body_bytes=settings.max_request_body_bytes,
            paths=_LIMITED_PATHS,
        )
    app.add_middleware(RequestContextMiddleware)

    maybe_instrument_opentelemetry(
        enabled=settings.enable_otel,
        app=app,
        service_name=os.getenv("OTEL_SERVICE_NAME") or "solarwatch-telemetry",
        service_version=__version__,
        environment=settings.app_env,
    )

    _install_error_handlers(app)

    @app.middleware("http")
    async def _security_headers(request, call_next):
        resp = await call_next(request)
        for name, value in _SECURITY_HEADERS.items():
            resp.headers.setdefault(name, value)
        return resp

    def _health() -> dict[str, Any]:
        return {
            "ok": True,
            "version": __version__,
            "env": settings.app_env,
            "features": {
                "admin": {"auth_mode": settings.admin_auth_mode},
                "docs": {"enabled": settings.enable_docs},
                "otel": {"enabled": settings.enable_otel},
                "scheduler": {
                    "enabled": settings.enable_scheduler,
                    "watchdog_interval_s": settings.watchdog_interval_s,
                },
                "ingest": {
                    "protocol_version": settings.protocol_version,
                    "timezone": settings.timezone,
                },
                "notifier": {"kind": settings.notifier_kind},
            },
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return _health()

    @app.get("/api/v1/health")
    def health_api():
        return _health()

    for router in (ingest_router, devices_router, recipients_router, admin_router):
        app.include_router(router)

    return app


def _setup_logging(settings: Settings) -> None:
    configure_logging(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        log_format=settings.log_format,
    )
    logger.info("Logging initialized (level=%s format=%s)", settings.log_level, settings.log_format)


def _start_scheduler(settings: Settings) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone=settings.timezone)
    # Transition detection compares against the previous pass's state, so
    # passes must never overlap.
    scheduler.add_job(
        _watchdog_job,
        trigger="interval",
        seconds=settings.watchdog_interval_s,
        args=[settings],
        id="watchdog",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Watchdog scheduler started (interval=%ss)", settings.watchdog_interval_s)
    return scheduler


def _watchdog_job(settings: Settings) -> None:
    try:
        summary = run_watchdog_pass(settings)
    except Exception:
        logger.exception("Scheduled watchdog pass failed")
        return
    logger.info(
        "Scheduled watchdog pass complete",
        extra={"fields": {"evaluated": summary.evaluated, "alerts_sent": summary.alerts_sent}},
    )


# ASGI entrypoint
app = create_app()
