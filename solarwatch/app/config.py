from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Literal


def _env(name: str) -> str | None:
    """Stripped env value; unset and blank both read as None."""
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip() or None


def _get_bool(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    return v.lower() in {"1", "true", "yes", "y", "on"}


def _get_int(name: str, default: int) -> int:
    v = _env(name)
    return default if v is None else int(v)


def _get_float(name: str, default: float) -> float:
    v = _env(name)
    return default if v is None else float(v)


def _get_str(name: str, default: str) -> str:
    return _env(name) or default


def _get_list(name: str, default: List[str]) -> List[str]:
    v = _env(name)
    if v is None:
        return default
    return [s.strip() for s in v.split(",") if s.strip()]


def _get_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    v = (_env(name) or default).lower()
    if v not in choices:
        raise RuntimeError(f"{name} must be one of: {', '.join(choices)}")
    return v


AdminAuthMode = Literal["key", "none"]
NotifierKind = Literal["smtp", "webhook", "log"]
WebhookKind = Literal["generic", "slack"]


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    log_format: str
    enable_otel: bool

    # Storage layout
    data_dir: str
    state_dir: str
    log_dir: str
    devices_path: str
    recipients_path: str

    # Protocol / ingest
    timezone: str
    protocol_version: str
    clock_skew_tolerance_s: int

    # Liveness
    default_offline_grace_s: int
    min_offline_grace_s: int

    # Read surface
    export_max_days: int

    # Admin surface
    admin_api_key: str
    admin_auth_mode: AdminAuthMode

    # Background jobs
    enable_scheduler: bool
    watchdog_interval_s: int

    # API surface
    enable_docs: bool
    cors_allow_origins: List[str]
    max_request_body_bytes: int

    # Alert delivery
    notifier_kind: NotifierKind
    smtp_host: str
    smtp_port: int
    smtp_username: str | None
    smtp_password: str | None
    smtp_starttls: bool
    smtp_timeout_s: float
    alert_webhook_url: str | None
    alert_webhook_kind: WebhookKind
    alert_webhook_timeout_s: float


def load_settings() -> Settings:
    app_env = _get_str("APP_ENV", "dev").lower()
    is_dev = app_env == "dev"

    admin_auth_mode = _get_choice("ADMIN_AUTH_MODE", "key", ("key", "none"))
    admin_api_key = _env("ADMIN_API_KEY") or ""
    if admin_auth_mode == "key" and not admin_api_key:
        if not is_dev:
            raise RuntimeError("ADMIN_API_KEY must be set when ADMIN_AUTH_MODE=key")
        admin_api_key = "dev-admin-key"

    notifier_kind = _get_choice("NOTIFIER_KIND", "log", ("smtp", "webhook", "log"))
    alert_webhook_kind = _get_choice("ALERT_WEBHOOK_KIND", "generic", ("generic", "slack"))
    alert_webhook_url = _env("ALERT_WEBHOOK_URL")
    if notifier_kind == "webhook" and not alert_webhook_url:
        raise RuntimeError("ALERT_WEBHOOK_URL is required when NOTIFIER_KIND=webhook")

    min_offline_grace_s = max(1, _get_int("MIN_OFFLINE_GRACE_S", 60))

    return Settings(
        app_env=app_env,
        log_level=_get_str("LOG_LEVEL", "INFO"),
        log_format=_get_str("LOG_FORMAT", "text"),
        enable_otel=_get_bool("ENABLE_OTEL", False),
        data_dir=_get_str("DATA_DIR", "./data"),
        state_dir=_get_str("STATE_DIR", "./state"),
        log_dir=_get_str("LOG_DIR", "./logs"),
        devices_path=_get_str("DEVICES_PATH", "./devices.json"),
        recipients_path=_get_str("RECIPIENTS_PATH", "./alert_recipients.json"),
        timezone=_get_str("TIMEZONE", "Asia/Tokyo"),
        protocol_version=_get_str("PROTOCOL_VERSION", "1.00"),
        clock_skew_tolerance_s=max(0, _get_int("CLOCK_SKEW_TOLERANCE_S", 7 * 86400)),
        default_offline_grace_s=max(min_offline_grace_s, _get_int("DEFAULT_OFFLINE_GRACE_S", 900)),
        min_offline_grace_s=min_offline_grace_s,
        export_max_days=max(1, _get_int("EXPORT_MAX_DAYS", 93)),
        admin_api_key=admin_api_key,
        admin_auth_mode=admin_auth_mode,  # type: ignore[arg-type]
        enable_scheduler=_get_bool("ENABLE_SCHEDULER", False),
        watchdog_interval_s=max(10, _get_int("WATCHDOG_INTERVAL_S", 300)),
        enable_docs=_get_bool("ENABLE_DOCS", is_dev),
        cors_allow_origins=_get_list("CORS_ALLOW_ORIGINS", ["*"] if is_dev else []),
        max_request_body_bytes=_get_int("MAX_REQUEST_BODY_BYTES", 64_000),
        notifier_kind=notifier_kind,  # type: ignore[arg-type]
        smtp_host=_get_str("SMTP_HOST", "localhost"),
        smtp_port=_get_int("SMTP_PORT", 25),
        smtp_username=_env("SMTP_USERNAME"),
        smtp_password=_env("SMTP_PASSWORD"),
        smtp_starttls=_get_bool("SMTP_STARTTLS", False),
        smtp_timeout_s=_get_float("SMTP_TIMEOUT_S", 20.0),
        alert_webhook_url=alert_webhook_url,
        alert_webhook_kind=alert_webhook_kind,  # type: ignore[arg-type]
        alert_webhook_timeout_s=_get_float("ALERT_WEBHOOK_TIMEOUT_S", 5.0),
    )


settings = load_settings()
