from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .version import get_version

# A local .env fills in unset variables only; the process environment always wins.
_ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
if _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH, override=False)


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() != "" else default


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v.strip())
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return float(v.strip())
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


_ALLOWED_AUTH_MODES = {"none", "api_key"}
_ALLOWED_TRACE_EXPORTERS = {"auto", "none", "otlp", "gcp_trace"}


@dataclass(frozen=True)
class Settings:
    """Central configuration for the monitor.

    Everything is read from environment variables once at import time; tests
    reload this module after changing the environment.
    """

    # ---- Build / runtime ----
    version: str
    auth_mode: str  # none | api_key

    # ---- Storage ----
    sqlite_path: str
    database_url: str | None

    # ---- Cache ----
    redis_url: str | None
    alert_cache_ttl_s: int

    # ---- GitLab API ----
    gitlab_url: str
    gitlab_token: str | None
    gitlab_timeout_s: float
    gitlab_webhook_secret: str | None

    # Outbound throttling (GitLab.com allows 300 requests/minute)
    gitlab_rate_limit_max_requests: int
    gitlab_rate_limit_window_s: float
    gitlab_rate_limit_retry_after_s: float

    # ---- Alert channels ----
    channel_timeout_s: float
    history_max_limit: int

    # ---- OpenTelemetry ----
    otel_enabled: bool
    otel_exporter_otlp_endpoint: str | None
    otel_service_name: str
    otel_traces_exporter: str  # auto | none | otlp | gcp_trace

    @property
    def gitlab_enabled(self) -> bool:
        return bool(self.gitlab_token)


def load_settings() -> Settings:
    auth_mode = _env_str("AUTH_MODE", "none").lower().strip()
    if auth_mode not in _ALLOWED_AUTH_MODES:
        auth_mode = "none"

    sqlite_path = _env_str("SQLITE_PATH", "data/monitor.sqlite")
    database_url = os.getenv("DATABASE_URL") or None
    redis_url = os.getenv("REDIS_URL") or None

    # Rules and channels are read on every webhook; keep them cached briefly.
    alert_cache_ttl_s = max(0, _env_int("ALERT_CACHE_TTL_S", 60))

    gitlab_url = _env_str("GITLAB_URL", "https://gitlab.com").rstrip("/")
    gitlab_token = os.getenv("GITLAB_TOKEN") or None
    gitlab_timeout_s = _env_float("GITLAB_TIMEOUT_S", 30.0)
    gitlab_webhook_secret = os.getenv("GITLAB_WEBHOOK_SECRET") or None

    # Conservative default below GitLab.com's 300/min.
    max_requests = max(1, _env_int("GITLAB_RATE_LIMIT_MAX_REQUESTS", 250))
    window_s = _env_float("GITLAB_RATE_LIMIT_WINDOW_S", 60.0)
    if window_s <= 0:
        window_s = 60.0
    retry_after_s = _env_float("GITLAB_RATE_LIMIT_RETRY_AFTER_S", 0.5)
    if retry_after_s <= 0:
        retry_after_s = 0.5

    channel_timeout_s = _env_float("CHANNEL_TIMEOUT_S", 10.0)
    history_max_limit = max(1, _env_int("HISTORY_MAX_LIMIT", 500))

    otel_enabled = _env_bool("OTEL_ENABLED", False)
    otel_exporter_otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None
    otel_service_name = _env_str("OTEL_SERVICE_NAME", "gitlab-ci-monitor")
    otel_traces_exporter = _env_str("OTEL_TRACES_EXPORTER", "auto").lower().strip()
    if otel_traces_exporter not in _ALLOWED_TRACE_EXPORTERS:
        otel_traces_exporter = "auto"

    return Settings(
        version=_env_str("APP_VERSION", get_version()),
        auth_mode=auth_mode,
        sqlite_path=sqlite_path,
        database_url=database_url,
        redis_url=redis_url,
        alert_cache_ttl_s=alert_cache_ttl_s,
        gitlab_url=gitlab_url,
        gitlab_token=gitlab_token,
        gitlab_timeout_s=gitlab_timeout_s,
        gitlab_webhook_secret=gitlab_webhook_secret,
        gitlab_rate_limit_max_requests=max_requests,
        gitlab_rate_limit_window_s=window_s,
        gitlab_rate_limit_retry_after_s=retry_after_s,
        channel_timeout_s=channel_timeout_s,
        history_max_limit=history_max_limit,
        otel_enabled=otel_enabled,
        otel_exporter_otlp_endpoint=otel_exporter_otlp_endpoint,
        otel_service_name=otel_service_name,
        otel_traces_exporter=otel_traces_exporter,
    )


settings = load_settings()
