from __future__ import annotations

import json
import logging
import os
import time
import uuid
from typing import Any, Mapping, Optional, Tuple

LOGGER_NAME = "cimon"

# Matched against lowercased config keys; channel configs hold bot tokens and webhook URLs.
_SECRET_KEY_FRAGMENTS = ("token", "secret", "password", "api_key", "apikey", "authorization", "webhook")


def configure_logging() -> None:
    """Send everything under the `cimon` logger to stderr as one JSON object per line.

    The logger does not propagate, so Uvicorn's own logging config leaves the
    format alone. Calling this again replaces the handler instead of stacking.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper().strip(), logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.handlers[:] = [handler]
    logger.propagate = False


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAME}.{name}" if name else LOGGER_NAME)


def _emit(logger: logging.Logger, severity: str, payload: dict[str, Any]) -> None:
    level = getattr(logging, severity.upper(), logging.INFO)
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))


def redact_config(value: Any, *, key: str | None = None) -> Any:
    """Mask channel secrets (bot tokens, webhook URLs) before they leave the process."""

    if key is not None and any(f in key.strip().lower() for f in _SECRET_KEY_FRAGMENTS):
        return "[redacted]"
    if isinstance(value, dict):
        return {str(k): redact_config(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, list):
        return [redact_config(v) for v in value]
    return value


def log_event(event: str, *, severity: str = "INFO", logger: logging.Logger | None = None, **fields: Any) -> None:
    """Emit one structured domain event (webhook, dispatch, throttle). None-valued fields are dropped."""

    payload: dict[str, Any] = {"severity": severity, "event": event}
    payload.update({k: v for k, v in fields.items() if v is not None})
    _emit(logger or logging.getLogger(LOGGER_NAME), severity, payload)


def parse_cloud_trace_context(headers: Mapping[str, str]) -> Tuple[Optional[str], Optional[str]]:
    """Split `X-Cloud-Trace-Context: TRACE_ID/SPAN_ID;o=1` into (trace_id, span_id)."""

    raw = (headers.get("x-cloud-trace-context") or "").strip()
    if not raw:
        return None, None
    trace_id, _, rest = raw.partition("/")
    span_id = rest.split(";", 1)[0].strip()
    return trace_id.strip() or None, span_id or None


def _trace_fields(trace_id: Optional[str], span_id: Optional[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    project = (os.getenv("GOOGLE_CLOUD_PROJECT") or os.getenv("GCP_PROJECT") or "").strip()
    if trace_id and project:
        out["logging.googleapis.com/trace"] = f"projects/{project}/traces/{trace_id}"
    if span_id:
        out["logging.googleapis.com/spanId"] = span_id
    return out


def request_id_from_headers(headers: Mapping[str, str]) -> str:
    """X-Request-Id, else GitLab's X-Gitlab-Event-UUID, else a fresh UUID4."""

    for name in ("x-request-id", "x-gitlab-event-uuid"):
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return str(uuid.uuid4())


def log_http_request(
    *,
    request_id: str,
    method: str,
    url: str,
    path: str,
    status: int,
    latency_ms: float,
    remote_ip: str,
    user_agent: str,
    trace_id: Optional[str] = None,
    span_id: Optional[str] = None,
    error_type: Optional[str] = None,
    severity: str = "INFO",
) -> None:
    payload: dict[str, Any] = {
        "severity": severity,
        "message": "http_request",
        "service": os.getenv("K_SERVICE", "gitlab-ci-monitor"),
        "request_id": request_id,
        "path": path,
        "latency_ms": round(latency_ms, 2),
        "httpRequest": {
            "requestMethod": method,
            "requestUrl": url,
            "status": status,
            "latency": f"{latency_ms / 1000.0:.3f}s",
            "remoteIp": remote_ip,
            "userAgent": user_agent,
        },
    }
    if error_type:
        payload["error_type"] = error_type
    payload.update(_trace_fields(trace_id, span_id))
    # Request logs stay at INFO level; severity lives in the payload for log collectors.
    _emit(logging.getLogger(LOGGER_NAME), "INFO", payload)


class Timer:
    def __init__(self) -> None:
        self._t0 = time.perf_counter()

    def ms(self) -> float:
        return (time.perf_counter() - self._t0) * 1000.0
