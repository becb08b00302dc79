from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Literal

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .alerting.channels.base import ChannelError, check_webhook_url
from .alerting.dispatcher import ChannelDispatcher
from .alerting.pipeline import AlertPipeline
from .alerting.rules import RuleMatcher, invalidate_channels, invalidate_rules
from .auth import AuthContext, AuthError, effective_auth_mode, require_role, resolve_auth_context, webhook_token_valid
from .cache import build_cache
from .config import settings
from .gitlab_client import GitLabApiError, GitLabClient
from .observability import (
    Timer,
    configure_logging,
    log_event,
    log_http_request,
    parse_cloud_trace_context,
    redact_config,
    request_id_from_headers,
)
from .otel import otel_enabled, record_http_request_metric, setup_otel
from .storage import CHANNEL_TYPES, AlertChannel, EventFlags
from .storage_repo import AlertRepository, get_repository
from .throttle import ApiThrottler, QueueClearedError

_CSP_STRICT = "default-src 'none'; object-src 'none'; base-uri 'none'; frame-ancestors 'none'"

_CSP_SWAGGER = (
    # Swagger UI needs inline/eval for its bundled scripts/styles.
    "default-src 'self'; img-src 'self' data: https:; connect-src 'self'; "
    "script-src 'self' 'unsafe-inline' 'unsafe-eval' https:; style-src 'self' 'unsafe-inline' https:; "
    "object-src 'none'; base-uri 'self'; frame-ancestors 'none'"
)


def _csp_for_path(path: str) -> str:
    if (path or "").startswith(("/api/swagger", "/api/redoc", "/api/openapi")):
        return _CSP_SWAGGER
    return _CSP_STRICT


def _security_headers(request: Request) -> dict[str, str]:
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "no-referrer",
        "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
        "Content-Security-Policy": _csp_for_path(request.url.path),
    }
    # Only set HSTS when we're actually behind HTTPS.
    if request.headers.get("x-forwarded-proto") == "https":
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    # Responses carry pipeline and channel details; keep them out of shared caches.
    if request.url.path.startswith("/api/") or request.url.path in ("/health", "/ready"):
        headers["Cache-Control"] = "no-store"
        headers["Pragma"] = "no-cache"
    return headers


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the per-process services and close them on shutdown.

    Everything lives on `app.state` so tests can swap a collaborator (for
    example an httpx client with a mock transport) after startup.
    """

    repo = get_repository(sqlite_path=settings.sqlite_path, database_url=settings.database_url)
    repo.init_schema()
    cache = build_cache(settings.redis_url)

    channel_http = httpx.AsyncClient(timeout=settings.channel_timeout_s)
    gitlab_http = httpx.AsyncClient(timeout=settings.gitlab_timeout_s)
    throttler = ApiThrottler(
        max_requests=settings.gitlab_rate_limit_max_requests,
        window_s=settings.gitlab_rate_limit_window_s,
        retry_after_s=settings.gitlab_rate_limit_retry_after_s,
    )

    app.state.repo = repo
    app.state.cache = cache
    app.state.throttler = throttler
    app.state.gitlab = GitLabClient(settings.gitlab_url, settings.gitlab_token, throttler, gitlab_http)
    app.state.matcher = RuleMatcher(repo, cache, ttl_s=settings.alert_cache_ttl_s)
    app.state.dispatcher = ChannelDispatcher(repo, channel_http)

    try:
        yield
    finally:
        await throttler.aclose()
        await gitlab_http.aclose()
        await channel_http.aclose()
        closer = getattr(cache, "aclose", None)
        if closer is not None:
            await closer()


app = FastAPI(
    title="GitLab CI Monitor",
    version=settings.version,
    docs_url="/api/swagger",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

configure_logging()
setup_otel(app)

logger = logging.getLogger("cimon")


def _log_auth_denied(*, request_id: str, path: str, status: int, reason: str) -> None:
    """Emit a dedicated auth-denied event for security/audit filtering."""

    log_event(
        "auth.denied",
        severity="WARNING",
        logger=logger,
        request_id=request_id,
        path=path,
        status=int(status),
        reason=reason,
        auth_mode=effective_auth_mode(),
    )


def _auth_denied_reason_from_response(request: Request, status: int, response: Any) -> str:
    state_reason = getattr(request.state, "auth_denied_reason", None)
    if isinstance(state_reason, str) and state_reason.strip():
        return state_reason.strip()

    body = getattr(response, "body", None)
    if isinstance(body, (bytes, bytearray)) and body:
        try:
            detail = json.loads(body.decode("utf-8")).get("detail")
        except (ValueError, AttributeError):
            detail = None
        if isinstance(detail, str) and detail.strip():
            return detail.strip()

    return "Unauthorized" if int(status) == 401 else "Forbidden"


@app.middleware("http")
async def _request_middleware(request: Request, call_next):
    """Attach request ID, resolve auth, emit structured logs."""

    timer = Timer()
    lowered = {k.lower(): v for k, v in request.headers.items()}
    rid = request_id_from_headers(lowered)
    request.state.request_id = rid

    xff = request.headers.get("x-forwarded-for")
    remote_ip = (xff.split(",")[0].strip() if xff else None) or (request.client.host if request.client else "unknown")
    user_agent = request.headers.get("user-agent", "")
    trace_id, span_id = parse_cloud_trace_context(lowered)

    def _finish(status: int, *, error_type: str | None = None, severity: str = "INFO") -> None:
        latency_ms = timer.ms()
        record_http_request_metric(
            method=request.method,
            path=request.url.path,
            status_code=status,
            latency_ms=latency_ms,
        )
        log_http_request(
            request_id=rid,
            method=request.method,
            url=str(request.url),
            path=request.url.path,
            status=status,
            latency_ms=latency_ms,
            remote_ip=remote_ip,
            user_agent=user_agent,
            trace_id=trace_id,
            span_id=span_id,
            error_type=error_type,
            severity=severity,
        )

    try:
        auth_ctx = resolve_auth_context(request)
    except AuthError as ae:
        _log_auth_denied(request_id=rid, path=request.url.path, status=ae.status_code, reason=ae.detail)
        _finish(int(ae.status_code), error_type="AuthError", severity="WARNING")
        return JSONResponse(
            status_code=ae.status_code,
            content={"detail": ae.detail},
            headers={"X-Request-Id": rid, **_security_headers(request)},
        )
    request.state.auth_context = auth_ctx
    request.state.principal = auth_ctx.principal
    request.state.role = auth_ctx.role

    try:
        response = await call_next(request)
    except Exception as e:
        _finish(500, error_type=type(e).__name__, severity="ERROR")
        raise

    response.headers["X-Request-Id"] = rid
    for k, v in _security_headers(request).items():
        response.headers.setdefault(k, v)

    status_code = int(response.status_code)
    if status_code in {401, 403}:
        _log_auth_denied(
            request_id=rid,
            path=request.url.path,
            status=status_code,
            reason=_auth_denied_reason_from_response(request, status_code, response),
        )
    _finish(status_code, severity="INFO" if status_code < 500 else "ERROR")
    return response


def _error_headers(request: Request) -> dict[str, str]:
    headers = _security_headers(request)
    rid = getattr(request.state, "request_id", None)
    if rid:
        headers["X-Request-Id"] = rid
    return headers


@app.exception_handler(HTTPException)
async def _http_exception_handler(request: Request, exc: HTTPException):
    """Ensure error responses include X-Request-Id and basic security headers."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=_error_headers(request))


@app.exception_handler(GitLabApiError)
async def _gitlab_error_handler(request: Request, exc: GitLabApiError):
    logger.warning("GitLab API error status=%s detail=%s", exc.status_code, exc.detail)
    return JSONResponse(
        status_code=502,
        content={"detail": f"GitLab API error: {exc.detail}", "gitlab_status": exc.status_code},
        headers=_error_headers(request),
    )


@app.exception_handler(QueueClearedError)
async def _queue_cleared_handler(request: Request, exc: QueueClearedError):
    return JSONResponse(status_code=503, content={"detail": str(exc)}, headers=_error_headers(request))


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    """Return a safe JSON 500 (and keep request correlation + security headers)."""
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"}, headers=_error_headers(request))


# ---- API models ----
class EventFlagsModel(BaseModel):
    success: bool = False
    failed: bool = False
    running: bool = False
    canceled: bool = False


class RuleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Rule name")
    project_id: str = Field("all", description='GitLab project id, or "all"')
    project_name: str = Field("", description="Display name of the project")
    channels: list[str] = Field(default_factory=list, description="Channel types: telegram|slack|discord")
    events: EventFlagsModel = Field(default_factory=EventFlagsModel)
    enabled: bool = True


class RuleUpdateRequest(BaseModel):
    id: str = Field(..., min_length=1)
    name: str | None = Field(None, min_length=1)
    project_id: str | None = None
    project_name: str | None = None
    channels: list[str] | None = None
    events: EventFlagsModel | None = None
    enabled: bool | None = None


class ChannelUpsertRequest(BaseModel):
    type: str = Field(..., description="telegram|slack|discord")
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)


class ChannelTestRequest(BaseModel):
    type: str
    config: dict[str, Any] | None = Field(None, description="Unsaved config to try; defaults to the stored one")


def _repo(request: Request) -> AlertRepository:
    return request.app.state.repo


def _check_channel_type(channel_type: str) -> str:
    t = (channel_type or "").strip().lower()
    if t not in CHANNEL_TYPES:
        raise HTTPException(status_code=400, detail=f"Unsupported channel type: {channel_type}")
    return t


def _check_channel_list(channels: list[str]) -> list[str]:
    return [_check_channel_type(c) for c in channels]


def _check_project_id(project_id: str) -> str:
    # Stored in canonical form ("042" -> "42") so it compares equal to str(event.project_id).
    p = project_id.strip()
    if p == "all":
        return p
    if p.isascii() and p.isdigit():
        return str(int(p))
    raise HTTPException(status_code=400, detail='project_id must be a numeric GitLab project id or "all"')


def _check_channel_config(channel_type: str, config: dict[str, Any]) -> dict[str, Any]:
    if channel_type in ("slack", "discord") and config.get("webhookUrl") not in (None, ""):
        try:
            check_webhook_url(config["webhookUrl"], channel_type)
        except ChannelError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
    return config


# ---- Health ----
@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/ready")
def ready(request: Request) -> dict[str, object]:
    """Readiness check. Returns 503 when the datastore cannot be reached."""

    try:
        _repo(request).ping()
    except Exception as e:
        logger.exception("Readiness check failed")
        raise HTTPException(status_code=503, detail=f"not ready: {e}") from e

    return {
        "ready": True,
        "version": app.version,
        "gitlab_enabled": settings.gitlab_enabled,
        "otel_enabled": otel_enabled(),
        "throttle": request.app.state.throttler.status().to_dict(),
    }


# ---- Webhook ----
@app.get("/api/webhook/gitlab")
def webhook_info() -> dict[str, object]:
    return {
        "message": "GitLab webhook endpoint is ready",
        "events": ["pipeline"],
        "secret_required": bool(settings.gitlab_webhook_secret),
    }


@app.post("/api/webhook/gitlab")
async def webhook_gitlab(request: Request) -> JSONResponse:
    """Receive a GitLab webhook delivery and fan out pipeline alerts."""

    if not webhook_token_valid(request):
        log_event("webhook.rejected", severity="WARNING", logger=logger, reason="invalid token")
        return JSONResponse(status_code=401, content={"error": "Invalid webhook token"})

    raw = await request.body()
    try:
        payload = json.loads(raw.decode("utf-8") or "null")
    except (UnicodeDecodeError, ValueError):
        log_event("webhook.invalid", severity="WARNING", logger=logger, error="body is not valid JSON")
        return JSONResponse(status_code=200, content={"message": "Invalid JSON body"})

    state = request.app.state
    pipeline = AlertPipeline(state.repo, state.matcher, state.dispatcher)
    try:
        outcome = await pipeline.process(payload)
    except Exception:
        logger.exception("Webhook processing failed")
        return JSONResponse(status_code=500, content={"error": "Failed to process webhook"})

    return JSONResponse(status_code=200, content=outcome.to_dict())


# ---- Rules ----
@app.get("/api/rules")
def rules_list(request: Request, _auth: AuthContext = Depends(require_role("reader"))) -> dict[str, Any]:
    return {"rules": [r.to_dict() for r in _repo(request).list_rules()]}


@app.post("/api/rules", status_code=201)
async def rules_create(
    req: RuleCreateRequest,
    request: Request,
    _auth: AuthContext = Depends(require_role("admin")),
) -> dict[str, Any]:
    rule = await asyncio.to_thread(
        _repo(request).create_rule,
        name=req.name.strip(),
        project_id=_check_project_id(req.project_id),
        project_name=req.project_name.strip(),
        channels=_check_channel_list(req.channels),
        events=EventFlags.from_mapping(req.events.model_dump()),
        enabled=req.enabled,
    )
    await invalidate_rules(request.app.state.cache)
    return {"rule": rule.to_dict()}


@app.put("/api/rules")
async def rules_update(
    req: RuleUpdateRequest,
    request: Request,
    _auth: AuthContext = Depends(require_role("admin")),
) -> dict[str, Any]:
    changes = req.model_dump(exclude={"id"}, exclude_none=True)
    if "project_id" in changes:
        changes["project_id"] = _check_project_id(changes["project_id"])
    if "channels" in changes:
        changes["channels"] = _check_channel_list(changes["channels"])

    rule = await asyncio.to_thread(_repo(request).update_rule, req.id, changes)
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    await invalidate_rules(request.app.state.cache)
    return {"rule": rule.to_dict()}


@app.delete("/api/rules/{rule_id}")
async def rules_delete(
    rule_id: str,
    request: Request,
    _auth: AuthContext = Depends(require_role("admin")),
) -> dict[str, Any]:
    if not await asyncio.to_thread(_repo(request).delete_rule, rule_id):
        raise HTTPException(status_code=404, detail="Rule not found")
    await invalidate_rules(request.app.state.cache)
    return {"deleted": True, "id": rule_id}


# ---- Channels ----
def _channel_out(channel: AlertChannel) -> dict[str, Any]:
    out = channel.to_dict()
    out["config"] = redact_config(channel.config)
    return out


@app.get("/api/channels")
def channels_list(request: Request, _auth: AuthContext = Depends(require_role("reader"))) -> dict[str, Any]:
    return {"channels": [_channel_out(c) for c in _repo(request).list_channels()]}


@app.post("/api/channels")
async def channels_upsert(
    req: ChannelUpsertRequest,
    request: Request,
    _auth: AuthContext = Depends(require_role("admin")),
) -> dict[str, Any]:
    channel_type = _check_channel_type(req.type)
    config = _check_channel_config(channel_type, req.config)
    channel = await asyncio.to_thread(
        _repo(request).upsert_channel, channel_type, enabled=req.enabled, config=config
    )
    await invalidate_channels(request.app.state.cache)
    log_event("channel.saved", logger=logger, channel=channel_type, enabled=channel.enabled)
    return {"channel": _channel_out(channel)}


@app.delete("/api/channels/{channel_type}")
async def channels_delete(
    channel_type: str,
    request: Request,
    _auth: AuthContext = Depends(require_role("admin")),
) -> dict[str, Any]:
    t = _check_channel_type(channel_type)
    if not await asyncio.to_thread(_repo(request).delete_channel, t):
        raise HTTPException(status_code=404, detail="Channel not found")
    await invalidate_channels(request.app.state.cache)
    return {"deleted": True, "type": t}


@app.post("/api/channels/test")
async def channels_test(
    req: ChannelTestRequest,
    request: Request,
    _auth: AuthContext = Depends(require_role("admin")),
) -> dict[str, Any]:
    """Send a sample alert through one channel. Nothing is written to history."""

    t = _check_channel_type(req.type)
    if req.config is not None:
        channel = AlertChannel(id="test", type=t, enabled=True, config=req.config)
    else:
        stored = await asyncio.to_thread(_repo(request).get_channel_by_type, t)
        if stored is None:
            raise HTTPException(status_code=404, detail="Channel not found")
        channel = stored

    result = await request.app.state.dispatcher.send_test(channel)
    return {"sent": result.sent, "error": result.error}


# ---- History ----
@app.get("/api/history")
def history_list(
    request: Request,
    limit: int = Query(100, ge=1),
    before: int | None = Query(None, ge=1, description="Return entries older than this id"),
    status: str | None = None,
    channel: str | None = None,
    search: str | None = Query(None, description="Case-insensitive match on project name"),
    _auth: AuthContext = Depends(require_role("reader")),
) -> dict[str, Any]:
    page = _repo(request).list_history(
        limit=min(limit, settings.history_max_limit),
        before=before,
        status=(status or "").strip().lower() or None,
        channel=(channel or "").strip().lower() or None,
        search=(search or "").strip() or None,
    )
    return {"history": [e.to_dict() for e in page.entries], "next_before": page.next_before}


@app.get("/api/history/summary")
def history_summary(request: Request, _auth: AuthContext = Depends(require_role("reader"))) -> dict[str, Any]:
    s = _repo(request).history_summary()
    return {
        "total": s.total,
        "sent": s.sent,
        "failed": s.failed,
        "by_channel": s.by_channel,
        "by_status": s.by_status,
    }


@app.delete("/api/history/{entry_id}")
def history_delete(
    entry_id: int,
    request: Request,
    _auth: AuthContext = Depends(require_role("admin")),
) -> dict[str, Any]:
    if not _repo(request).delete_history(entry_id):
        raise HTTPException(status_code=404, detail="History entry not found")
    return {"deleted": True, "id": entry_id}


@app.delete("/api/history")
def history_clear(request: Request, _auth: AuthContext = Depends(require_role("admin"))) -> dict[str, Any]:
    return {"deleted": _repo(request).clear_history()}


# ---- Throttle ----
@app.get("/api/throttle/status")
def throttle_status(request: Request, _auth: AuthContext = Depends(require_role("reader"))) -> dict[str, Any]:
    return request.app.state.throttler.status().to_dict()


@app.post("/api/throttle/clear")
def throttle_clear(request: Request, _auth: AuthContext = Depends(require_role("admin"))) -> dict[str, Any]:
    return {"cleared": request.app.state.throttler.clear_queue()}


# ---- GitLab (throttled) ----
def _gitlab(request: Request) -> GitLabClient:
    if not settings.gitlab_enabled:
        raise HTTPException(status_code=503, detail="GITLAB_TOKEN is not configured")
    return request.app.state.gitlab


@app.get("/api/gitlab/connection")
async def gitlab_connection(request: Request, _auth: AuthContext = Depends(require_role("reader"))) -> dict[str, Any]:
    user = await _gitlab(request).check_connection()
    return {"connected": True, "username": user.get("username") if isinstance(user, dict) else None}


@app.get("/api/gitlab/projects")
async def gitlab_projects(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    _auth: AuthContext = Depends(require_role("reader")),
) -> dict[str, Any]:
    projects = await _gitlab(request).list_projects(page=page, per_page=per_page)
    return {"projects": projects}


@app.get("/api/gitlab/projects/{project_id}/pipelines")
async def gitlab_pipelines(
    project_id: int,
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    _auth: AuthContext = Depends(require_role("reader")),
) -> dict[str, Any]:
    pipelines = await _gitlab(request).list_pipelines(project_id, page=page, per_page=per_page)
    return {"pipelines": pipelines}


@app.get("/api/gitlab/projects/{project_id}/pipelines/{pipeline_id}")
async def gitlab_pipeline_detail(
    project_id: int,
    pipeline_id: int,
    request: Request,
    _auth: AuthContext = Depends(require_role("reader")),
) -> dict[str, Any]:
    client = _gitlab(request)
    pipeline = await client.get_pipeline(project_id, pipeline_id)
    jobs = await client.list_pipeline_jobs(project_id, pipeline_id)
    return {"pipeline": pipeline, "jobs": jobs}


@app.post("/api/gitlab/projects/{project_id}/pipelines/{pipeline_id}/{action}")
async def gitlab_pipeline_action(
    project_id: int,
    pipeline_id: int,
    action: Literal["retry", "cancel"],
    request: Request,
    _auth: AuthContext = Depends(require_role("admin")),
) -> dict[str, Any]:
    client = _gitlab(request)
    if action == "retry":
        pipeline = await client.retry_pipeline(project_id, pipeline_id)
    else:
        pipeline = await client.cancel_pipeline(project_id, pipeline_id)
    log_event("gitlab.pipeline_action", logger=logger, action=action, project_id=project_id, pipeline_id=pipeline_id)
    return {"pipeline": pipeline}
