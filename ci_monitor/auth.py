from __future__ import annotations

import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from typing import Any, Callable, Literal

from fastapi import HTTPException, Request

from . import config

Role = Literal["reader", "admin"]
AuthMode = Literal["none", "api_key"]

ROLES: tuple[Role, ...] = ("reader", "admin")

# GitLab cannot send X-API-Key; the webhook route checks X-Gitlab-Token instead.
_PUBLIC_PATHS = {"/health", "/ready", "/api/webhook/gitlab"}


@dataclass(frozen=True)
class AuthContext:
    principal: str
    role: Role
    mode: AuthMode
    authenticated: bool

    def allows(self, required: Role) -> bool:
        return ROLES.index(self.role) >= ROLES.index(required)


@dataclass(frozen=True)
class AuthError(Exception):
    status_code: int
    detail: str


def _role(value: Any, default: Role = "reader") -> Role:
    raw = str(value or "").strip().lower()
    return raw if raw in ROLES else default  # type: ignore[return-value]


def _fingerprint(api_key: str) -> str:
    if len(api_key) <= 8:
        return "***"
    return f"{api_key[:4]}...{hashlib.sha256(api_key.encode('utf-8')).hexdigest()[:8]}"


def _keys_from_json(raw: str) -> dict[str, Role]:
    """`{"key": "admin"}`, `{"key": {"role": "admin"}}` or `[{"key": ..., "role": ...}]`."""

    try:
        data = json.loads(raw) if raw.strip() else None
    except ValueError:
        return {}
    if isinstance(data, dict):
        pairs = [(k, v.get("role") if isinstance(v, dict) else v) for k, v in data.items()]
    elif isinstance(data, list):
        pairs = [(item.get("key"), item.get("role")) for item in data if isinstance(item, dict)]
    else:
        return {}
    return {str(k).strip(): _role(r) for k, r in pairs if k is not None and str(k).strip()}


def _keys_from_list(raw: str) -> dict[str, Role]:
    """Comma-separated `key`, `key:role` or `key=role` entries."""

    out: dict[str, Role] = {}
    for entry in (e.strip() for e in raw.split(",")):
        if not entry:
            continue
        key, _, role = entry.replace("=", ":", 1).partition(":")
        if key.strip():
            out[key.strip()] = _role(role) if role else "reader"
    return out


def _keys_from_single(raw: str) -> dict[str, Role]:
    key = raw.strip()
    return {key: "admin"} if key else {}


# First source that yields any key wins.
_KEY_SOURCES: tuple[tuple[str, Callable[[str], dict[str, Role]]], ...] = (
    ("API_KEYS_JSON", _keys_from_json),
    ("API_KEYS", _keys_from_list),
    ("API_KEY", _keys_from_single),
)


def api_key_roles() -> dict[str, Role]:
    for env_name, parse in _KEY_SOURCES:
        keys = parse(os.getenv(env_name, ""))
        if keys:
            return keys
    return {}


def effective_auth_mode() -> AuthMode:
    return "api_key" if config.settings.auth_mode == "api_key" else "none"


def resolve_auth_context(request: Request) -> AuthContext:
    mode = effective_auth_mode()
    if mode == "none":
        return AuthContext(principal="anonymous", role="admin", mode="none", authenticated=False)
    if request.url.path in _PUBLIC_PATHS:
        return AuthContext(principal="anonymous", role="reader", mode=mode, authenticated=False)

    key = (request.headers.get("x-api-key") or "").strip()
    if not key:
        raise AuthError(status_code=401, detail="Missing API key")

    roles = api_key_roles()
    if not roles:
        raise AuthError(status_code=500, detail="AUTH_MODE=api_key requires API_KEYS_JSON, API_KEYS, or API_KEY")
    role = roles.get(key)
    if role is None:
        raise AuthError(status_code=401, detail="Invalid API key")

    return AuthContext(principal=f"api_key:{_fingerprint(key)}", role=role, mode="api_key", authenticated=True)


def _deny(request: Request, status_code: int, detail: str) -> HTTPException:
    request.state.auth_denied_reason = detail
    request.state.auth_denied_status = status_code
    return HTTPException(status_code=status_code, detail=detail)


def require_role(required: Role) -> Callable[[Request], AuthContext]:
    """FastAPI dependency enforcing `required` (admin implies reader)."""

    def _dep(request: Request) -> AuthContext:
        ctx = getattr(request.state, "auth_context", None)
        if not isinstance(ctx, AuthContext):
            try:
                ctx = resolve_auth_context(request)
            except AuthError as e:
                raise _deny(request, int(e.status_code), e.detail) from e
            request.state.auth_context = ctx
            request.state.principal = ctx.principal
            request.state.role = ctx.role

        if not ctx.allows(required):
            raise _deny(request, 403, f"{required} role required")
        return ctx

    return _dep


def webhook_token_valid(request: Request) -> bool:
    """Check `X-Gitlab-Token` against GITLAB_WEBHOOK_SECRET (always valid when unset)."""

    secret = config.settings.gitlab_webhook_secret
    if not secret:
        return True
    supplied = request.headers.get("x-gitlab-token") or ""
    return hmac.compare_digest(supplied.encode("utf-8"), secret.encode("utf-8"))
