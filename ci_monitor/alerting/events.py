from __future__ import annotations

from dataclasses import dataclass
from typing import Any

PIPELINE_KIND = "pipeline"


class InvalidWebhookPayload(ValueError):
    """A pipeline webhook body is missing fields the pipeline needs."""


@dataclass(frozen=True)
class PipelineEvent:
    project_id: int
    project_name: str
    project_url: str
    pipeline_id: int
    status: str
    ref: str
    sha: str
    web_url: str
    created_at: str | None
    finished_at: str | None
    duration: int | None
    user_name: str
    user_username: str


def is_pipeline_event(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get("object_kind") == PIPELINE_KIND


def _first_nonempty_str(*values: Any) -> str:
    for value in values:
        if value is None:
            continue
        s = str(value).strip()
        if s:
            return s
    return ""


def _require_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise InvalidWebhookPayload(f"Invalid pipeline payload: {field_name} must be an integer")
    try:
        return int(str(value).strip())
    except Exception as e:
        raise InvalidWebhookPayload(f"Invalid pipeline payload: {field_name} must be an integer") from e


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except Exception:
        return None


def parse_pipeline_event(payload: dict[str, Any]) -> PipelineEvent:
    """Extract the fields the alert pipeline uses from a GitLab pipeline hook body."""

    attrs = payload.get("object_attributes")
    if not isinstance(attrs, dict):
        raise InvalidWebhookPayload("Invalid pipeline payload: missing `object_attributes` object")
    project = payload.get("project")
    if not isinstance(project, dict):
        raise InvalidWebhookPayload("Invalid pipeline payload: missing `project` object")
    user = payload.get("user") if isinstance(payload.get("user"), dict) else {}

    status = _first_nonempty_str(attrs.get("status")).lower()
    if not status:
        raise InvalidWebhookPayload("Invalid pipeline payload: object_attributes.status is required")

    return PipelineEvent(
        project_id=_require_int(project.get("id"), "project.id"),
        project_name=_first_nonempty_str(project.get("name"), project.get("path_with_namespace")) or "Unknown",
        project_url=_first_nonempty_str(project.get("web_url")),
        pipeline_id=_require_int(attrs.get("id"), "object_attributes.id"),
        status=status,
        ref=_first_nonempty_str(attrs.get("ref")),
        sha=_first_nonempty_str(attrs.get("sha")),
        web_url=_first_nonempty_str(attrs.get("web_url"), project.get("web_url")),
        created_at=_first_nonempty_str(attrs.get("created_at")) or None,
        finished_at=_first_nonempty_str(attrs.get("finished_at")) or None,
        duration=_optional_int(attrs.get("duration")),
        user_name=_first_nonempty_str(user.get("name"), user.get("username")) or "Unknown",
        user_username=_first_nonempty_str(user.get("username")),
    )
