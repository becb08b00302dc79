from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any

# Event flags an alert rule can subscribe to. Any other pipeline status never matches.
EVENT_STATUSES = ("success", "failed", "running", "canceled")

CHANNEL_TYPES = ("telegram", "slack", "discord")

ALL_PROJECTS = "all"


@dataclass(frozen=True)
class PipelineStatusRecord:
    project_id: int
    pipeline_id: int
    status: str
    updated_at: int


@dataclass(frozen=True)
class EventFlags:
    success: bool = False
    failed: bool = False
    running: bool = False
    canceled: bool = False

    @classmethod
    def from_mapping(cls, raw: Any) -> "EventFlags":
        data = raw if isinstance(raw, dict) else {}
        return cls(**{s: bool(data.get(s, False)) for s in EVENT_STATUSES})

    def to_dict(self) -> dict[str, bool]:
        return {s: bool(getattr(self, s)) for s in EVENT_STATUSES}

    def allows(self, status: str) -> bool:
        if status not in EVENT_STATUSES:
            return False
        return bool(getattr(self, status))


@dataclass(frozen=True)
class AlertRule:
    id: str
    name: str
    project_id: str  # numeric project id as text, or "all"
    project_name: str
    channels: tuple[str, ...]
    events: EventFlags
    enabled: bool
    created_at: int
    updated_at: int

    def applies_to(self, project_id: int | str) -> bool:
        if self.project_id == ALL_PROJECTS:
            return True
        return self.project_id == str(project_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "channels": list(self.channels),
            "events": self.events.to_dict(),
            "enabled": self.enabled,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "AlertRule":
        return cls(
            id=str(d["id"]),
            name=str(d.get("name") or ""),
            project_id=str(d.get("project_id") or ALL_PROJECTS),
            project_name=str(d.get("project_name") or ""),
            channels=tuple(str(c) for c in (d.get("channels") or [])),
            events=EventFlags.from_mapping(d.get("events")),
            enabled=bool(d.get("enabled", True)),
            created_at=int(d.get("created_at") or 0),
            updated_at=int(d.get("updated_at") or 0),
        )


@dataclass(frozen=True)
class AlertChannel:
    id: str
    type: str
    enabled: bool
    config: dict[str, Any] = field(default_factory=dict)
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "enabled": self.enabled,
            "config": dict(self.config),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "AlertChannel":
        config = d.get("config")
        return cls(
            id=str(d["id"]),
            type=str(d["type"]),
            enabled=bool(d.get("enabled", False)),
            config=dict(config) if isinstance(config, dict) else {},
            updated_at=int(d.get("updated_at") or 0),
        )


@dataclass(frozen=True)
class NewHistoryEntry:
    project_name: str
    pipeline_id: int
    status: str
    channel: str
    message: str
    sent: bool
    error: str | None = None


@dataclass(frozen=True)
class AlertHistoryEntry:
    id: int
    project_name: str
    pipeline_id: int
    status: str
    channel: str
    message: str
    sent: bool
    error: str | None
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_name": self.project_name,
            "pipeline_id": self.pipeline_id,
            "status": self.status,
            "channel": self.channel,
            "message": self.message,
            "sent": self.sent,
            "error": self.error,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class HistoryPage:
    entries: list[AlertHistoryEntry]
    next_before: int | None


@dataclass(frozen=True)
class HistorySummary:
    total: int
    sent: int
    failed: int
    by_channel: dict[str, int]
    by_status: dict[str, int]


# ---- Row mapping (shared by the SQLite and Postgres adapters) ----


def _loads(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except Exception:
        return default


def rule_from_row(r: Any) -> AlertRule:
    return AlertRule(
        id=str(r["id"]),
        name=str(r["name"]),
        project_id=str(r["project_id"]),
        project_name=str(r["project_name"] or ""),
        channels=tuple(str(c) for c in _loads(r["channels_json"], [])),
        events=EventFlags.from_mapping(_loads(r["events_json"], {})),
        enabled=bool(r["enabled"]),
        created_at=int(r["created_at"]),
        updated_at=int(r["updated_at"]),
    )


def channel_from_row(r: Any) -> AlertChannel:
    config = _loads(r["config_json"], {})
    return AlertChannel(
        id=str(r["id"]),
        type=str(r["type"]),
        enabled=bool(r["enabled"]),
        config=config if isinstance(config, dict) else {},
        updated_at=int(r["updated_at"]),
    )


def history_from_row(r: Any) -> AlertHistoryEntry:
    return AlertHistoryEntry(
        id=int(r["id"]),
        project_name=str(r["project_name"]),
        pipeline_id=int(r["pipeline_id"]),
        status=str(r["status"]),
        channel=str(r["channel"]),
        message=str(r["message"]),
        sent=bool(r["sent"]),
        error=str(r["error"]) if r["error"] is not None else None,
        created_at=int(r["created_at"]),
    )


def rule_update_values(changes: dict[str, Any]) -> dict[str, Any]:
    """Map a partial rule update onto column values (unknown keys are ignored)."""

    values: dict[str, Any] = {}
    if changes.get("name") is not None:
        values["name"] = str(changes["name"])
    if changes.get("project_id") is not None:
        values["project_id"] = str(changes["project_id"])
    if changes.get("project_name") is not None:
        values["project_name"] = str(changes["project_name"])
    if changes.get("channels") is not None:
        values["channels_json"] = json.dumps([str(c) for c in changes["channels"]])
    if changes.get("events") is not None:
        events = changes["events"]
        flags = events if isinstance(events, EventFlags) else EventFlags.from_mapping(events)
        values["events_json"] = json.dumps(flags.to_dict())
    if changes.get("enabled") is not None:
        values["enabled"] = 1 if changes["enabled"] else 0
    return values


# ---- SQLite ----


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pipeline_status (
          project_id INTEGER NOT NULL,
          pipeline_id INTEGER NOT NULL,
          status TEXT NOT NULL,
          updated_at INTEGER NOT NULL,
          PRIMARY KEY (project_id, pipeline_id)
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS alert_rules (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          project_id TEXT NOT NULL,
          project_name TEXT NOT NULL DEFAULT '',
          channels_json TEXT NOT NULL DEFAULT '[]',
          events_json TEXT NOT NULL DEFAULT '{}',
          enabled INTEGER NOT NULL DEFAULT 1,
          created_at INTEGER NOT NULL,
          updated_at INTEGER NOT NULL
        );
        """
    )

    # One channel per type is kept by upsert_channel, not by a constraint.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS alert_channels (
          id TEXT PRIMARY KEY,
          type TEXT NOT NULL,
          enabled INTEGER NOT NULL DEFAULT 0,
          config_json TEXT NOT NULL DEFAULT '{}',
          updated_at INTEGER NOT NULL
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS alert_history (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          project_name TEXT NOT NULL,
          pipeline_id INTEGER NOT NULL,
          status TEXT NOT NULL,
          channel TEXT NOT NULL,
          message TEXT NOT NULL,
          sent INTEGER NOT NULL,
          error TEXT,
          created_at INTEGER NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_alert_history_created ON alert_history(created_at)")
    conn.commit()
