from __future__ import annotations

import json
import time
import uuid
from importlib import import_module
from typing import Any

from ..storage import (
    AlertChannel,
    AlertHistoryEntry,
    AlertRule,
    EventFlags,
    HistoryPage,
    HistorySummary,
    NewHistoryEntry,
    PipelineStatusRecord,
    channel_from_row,
    history_from_row,
    rule_from_row,
    rule_update_values,
)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_status (
  project_id BIGINT NOT NULL,
  pipeline_id BIGINT NOT NULL,
  status TEXT NOT NULL,
  updated_at BIGINT NOT NULL,
  PRIMARY KEY (project_id, pipeline_id)
);

CREATE TABLE IF NOT EXISTS alert_rules (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  project_id TEXT NOT NULL,
  project_name TEXT NOT NULL DEFAULT '',
  channels_json TEXT NOT NULL DEFAULT '[]',
  events_json TEXT NOT NULL DEFAULT '{}',
  enabled BOOLEAN NOT NULL DEFAULT TRUE,
  created_at BIGINT NOT NULL,
  updated_at BIGINT NOT NULL
);

CREATE TABLE IF NOT EXISTS alert_channels (
  id TEXT PRIMARY KEY,
  type TEXT NOT NULL,
  enabled BOOLEAN NOT NULL DEFAULT FALSE,
  config_json TEXT NOT NULL DEFAULT '{}',
  updated_at BIGINT NOT NULL
);

CREATE TABLE IF NOT EXISTS alert_history (
  id BIGSERIAL PRIMARY KEY,
  project_name TEXT NOT NULL,
  pipeline_id BIGINT NOT NULL,
  status TEXT NOT NULL,
  channel TEXT NOT NULL,
  message TEXT NOT NULL,
  sent BOOLEAN NOT NULL,
  error TEXT,
  created_at BIGINT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_alert_history_created ON alert_history(created_at);
"""

_RULE_COLUMNS = "id, name, project_id, project_name, channels_json, events_json, enabled, created_at, updated_at"
_CHANNEL_COLUMNS = "id, type, enabled, config_json, updated_at"
_HISTORY_COLUMNS = "id, project_name, pipeline_id, status, channel, message, sent, error, created_at"


class PostgresRepository:
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url

    def _connect(self):
        try:
            psycopg = import_module("psycopg")
            rows_mod = import_module("psycopg.rows")
            dict_row = getattr(rows_mod, "dict_row")
        except Exception as e:  # pragma: no cover
            raise RuntimeError("PostgresRepository requires psycopg. Install with `pip install .[postgres]`.") from e
        return psycopg.connect(self.database_url, row_factory=dict_row)

    def init_schema(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_SCHEMA_SQL)
            conn.commit()

    def ping(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()

    # ---- Pipeline status ----

    def get_pipeline_status(self, project_id: int, pipeline_id: int) -> PipelineStatusRecord | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT project_id, pipeline_id, status, updated_at FROM pipeline_status "
                    "WHERE project_id = %s AND pipeline_id = %s",
                    (int(project_id), int(pipeline_id)),
                )
                r = cur.fetchone()
        if r is None:
            return None
        return PipelineStatusRecord(
            project_id=int(r["project_id"]),
            pipeline_id=int(r["pipeline_id"]),
            status=str(r["status"]),
            updated_at=int(r["updated_at"]),
        )

    def upsert_pipeline_status(self, project_id: int, pipeline_id: int, status: str) -> PipelineStatusRecord:
        now = int(time.time())
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO pipeline_status (project_id, pipeline_id, status, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (project_id, pipeline_id) DO UPDATE SET
                      status = EXCLUDED.status,
                      updated_at = EXCLUDED.updated_at
                    """,
                    (int(project_id), int(pipeline_id), status, now),
                )
            conn.commit()
        return PipelineStatusRecord(
            project_id=int(project_id), pipeline_id=int(pipeline_id), status=status, updated_at=now
        )

    # ---- Rules ----

    def list_rules(self, *, enabled_only: bool = False) -> list[AlertRule]:
        sql = f"SELECT {_RULE_COLUMNS} FROM alert_rules"
        if enabled_only:
            sql += " WHERE enabled"
        sql += " ORDER BY created_at DESC, id"
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall()
        return [rule_from_row(r) for r in rows]

    def get_rule(self, rule_id: str) -> AlertRule | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_RULE_COLUMNS} FROM alert_rules WHERE id = %s", (rule_id,))
                r = cur.fetchone()
        return rule_from_row(r) if r is not None else None

    def create_rule(
        self,
        *,
        name: str,
        project_id: str,
        project_name: str,
        channels: list[str],
        events: EventFlags,
        enabled: bool = True,
    ) -> AlertRule:
        now = int(time.time())
        rule = AlertRule(
            id=uuid.uuid4().hex,
            name=name,
            project_id=str(project_id),
            project_name=project_name,
            channels=tuple(str(c) for c in channels),
            events=events,
            enabled=bool(enabled),
            created_at=now,
            updated_at=now,
        )
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO alert_rules ({_RULE_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)",
                    (
                        rule.id,
                        rule.name,
                        rule.project_id,
                        rule.project_name,
                        json.dumps(list(rule.channels)),
                        json.dumps(rule.events.to_dict()),
                        rule.enabled,
                        rule.created_at,
                        rule.updated_at,
                    ),
                )
            conn.commit()
        return rule

    def update_rule(self, rule_id: str, changes: dict[str, Any]) -> AlertRule | None:
        values = rule_update_values(changes)
        if "enabled" in values:
            values["enabled"] = bool(values["enabled"])
        values["updated_at"] = int(time.time())
        assignments = ", ".join(f"{col} = %s" for col in values)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"UPDATE alert_rules SET {assignments} WHERE id = %s", (*values.values(), rule_id))
                updated = cur.rowcount
            conn.commit()
        if not updated:
            return None
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: str) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM alert_rules WHERE id = %s", (rule_id,))
                deleted = cur.rowcount
            conn.commit()
        return deleted > 0

    # ---- Channels ----

    def list_channels(self, *, enabled_only: bool = False) -> list[AlertChannel]:
        sql = f"SELECT {_CHANNEL_COLUMNS} FROM alert_channels"
        if enabled_only:
            sql += " WHERE enabled"
        sql += " ORDER BY updated_at DESC, id"
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall()
        return [channel_from_row(r) for r in rows]

    def get_channel_by_type(self, channel_type: str) -> AlertChannel | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_CHANNEL_COLUMNS} FROM alert_channels WHERE type = %s ORDER BY updated_at DESC LIMIT 1",
                    (channel_type,),
                )
                r = cur.fetchone()
        return channel_from_row(r) if r is not None else None

    def upsert_channel(self, channel_type: str, *, enabled: bool, config: dict[str, Any]) -> AlertChannel:
        now = int(time.time())
        existing = self.get_channel_by_type(channel_type)
        config_json = json.dumps(config, ensure_ascii=False)
        with self._connect() as conn:
            with conn.cursor() as cur:
                if existing is not None:
                    cur.execute(
                        "UPDATE alert_channels SET enabled = %s, config_json = %s, updated_at = %s WHERE id = %s",
                        (bool(enabled), config_json, now, existing.id),
                    )
                    channel_id = existing.id
                else:
                    channel_id = uuid.uuid4().hex
                    cur.execute(
                        f"INSERT INTO alert_channels ({_CHANNEL_COLUMNS}) VALUES (%s, %s, %s, %s, %s)",
                        (channel_id, channel_type, bool(enabled), config_json, now),
                    )
            conn.commit()
        return AlertChannel(id=channel_id, type=channel_type, enabled=bool(enabled), config=dict(config), updated_at=now)

    def delete_channel(self, channel_type: str) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM alert_channels WHERE type = %s", (channel_type,))
                deleted = cur.rowcount
            conn.commit()
        return deleted > 0

    # ---- History ----

    def add_history(self, entry: NewHistoryEntry) -> AlertHistoryEntry:
        now = int(time.time())
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO alert_history (project_name, pipeline_id, status, channel, message, sent, error, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        entry.project_name,
                        int(entry.pipeline_id),
                        entry.status,
                        entry.channel,
                        entry.message,
                        bool(entry.sent),
                        entry.error,
                        now,
                    ),
                )
                new_id = int(cur.fetchone()["id"])
            conn.commit()
        return AlertHistoryEntry(
            id=new_id,
            project_name=entry.project_name,
            pipeline_id=int(entry.pipeline_id),
            status=entry.status,
            channel=entry.channel,
            message=entry.message,
            sent=bool(entry.sent),
            error=entry.error,
            created_at=now,
        )

    def list_history(
        self,
        *,
        limit: int = 100,
        before: int | None = None,
        status: str | None = None,
        channel: str | None = None,
        search: str | None = None,
    ) -> HistoryPage:
        clauses: list[str] = []
        params: list[Any] = []
        if before is not None:
            clauses.append("id < %s")
            params.append(int(before))
        if status:
            clauses.append("status = %s")
            params.append(status)
        if channel:
            clauses.append("channel = %s")
            params.append(channel)
        if search:
            clauses.append("project_name ILIKE %s")
            params.append(f"%{search}%")

        limit = max(1, int(limit))
        sql = f"SELECT {_HISTORY_COLUMNS} FROM alert_history"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id DESC LIMIT %s"
        params.append(limit + 1)

        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        entries = [history_from_row(r) for r in rows[:limit]]
        next_before = entries[-1].id if len(rows) > limit and entries else None
        return HistoryPage(entries=entries, next_before=next_before)

    def history_summary(self) -> HistorySummary:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(1) AS n, COUNT(1) FILTER (WHERE sent) AS sent FROM alert_history")
                r = cur.fetchone()
                total = int(r["n"])
                sent = int(r["sent"])
                cur.execute("SELECT channel, COUNT(1) AS n FROM alert_history GROUP BY channel")
                by_channel = {str(x["channel"]): int(x["n"]) for x in cur.fetchall()}
                cur.execute("SELECT status, COUNT(1) AS n FROM alert_history GROUP BY status")
                by_status = {str(x["status"]): int(x["n"]) for x in cur.fetchall()}
        return HistorySummary(total=total, sent=sent, failed=total - sent, by_channel=by_channel, by_status=by_status)

    def delete_history(self, entry_id: int) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM alert_history WHERE id = %s", (int(entry_id),))
                deleted = cur.rowcount
            conn.commit()
        return deleted > 0

    def clear_history(self) -> int:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM alert_history")
                deleted = cur.rowcount
            conn.commit()
        return int(deleted)
