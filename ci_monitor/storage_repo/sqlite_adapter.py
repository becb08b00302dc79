from __future__ import annotations

import json
import sqlite3
import time
import uuid
from pathlib import Path
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

_RULE_COLUMNS = "id, name, project_id, project_name, channels_json, events_json, enabled, created_at, updated_at"
_CHANNEL_COLUMNS = "id, type, enabled, config_json, updated_at"
_HISTORY_COLUMNS = "id, project_name, pipeline_id, status, channel, message, sent, error, created_at"


class SQLiteRepository:
    def __init__(self, sqlite_path: str) -> None:
        self.sqlite_path = sqlite_path
        Path(Path(sqlite_path).parent).mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.sqlite_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_schema(self) -> None:
        from ..storage import init_db

        with self._connect() as conn:
            init_db(conn)

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # ---- Pipeline status ----

    def get_pipeline_status(self, project_id: int, pipeline_id: int) -> PipelineStatusRecord | None:
        with self._connect() as conn:
            r = conn.execute(
                "SELECT project_id, pipeline_id, status, updated_at FROM pipeline_status "
                "WHERE project_id=? AND pipeline_id=?",
                (int(project_id), int(pipeline_id)),
            ).fetchone()
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
            conn.execute(
                """
                INSERT INTO pipeline_status (project_id, pipeline_id, status, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(project_id, pipeline_id) DO UPDATE SET
                  status=excluded.status,
                  updated_at=excluded.updated_at
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
            sql += " WHERE enabled=1"
        sql += " ORDER BY created_at DESC, id"
        with self._connect() as conn:
            rows = conn.execute(sql).fetchall()
        return [rule_from_row(r) for r in rows]

    def get_rule(self, rule_id: str) -> AlertRule | None:
        with self._connect() as conn:
            r = conn.execute(f"SELECT {_RULE_COLUMNS} FROM alert_rules WHERE id=?", (rule_id,)).fetchone()
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
            conn.execute(
                f"INSERT INTO alert_rules ({_RULE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    rule.id,
                    rule.name,
                    rule.project_id,
                    rule.project_name,
                    json.dumps(list(rule.channels)),
                    json.dumps(rule.events.to_dict()),
                    1 if rule.enabled else 0,
                    rule.created_at,
                    rule.updated_at,
                ),
            )
            conn.commit()
        return rule

    def update_rule(self, rule_id: str, changes: dict[str, Any]) -> AlertRule | None:
        values = rule_update_values(changes)
        values["updated_at"] = int(time.time())
        assignments = ", ".join(f"{col}=?" for col in values)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE alert_rules SET {assignments} WHERE id=?",
                (*values.values(), rule_id),
            )
            conn.commit()
            if cur.rowcount == 0:
                return None
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM alert_rules WHERE id=?", (rule_id,))
            conn.commit()
        return cur.rowcount > 0

    # ---- Channels ----

    def list_channels(self, *, enabled_only: bool = False) -> list[AlertChannel]:
        sql = f"SELECT {_CHANNEL_COLUMNS} FROM alert_channels"
        if enabled_only:
            sql += " WHERE enabled=1"
        sql += " ORDER BY updated_at DESC, id"
        with self._connect() as conn:
            rows = conn.execute(sql).fetchall()
        return [channel_from_row(r) for r in rows]

    def get_channel_by_type(self, channel_type: str) -> AlertChannel | None:
        with self._connect() as conn:
            r = conn.execute(
                f"SELECT {_CHANNEL_COLUMNS} FROM alert_channels WHERE type=? ORDER BY updated_at DESC LIMIT 1",
                (channel_type,),
            ).fetchone()
        return channel_from_row(r) if r is not None else None

    def upsert_channel(self, channel_type: str, *, enabled: bool, config: dict[str, Any]) -> AlertChannel:
        now = int(time.time())
        existing = self.get_channel_by_type(channel_type)
        config_json = json.dumps(config, ensure_ascii=False)
        with self._connect() as conn:
            if existing is not None:
                conn.execute(
                    "UPDATE alert_channels SET enabled=?, config_json=?, updated_at=? WHERE id=?",
                    (1 if enabled else 0, config_json, now, existing.id),
                )
                channel_id = existing.id
            else:
                channel_id = uuid.uuid4().hex
                conn.execute(
                    f"INSERT INTO alert_channels ({_CHANNEL_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
                    (channel_id, channel_type, 1 if enabled else 0, config_json, now),
                )
            conn.commit()
        return AlertChannel(id=channel_id, type=channel_type, enabled=bool(enabled), config=dict(config), updated_at=now)

    def delete_channel(self, channel_type: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM alert_channels WHERE type=?", (channel_type,))
            conn.commit()
        return cur.rowcount > 0

    # ---- History ----

    def add_history(self, entry: NewHistoryEntry) -> AlertHistoryEntry:
        now = int(time.time())
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO alert_history (project_name, pipeline_id, status, channel, message, sent, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.project_name,
                    int(entry.pipeline_id),
                    entry.status,
                    entry.channel,
                    entry.message,
                    1 if entry.sent else 0,
                    entry.error,
                    now,
                ),
            )
            conn.commit()
            new_id = int(cur.lastrowid or 0)
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
            clauses.append("id < ?")
            params.append(int(before))
        if status:
            clauses.append("status = ?")
            params.append(status)
        if channel:
            clauses.append("channel = ?")
            params.append(channel)
        if search:
            clauses.append("LOWER(project_name) LIKE ?")
            params.append(f"%{search.lower()}%")

        limit = max(1, int(limit))
        sql = f"SELECT {_HISTORY_COLUMNS} FROM alert_history"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        # One extra row tells us whether another page exists.
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit + 1)

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        entries = [history_from_row(r) for r in rows[:limit]]
        next_before = entries[-1].id if len(rows) > limit and entries else None
        return HistoryPage(entries=entries, next_before=next_before)

    def history_summary(self) -> HistorySummary:
        with self._connect() as conn:
            total = int(conn.execute("SELECT COUNT(1) AS n FROM alert_history").fetchone()["n"])
            sent = int(conn.execute("SELECT COUNT(1) AS n FROM alert_history WHERE sent=1").fetchone()["n"])
            by_channel = {
                str(r["channel"]): int(r["n"])
                for r in conn.execute("SELECT channel, COUNT(1) AS n FROM alert_history GROUP BY channel").fetchall()
            }
            by_status = {
                str(r["status"]): int(r["n"])
                for r in conn.execute("SELECT status, COUNT(1) AS n FROM alert_history GROUP BY status").fetchall()
            }
        return HistorySummary(total=total, sent=sent, failed=total - sent, by_channel=by_channel, by_status=by_status)

    def delete_history(self, entry_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM alert_history WHERE id=?", (int(entry_id),))
            conn.commit()
        return cur.rowcount > 0

    def clear_history(self) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM alert_history")
            conn.commit()
        return int(cur.rowcount)
