from __future__ import annotations

from typing import Any, Protocol

from ..storage import (
    AlertChannel,
    AlertHistoryEntry,
    AlertRule,
    EventFlags,
    HistoryPage,
    HistorySummary,
    NewHistoryEntry,
    PipelineStatusRecord,
)


class AlertRepository(Protocol):
    """Datastore interface used by the alert pipeline and the CRUD routes."""

    def init_schema(self) -> None: ...

    def ping(self) -> None: ...

    # ---- Pipeline status ----
    def get_pipeline_status(self, project_id: int, pipeline_id: int) -> PipelineStatusRecord | None: ...

    def upsert_pipeline_status(self, project_id: int, pipeline_id: int, status: str) -> PipelineStatusRecord: ...

    # ---- Rules ----
    def list_rules(self, *, enabled_only: bool = False) -> list[AlertRule]: ...

    def get_rule(self, rule_id: str) -> AlertRule | None: ...

    def create_rule(
        self,
        *,
        name: str,
        project_id: str,
        project_name: str,
        channels: list[str],
        events: EventFlags,
        enabled: bool = True,
    ) -> AlertRule: ...

    def update_rule(self, rule_id: str, changes: dict[str, Any]) -> AlertRule | None: ...

    def delete_rule(self, rule_id: str) -> bool: ...

    # ---- Channels ----
    def list_channels(self, *, enabled_only: bool = False) -> list[AlertChannel]: ...

    def get_channel_by_type(self, channel_type: str) -> AlertChannel | None: ...

    def upsert_channel(self, channel_type: str, *, enabled: bool, config: dict[str, Any]) -> AlertChannel: ...

    def delete_channel(self, channel_type: str) -> bool: ...

    # ---- History ----
    def add_history(self, entry: NewHistoryEntry) -> AlertHistoryEntry: ...

    def list_history(
        self,
        *,
        limit: int = 100,
        before: int | None = None,
        status: str | None = None,
        channel: str | None = None,
        search: str | None = None,
    ) -> HistoryPage: ...

    def history_summary(self) -> HistorySummary: ...

    def delete_history(self, entry_id: int) -> bool: ...

    def clear_history(self) -> int: ...
