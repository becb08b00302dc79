from __future__ import annotations

from ci_monitor.storage import EventFlags, NewHistoryEntry
from ci_monitor.storage_repo import PostgresRepository, get_repository
from ci_monitor.storage_repo.sqlite_adapter import SQLiteRepository


def _repo(tmp_path) -> SQLiteRepository:
    repo = SQLiteRepository(str(tmp_path / "repo.sqlite"))
    repo.init_schema()
    return repo


def _history(status: str = "failed", channel: str = "slack", project: str = "acme/api", sent: bool = True):
    return NewHistoryEntry(
        project_name=project,
        pipeline_id=7,
        status=status,
        channel=channel,
        message="msg",
        sent=sent,
        error=None if sent else "Slack webhook failed",
    )


def test_pipeline_status_keeps_one_row_per_pipeline(tmp_path):
    repo = _repo(tmp_path)
    assert repo.get_pipeline_status(1, 10) is None

    repo.upsert_pipeline_status(1, 10, "running")
    repo.upsert_pipeline_status(1, 10, "success")
    repo.upsert_pipeline_status(1, 11, "failed")

    assert repo.get_pipeline_status(1, 10).status == "success"
    assert repo.get_pipeline_status(1, 11).status == "failed"


def test_rule_crud(tmp_path):
    repo = _repo(tmp_path)
    rule = repo.create_rule(
        name="API failures",
        project_id="42",
        project_name="acme/api",
        channels=["slack"],
        events=EventFlags(failed=True),
    )

    assert repo.get_rule(rule.id) == rule
    assert [r.id for r in repo.list_rules(enabled_only=True)] == [rule.id]

    updated = repo.update_rule(rule.id, {"enabled": False, "events": {"failed": True, "canceled": True}})
    assert updated is not None
    assert updated.enabled is False
    assert updated.events.allows("canceled")
    assert updated.name == "API failures"
    assert repo.list_rules(enabled_only=True) == []

    assert repo.update_rule("missing", {"name": "x"}) is None
    assert repo.delete_rule(rule.id) is True
    assert repo.delete_rule(rule.id) is False


def test_upsert_channel_keeps_one_channel_per_type(tmp_path):
    repo = _repo(tmp_path)
    first = repo.upsert_channel("slack", enabled=True, config={"webhookUrl": "https://hooks.example/a"})
    second = repo.upsert_channel("slack", enabled=False, config={"webhookUrl": "https://hooks.example/b"})
    repo.upsert_channel("discord", enabled=True, config={"webhookUrl": "https://discord.example/x"})

    assert second.id == first.id
    channels = repo.list_channels()
    assert sorted(c.type for c in channels) == ["discord", "slack"]
    assert repo.get_channel_by_type("slack").config == {"webhookUrl": "https://hooks.example/b"}
    assert [c.type for c in repo.list_channels(enabled_only=True)] == ["discord"]

    assert repo.delete_channel("slack") is True
    assert repo.get_channel_by_type("slack") is None


def test_history_pagination_filters_and_summary(tmp_path):
    repo = _repo(tmp_path)
    ids = [repo.add_history(_history()).id for _ in range(5)]
    repo.add_history(_history(status="success", channel="telegram", project="acme/web", sent=False))

    page = repo.list_history(limit=3)
    assert len(page.entries) == 3
    assert page.entries[0].project_name == "acme/web"
    assert page.next_before == page.entries[-1].id

    rest = repo.list_history(limit=10, before=page.next_before)
    assert [e.id for e in rest.entries] == sorted(ids, reverse=True)[2:]
    assert rest.next_before is None

    assert [e.channel for e in repo.list_history(channel="telegram").entries] == ["telegram"]
    assert len(repo.list_history(status="failed").entries) == 5
    assert [e.project_name for e in repo.list_history(search="WEB").entries] == ["acme/web"]

    summary = repo.history_summary()
    assert summary.total == 6
    assert summary.sent == 5
    assert summary.failed == 1
    assert summary.by_channel == {"slack": 5, "telegram": 1}
    assert summary.by_status == {"failed": 5, "success": 1}


def test_history_delete_and_clear(tmp_path):
    repo = _repo(tmp_path)
    entry = repo.add_history(_history())
    repo.add_history(_history())

    assert repo.delete_history(entry.id) is True
    assert repo.delete_history(entry.id) is False
    assert repo.clear_history() == 1
    assert repo.history_summary().total == 0


def test_factory_defaults_to_sqlite(tmp_path):
    repo = get_repository(sqlite_path=str(tmp_path / "f.sqlite"), database_url=None)
    assert isinstance(repo, SQLiteRepository)


def test_factory_picks_postgres_only_for_postgres_urls(tmp_path):
    sqlite_path = str(tmp_path / "f.sqlite")
    for url in ("postgresql://ci:pw@db:5432/cimon", " postgres://db/cimon "):
        repo = get_repository(sqlite_path=sqlite_path, database_url=url)
        assert isinstance(repo, PostgresRepository)
        assert repo.database_url == url.strip()

    assert isinstance(get_repository(sqlite_path=sqlite_path, database_url="mysql://db/x"), SQLiteRepository)
    assert isinstance(get_repository(sqlite_path=sqlite_path, database_url=""), SQLiteRepository)
