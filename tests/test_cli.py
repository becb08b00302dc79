from __future__ import annotations

import importlib
import json
import os

import pytest

_ENV_KEYS = ["SQLITE_PATH", "DATABASE_URL"]


@pytest.fixture(autouse=True)
def _restore_env_after_test():
    before = {k: os.environ.get(k) for k in _ENV_KEYS}
    yield
    for key, value in before.items():
        if value is None:
            os.environ.pop(key, None)
            continue
        os.environ[key] = value


def _reload_cli(sqlite_path: str):
    os.environ["SQLITE_PATH"] = sqlite_path
    os.environ.pop("DATABASE_URL", None)

    import ci_monitor.cli as cli
    import ci_monitor.config as config

    importlib.reload(config)
    importlib.reload(cli)
    return cli


def test_init_db_and_empty_listings(tmp_path, capsys):
    cli = _reload_cli(str(tmp_path / "cli.sqlite"))

    cli.main(["init-db"])
    cli.main(["rules"])
    cli.main(["history", "--limit", "5"])

    out = capsys.readouterr().out
    assert "Schema ready" in out
    assert "No alert rules configured." in out
    assert "No alerts sent yet." in out
    assert (tmp_path / "cli.sqlite").exists()


def test_replay_webhook_runs_the_pipeline(tmp_path, capsys, pipeline_payload):
    cli = _reload_cli(str(tmp_path / "cli.sqlite"))
    payload_path = tmp_path / "payload.json"
    payload_path.write_text(json.dumps(pipeline_payload(status="success")), encoding="utf-8")

    cli.main(["replay-webhook", str(payload_path)])

    out = capsys.readouterr().out.strip().splitlines()[-1]
    assert json.loads(out) == {"message": "Webhook processed", "dispatched": 0, "sent": 0, "failed": 0}

    from ci_monitor.storage_repo.sqlite_adapter import SQLiteRepository

    repo = SQLiteRepository(str(tmp_path / "cli.sqlite"))
    assert repo.get_pipeline_status(42, 1001).status == "success"


def test_replay_webhook_rejects_missing_file(tmp_path):
    cli = _reload_cli(str(tmp_path / "cli.sqlite"))
    with pytest.raises(SystemExit, match="does not exist"):
        cli.main(["replay-webhook", str(tmp_path / "nope.json")])


def test_rules_listing_shows_events_and_channels(tmp_path, capsys):
    cli = _reload_cli(str(tmp_path / "cli.sqlite"))
    cli.main(["init-db"])

    from ci_monitor.storage import EventFlags
    from ci_monitor.storage_repo.sqlite_adapter import SQLiteRepository

    SQLiteRepository(str(tmp_path / "cli.sqlite")).create_rule(
        name="nightly",
        project_id="all",
        project_name="",
        channels=["discord"],
        events=EventFlags(failed=True, canceled=True),
    )
    cli.main(["rules"])

    out = capsys.readouterr().out
    assert "'nightly' project=all events=failed,canceled channels=discord enabled" in out
