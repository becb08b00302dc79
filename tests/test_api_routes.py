from __future__ import annotations

import importlib
import os

import pytest
from fastapi.testclient import TestClient

from ci_monitor.storage import NewHistoryEntry

_ENV_KEYS = ["SQLITE_PATH", "DATABASE_URL", "REDIS_URL", "AUTH_MODE", "OTEL_ENABLED", "HISTORY_MAX_LIMIT"]


@pytest.fixture(autouse=True)
def _restore_env_after_test():
    before = {k: os.environ.get(k) for k in _ENV_KEYS}
    yield
    for key, value in before.items():
        if value is None:
            os.environ.pop(key, None)
            continue
        os.environ[key] = value


def _reload_app(sqlite_path: str, *, history_max_limit: int = 500) -> object:
    os.environ["SQLITE_PATH"] = sqlite_path
    os.environ["AUTH_MODE"] = "none"
    os.environ["OTEL_ENABLED"] = "0"
    os.environ["HISTORY_MAX_LIMIT"] = str(history_max_limit)
    os.environ.pop("DATABASE_URL", None)
    os.environ.pop("REDIS_URL", None)

    import ci_monitor.auth as auth
    import ci_monitor.config as config
    import ci_monitor.main as main
    import ci_monitor.otel as otel

    importlib.reload(config)
    importlib.reload(otel)
    importlib.reload(auth)
    importlib.reload(main)
    return main


def test_rule_crud_round_trip(tmp_path):
    main = _reload_app(str(tmp_path / "api.sqlite"))
    with TestClient(main.app) as client:
        created = client.post(
            "/api/rules",
            json={
                "name": "Deploy failures",
                "project_id": "42",
                "project_name": "acme/api",
                "channels": ["telegram", "slack"],
                "events": {"failed": True, "canceled": True},
            },
        )
        assert created.status_code == 201
        rule = created.json()["rule"]
        assert rule["events"] == {"success": False, "failed": True, "running": False, "canceled": True}
        assert rule["enabled"] is True

        updated = client.put("/api/rules", json={"id": rule["id"], "enabled": False, "name": "Renamed"})
        assert updated.status_code == 200
        assert updated.json()["rule"]["name"] == "Renamed"
        assert updated.json()["rule"]["channels"] == ["telegram", "slack"]

        listed = client.get("/api/rules").json()["rules"]
        assert [r["enabled"] for r in listed] == [False]

        assert client.delete(f"/api/rules/{rule['id']}").status_code == 200
        assert client.delete(f"/api/rules/{rule['id']}").status_code == 404
        assert client.put("/api/rules", json={"id": rule["id"], "name": "x"}).status_code == 404


def test_rule_validation(tmp_path):
    main = _reload_app(str(tmp_path / "api.sqlite"))
    with TestClient(main.app) as client:
        assert client.post("/api/rules", json={"name": "x", "channels": ["teams"]}).status_code == 400
        assert client.post("/api/rules", json={"name": "x", "project_id": "acme"}).status_code == 400
        assert client.post("/api/rules", json={"project_id": "all"}).status_code == 422

        created = client.post("/api/rules", json={"name": "padded", "project_id": " 042 "})
        assert created.status_code == 201
        assert created.json()["rule"]["project_id"] == "42"
        rule_id = created.json()["rule"]["id"]
        updated = client.put("/api/rules", json={"id": rule_id, "project_id": "007"})
        assert updated.json()["rule"]["project_id"] == "7"


def test_channels_are_redacted_and_unique_per_type(tmp_path):
    main = _reload_app(str(tmp_path / "api.sqlite"))
    with TestClient(main.app) as client:
        for token in ("111:aaa", "222:bbb"):
            r = client.post(
                "/api/channels",
                json={"type": "telegram", "enabled": True, "config": {"botToken": token, "chatId": "-1"}},
            )
            assert r.status_code == 200

        channels = client.get("/api/channels").json()["channels"]
        assert len(channels) == 1
        assert channels[0]["config"] == {"botToken": "[redacted]", "chatId": "-1"}
        assert main.app.state.repo.get_channel_by_type("telegram").config["botToken"] == "222:bbb"

        assert client.post("/api/channels", json={"type": "pager", "config": {}}).status_code == 400
        assert client.delete("/api/channels/telegram").status_code == 200
        assert client.delete("/api/channels/telegram").status_code == 404


def test_channel_webhook_url_is_validated_on_save(tmp_path):
    main = _reload_app(str(tmp_path / "api.sqlite"))
    with TestClient(main.app) as client:
        for bad in ("https://hooks.example.com:abc/x", "ftp://hooks.example/x", "not a url"):
            r = client.post("/api/channels", json={"type": "slack", "config": {"webhookUrl": bad}})
            assert r.status_code == 400, bad
            assert "invalid webhookUrl" in r.json()["detail"]
        assert main.app.state.repo.get_channel_by_type("slack") is None

        r = client.post("/api/channels", json={"type": "discord", "config": {"webhookUrl": "https://discord.example/d"}})
        assert r.status_code == 200


def test_channel_test_requires_a_channel(tmp_path):
    main = _reload_app(str(tmp_path / "api.sqlite"))
    with TestClient(main.app) as client:
        assert client.post("/api/channels/test", json={"type": "slack"}).status_code == 404

        r = client.post("/api/channels/test", json={"type": "slack", "config": {}})
        assert r.status_code == 200
        assert r.json() == {"sent": False, "error": "slack channel is not configured (missing webhookUrl)"}


def test_history_listing_summary_and_deletes(tmp_path):
    main = _reload_app(str(tmp_path / "api.sqlite"), history_max_limit=2)
    with TestClient(main.app) as client:
        repo = main.app.state.repo
        for i, channel in enumerate(["slack", "slack", "discord"]):
            repo.add_history(
                NewHistoryEntry(
                    project_name=f"acme/svc-{i}",
                    pipeline_id=i,
                    status="failed",
                    channel=channel,
                    message="m",
                    sent=channel == "slack",
                    error=None if channel == "slack" else "Discord webhook failed",
                )
            )

        page = client.get("/api/history", params={"limit": 50}).json()
        assert len(page["history"]) == 2
        assert page["next_before"] == page["history"][-1]["id"]

        older = client.get("/api/history", params={"before": page["next_before"]}).json()
        assert [e["project_name"] for e in older["history"]] == ["acme/svc-0"]

        assert len(client.get("/api/history", params={"channel": "discord"}).json()["history"]) == 1
        assert len(client.get("/api/history", params={"search": "SVC-1"}).json()["history"]) == 1

        summary = client.get("/api/history/summary").json()
        assert summary == {
            "total": 3,
            "sent": 2,
            "failed": 1,
            "by_channel": {"slack": 2, "discord": 1},
            "by_status": {"failed": 3},
        }

        first_id = older["history"][0]["id"]
        assert client.delete(f"/api/history/{first_id}").status_code == 200
        assert client.delete(f"/api/history/{first_id}").status_code == 404
        assert client.delete("/api/history").json() == {"deleted": 2}


def test_throttle_status_and_clear(tmp_path):
    main = _reload_app(str(tmp_path / "api.sqlite"))
    with TestClient(main.app) as client:
        status = client.get("/api/throttle/status").json()
        assert status == {"queue_length": 0, "processing": False, "request_counts": {}}
        assert client.post("/api/throttle/clear").json() == {"cleared": 0}


def test_security_headers_on_api_responses(tmp_path):
    main = _reload_app(str(tmp_path / "api.sqlite"))
    with TestClient(main.app) as client:
        r = client.get("/api/rules", headers={"X-Request-Id": "req-123"})
        assert r.headers["X-Request-Id"] == "req-123"
        assert r.headers["X-Content-Type-Options"] == "nosniff"
        assert r.headers["X-Frame-Options"] == "DENY"
        assert r.headers["Cache-Control"] == "no-store"

        missing = client.delete("/api/rules/nope")
        assert missing.status_code == 404
        assert missing.headers["X-Content-Type-Options"] == "nosniff"
