from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

import httpx

from . import config
from .alerting.dispatcher import ChannelDispatcher
from .alerting.pipeline import AlertPipeline, WebhookOutcome
from .alerting.rules import RuleMatcher
from .cache import MemoryTTLCache
from .storage_repo import AlertRepository, get_repository


def _repository() -> AlertRepository:
    s = config.settings
    repo = get_repository(sqlite_path=s.sqlite_path, database_url=s.database_url)
    repo.init_schema()
    return repo


def cmd_init_db() -> None:
    s = config.settings
    _repository()
    target = "postgres" if s.database_url else s.sqlite_path
    print(f"Schema ready ({target}).")


async def _replay(repo: AlertRepository, payload: object) -> WebhookOutcome:
    async with httpx.AsyncClient(timeout=config.settings.channel_timeout_s) as client:
        # A fresh cache so the replay sees the current rules and channels.
        matcher = RuleMatcher(repo, MemoryTTLCache(), ttl_s=config.settings.alert_cache_ttl_s)
        pipeline = AlertPipeline(repo, matcher, ChannelDispatcher(repo, client))
        return await pipeline.process(payload)


def cmd_replay_webhook(path: str) -> None:
    payload_path = Path(path)
    if not payload_path.exists():
        raise SystemExit(f"Payload file does not exist: {path}")
    try:
        payload = json.loads(payload_path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise SystemExit(f"Payload is not valid JSON: {e}") from e

    outcome = asyncio.run(_replay(_repository(), payload))

    print(json.dumps(outcome.to_dict()))
    if outcome.failed:
        raise SystemExit(1)


def cmd_history(limit: int) -> None:
    page = _repository().list_history(limit=max(1, limit))
    if not page.entries:
        print("No alerts sent yet.")
        return
    for e in page.entries:
        outcome = "sent" if e.sent else f"FAILED ({e.error})"
        print(f"#{e.id} {e.channel:<8} {e.project_name} pipeline={e.pipeline_id} status={e.status} {outcome}")


def cmd_rules() -> None:
    rules = _repository().list_rules()
    if not rules:
        print("No alert rules configured.")
        return
    for r in rules:
        events = ",".join(k for k, v in r.events.to_dict().items() if v) or "-"
        state = "enabled" if r.enabled else "disabled"
        channels = ",".join(r.channels) or "-"
        print(f"{r.id} {r.name!r} project={r.project_id} events={events} channels={channels} {state}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="ci-monitor")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db", help="Create the datastore schema (idempotent).")

    p_replay = sub.add_parser("replay-webhook", help="Run a saved GitLab webhook payload through the alert pipeline.")
    p_replay.add_argument("path", type=str)

    p_hist = sub.add_parser("history", help="Show the most recent alert history entries.")
    p_hist.add_argument("--limit", type=int, default=20)

    sub.add_parser("rules", help="List alert rules.")

    args = parser.parse_args(argv)
    if args.cmd == "init-db":
        cmd_init_db()
    elif args.cmd == "replay-webhook":
        cmd_replay_webhook(args.path)
    elif args.cmd == "history":
        cmd_history(args.limit)
    elif args.cmd == "rules":
        cmd_rules()


if __name__ == "__main__":
    main()
