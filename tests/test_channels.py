from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from ci_monitor.alerting.channels.base import ChannelError, status_emoji, status_label
from ci_monitor.alerting.channels.discord import DiscordSender
from ci_monitor.alerting.channels.registry import get_sender
from ci_monitor.alerting.channels.slack import SlackSender
from ci_monitor.alerting.channels.telegram import TelegramSender
from ci_monitor.alerting.events import parse_pipeline_event


def _send(sender, config, event, handler):
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_record)) as client:
            await sender.send(client, config, event, sender.render(event))

    asyncio.run(scenario())
    return seen


def test_status_presentation():
    assert (status_emoji("success"), status_label("success")) == ("✅", "SUCCESS")
    assert (status_emoji("failed"), status_label("failed")) == ("❌", "FAILED")
    assert (status_emoji("running"), status_label("running")) == ("🏃", "RUNNING")
    assert (status_emoji("canceled"), status_label("canceled")) == ("🚫", "CANCELED")
    assert (status_emoji("skipped"), status_label("skipped")) == ("•", "SKIPPED")


def test_telegram_posts_markdown_message(pipeline_payload):
    event = parse_pipeline_event(pipeline_payload(status="failed"))
    seen = _send(
        TelegramSender(),
        {"botToken": "123:abc", "chatId": "-100"},
        event,
        lambda r: httpx.Response(200, json={"ok": True}),
    )

    assert len(seen) == 1
    assert str(seen[0].url) == "https://api.telegram.org/bot123:abc/sendMessage"
    body = json.loads(seen[0].content)
    assert body["chat_id"] == "-100"
    assert body["parse_mode"] == "Markdown"
    assert body["disable_web_page_preview"] is False
    assert body["text"].startswith("❌ *Pipeline FAILED*")
    assert "#1001" in body["text"]
    assert "[View Details](https://gitlab.example.com/acme/api/-/pipelines/1001)" in body["text"]


def test_telegram_error_uses_api_description(pipeline_payload):
    event = parse_pipeline_event(pipeline_payload())
    with pytest.raises(ChannelError, match="chat not found"):
        _send(
            TelegramSender(),
            {"botToken": "t", "chatId": "1"},
            event,
            lambda r: httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"}),
        )

    with pytest.raises(ChannelError, match="Telegram API error"):
        _send(TelegramSender(), {"botToken": "t", "chatId": "1"}, event, lambda r: httpx.Response(502, text="bad"))


def test_slack_posts_text_and_blocks(pipeline_payload):
    event = parse_pipeline_event(pipeline_payload(status="success"))
    seen = _send(
        SlackSender(),
        {"webhookUrl": "https://hooks.slack.example/T/B/X"},
        event,
        lambda r: httpx.Response(200, text="ok"),
    )

    body = json.loads(seen[0].content)
    assert str(seen[0].url) == "https://hooks.slack.example/T/B/X"
    assert body["text"] == "✅ Pipeline SUCCESS"
    assert body["blocks"][0]["text"]["type"] == "mrkdwn"
    assert body["blocks"][1]["elements"][0]["url"].endswith("/pipelines/1001")


def test_slack_and_discord_errors(pipeline_payload):
    event = parse_pipeline_event(pipeline_payload())
    config = {"webhookUrl": "https://hooks.example/x"}

    with pytest.raises(ChannelError, match="Slack webhook failed"):
        _send(SlackSender(), config, event, lambda r: httpx.Response(500))
    with pytest.raises(ChannelError, match="Discord webhook failed"):
        _send(DiscordSender(), config, event, lambda r: httpx.Response(404))


def test_discord_posts_content(pipeline_payload):
    event = parse_pipeline_event(pipeline_payload(status="canceled"))
    seen = _send(DiscordSender(), {"webhookUrl": "https://discord.example/w"}, event, lambda r: httpx.Response(204))

    body = json.loads(seen[0].content)
    assert list(body) == ["content"]
    assert body["content"].startswith("🚫 **Pipeline CANCELED**")


def test_missing_config_raises_before_any_request(pipeline_payload):
    event = parse_pipeline_event(pipeline_payload())
    with pytest.raises(ChannelError, match="slack channel is not configured"):
        _send(SlackSender(), {}, event, lambda r: httpx.Response(200))
    with pytest.raises(ChannelError, match="telegram channel is not configured"):
        _send(TelegramSender(), {"botToken": "t"}, event, lambda r: httpx.Response(200))


def test_get_sender_rejects_unknown_types():
    assert get_sender("discord").channel_type == "discord"
    with pytest.raises(ChannelError):
        get_sender("teams")
