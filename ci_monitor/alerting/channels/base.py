from __future__ import annotations

from typing import Any, Protocol

import httpx

from ..events import PipelineEvent

_STATUS_EMOJI = {
    "success": "✅",
    "failed": "❌",
    "running": "🏃",
    "canceled": "🚫",
}


class ChannelError(RuntimeError):
    """One channel could not deliver one alert (bad config or non-2xx response)."""


class ChannelSender(Protocol):
    channel_type: str

    def render(self, event: PipelineEvent) -> str:
        """Return the channel-specific message text stored in alert history."""
        ...

    async def send(self, client: httpx.AsyncClient, config: dict[str, Any], event: PipelineEvent, message: str) -> None:
        """Deliver `message`; raise ChannelError on any non-2xx response."""
        ...


def status_emoji(status: str) -> str:
    return _STATUS_EMOJI.get(status, "•")


def status_label(status: str) -> str:
    return (status or "unknown").upper()


def format_duration(seconds: int | None) -> str | None:
    if not seconds or seconds <= 0:
        return None
    return f"{seconds // 60}m {seconds % 60}s"


def summary_lines(event: PipelineEvent, *, bold: str = "*", code: str = "`") -> list[str]:
    """Project/pipeline/branch/status lines shared by every channel template."""

    lines = [
        f"📦 {bold}Project:{bold} {event.project_name}",
        f"🔢 {bold}Pipeline:{bold} #{event.pipeline_id}",
    ]
    if event.ref:
        lines.append(f"🌿 {bold}Branch:{bold} {code}{event.ref}{code}")
    lines.append(f"📊 {bold}Status:{bold} {status_label(event.status)}")
    duration = format_duration(event.duration)
    if duration:
        lines.append(f"⏱️ {bold}Duration:{bold} {duration}")
    lines.append(f"👤 {bold}By:{bold} {event.user_name}")
    return lines


def require_config(config: dict[str, Any], channel_type: str, *keys: str) -> list[str]:
    values = []
    for key in keys:
        value = config.get(key)
        if not isinstance(value, (str, int)) or not str(value).strip():
            raise ChannelError(f"{channel_type} channel is not configured (missing {key})")
        values.append(str(value).strip())
    return values


def check_webhook_url(value: Any, channel_type: str) -> str:
    """Parse an incoming-webhook URL; only absolute http(s) URLs are accepted."""

    try:
        url = httpx.URL(str(value).strip())
    except httpx.InvalidURL as e:
        raise ChannelError(f"{channel_type} channel has an invalid webhookUrl ({e})") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ChannelError(f"{channel_type} channel has an invalid webhookUrl (expected an http(s) URL)")
    return str(url)


def webhook_url(config: dict[str, Any], channel_type: str) -> str:
    (raw,) = require_config(config, channel_type, "webhookUrl")
    return check_webhook_url(raw, channel_type)
