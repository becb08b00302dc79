from __future__ import annotations

from typing import Any

import httpx

from ..events import PipelineEvent
from .base import ChannelError, require_config, status_emoji, status_label, summary_lines

TELEGRAM_API_BASE = "https://api.telegram.org"


def _error_description(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return "Telegram API error"
    if isinstance(data, dict) and data.get("description"):
        return str(data["description"])
    return "Telegram API error"


class TelegramSender:
    """Bot API `sendMessage` with Markdown formatting."""

    channel_type = "telegram"

    def __init__(self, api_base: str = TELEGRAM_API_BASE) -> None:
        self.api_base = api_base.rstrip("/")

    def render(self, event: PipelineEvent) -> str:
        header = f"{status_emoji(event.status)} *Pipeline {status_label(event.status)}*"
        text = header + "\n\n" + "\n".join(summary_lines(event))
        if event.web_url:
            text += f"\n\n🔗 [View Details]({event.web_url})"
        return text

    async def send(self, client: httpx.AsyncClient, config: dict[str, Any], event: PipelineEvent, message: str) -> None:
        bot_token, chat_id = require_config(config, self.channel_type, "botToken", "chatId")
        response = await client.post(
            f"{self.api_base}/bot{bot_token}/sendMessage",
            json={
                "chat_id": chat_id,
                "text": message,
                "parse_mode": "Markdown",
                "disable_web_page_preview": False,
            },
        )
        if not response.is_success:
            raise ChannelError(_error_description(response))
