from __future__ import annotations

from typing import Any

import httpx

from ..events import PipelineEvent
from .base import ChannelError, status_emoji, status_label, summary_lines, webhook_url

# Discord rejects message content above this length.
_MAX_CONTENT_CHARS = 2000


class DiscordSender:
    channel_type = "discord"

    def render(self, event: PipelineEvent) -> str:
        header = f"{status_emoji(event.status)} **Pipeline {status_label(event.status)}**"
        text = header + "\n" + "\n".join(summary_lines(event, bold="**"))
        if event.web_url:
            text += f"\n🔗 {event.web_url}"
        return text[:_MAX_CONTENT_CHARS]

    async def send(self, client: httpx.AsyncClient, config: dict[str, Any], event: PipelineEvent, message: str) -> None:
        url = webhook_url(config, self.channel_type)
        response = await client.post(url, json={"content": message})
        if not response.is_success:
            raise ChannelError("Discord webhook failed")
