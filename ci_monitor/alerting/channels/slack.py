from __future__ import annotations

from typing import Any

import httpx

from ..events import PipelineEvent
from .base import ChannelError, status_emoji, status_label, summary_lines, webhook_url


class SlackSender:
    """Incoming webhook with a mrkdwn section and a "View Details" button."""

    channel_type = "slack"

    def render(self, event: PipelineEvent) -> str:
        return f"*Pipeline {status_label(event.status)}*\n\n" + "\n".join(summary_lines(event))

    async def send(self, client: httpx.AsyncClient, config: dict[str, Any], event: PipelineEvent, message: str) -> None:
        url = webhook_url(config, self.channel_type)
        blocks: list[dict[str, Any]] = [
            {"type": "section", "text": {"type": "mrkdwn", "text": message}},
        ]
        if event.web_url:
            blocks.append(
                {
                    "type": "actions",
                    "elements": [
                        {
                            "type": "button",
                            "text": {"type": "plain_text", "text": "View Details"},
                            "url": event.web_url,
                        }
                    ],
                }
            )
        body: dict[str, Any] = {
            "text": f"{status_emoji(event.status)} Pipeline {status_label(event.status)}",
            "blocks": blocks,
        }
        if config.get("channel"):
            body["channel"] = str(config["channel"])

        response = await client.post(url, json=body)
        if not response.is_success:
            raise ChannelError("Slack webhook failed")
