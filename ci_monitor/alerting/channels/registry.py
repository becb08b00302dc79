from __future__ import annotations

from .base import ChannelError, ChannelSender
from .discord import DiscordSender
from .slack import SlackSender
from .telegram import TelegramSender


def default_senders() -> dict[str, ChannelSender]:
    senders: list[ChannelSender] = [TelegramSender(), SlackSender(), DiscordSender()]
    return {s.channel_type: s for s in senders}


def get_sender(channel_type: str, senders: dict[str, ChannelSender] | None = None) -> ChannelSender:
    table = senders if senders is not None else default_senders()
    sender = table.get(channel_type)
    if sender is None:
        raise ChannelError(f"Unsupported channel type: {channel_type}")
    return sender
