from __future__ import annotations

import asyncio
from typing import Any

from ..cache import CachePort, get_or_set
from ..observability import get_logger, log_event
from ..storage import AlertChannel, AlertRule
from ..storage_repo import AlertRepository
from .events import PipelineEvent

logger = get_logger("rules")

RULES_CACHE_KEY = "alert:rules:enabled"
CHANNELS_CACHE_KEY = "alert:channels:enabled"

RULES_CACHE_PREFIX = "alert:rules:"
CHANNELS_CACHE_PREFIX = "alert:channels:"


async def invalidate_rules(cache: CachePort) -> None:
    await cache.invalidate(RULES_CACHE_PREFIX)


async def invalidate_channels(cache: CachePort) -> None:
    await cache.invalidate(CHANNELS_CACHE_PREFIX)


class RuleMatcher:
    """Resolve the (rule, channel) pairs a pipeline event should be sent to.

    Enabled rules and enabled channels are read through the cache; a stale
    read lasts at most `ttl_s` unless a CRUD write invalidated it first.
    """

    def __init__(self, repo: AlertRepository, cache: CachePort, ttl_s: float = 60.0) -> None:
        self.repo = repo
        self.cache = cache
        self.ttl_s = ttl_s

    async def _enabled_rules(self) -> list[AlertRule]:
        async def load() -> list[dict[str, Any]]:
            rules = await asyncio.to_thread(self.repo.list_rules, enabled_only=True)
            return [r.to_dict() for r in rules]

        raw = await get_or_set(self.cache, RULES_CACHE_KEY, load, self.ttl_s)
        return [AlertRule.from_dict(d) for d in raw]

    async def _enabled_channels(self) -> dict[str, AlertChannel]:
        async def load() -> list[dict[str, Any]]:
            channels = await asyncio.to_thread(self.repo.list_channels, enabled_only=True)
            return [c.to_dict() for c in channels]

        raw = await get_or_set(self.cache, CHANNELS_CACHE_KEY, load, self.ttl_s)
        channels: dict[str, AlertChannel] = {}
        for d in raw:
            ch = AlertChannel.from_dict(d)
            channels.setdefault(ch.type, ch)
        return channels

    async def match(self, event: PipelineEvent) -> list[tuple[AlertRule, AlertChannel]]:
        rules = [
            r
            for r in await self._enabled_rules()
            if r.enabled and r.applies_to(event.project_id) and r.events.allows(event.status)
        ]
        if not rules:
            return []

        channels = await self._enabled_channels()
        pairs: list[tuple[AlertRule, AlertChannel]] = []
        for rule in rules:
            for channel_type in rule.channels:
                channel = channels.get(channel_type)
                if channel is None:
                    log_event(
                        "alert.channel_unavailable",
                        severity="WARNING",
                        logger=logger,
                        rule_id=rule.id,
                        channel=channel_type,
                    )
                    continue
                pairs.append((rule, channel))
        return pairs
