from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from ..observability import get_logger, log_event
from ..otel import span
from ..storage_repo import AlertRepository
from .dispatcher import ChannelDispatcher
from .events import InvalidWebhookPayload, is_pipeline_event, parse_pipeline_event
from .rules import RuleMatcher

logger = get_logger("webhook")

NOT_A_PIPELINE_EVENT = "Not a pipeline event"
WEBHOOK_PROCESSED = "Webhook processed"


@dataclass(frozen=True)
class WebhookOutcome:
    processed: bool
    message: str
    dispatched: int = 0
    sent: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        if not self.processed:
            return {"message": self.message}
        return {
            "message": self.message,
            "dispatched": self.dispatched,
            "sent": self.sent,
            "failed": self.failed,
        }


class AlertPipeline:
    """Webhook ingestion: persist the pipeline status, then fan out alerts.

    Each matched (rule, channel) pair is dispatched in turn. A delivery
    failure on one channel never stops the others; storage errors do.
    Payloads that are not pipeline events, or that lack the fields a pipeline
    event needs, are acknowledged without writing anything.
    """

    def __init__(self, repo: AlertRepository, matcher: RuleMatcher, dispatcher: ChannelDispatcher) -> None:
        self.repo = repo
        self.matcher = matcher
        self.dispatcher = dispatcher

    async def process(self, payload: Any) -> WebhookOutcome:
        if not is_pipeline_event(payload):
            kind = payload.get("object_kind") if isinstance(payload, dict) else None
            log_event("webhook.ignored", logger=logger, object_kind=kind)
            return WebhookOutcome(processed=False, message=NOT_A_PIPELINE_EVENT)

        try:
            event = parse_pipeline_event(payload)
        except InvalidWebhookPayload as e:
            log_event("webhook.invalid", severity="WARNING", logger=logger, error=str(e))
            return WebhookOutcome(processed=False, message=str(e))

        log_event(
            "webhook.received",
            logger=logger,
            project_id=event.project_id,
            pipeline_id=event.pipeline_id,
            status=event.status,
        )

        with span("webhook.process", {"project_id": event.project_id, "pipeline_id": event.pipeline_id}):
            previous = await asyncio.to_thread(self.repo.get_pipeline_status, event.project_id, event.pipeline_id)
            await asyncio.to_thread(
                self.repo.upsert_pipeline_status, event.project_id, event.pipeline_id, event.status
            )
            log_event(
                "pipeline.status",
                logger=logger,
                project_id=event.project_id,
                pipeline_id=event.pipeline_id,
                previous=previous.status if previous is not None else None,
                status=event.status,
                changed=previous is None or previous.status != event.status,
            )

            pairs = await self.matcher.match(event)
            sent = 0
            for _rule, channel in pairs:
                result = await self.dispatcher.dispatch(channel, event)
                if result.sent:
                    sent += 1

        return WebhookOutcome(
            processed=True,
            message=WEBHOOK_PROCESSED,
            dispatched=len(pairs),
            sent=sent,
            failed=len(pairs) - sent,
        )
