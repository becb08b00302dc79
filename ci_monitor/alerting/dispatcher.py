from __future__ import annotations

import asyncio
from dataclasses import dataclass

import httpx

from ..observability import get_logger, log_event
from ..otel import record_dispatch_metric, span
from ..storage import AlertChannel, NewHistoryEntry
from ..storage_repo import AlertRepository
from .channels.base import ChannelError, ChannelSender
from .channels.registry import default_senders, get_sender
from .events import PipelineEvent

logger = get_logger("dispatch")

# InvalidURL is not an HTTPError; a malformed stored URL fails that one send.
_DELIVERY_ERRORS = (ChannelError, httpx.HTTPError, httpx.InvalidURL)


@dataclass(frozen=True)
class DispatchResult:
    sent: bool
    error: str | None = None


def _error_text(exc: Exception) -> str:
    if isinstance(exc, ChannelError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__


def _test_event() -> PipelineEvent:
    return PipelineEvent(
        project_id=0,
        project_name="Test Project",
        project_url="",
        pipeline_id=12345,
        status="success",
        ref="main",
        sha="",
        web_url="",
        created_at=None,
        finished_at=None,
        duration=125,
        user_name="GitLab CI Monitor",
        user_username="",
    )


class ChannelDispatcher:
    def __init__(
        self,
        repo: AlertRepository,
        http_client: httpx.AsyncClient,
        senders: dict[str, ChannelSender] | None = None,
    ) -> None:
        self.repo = repo
        self.http_client = http_client
        self.senders = senders if senders is not None else default_senders()

    async def _deliver(self, channel: AlertChannel, event: PipelineEvent) -> tuple[str, DispatchResult]:
        try:
            sender = get_sender(channel.type, self.senders)
        except ChannelError as e:
            return "", DispatchResult(sent=False, error=str(e))

        message = sender.render(event)
        try:
            with span("alert.dispatch", {"channel": channel.type, "pipeline_id": event.pipeline_id}):
                await sender.send(self.http_client, channel.config, event, message)
        except _DELIVERY_ERRORS as e:
            return message, DispatchResult(sent=False, error=_error_text(e))
        return message, DispatchResult(sent=True)

    async def dispatch(self, channel: AlertChannel, event: PipelineEvent) -> DispatchResult:
        """Send one alert through one channel and record exactly one history entry.

        Delivery failures are captured in the result; a failing history write
        propagates to the caller.
        """

        message, result = await self._deliver(channel, event)

        await asyncio.to_thread(
            self.repo.add_history,
            NewHistoryEntry(
                project_name=event.project_name,
                pipeline_id=event.pipeline_id,
                status=event.status,
                channel=channel.type,
                message=message,
                sent=result.sent,
                error=result.error,
            ),
        )
        record_dispatch_metric(channel=channel.type, sent=result.sent)
        log_event(
            "alert.dispatched" if result.sent else "alert.failed",
            severity="INFO" if result.sent else "WARNING",
            logger=logger,
            channel=channel.type,
            project_id=event.project_id,
            pipeline_id=event.pipeline_id,
            status=event.status,
            error=result.error,
        )
        return result

    async def send_test(self, channel: AlertChannel) -> DispatchResult:
        _, result = await self._deliver(channel, _test_event())
        log_event(
            "alert.test",
            severity="INFO" if result.sent else "WARNING",
            logger=logger,
            channel=channel.type,
            sent=result.sent,
            error=result.error,
        )
        return result
