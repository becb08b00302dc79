from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .observability import get_logger, log_event
from .otel import record_throttle_wait_metric
from .ratewindow import RateWindowTracker

T = TypeVar("T")

# All outbound GitLab calls share one budget.
GLOBAL_KEY = "global"

PRIORITY_LOW = 1
DEFAULT_PRIORITY = 5
PRIORITY_HIGH = 10

logger = get_logger("throttle")


class QueueClearedError(RuntimeError):
    """Raised into callers whose request was still queued when the queue was cleared."""


@dataclass
class QueuedRequest:
    request_id: str
    priority: int
    execute: Callable[[], Awaitable[Any]]
    timestamp: float
    future: asyncio.Future[Any]


@dataclass(frozen=True)
class ThrottleStatus:
    queue_length: int
    processing: bool
    request_counts: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue_length": self.queue_length,
            "processing": self.processing,
            "request_counts": dict(self.request_counts),
        }


def _order_key(request: QueuedRequest) -> tuple[int, float]:
    # list.sort is stable, so equal keys keep submission order.
    return (-request.priority, request.timestamp)


class ApiThrottler:
    """Priority queue drained against a sliding rate window.

    Only one drain loop runs at a time. Requests execute one after another, so a
    hung `execute` stalls everything behind it; callers own their timeouts.
    """

    def __init__(
        self,
        *,
        max_requests: int = 250,
        window_s: float = 60.0,
        retry_after_s: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.retry_after_s = float(retry_after_s)
        self._clock = clock
        self._sleep = sleep
        self._window = RateWindowTracker(window_s=float(window_s), max_requests=int(max_requests), clock=clock)
        self._queue: list[QueuedRequest] = []
        self._processing = False
        self._drain_task: asyncio.Task[None] | None = None

    @property
    def processing(self) -> bool:
        return self._processing

    async def throttle(self, execute: Callable[[], Awaitable[T]], priority: int = DEFAULT_PRIORITY) -> T:
        """Queue `execute` and wait for its result (or its exception)."""

        loop = asyncio.get_running_loop()
        request = QueuedRequest(
            request_id=uuid.uuid4().hex,
            priority=int(priority),
            execute=execute,
            timestamp=self._clock(),
            future=loop.create_future(),
        )
        self._queue.append(request)
        self._start_drain(loop)
        return await request.future

    def _start_drain(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._processing:
            return
        self._processing = True
        self._drain_task = loop.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._queue:
                self._queue.sort(key=_order_key)
                head = self._queue[0]
                if head.future.done():
                    # Caller went away before its turn.
                    self._queue.pop(0)
                    continue
                if not self._window.can_proceed(GLOBAL_KEY):
                    log_event(
                        "throttle.wait",
                        severity="DEBUG",
                        logger=logger,
                        queue_length=len(self._queue),
                        retry_after_s=self.retry_after_s,
                    )
                    await self._sleep(self.retry_after_s)
                    continue

                self._queue.pop(0)
                self._window.record(GLOBAL_KEY)
                record_throttle_wait_metric(
                    wait_ms=max(0.0, (self._clock() - head.timestamp) * 1000.0),
                    priority=head.priority,
                )
                await self._run(head)
        finally:
            self._processing = False
            self._drain_task = None
            # Only a cancelled drain task exits with work left; nothing would pick it up.
            self._reject_queued("Throttler stopped")

    async def _run(self, request: QueuedRequest) -> None:
        fut = request.future
        try:
            result = await request.execute()
        except asyncio.CancelledError:
            if not fut.done():
                fut.cancel()
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
        except Exception as e:
            if not fut.done():
                fut.set_exception(e)
        else:
            if not fut.done():
                fut.set_result(result)

    def status(self) -> ThrottleStatus:
        return ThrottleStatus(
            queue_length=len(self._queue),
            processing=self._processing,
            request_counts=self._window.counts(),
        )

    def _reject_queued(self, reason: str) -> int:
        rejected = 0
        for request in self._queue:
            if not request.future.done():
                request.future.set_exception(QueueClearedError(reason))
                rejected += 1
        self._queue.clear()
        return rejected

    def clear_queue(self) -> int:
        """Reject every queued request. Requests already executing are not affected."""

        cleared = self._reject_queued("Queue cleared")
        if cleared:
            log_event("throttle.cleared", severity="WARNING", logger=logger, cleared=cleared)
        return cleared

    async def aclose(self) -> None:
        self.clear_queue()
        task = self._drain_task
        if task is not None and not task.done():
            await task
