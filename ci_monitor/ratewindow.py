from __future__ import annotations

import time
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class RateWindowTracker:
    """Sliding-window request counter keyed by logical bucket.

    Callers check `can_proceed` before `record`. The check/record pair is not
    atomic, which is fine for a single event loop with no await in between.
    """

    window_s: float = 60.0
    max_requests: int = 250
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def __post_init__(self) -> None:
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def _prune(self, key: str, now: float) -> deque[float]:
        q = self._hits[key]
        while q and now - q[0] >= self.window_s:
            q.popleft()
        return q

    def can_proceed(self, key: str) -> bool:
        q = self._prune(key, self.clock())
        return len(q) < self.max_requests

    def record(self, key: str) -> None:
        self._hits[key].append(self.clock())

    def counts(self) -> dict[str, int]:
        return {k: len(v) for k, v in self._hits.items()}
