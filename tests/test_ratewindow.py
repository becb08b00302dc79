from __future__ import annotations

from ci_monitor.ratewindow import RateWindowTracker


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_window_blocks_at_max_and_reopens_after_window():
    clock = _Clock()
    tracker = RateWindowTracker(window_s=60.0, max_requests=2, clock=clock)

    assert tracker.can_proceed("global")
    tracker.record("global")
    tracker.record("global")
    assert not tracker.can_proceed("global")

    clock.now += 59.9
    assert not tracker.can_proceed("global")

    clock.now = 1060.0
    assert tracker.can_proceed("global")
    assert tracker.counts() == {"global": 0}


def test_keys_are_tracked_independently():
    clock = _Clock()
    tracker = RateWindowTracker(window_s=10.0, max_requests=1, clock=clock)

    tracker.record("a")
    assert not tracker.can_proceed("a")
    assert tracker.can_proceed("b")


def test_only_timestamps_inside_the_window_survive_a_check():
    clock = _Clock()
    tracker = RateWindowTracker(window_s=10.0, max_requests=5, clock=clock)

    tracker.record("global")
    clock.now += 5
    tracker.record("global")
    clock.now += 6  # first entry is now 11s old
    assert tracker.can_proceed("global")
    assert tracker.counts() == {"global": 1}
