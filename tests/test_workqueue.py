"""Tests for the delaying work queue."""

from __future__ import annotations

import threading

from kwok_load_generator.workqueue import WorkQueue


class ManualClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestWorkQueue:
    """Ordering, de-duplication and delays."""

    def test_fifo_and_dedupe(self) -> None:
        queue = WorkQueue(clock=ManualClock())
        queue.add("a")
        queue.add("b")
        queue.add("a")

        assert len(queue) == 2
        assert queue.get(timeout=0) == "a"
        assert queue.get(timeout=0) == "b"
        assert queue.get(timeout=0) is None

    def test_key_in_flight_is_deferred_until_done(self) -> None:
        queue = WorkQueue(clock=ManualClock())
        queue.add("a")
        assert queue.get(timeout=0) == "a"

        queue.add("a")
        assert queue.get(timeout=0) is None

        queue.done("a")
        assert queue.get(timeout=0) == "a"

    def test_done_without_readd_forgets_key(self) -> None:
        queue = WorkQueue(clock=ManualClock())
        queue.add("a")
        queue.done(queue.get(timeout=0))
        assert queue.get(timeout=0) is None

    def test_add_after(self) -> None:
        clock = ManualClock()
        queue = WorkQueue(clock=clock)
        queue.add_after("late", 30)
        queue.add_after("early", 10)

        assert queue.get(timeout=0) is None
        clock.now += 10
        assert queue.get(timeout=0) == "early"
        assert queue.get(timeout=0) is None
        clock.now += 20
        assert queue.get(timeout=0) == "late"

    def test_zero_delay_is_immediate(self) -> None:
        queue = WorkQueue(clock=ManualClock())
        queue.add_after("a", 0)
        assert queue.get(timeout=0) == "a"

    def test_timeout_returns_none(self) -> None:
        assert WorkQueue().get(timeout=0.01) is None

    def test_get_wakes_on_add(self) -> None:
        queue = WorkQueue()
        timer = threading.Timer(0.05, queue.add, args=("a",))
        timer.start()
        try:
            assert queue.get(timeout=5) == "a"
        finally:
            timer.cancel()

    def test_shutdown(self) -> None:
        queue = WorkQueue(clock=ManualClock())
        queue.shutdown()
        queue.add("a")
        queue.add_after("b", 5)

        assert queue.shutting_down
        assert queue.get() is None
