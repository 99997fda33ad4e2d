"""
Background Task Tests

No tick may run after cancel() returns, and a failing tick must not kill
the loop.
"""

import threading
import time
import pytest

from guard.scheduling import PeriodicTask


class TestPeriodicTask:

    def test_ticks_until_cancelled(self):
        ticks = []
        task = PeriodicTask("ticker", 0.01, lambda: ticks.append(1)).start()
        time.sleep(0.1)
        task.cancel(wait=True, timeout=1.0)

        seen = len(ticks)
        time.sleep(0.1)
        assert seen > 0
        assert len(ticks) == seen
        assert not task.alive

    def test_cancel_is_idempotent(self):
        task = PeriodicTask("idle", 10, lambda: None).start()
        task.cancel()
        task.cancel(wait=True, timeout=1.0)
        assert task.cancelled

    def test_cancel_before_start_never_ticks(self):
        ticks = []
        task = PeriodicTask("never", 0.01, lambda: ticks.append(1))
        task.cancel()
        task.start()
        time.sleep(0.05)
        assert ticks == []

    def test_failing_tick_keeps_running(self):
        calls = []
        done = threading.Event()

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("transient")
            done.set()

        task = PeriodicTask("flaky", 0.01, flaky).start()
        assert done.wait(1.0)
        task.cancel(wait=True, timeout=1.0)

    def test_cancel_from_inside_tick(self):
        ticks = []
        holder = {}

        def once():
            ticks.append(1)
            holder["task"].cancel(wait=True)

        holder["task"] = PeriodicTask("self-cancel", 0.01, once)
        holder["task"].start()
        time.sleep(0.1)
        assert ticks == [1]

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, lambda: None)
