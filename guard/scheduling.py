"""
Background Tasks

Periodic work runs on daemon threads, each paired with a threading.Event
that acts as its cancellation token. Cancelling sets the event; the loop
checks it before every tick, so nothing fires once cancel() has returned
(apart from a tick that was already executing).
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Calls `fn` every `interval_seconds` until cancelled.

    Exceptions raised by `fn` are logged and the loop keeps running.
    `cancel()` is idempotent and may be called from inside `fn`.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        fn: Callable[[], None],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self.interval_seconds = interval_seconds
        self._fn = fn
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> PeriodicTask:
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Task {self.name} started (every {self.interval_seconds}s)")
        return self

    def cancel(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        """
        Stop the loop.

        Args:
            wait: Block until the thread has exited. Ignored when called
                from the task's own thread.
            timeout: Upper bound for the wait, in seconds.
        """
        if not self._cancelled.is_set():
            self._cancelled.set()
            logger.debug(f"Task {self.name} cancelled")
        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        while not self._cancelled.wait(self.interval_seconds):
            try:
                self._fn()
            except Exception as e:
                logger.error(f"Task {self.name} tick failed: {e}")
