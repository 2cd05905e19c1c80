"""Cancellable fixed-interval timer driving the reconciliation loop."""

from __future__ import annotations

import threading


class Ticker:
    """Fixed-interval timer whose waits can be interrupted from another thread."""

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait(self, seconds: float | None = None) -> bool:
        """Block for one interval (or ``seconds``).

        Returns:
            bool: ``True`` when the wait ran to completion, ``False`` when the
            ticker was cancelled.
        """
        timeout = self.interval if seconds is None else seconds
        return not self._cancelled.wait(timeout=max(timeout, 0.0))

    def cancel(self) -> None:
        """Wake any pending wait and make all future waits return immediately."""
        self._cancelled.set()

    def reset(self) -> None:
        self._cancelled.clear()
