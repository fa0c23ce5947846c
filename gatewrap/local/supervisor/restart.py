import time
import logging
from collections import deque
from typing import Callable, Deque

log = logging.getLogger(__name__)


class RestartBudget:
    """
    Sliding-window limit on automatic backend restarts.

    At most `max_restarts` restarts are granted within any `window` seconds.
    Once the window is full, the next request is refused, and the caller is
    expected to give up.
    """

    def __init__(self, max_restarts: int, window: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_restarts = max_restarts
        self.window = window
        self._clock = clock
        self._timestamps: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._timestamps and self._timestamps[0] <= now - self.window:
            self._timestamps.popleft()

    @property
    def used(self) -> int:
        """Restarts granted within the current window."""
        self._prune(self._clock())
        return len(self._timestamps)

    @property
    def remaining(self) -> int:
        return max(self.max_restarts - self.used, 0)

    def try_acquire(self) -> bool:
        """
        Requests permission for one restart.

        :return: True if the restart is allowed and has been counted, False if the budget is spent.
        """
        now = self._clock()
        self._prune(now)
        if len(self._timestamps) >= self.max_restarts:
            log.critical(
                f"Restart budget exhausted: {len(self._timestamps)} restarts "
                f"in the last {self.window:.0f}s (limit {self.max_restarts})."
            )
            return False
        self._timestamps.append(now)
        log.debug(f"Restart granted ({len(self._timestamps)}/{self.max_restarts} in window).")
        return True
