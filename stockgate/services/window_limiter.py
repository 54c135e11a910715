from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, NamedTuple

logger = logging.getLogger(__name__)


class Admission(NamedTuple):
    admitted: bool
    wait_sec: float


class WindowLimiter:
    """Upstream call budget over a sliding window.

    Admission times are kept in a log; a call is admitted only while fewer
    than ``max_calls`` admissions fall inside the last ``window_sec``, so no
    window of that length (aligned or not) ever holds more than the maximum.
    Only the dispatch worker calls ``try_admit``, so the log has a single
    writer and needs no lock on the event loop.
    """

    def __init__(
        self,
        max_calls: int = 50,
        window_sec: float = 60.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        if window_sec <= 0:
            raise ValueError("window_sec must be > 0")
        self.max_calls = max_calls
        self.window_sec = window_sec
        self._clock = clock or time.monotonic
        self._admitted_at: deque[float] = deque()
        self.metrics_counters = {"admitted": 0, "deferred": 0}

    def _prune(self, now: float) -> None:
        while self._admitted_at and now - self._admitted_at[0] >= self.window_sec:
            self._admitted_at.popleft()

    def try_admit(self) -> Admission:
        now = self._clock()
        self._prune(now)
        if len(self._admitted_at) >= self.max_calls:
            wait = max(self._admitted_at[0] + self.window_sec - now, 0.0)
            self.metrics_counters["deferred"] += 1
            logger.info("[LIMITER][deferred] calls=%s wait_sec=%.3f", len(self._admitted_at), wait)
            return Admission(False, wait)
        self._admitted_at.append(now)
        self.metrics_counters["admitted"] += 1
        return Admission(True, 0.0)

    def calls_in_window(self) -> int:
        self._prune(self._clock())
        return len(self._admitted_at)

    def metrics(self) -> dict[str, int | float]:
        return {
            "calls_in_window": self.calls_in_window(),
            "max_calls": self.max_calls,
            "window_sec": self.window_sec,
            **self.metrics_counters,
        }
