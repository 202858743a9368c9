"""
Manually advanced clock.

Stands in for both the time source and the event loop's ``call_later`` so
that scripted scenarios and tests run deterministically.
"""

import heapq
import itertools
from dataclasses import dataclass, field
from typing import Callable, List


@dataclass(order=True)
class ScheduledCall:
    """A callback due at a point in simulated time."""
    due: float
    seq: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """
    Simulated time.

    ``advance`` moves time forward and runs every callback that falls due,
    in due order, including callbacks scheduled while advancing.
    """

    def __init__(self, start: float = 1000.0):
        self._now = start
        self._queue: List[ScheduledCall] = []
        self._seq = itertools.count()

    def __call__(self) -> float:
        return self._now

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        call = ScheduledCall(self._now + max(0.0, delay), next(self._seq), callback)
        heapq.heappush(self._queue, call)
        return call

    def advance(self, seconds: float = 0.0) -> int:
        """
        Move time forward.

        Args:
            seconds: Amount of simulated time to pass

        Returns:
            Number of callbacks run
        """
        target = self._now + seconds
        ran = 0

        while self._queue and self._queue[0].due <= target:
            call = heapq.heappop(self._queue)
            self._now = max(self._now, call.due)
            if call.cancelled:
                continue
            call.callback()
            ran += 1

        self._now = target
        return ran

    @property
    def pending(self) -> int:
        return sum(1 for call in self._queue if not call.cancelled)
