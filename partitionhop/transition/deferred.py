"""
Generation-tagged deferred tasks.

Any action that runs later (a one-tick-delayed accept, the delayed domain
check, arming a retry) captures the generation current at scheduling time.
When the generation has advanced by the time it fires, the action is skipped.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from partitionhop.utils.logging import get_logger

logger = get_logger(__name__)

CallLater = Callable[[float, Callable[[], None]], object]


class Generation:
    """Monotonically increasing cancellation counter."""

    def __init__(self):
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def advance(self) -> int:
        """Invalidate everything captured so far."""
        self._value += 1
        return self._value

    def is_current(self, token: int) -> bool:
        return token == self._value


@dataclass
class DeferredTask:
    """
    A scheduled callback bound to a generation.

    Attributes:
        name: Label for logging
        generation: Generation captured at scheduling time
        callback: Action to run
        fired: Callback ran
        skipped: Generation had advanced, callback did not run
    """
    name: str
    generation: int
    callback: Callable[[], None]
    fired: bool = False
    skipped: bool = False

    @property
    def pending(self) -> bool:
        return not (self.fired or self.skipped)


def _asyncio_call_later(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class DeferredScheduler:
    """
    Schedules generation-tagged callbacks.

    Uses the running asyncio loop unless another ``call_later`` is supplied
    (the simulated clock provides one).
    """

    def __init__(
        self,
        generation: Generation,
        call_later: Optional[CallLater] = None,
    ):
        """
        Initialize deferred scheduler.

        Args:
            generation: Shared generation counter
            call_later: ``call_later(delay, callback)`` implementation
        """
        self.generation = generation
        self._call_later = call_later or _asyncio_call_later

    def defer(
        self,
        delay: float,
        callback: Callable[[], None],
        name: str = "deferred",
    ) -> DeferredTask:
        """
        Run callback after delay if the generation is unchanged.

        Args:
            delay: Seconds to wait (0 runs on the next loop iteration)
            callback: Action to run
            name: Label for logging

        Returns:
            The scheduled task
        """
        task = DeferredTask(
            name=name,
            generation=self.generation.value,
            callback=callback,
        )

        self._call_later(delay, lambda: self._run(task))

        logger.debug(
            "Deferred task scheduled",
            task=name,
            delay_s=delay,
            generation=task.generation,
        )

        return task

    def _run(self, task: DeferredTask) -> None:
        if not self.generation.is_current(task.generation):
            task.skipped = True
            logger.debug(
                "Skipped stale deferred task",
                task=task.name,
                captured=task.generation,
                current=self.generation.value,
            )
            return

        task.fired = True

        try:
            task.callback()
        except Exception as e:
            logger.error(
                "Deferred task failed",
                task=task.name,
                error=str(e),
            )
