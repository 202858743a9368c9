"""
Variable-rate poll loop.

Drives periodic re-evaluation of the active hop: fast while an attempt is
in flight, slow otherwise. The loop always reschedules itself.
"""

import asyncio
from typing import Callable, Optional

from partitionhop.utils.logging import get_logger

logger = get_logger(__name__)


class Poller:
    """
    Runs a tick callable on an asyncio loop.

    The delay before the next tick is read after each tick, so a phase
    change made by the tick takes effect immediately.
    """

    def __init__(
        self,
        tick: Callable[[], None],
        interval: Callable[[], float],
    ):
        """
        Initialize poller.

        Args:
            tick: Work to run each tick
            interval: Returns the delay before the next tick
        """
        self._tick = tick
        self._interval = interval

        self._poll_task: Optional[asyncio.Task] = None
        self._running = False
        self.ticks = 0

        logger.info("Poller initialized")

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start polling."""
        if self._running:
            return

        self._running = True

        self._poll_task = asyncio.create_task(self._poll_loop())

        logger.info("Poller started")

    async def stop(self) -> None:
        """Stop polling."""
        self._running = False

        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        logger.info("Poller stopped", ticks=self.ticks)

    def run_once(self) -> float:
        """
        Run a single tick.

        Returns:
            Delay before the next tick
        """
        self.ticks += 1

        try:
            self._tick()
        except Exception as e:
            logger.error(
                "Error in poll tick",
                error=str(e),
            )

        return self._interval()

    async def _poll_loop(self) -> None:
        """Tick forever at the current rate."""
        while self._running:
            try:
                delay = self.run_once()
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break
