"""
Transition history and progress view.

Keeps a bounded record of finished attempts and summarizes the live one.
"""

import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from partitionhop.transition.state import (
    ConfirmationMethod,
    FailureReason,
    Initiator,
    TransitionEvent,
    TransitionPhase,
    TransitionState,
)
from partitionhop.utils.logging import get_logger

logger = get_logger(__name__)


def format_countdown(remaining: Optional[float]) -> str:
    """
    Format seconds remaining as ``m:ss``.

    Args:
        remaining: Seconds left, or None

    Returns:
        Formatted countdown, empty when there is none
    """
    if remaining is None or remaining < 0:
        return ""

    total = math.floor(remaining)
    return f"{total // 60}:{total % 60:02d}"


@dataclass
class TransitionRecord:
    """
    A finished attempt.

    Attributes:
        outcome: "confirmed", "failed" or "cancelled"
        initiator: Who started the attempt
        origin_partition: Partition at start
        partition: Partition after a confirmed hop
        peer: Peer involved, if any
        method: Confirmation method
        failure_reason: Failure cause
        retries: Retries consumed
        duration_s: Attempt duration
        finished_at: Completion time
    """
    outcome: str
    initiator: Optional[Initiator]
    origin_partition: Optional[int]
    partition: Optional[int] = None
    peer: Optional[str] = None
    method: Optional[ConfirmationMethod] = None
    failure_reason: Optional[FailureReason] = None
    retries: int = 0
    duration_s: float = 0.0
    finished_at: float = 0.0


class TransitionMonitor:
    """
    Records attempt outcomes and provides observability.
    """

    def __init__(self, history_size: int = 50):
        """
        Initialize transition monitor.

        Args:
            history_size: Finished attempts kept
        """
        self._history: Deque[TransitionRecord] = deque(maxlen=history_size)
        self._counts: Dict[str, int] = {
            "started": 0,
            "confirmed": 0,
            "failed": 0,
            "cancelled": 0,
            "retries": 0,
        }

    def record_started(self, initiator: Initiator) -> None:
        self._counts["started"] += 1

    def record_retry(self) -> None:
        self._counts["retries"] += 1

    def record_confirmed(self, event: TransitionEvent, now: float) -> TransitionRecord:
        record = TransitionRecord(
            outcome="confirmed",
            initiator=event.initiator,
            origin_partition=event.origin_partition,
            partition=event.partition,
            peer=event.peer,
            method=event.method,
            retries=event.retries,
            duration_s=event.duration_s,
            finished_at=now,
        )
        self._append(record)
        return record

    def record_failed(
        self,
        state: TransitionState,
        reason: FailureReason,
        now: float,
    ) -> TransitionRecord:
        """
        Record a failed or cancelled attempt.

        Args:
            state: State before reset
            reason: Failure cause
            now: Current time

        Returns:
            Stored record
        """
        record = TransitionRecord(
            outcome="cancelled" if reason is FailureReason.CANCELLED else "failed",
            initiator=state.initiator,
            origin_partition=state.origin_partition,
            peer=state.peer,
            failure_reason=reason,
            retries=state.retry_count,
            duration_s=now - state.started_at if state.started_at else 0.0,
            finished_at=now,
        )
        self._append(record)
        return record

    def _append(self, record: TransitionRecord) -> None:
        self._history.append(record)
        self._counts[record.outcome] += 1

        logger.info(
            "Transition finished",
            outcome=record.outcome,
            method=record.method.value if record.method else None,
            failure_reason=record.failure_reason.value if record.failure_reason else None,
            retries=record.retries,
            duration_s=round(record.duration_s, 2),
        )

    def get_history(self, limit: Optional[int] = None) -> List[TransitionRecord]:
        """Most recent records, newest last."""
        records = list(self._history)
        if limit is not None:
            records = records[-limit:]
        return records

    def status(self, state: TransitionState, now: float, max_retries: int) -> Dict:
        """
        Live view of the current attempt.

        Args:
            state: Current transition state
            now: Current time
            max_retries: Configured retry bound

        Returns:
            Status dict
        """
        countdown = ""
        if state.phase in (TransitionPhase.AWAITING_PEER, TransitionPhase.NO_RESPONSE):
            countdown = format_countdown(state.remaining(now))

        return {
            "phase": state.phase.value,
            "initiator": state.initiator.value if state.initiator else None,
            "origin_partition": state.origin_partition,
            "target_partition": state.target_partition,
            "peer": state.peer,
            "elapsed_s": int(state.elapsed(now)),
            "countdown": countdown,
            "retry": f"{state.retry_count}/{max_retries}" if state.retry_count else None,
        }

    def get_summary(self) -> Dict:
        """
        Get summary of all attempts.

        Returns:
            Summary dict
        """
        failures: Dict[str, int] = {}
        for record in self._history:
            if record.failure_reason is not None:
                key = record.failure_reason.value
                failures[key] = failures.get(key, 0) + 1

        return {
            "started_count": self._counts["started"],
            "confirmed_count": self._counts["confirmed"],
            "failed_count": self._counts["failed"],
            "cancelled_count": self._counts["cancelled"],
            "retry_count": self._counts["retries"],
            "failures_by_reason": failures,
        }
