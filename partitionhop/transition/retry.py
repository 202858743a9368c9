"""
Retry policy for failed hops.

Sending a new request is only allowed from a call stack that starts in a
trusted, user-generated input event. A timer cannot resend on its own, so a
retry is armed rather than executed: after a short delay the scheduler
registers with the trusted-input gate, and the next qualifying input event
fires the resend. Arming that outlives its attempt is dropped.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from partitionhop.transition.context import TransitionContext
from partitionhop.transition.deferred import DeferredScheduler
from partitionhop.transition.interfaces import TrustedInputGate
from partitionhop.transition.state import FailureReason, TransitionPhase
from partitionhop.utils.logging import get_logger

logger = get_logger(__name__)


class RetryAction(str, Enum):
    """What to do after a failed hop."""

    RETRY = "retry"          # Back to AWAITING_PEER, resend armed
    EXHAUSTED = "exhausted"  # MAX_RETRIES used up
    BLOCKED = "blocked"      # Every reachable peer is in another domain


@dataclass(frozen=True)
class RetryDecision:
    """
    Result of recording a failure.

    Attributes:
        action: Retry, exhausted or blocked
        attempt: Retry number now in progress (RETRY only)
        max_retries: Configured bound
    """
    action: RetryAction
    attempt: int
    max_retries: int

    def label(self) -> str:
        return f"{self.attempt}/{self.max_retries}"


class RetryScheduler:
    """
    Bounded, input-gated re-attempts.

    Owns the retry counter policy and the gate arming; the controller
    carries out the session and notification side effects.
    """

    def __init__(
        self,
        ctx: TransitionContext,
        gate: TrustedInputGate,
        deferred: DeferredScheduler,
        fire: Callable[[], None],
    ):
        """
        Initialize retry scheduler.

        Args:
            ctx: Shared transition context
            gate: Trusted-input gate
            deferred: Generation-tagged scheduler
            fire: Resend action, invoked from a trusted input context
        """
        self.ctx = ctx
        self.gate = gate
        self.deferred = deferred
        self._fire = fire

        # Generation the gate was armed under
        self._armed_generation: Optional[int] = None

        logger.info(
            "RetryScheduler initialized",
            max_retries=ctx.config.max_retries,
            arm_delay_s=ctx.config.retry_arm_delay_s,
        )

    @property
    def armed(self) -> bool:
        return self._armed_generation is not None

    def record_failure(
        self,
        reason: FailureReason,
        blanket_active: bool = False,
    ) -> RetryDecision:
        """
        Count a failed hop and decide what happens next.

        Args:
            reason: Why the hop failed
            blanket_active: Blanket block is up for the local domain

        Returns:
            Retry decision
        """
        state = self.ctx.state
        max_retries = self.ctx.config.max_retries

        if reason is FailureReason.CROSS_DOMAIN_MISMATCH and blanket_active:
            logger.info("Cross-domain failure with blanket block, not retrying")
            return RetryDecision(RetryAction.BLOCKED, state.retry_count, max_retries)

        if state.retry_count < max_retries:
            state.retry_count += 1

            logger.warning(
                "Hop failed, retrying",
                reason=reason.value,
                attempt=state.retry_count,
                max_retries=max_retries,
            )

            return RetryDecision(RetryAction.RETRY, state.retry_count, max_retries)

        logger.error(
            "Hop failed after all retries",
            reason=reason.value,
            attempts=state.retry_count,
        )

        return RetryDecision(RetryAction.EXHAUSTED, state.retry_count, max_retries)

    def schedule_arm(self, delay: Optional[float] = None) -> None:
        """
        Arm the gate after a delay, if the attempt is still waiting.

        Args:
            delay: Seconds before arming (defaults to retry_arm_delay_s)
        """
        if delay is None:
            delay = self.ctx.config.retry_arm_delay_s

        self.deferred.defer(delay, self._arm, name="arm retry")

    def _arm(self) -> None:
        if self.ctx.state.phase is not TransitionPhase.AWAITING_PEER:
            return

        self._armed_generation = self.ctx.generation.value
        self.gate.arm_next_trusted_event(self._on_trusted_input)

        logger.info(
            "Retry armed, waiting for trusted input",
            attempt=self.ctx.state.retry_count,
        )

    def _on_trusted_input(self) -> None:
        token = self._armed_generation
        self._armed_generation = None

        if token is None or not self.ctx.generation.is_current(token):
            logger.debug("Dropped stale retry arming")
            return

        if self.ctx.state.phase is not TransitionPhase.AWAITING_PEER:
            return

        logger.info("Firing retry from trusted input", attempt=self.ctx.state.retry_count)
        self._fire()

    def disarm(self) -> None:
        """Drop any pending arming."""
        if self._armed_generation is None and not self.gate.is_armed():
            return

        self._armed_generation = None
        self.gate.disarm()
        logger.debug("Retry disarmed")
