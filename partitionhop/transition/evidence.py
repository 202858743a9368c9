"""
Evidence aggregation for an active hop.

Completion can never be queried directly. Each poll tick reads four
independent sources and reduces them to one verdict:

- partition oracle (may be stale or invalidated)
- session roster (is the session still up)
- peer message inbox (target partition announced by the peer)
- nearby entity metadata (structural fingerprint, independent of the oracle)

Sources that have nothing to say abstain; they never fail the hop.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from partitionhop.transition.interfaces import PartitionOracle, SessionRoster, WorldProbe
from partitionhop.transition.messages import PeerMessageInbox
from partitionhop.transition.state import (
    ConfirmationMethod,
    TransitionConfig,
    TransitionState,
)
from partitionhop.utils.logging import get_logger

logger = get_logger(__name__)


class Verdict(str, Enum):
    """Outcome of one evidence pass."""

    CONFIRMED = "confirmed"
    INCONCLUSIVE = "inconclusive"
    CONTRADICTS_BASELINE = "contradicts_baseline"


@dataclass(frozen=True)
class EvidenceSnapshot:
    """
    Source readings for one tick.

    Attributes:
        oracle_partition: Oracle value, None when unknown
        fingerprint: Nearby structural fingerprint, None when unavailable
        in_session: Session still up
        message_target: Target announced in a recent peer message
        elapsed: Seconds since the session was entered
    """
    oracle_partition: Optional[int]
    fingerprint: Optional[str]
    in_session: bool
    message_target: Optional[int]
    elapsed: float


@dataclass(frozen=True)
class EvidenceVerdict:
    """
    Verdict with the method that produced it.

    Attributes:
        verdict: Confirmed, inconclusive or contradicting
        method: Confirmation method when confirmed
        partition: Partition the client is believed to be in now
    """
    verdict: Verdict
    method: Optional[ConfirmationMethod] = None
    partition: Optional[int] = None

    @property
    def confirmed(self) -> bool:
        return self.verdict is Verdict.CONFIRMED


INCONCLUSIVE = EvidenceVerdict(Verdict.INCONCLUSIVE)


def known_partition(value: Optional[int]) -> Optional[int]:
    """Treat 0 and negative oracle values as unknown."""
    if value is None or value <= 0:
        return None
    return value


class EvidenceAggregator:
    """
    Reduces independent signals to a verdict for the active hop.

    Confirmation methods, first positive wins:
    1. Target match: oracle equals the announced target
    2. Any-change match: oracle differs from origin (no target known)
    3. Metadata divergence: nearby fingerprint differs from origin fingerprint

    After the session ends, a changed oracle value alone confirms. Only an
    oracle positively reporting the origin partition counts against the hop.
    """

    def __init__(
        self,
        oracle: PartitionOracle,
        roster: SessionRoster,
        probe: WorldProbe,
        inbox: PeerMessageInbox,
        config: TransitionConfig,
    ):
        """
        Initialize aggregator.

        Args:
            oracle: Partition oracle
            roster: Session roster
            probe: Entity metadata probe
            inbox: Peer message inbox
            config: Transition configuration
        """
        self.oracle = oracle
        self.roster = roster
        self.probe = probe
        self.inbox = inbox
        self.config = config

    def collect(self, state: TransitionState, now: float) -> EvidenceSnapshot:
        """
        Read all sources.

        Args:
            state: Active transition state
            now: Current time

        Returns:
            Snapshot for this tick
        """
        message_target = None
        if state.target_partition is None and state.peer:
            message_target = self.inbox.recent_target(
                state.peer,
                self.config.target_message_max_age_s,
            )

        return EvidenceSnapshot(
            oracle_partition=known_partition(self.oracle.read()),
            fingerprint=self.probe.read_nearby_fingerprint(),
            in_session=self.roster.in_session(),
            message_target=message_target,
            elapsed=state.elapsed(now),
        )

    def evaluate(
        self,
        state: TransitionState,
        snapshot: EvidenceSnapshot,
    ) -> EvidenceVerdict:
        """
        Produce a verdict from a snapshot.

        Args:
            state: Active transition state
            snapshot: Source readings

        Returns:
            Verdict
        """
        oracle = snapshot.oracle_partition
        origin = state.origin_partition
        target = state.target_partition or snapshot.message_target
        if target is not None and target == origin:
            target = None

        changed = oracle is not None and origin is not None and oracle != origin

        if target is not None and oracle == target:
            return EvidenceVerdict(Verdict.CONFIRMED, ConfirmationMethod.TARGET_MATCH, oracle)

        if target is None and changed:
            return EvidenceVerdict(Verdict.CONFIRMED, ConfirmationMethod.ANY_CHANGE, oracle)

        if (
            snapshot.fingerprint is not None
            and state.origin_metadata_key is not None
            and snapshot.fingerprint != state.origin_metadata_key
        ):
            return EvidenceVerdict(
                Verdict.CONFIRMED,
                ConfirmationMethod.METADATA_DIVERGENCE,
                oracle if changed else None,
            )

        if not snapshot.in_session and changed:
            return EvidenceVerdict(Verdict.CONFIRMED, ConfirmationMethod.SESSION_ENDED, oracle)

        if origin is None and snapshot.elapsed > self.config.no_baseline_trust_after_s:
            return EvidenceVerdict(Verdict.CONFIRMED, ConfirmationMethod.NO_BASELINE, oracle)

        if snapshot.elapsed >= self.config.session_safety_timeout_s:
            return EvidenceVerdict(Verdict.CONFIRMED, ConfirmationMethod.SAFETY_TIMEOUT, oracle)

        if (
            oracle is not None
            and oracle == origin
            and snapshot.elapsed > self.config.stale_origin_fail_after_s
        ):
            return EvidenceVerdict(Verdict.CONTRADICTS_BASELINE, partition=oracle)

        return INCONCLUSIVE

    def assess(self, state: TransitionState, now: float) -> EvidenceVerdict:
        """Collect and evaluate in one step."""
        snapshot = self.collect(state, now)
        verdict = self.evaluate(state, snapshot)

        if verdict.verdict is not Verdict.INCONCLUSIVE:
            logger.debug(
                "Evidence verdict",
                verdict=verdict.verdict.value,
                method=verdict.method.value if verdict.method else None,
                oracle=snapshot.oracle_partition,
                in_session=snapshot.in_session,
                elapsed_s=round(snapshot.elapsed, 2),
            )

        return verdict
