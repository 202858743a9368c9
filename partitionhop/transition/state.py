"""
Transition state management.

Defines the phases of a partition hop, the single mutable attempt record
and the tunables that drive timeouts and retries.
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Optional

from partitionhop.utils.logging import get_logger

logger = get_logger(__name__)


class TransitionPhase(str, Enum):
    """
    Phases of a partition hop.

    State transitions:
    IDLE → AWAITING_PEER → SESSION_ACTIVE → CONFIRMED → IDLE
                        ↘ NO_RESPONSE → IDLE
    """

    IDLE = "idle"                      # Nothing in flight
    AWAITING_PEER = "awaiting_peer"    # Request sent or invite seen, no session yet
    SESSION_ACTIVE = "session_active"  # Joined a peer's session, gathering evidence
    CONFIRMED = "confirmed"            # Hop verified, decaying back to idle
    NO_RESPONSE = "no_response"        # No session formed in time

    def is_active(self) -> bool:
        """Check if an attempt is in flight."""
        return self in (TransitionPhase.AWAITING_PEER, TransitionPhase.SESSION_ACTIVE)

    def can_begin_attempt(self) -> bool:
        """Check if a new attempt may start from this phase."""
        return self in (TransitionPhase.IDLE, TransitionPhase.NO_RESPONSE)


class Initiator(str, Enum):
    """Who started the attempt."""

    LOCAL = "local"
    REMOTE = "remote"


class FailureReason(str, Enum):
    """Terminal and retryable failure causes."""

    NO_RESPONSE = "no_response"
    CROSS_DOMAIN_MISMATCH = "cross_domain_mismatch"
    HOP_TIMEOUT = "hop_timeout"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CANCELLED = "cancelled"


class ConfirmationMethod(str, Enum):
    """How a hop was confirmed."""

    TARGET_MATCH = "target_match"
    ANY_CHANGE = "any_change"
    METADATA_DIVERGENCE = "metadata_divergence"
    SESSION_ENDED = "session_ended"
    NO_BASELINE = "no_baseline"
    SAFETY_TIMEOUT = "safety_timeout"


@dataclass
class TransitionConfig:
    """
    Tunables for the transition coordinator.

    All durations are in seconds.
    """
    poll_idle_s: float = 1.0
    poll_active_s: float = 0.1
    awaiting_peer_timeout_s: float = 20.0
    session_safety_timeout_s: float = 120.0
    confirmed_decay_s: float = 3.0
    no_response_decay_s: float = 5.0
    max_retries: int = 3
    retry_arm_delay_s: float = 3.0
    cross_domain_check_delay_s: float = 3.5
    cross_domain_ttl_s: float = 300.0
    recently_used_ttl_s: float = 60.0
    notification_cooldown_s: float = 120.0
    broadcast_window_s: float = 60.0
    target_message_max_age_s: float = 30.0
    stale_origin_fail_after_s: float = 10.0
    no_baseline_trust_after_s: float = 15.0
    request_cooldown_s: float = 3.0
    message_tag: str = "[hop]"
    target_keyword: str = "partition"
    acknowledgement_enabled: bool = True
    acknowledgement_text: str = "[hop] Hopped! Thanks for the lift."

    def __post_init__(self):
        if self.poll_active_s <= 0 or self.poll_idle_s <= 0:
            raise ValueError("Poll intervals must be positive")

        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")

        if not 3.0 <= self.confirmed_decay_s <= 8.0:
            raise ValueError(
                f"confirmed_decay_s must be within 3..8s, got {self.confirmed_decay_s}"
            )

        if not 60.0 <= self.notification_cooldown_s <= 120.0:
            raise ValueError(
                "notification_cooldown_s must be within 60..120s, "
                f"got {self.notification_cooldown_s}"
            )

        if not self.message_tag:
            raise ValueError("message_tag must not be empty")

    @classmethod
    def from_config(cls, config) -> "TransitionConfig":
        """
        Build from the ``transition`` section of a Config.

        Args:
            config: Config instance

        Returns:
            Transition configuration
        """
        section = config.get("transition", {}) or {}
        known = {f.name for f in fields(cls)}

        unknown = sorted(set(section) - known)
        if unknown:
            logger.warning("Ignoring unknown transition settings", keys=unknown)

        return cls(**{k: v for k, v in section.items() if k in known})


@dataclass
class TransitionState:
    """
    State of the one partition hop attempt.

    Attributes:
        phase: Current phase
        initiator: Who started the attempt
        origin_partition: Partition id captured at attempt start
        origin_metadata_key: Structural fingerprint captured at attempt start
        target_partition: Partition named by the peer, if known
        peer: Cooperating peer, captured on session entry
        deadline: Absolute time of the phase-specific timeout
        entered_at: Time the current phase was entered
        started_at: Time the attempt started
        retry_count: Failed hops retried so far
        oracle_cleared_on_disband: Oracle already invalidated after disband
        last_failure: Reason the previous attempt ended in failure
    """
    phase: TransitionPhase = TransitionPhase.IDLE
    initiator: Optional[Initiator] = None
    origin_partition: Optional[int] = None
    origin_metadata_key: Optional[str] = None
    target_partition: Optional[int] = None
    peer: Optional[str] = None
    deadline: Optional[float] = None
    entered_at: float = 0.0
    started_at: float = 0.0
    retry_count: int = 0
    oracle_cleared_on_disband: bool = False
    last_failure: Optional[FailureReason] = None

    def reset(self) -> None:
        """Clear the attempt. Phase bookkeeping is left to the caller."""
        self.initiator = None
        self.origin_partition = None
        self.origin_metadata_key = None
        self.target_partition = None
        self.peer = None
        self.deadline = None
        self.started_at = 0.0
        self.retry_count = 0
        self.oracle_cleared_on_disband = False

    def elapsed(self, now: float) -> float:
        """Seconds spent in the current phase."""
        return now - self.entered_at

    def remaining(self, now: float) -> Optional[float]:
        """Seconds until the deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - now)

    def deadline_passed(self, now: float) -> bool:
        return self.deadline is not None and now >= self.deadline


@dataclass(frozen=True)
class TransitionEvent:
    """
    A confirmed hop, handed to the notification sink.

    Attributes:
        origin_partition: Partition before the hop
        partition: Partition after the hop, if the oracle knew it
        peer: Peer that performed the hop
        method: Evidence that confirmed it
        initiator: Who started the attempt
        retries: Retries consumed before success
        duration_s: Seconds from attempt start to confirmation
    """
    origin_partition: Optional[int]
    partition: Optional[int]
    peer: Optional[str]
    method: ConfirmationMethod
    initiator: Optional[Initiator]
    retries: int
    duration_s: float

    def describe(self) -> str:
        """Human readable summary."""
        if self.origin_partition and self.partition and self.origin_partition != self.partition:
            return f"partition {self.origin_partition} -> {self.partition}"
        if self.partition:
            return f"hopped to partition {self.partition}"
        return "hop complete"
