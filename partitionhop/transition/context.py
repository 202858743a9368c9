"""Shared mutable state handed to every transition handler."""

from dataclasses import dataclass, field
from typing import Callable, Optional

from partitionhop.transition.deferred import Generation
from partitionhop.transition.reputation import PeerReputationStore
from partitionhop.transition.state import TransitionConfig, TransitionState


@dataclass
class TransitionContext:
    """
    Everything a handler may read or mutate.

    Attributes:
        config: Tunables
        clock: Time source
        reputation: Peer reputation store (owns the blanket block)
        state: The single attempt record
        generation: Cancellation counter for deferred work
        last_known_partition: Last non-zero partition the oracle reported
        last_request_time: Last local request (cooldown)
        last_broadcast_time: Last request actually sent (invite identification)
    """
    config: TransitionConfig
    clock: Callable[[], float]
    reputation: PeerReputationStore
    state: TransitionState = field(default_factory=TransitionState)
    generation: Generation = field(default_factory=Generation)
    last_known_partition: Optional[int] = None
    last_request_time: Optional[float] = None
    last_broadcast_time: Optional[float] = None

    @classmethod
    def create(
        cls,
        config: TransitionConfig,
        clock: Callable[[], float],
    ) -> "TransitionContext":
        reputation = PeerReputationStore(
            clock,
            cross_domain_ttl_s=config.cross_domain_ttl_s,
            recently_used_ttl_s=config.recently_used_ttl_s,
            notification_cooldown_s=config.notification_cooldown_s,
        )
        return cls(config=config, clock=clock, reputation=reputation)

    def now(self) -> float:
        return self.clock()

    def broadcast_recent(self) -> bool:
        """A request went out within the broadcast window."""
        if self.last_broadcast_time is None:
            return False
        return self.now() - self.last_broadcast_time < self.config.broadcast_window_s
