"""
In-memory collaborators for the transition controller.

A small simulated world: an oracle that can go stale, a session roster that
delivers membership events as fresh events, a probe with domains and nearby
entity fingerprints, a keyboard-like trusted-input gate, and a sink that
records everything it is told.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from partitionhop.sim.clock import ManualClock
from partitionhop.transition.controller import InviteDecision, TransitionController
from partitionhop.transition.interfaces import (
    NotificationSink,
    NotificationStyle,
    PartitionOracle,
    RequestChannel,
    SessionRoster,
    TrustedInputGate,
    WorldProbe,
)
from partitionhop.transition.monitor import TransitionMonitor
from partitionhop.transition.state import FailureReason, TransitionConfig, TransitionEvent
from partitionhop.utils.logging import get_logger

logger = get_logger(__name__)


class SimOracle(PartitionOracle):
    """Partition cache that returns nothing after invalidation until re-derived."""

    def __init__(self, partition: Optional[int] = None):
        self.partition = partition
        self.invalidated = False
        self.invalidations = 0

    def read(self) -> Optional[int]:
        if self.invalidated:
            return None
        return self.partition

    def invalidate(self) -> None:
        self.invalidated = True
        self.invalidations += 1

    def rederive(self, partition: int) -> None:
        """The oracle independently learned the partition again."""
        self.partition = partition
        self.invalidated = False


class SimRoster(SessionRoster):
    """
    Session membership.

    Joins and leaves are reported back as new events on the clock, the way
    a network round trip would re-enter the controller.
    """

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.controller: Optional[TransitionController] = None
        self.peer: Optional[str] = None
        self.protected = False
        self.accepted: List[str] = []
        self.declined: List[str] = []
        self.leaves = 0

    def attach(self, controller: TransitionController) -> None:
        self.controller = controller

    def in_session(self) -> bool:
        return self.peer is not None

    def current_peer(self) -> Optional[str]:
        return self.peer

    def in_protected_session(self) -> bool:
        return self.protected

    def accept_invite(self, peer: str) -> None:
        self.accepted.append(peer)
        self.join(peer)

    def decline_invite(self, peer: str) -> None:
        self.declined.append(peer)

    def leave(self) -> None:
        self.leaves += 1
        self.disband()

    def join(self, peer: str) -> None:
        """Enter a peer's session and report it."""
        self.peer = peer
        if self.controller:
            self.clock.call_later(0, lambda: self.controller.on_joined(peer))

    def disband(self) -> None:
        """End the session and report it."""
        if self.peer is None:
            return
        self.peer = None
        if self.controller:
            self.clock.call_later(0, self.controller.on_left)


class SimProbe(WorldProbe):
    """Domains plus nearby entity fingerprints."""

    def __init__(self, domain: Optional[str] = "azeroth"):
        self.domain = domain
        self.peer_domains: Dict[str, Optional[str]] = {}
        self.target: Optional[str] = None
        self.mouseover: Optional[str] = None
        self.visible: List[Optional[str]] = []

    def local_domain(self) -> Optional[str]:
        return self.domain

    def peer_domain(self, peer: str) -> Optional[str]:
        return self.peer_domains.get(peer, self.domain)

    def read_nearby_fingerprint(self) -> Optional[str]:
        if self.target:
            return self.target
        if self.mouseover:
            return self.mouseover
        for fingerprint in self.visible:
            if fingerprint:
                return fingerprint
        return None

    def set_fingerprint(self, fingerprint: Optional[str]) -> None:
        self.target = None
        self.mouseover = None
        self.visible = [fingerprint]


class SimGate(TrustedInputGate):
    """Fires the armed callback on the next simulated key press."""

    def __init__(self):
        self._callback: Optional[Callable[[], None]] = None
        self.arms = 0

    def arm_next_trusted_event(self, callback: Callable[[], None]) -> None:
        self._callback = callback
        self.arms += 1

    def disarm(self) -> None:
        self._callback = None

    def is_armed(self) -> bool:
        return self._callback is not None

    def press_key(self) -> bool:
        """
        Deliver a trusted input event.

        Returns:
            True if an armed callback ran
        """
        callback, self._callback = self._callback, None
        if callback is None:
            return False
        callback()
        return True


class SimRequests(RequestChannel):
    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.sent: List[float] = []

    def send_request(self) -> None:
        self.sent.append(self.clock.now())


@dataclass
class RecordingSink(NotificationSink):
    """Keeps every notification for inspection."""
    notifications: List[Tuple[str, NotificationStyle]] = field(default_factory=list)
    whispers: List[Tuple[str, str]] = field(default_factory=list)
    confirmations: List[TransitionEvent] = field(default_factory=list)
    failures: List[Tuple[FailureReason, str]] = field(default_factory=list)

    def notify(self, text: str, style: NotificationStyle = NotificationStyle.INFO) -> None:
        self.notifications.append((text, style))

    def whisper(self, peer: str, text: str) -> None:
        self.whispers.append((peer, text))

    def confirm(self, event: TransitionEvent) -> None:
        self.confirmations.append(event)

    def fail(self, reason: FailureReason, message: str) -> None:
        self.failures.append((reason, message))

    def texts(self) -> List[str]:
        return [text for text, _ in self.notifications]


class SimulatedWorld:
    """
    A controller wired to simulated collaborators.

    Example:
        world = SimulatedWorld(partition=3)
        world.controller.request_transition()
        world.invite("Host")
        world.oracle.rederive(7)
        world.run(1.0)
    """

    def __init__(
        self,
        partition: Optional[int] = 3,
        domain: Optional[str] = "azeroth",
        fingerprint: Optional[str] = "zone-1",
        config: Optional[TransitionConfig] = None,
        start: float = 1000.0,
    ):
        self.clock = ManualClock(start)
        self.oracle = SimOracle(partition)
        self.roster = SimRoster(self.clock)
        self.probe = SimProbe(domain)
        self.probe.set_fingerprint(fingerprint)
        self.gate = SimGate()
        self.requests = SimRequests(self.clock)
        self.sink = RecordingSink()
        self.monitor = TransitionMonitor()

        self.controller = TransitionController(
            oracle=self.oracle,
            roster=self.roster,
            probe=self.probe,
            gate=self.gate,
            requests=self.requests,
            sink=self.sink,
            config=config,
            clock=self.clock,
            call_later=self.clock.call_later,
            monitor=self.monitor,
        )
        self.roster.attach(self.controller)

    def flush(self) -> None:
        """Deliver events due now."""
        self.clock.advance(0)

    def invite(self, peer: str) -> InviteDecision:
        """A peer invites us; accepted invites join on the next tick."""
        decision = self.controller.on_invite_received(peer)
        self.flush()
        return decision

    def message(self, peer: str, text: str) -> None:
        self.controller.on_message(peer, text)

    def press_key(self) -> bool:
        return self.gate.press_key()

    def run(self, seconds: float) -> None:
        """
        Advance time, letting the controller's poller tick at its own rate.

        Args:
            seconds: Simulated time to pass
        """
        end = self.clock.now() + seconds
        delay = self.controller.poll_interval()
        while self.clock.now() < end - 1e-9:
            self.clock.advance(min(delay, end - self.clock.now()))
            delay = self.controller.poller.run_once()
