"""
Collaborator contracts consumed by the transition coordinator.

The coordinator never reaches into host or peer internals; everything it
observes or does goes through these interfaces, injected at construction.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional

from partitionhop.transition.state import FailureReason, TransitionEvent


class NotificationStyle(str, Enum):
    """Presentation hint for user-facing notices."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class PartitionOracle(ABC):
    """Third-party cache reporting the client's current partition."""

    @abstractmethod
    def read(self) -> Optional[int]:
        """
        Read the cached partition id.

        Returns:
            Partition id, or None (or 0) when unknown
        """
        pass

    @abstractmethod
    def invalidate(self) -> None:
        """Drop the cached value until it is independently re-derived."""
        pass


class SessionRoster(ABC):
    """Membership of the session a peer admits the client into."""

    @abstractmethod
    def in_session(self) -> bool:
        pass

    @abstractmethod
    def current_peer(self) -> Optional[str]:
        """Other member of the current session, if any."""
        pass

    @abstractmethod
    def in_protected_session(self) -> bool:
        """True when leaving or requesting would disrupt a protected sub-session."""
        pass

    @abstractmethod
    def accept_invite(self, peer: str) -> None:
        pass

    @abstractmethod
    def decline_invite(self, peer: str) -> None:
        pass

    @abstractmethod
    def leave(self) -> None:
        pass


class WorldProbe(ABC):
    """Read-only view of domains and nearby entity metadata."""

    @abstractmethod
    def local_domain(self) -> Optional[str]:
        """Domain the client is in, or None outside the open world."""
        pass

    @abstractmethod
    def peer_domain(self, peer: str) -> Optional[str]:
        """Domain of a session member, or None when it cannot be located."""
        pass

    @abstractmethod
    def read_nearby_fingerprint(self) -> Optional[str]:
        """
        Structural fingerprint sampled from a nearby entity.

        Sampled from the explicit target, then the implicit target, then a
        scan of visible entities.

        Returns:
            Fingerprint, or None when nothing suitable is nearby
        """
        pass


class TrustedInputGate(ABC):
    """Runs a callback from the call stack of a user-generated input event."""

    @abstractmethod
    def arm_next_trusted_event(self, callback: Callable[[], None]) -> None:
        pass

    @abstractmethod
    def disarm(self) -> None:
        pass

    @abstractmethod
    def is_armed(self) -> bool:
        pass


class RequestChannel(ABC):
    """
    Broadcasts a request for a peer to perform a hop.

    Must only be invoked from a trusted input context.
    """

    @abstractmethod
    def send_request(self) -> None:
        pass


class NotificationSink(ABC):
    """User-facing and peer-facing notifications. Fire-and-forget."""

    @abstractmethod
    def notify(self, text: str, style: NotificationStyle = NotificationStyle.INFO) -> None:
        pass

    @abstractmethod
    def whisper(self, peer: str, text: str) -> None:
        pass

    @abstractmethod
    def confirm(self, event: TransitionEvent) -> None:
        pass

    @abstractmethod
    def fail(self, reason: FailureReason, message: str) -> None:
        pass
