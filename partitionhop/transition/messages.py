"""
Inbound peer messages.

Peers announce hops with tagged messages of the form
``[tag] ... partition N ...``. The number is parsed opportunistically; a
tagged message without one still identifies the sender as a hop peer.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from partitionhop.utils.logging import get_logger

logger = get_logger(__name__)


def peer_key(name: Optional[str]) -> Optional[str]:
    """
    Normalize a peer identity.

    Strips a ``-home`` qualifier ("Name-Home" -> "Name").

    Args:
        name: Raw peer identity

    Returns:
        Bare name, or None for empty input
    """
    if not name:
        return None
    return name.split("-", 1)[0] or None


@dataclass
class PeerMessage:
    """
    A tagged message from a peer.

    Attributes:
        peer: Normalized sender
        received_at: Arrival time
        partition: Partition named in the message, if any
    """
    peer: str
    received_at: float
    partition: Optional[int] = None

    def age(self, now: float) -> float:
        return now - self.received_at


class PeerMessageInbox:
    """
    Latest tagged message per peer.

    Used to learn a hop's target partition and to recognise invitations
    coming from hop peers.
    """

    def __init__(
        self,
        clock: Callable[[], float],
        tag: str = "[hop]",
        keyword: str = "partition",
    ):
        """
        Initialize inbox.

        Args:
            clock: Time source
            tag: Prefix identifying hop messages
            keyword: Word preceding the target partition number
        """
        self._clock = clock
        self.tag = tag
        self._target_pattern = re.compile(
            rf"\b{re.escape(keyword)}\s+(\d+)",
            re.IGNORECASE,
        )

        # peer -> latest tagged message
        self._messages: Dict[str, PeerMessage] = {}

    def parse_target(self, text: str) -> Optional[int]:
        """
        Extract the target partition from message text.

        Args:
            text: Message body

        Returns:
            Partition number, or None when absent
        """
        match = self._target_pattern.search(text)
        if not match:
            return None
        value = int(match.group(1))
        return value if value > 0 else None

    def record(self, sender: str, text: str) -> Optional[PeerMessage]:
        """
        Record a message if it carries the hop tag.

        Args:
            sender: Raw sender identity
            text: Message body

        Returns:
            Recorded message, or None for untagged messages
        """
        key = peer_key(sender)
        if not key or not text or not text.startswith(self.tag):
            return None

        message = PeerMessage(
            peer=key,
            received_at=self._clock(),
            partition=self.parse_target(text),
        )
        self._messages[key] = message

        logger.debug(
            "Recorded peer message",
            peer=key,
            partition=message.partition,
        )

        return message

    def latest(self, peer: Optional[str], max_age: float) -> Optional[PeerMessage]:
        """
        Latest message from peer no older than max_age.

        Args:
            peer: Peer identity
            max_age: Maximum age in seconds

        Returns:
            Message or None
        """
        key = peer_key(peer)
        if not key:
            return None

        message = self._messages.get(key)
        if message is None:
            return None

        if message.age(self._clock()) > max_age:
            return None

        return message

    def recent_target(self, peer: Optional[str], max_age: float) -> Optional[int]:
        """Partition named by peer's latest message within max_age."""
        message = self.latest(peer, max_age)
        return message.partition if message else None

    def has_recent(self, peer: Optional[str], max_age: float) -> bool:
        return self.latest(peer, max_age) is not None

    def prune(self, max_age: float) -> int:
        """
        Drop messages older than max_age.

        Args:
            max_age: Maximum age in seconds

        Returns:
            Number of messages removed
        """
        now = self._clock()
        stale = [k for k, m in self._messages.items() if m.age(now) > max_age]
        for key in stale:
            del self._messages[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._messages)
