"""
Peer reputation tracking.

Remembers peers that cannot currently complete a hop, and holds the
blanket block that turns away hop invitations while the local domain is
known to be unreachable from the peers offering them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from partitionhop.transition.messages import peer_key
from partitionhop.utils.logging import get_logger

logger = get_logger(__name__)


class ReputationReason(str, Enum):
    """Why a peer is remembered."""

    CROSS_DOMAIN = "cross_domain"    # Peer is in a structurally incompatible domain
    RECENTLY_USED = "recently_used"  # Peer already hopped us a moment ago


@dataclass
class PeerReputationEntry:
    """
    A remembered peer.

    Attributes:
        peer_key: Normalized peer identity
        reason: Why the peer is remembered
        domain: Peer's domain when known
        first_seen: First time the peer was remembered
        expiry: Time after which the entry no longer blocks
    """
    peer_key: str
    reason: ReputationReason
    domain: Optional[str]
    first_seen: float
    expiry: float

    def is_expired(self, now: float) -> bool:
        return now > self.expiry


@dataclass
class BlanketBlock:
    """
    Pre-emptive rejection of hop invitations.

    Attributes:
        domain: Local domain the block was raised in
        expiry: Time the block lapses
    """
    domain: str
    expiry: float

    def is_active(self, now: float) -> bool:
        return now <= self.expiry


class PeerReputationStore:
    """
    TTL-keyed memory of peers that cannot help right now.

    Entries are pruned lazily on lookup.
    """

    def __init__(
        self,
        clock: Callable[[], float],
        cross_domain_ttl_s: float = 300.0,
        recently_used_ttl_s: float = 60.0,
        notification_cooldown_s: float = 120.0,
    ):
        """
        Initialize reputation store.

        Args:
            clock: Time source
            cross_domain_ttl_s: Lifetime of CROSS_DOMAIN entries and the blanket block
            recently_used_ttl_s: Lifetime of RECENTLY_USED entries
            notification_cooldown_s: Minimum spacing of notices about one peer
        """
        self._clock = clock
        self.notification_cooldown_s = notification_cooldown_s
        self._ttls = {
            ReputationReason.CROSS_DOMAIN: cross_domain_ttl_s,
            ReputationReason.RECENTLY_USED: recently_used_ttl_s,
        }

        self._entries: Dict[str, PeerReputationEntry] = {}
        self._blanket: Optional[BlanketBlock] = None

        # peer -> time of last decline notice
        self._notified: Dict[str, float] = {}

    @property
    def blanket(self) -> Optional[BlanketBlock]:
        return self._blanket

    def remember(
        self,
        peer: str,
        reason: ReputationReason,
        domain: Optional[str] = None,
    ) -> PeerReputationEntry:
        """
        Insert or refresh a peer entry.

        A live entry that outlasts the requested TTL is kept as is, so a
        RECENTLY_USED refresh never shortens a CROSS_DOMAIN block.

        Args:
            peer: Peer identity
            reason: Why the peer is remembered
            domain: Peer's domain when known

        Returns:
            The stored entry
        """
        key = peer_key(peer)
        now = self._clock()
        expiry = now + self._ttls[reason]

        existing = self.lookup(key)
        if existing and existing.reason != reason and existing.expiry > expiry:
            return existing

        entry = PeerReputationEntry(
            peer_key=key,
            reason=reason,
            domain=domain or (existing.domain if existing else None),
            first_seen=existing.first_seen if existing else now,
            expiry=expiry,
        )
        self._entries[key] = entry

        logger.info(
            "Remembered peer",
            peer=key,
            reason=reason.value,
            domain=entry.domain,
            ttl_s=self._ttls[reason],
        )

        return entry

    def lookup(self, peer: Optional[str]) -> Optional[PeerReputationEntry]:
        """
        Get a live entry, dropping it if expired.

        Args:
            peer: Peer identity

        Returns:
            Entry or None
        """
        key = peer_key(peer)
        if not key:
            return None

        entry = self._entries.get(key)
        if entry is None:
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            logger.debug("Reputation entry expired", peer=key, reason=entry.reason.value)
            return None

        return entry

    def is_blocked(self, peer: Optional[str]) -> bool:
        return self.lookup(peer) is not None

    def forget(self, peer: str) -> bool:
        return self._entries.pop(peer_key(peer), None) is not None

    def prune(self) -> int:
        """
        Drop every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]

        cutoff = now - self.notification_cooldown_s
        for key in [k for k, t in self._notified.items() if t < cutoff]:
            del self._notified[key]

        return len(expired)

    def extend_blanket(self, domain: str) -> BlanketBlock:
        """
        Set or refresh the blanket block for the local domain.

        Args:
            domain: Local domain

        Returns:
            The active block
        """
        expiry = self._clock() + self._ttls[ReputationReason.CROSS_DOMAIN]
        is_new = self._blanket is None or self._blanket.domain != domain
        self._blanket = BlanketBlock(domain=domain, expiry=expiry)

        if is_new:
            logger.info("Blanket block raised", domain=domain)

        return self._blanket

    def blanket_for(self, local_domain: Optional[str]) -> Optional[BlanketBlock]:
        """
        Active blanket block for the current local domain.

        An expired block, or one raised in a different domain, is cleared.

        Args:
            local_domain: Domain the client is in now

        Returns:
            Block or None
        """
        block = self._blanket
        if block is None:
            return None

        if not block.is_active(self._clock()):
            self.clear_blanket("expired")
            return None

        if local_domain is None:
            return None

        if local_domain != block.domain:
            self.clear_blanket("domain_changed")
            return None

        return block

    def clear_blanket(self, reason: str = "cleared") -> None:
        if self._blanket is not None:
            logger.info("Blanket block lifted", domain=self._blanket.domain, reason=reason)
        self._blanket = None

    def should_notify(self, peer: str) -> bool:
        """
        Rate limit for decline notices about a peer.

        Records the notice when allowed.

        Args:
            peer: Peer identity

        Returns:
            True if a notice may be sent now
        """
        key = peer_key(peer)
        now = self._clock()

        last = self._notified.get(key)
        if last is not None and now - last < self.notification_cooldown_s:
            return False

        self._notified[key] = now
        return True

    def __len__(self) -> int:
        return len(self._entries)
