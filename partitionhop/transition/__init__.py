"""
Partition transition coordination.

Requests a hop to another partition, follows the peer session that performs
it, and confirms the result from indirect evidence.
"""

from partitionhop.transition.controller import InviteDecision, TransitionController
from partitionhop.transition.evidence import (
    EvidenceAggregator,
    EvidenceSnapshot,
    EvidenceVerdict,
    Verdict,
)
from partitionhop.transition.monitor import TransitionMonitor, TransitionRecord
from partitionhop.transition.poller import Poller
from partitionhop.transition.reputation import (
    BlanketBlock,
    PeerReputationEntry,
    PeerReputationStore,
    ReputationReason,
)
from partitionhop.transition.retry import RetryAction, RetryDecision, RetryScheduler
from partitionhop.transition.state import (
    ConfirmationMethod,
    FailureReason,
    Initiator,
    TransitionConfig,
    TransitionEvent,
    TransitionPhase,
    TransitionState,
)

__all__ = [
    # Controller
    "TransitionController",
    "InviteDecision",
    # State
    "TransitionState",
    "TransitionPhase",
    "TransitionConfig",
    "TransitionEvent",
    "Initiator",
    "FailureReason",
    "ConfirmationMethod",
    # Evidence
    "EvidenceAggregator",
    "EvidenceSnapshot",
    "EvidenceVerdict",
    "Verdict",
    # Reputation
    "PeerReputationStore",
    "PeerReputationEntry",
    "BlanketBlock",
    "ReputationReason",
    # Retry
    "RetryScheduler",
    "RetryDecision",
    "RetryAction",
    # Polling and monitoring
    "Poller",
    "TransitionMonitor",
    "TransitionRecord",
]
