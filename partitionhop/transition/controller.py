"""
Partition transition controller.

State machine for a single partition hop. A peer outside our control
performs the hop; the controller requests it, follows the session the peer
opens, decides from indirect evidence whether the hop happened, and retries
or gives up. All handlers run to completion on one logical thread.
"""

import time
from enum import Enum
from typing import Callable, Optional, Tuple

from partitionhop.transition.context import TransitionContext
from partitionhop.transition.deferred import CallLater, DeferredScheduler
from partitionhop.transition.evidence import EvidenceAggregator, EvidenceVerdict, Verdict
from partitionhop.transition.interfaces import (
    NotificationSink,
    NotificationStyle,
    PartitionOracle,
    RequestChannel,
    SessionRoster,
    TrustedInputGate,
    WorldProbe,
)
from partitionhop.transition.messages import PeerMessageInbox, peer_key
from partitionhop.transition.monitor import TransitionMonitor
from partitionhop.transition.poller import Poller
from partitionhop.transition.reputation import ReputationReason
from partitionhop.transition.retry import RetryAction, RetryScheduler
from partitionhop.transition.state import (
    FailureReason,
    Initiator,
    TransitionConfig,
    TransitionEvent,
    TransitionPhase,
    TransitionState,
)
from partitionhop.utils.logging import bind_attempt_context, clear_attempt_context, get_logger

logger = get_logger(__name__)


class InviteDecision(str, Enum):
    """What the controller did with an incoming invitation."""

    ACCEPTED = "accepted"
    DECLINED = "declined"
    IGNORED = "ignored"


class TransitionController:
    """
    Coordinates partition hops.

    Responsibilities:
    - Start attempts from local requests and remote invitations
    - Reject peers with a bad reputation before any other guard
    - Follow the peer's session and gather evidence each tick
    - Retry failed hops through the trusted-input gate
    - Apply phase timeouts and decay back to idle
    """

    def __init__(
        self,
        oracle: PartitionOracle,
        roster: SessionRoster,
        probe: WorldProbe,
        gate: TrustedInputGate,
        requests: RequestChannel,
        sink: NotificationSink,
        config: Optional[TransitionConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        call_later: Optional[CallLater] = None,
        monitor: Optional[TransitionMonitor] = None,
    ):
        """
        Initialize transition controller.

        Args:
            oracle: Partition oracle
            roster: Session roster
            probe: Domain and entity metadata probe
            gate: Trusted-input gate
            requests: Request broadcast channel
            sink: Notification sink
            config: Transition configuration
            clock: Time source
            call_later: Scheduler for deferred work (asyncio loop if None)
            monitor: Transition monitor
        """
        self.config = config or TransitionConfig()
        self.ctx = TransitionContext.create(self.config, clock)

        self.oracle = oracle
        self.roster = roster
        self.probe = probe
        self.requests = requests
        self.sink = sink
        self.monitor = monitor or TransitionMonitor()

        self.inbox = PeerMessageInbox(
            clock,
            tag=self.config.message_tag,
            keyword=self.config.target_keyword,
        )
        self.deferred = DeferredScheduler(self.ctx.generation, call_later)
        self.aggregator = EvidenceAggregator(
            oracle,
            roster,
            probe,
            self.inbox,
            self.config,
        )
        self.retry = RetryScheduler(self.ctx, gate, self.deferred, self._fire_retry)

        self.poller = Poller(self.tick, self.poll_interval)

        self._enabled = True
        self._attempts = 0

        # Only the most recently queued accept may run
        self._accept_seq = 0

        logger.info(
            "TransitionController initialized",
            max_retries=self.config.max_retries,
            awaiting_peer_timeout_s=self.config.awaiting_peer_timeout_s,
        )

    @property
    def state(self) -> TransitionState:
        return self.ctx.state

    @property
    def phase(self) -> TransitionPhase:
        return self.ctx.state.phase

    @property
    def reputation(self):
        return self.ctx.reputation

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        """Toggle automatic handling of incoming invitations."""
        self._enabled = enabled
        logger.info("Invite handling toggled", enabled=enabled)

    def poll_interval(self) -> float:
        """Delay before the next tick, by phase."""
        if self.phase.is_active():
            return self.config.poll_active_s
        return self.config.poll_idle_s

    def status(self):
        return self.monitor.status(self.state, self.ctx.now(), self.config.max_retries)

    async def start(self) -> None:
        """Start polling on the running event loop."""
        await self.poller.start()

    async def stop(self) -> None:
        """Stop polling."""
        await self.poller.stop()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def request_transition(self) -> bool:
        """
        Ask peers for a hop. Must be called from a trusted input context.

        Returns:
            True if a request was sent
        """
        now = self.ctx.now()

        if self.roster.in_protected_session():
            self._notify(
                "can't request a hop inside a protected session",
                NotificationStyle.WARNING,
            )
            return False

        if self.phase in (TransitionPhase.SESSION_ACTIVE, TransitionPhase.CONFIRMED):
            logger.debug("Request ignored mid-hop", phase=self.phase.value)
            return False

        last = self.ctx.last_request_time
        if last is not None and now - last < self.config.request_cooldown_s:
            logger.debug("Request ignored during cooldown")
            return False

        self.ctx.last_request_time = now
        return self._send_request()

    def cancel(self) -> bool:
        """
        Abandon the current attempt.

        Returns:
            True if there was something to cancel
        """
        if self.phase is TransitionPhase.IDLE:
            return False

        self.retry.disarm()
        self._leave_session("cancel")

        # NoResponse and Confirmed attempts were already recorded
        if self.phase.is_active():
            self.monitor.record_failed(self.state, FailureReason.CANCELLED, self.ctx.now())
        self._reset(failure=FailureReason.CANCELLED)
        self._notify("hop cancelled", NotificationStyle.WARNING)

        return True

    def on_invite_received(self, peer: str) -> InviteDecision:
        """
        Handle an invitation into a peer's session.

        Reputation and the blanket block are checked before anything else,
        including the enabled flag.

        Args:
            peer: Inviting peer

        Returns:
            Decision taken
        """
        key = peer_key(peer)

        entry = self.reputation.lookup(key)
        if entry:
            self._safely("decline invite", self.roster.decline_invite, peer)
            logger.info(
                "Declined invite from remembered peer",
                peer=key,
                reason=entry.reason.value,
            )
            return InviteDecision.DECLINED

        local = self.probe.local_domain()
        block = self.reputation.blanket_for(local)
        if block and self._looks_like_hop_invite(key):
            self._safely("decline invite", self.roster.decline_invite, peer)
            self.reputation.extend_blanket(block.domain)

            if self.reputation.should_notify(key):
                self._notify(
                    f"declined hop invite from {key}: peers are outside {block.domain}",
                    NotificationStyle.INFO,
                )
                self._whisper(
                    key,
                    f"{self.config.message_tag} I'm in {block.domain}, "
                    "hops don't cross domains. Thanks anyway!",
                )

            logger.info("Declined invite under blanket block", peer=key, domain=block.domain)
            return InviteDecision.DECLINED

        if not self._enabled:
            return InviteDecision.IGNORED

        if self.roster.in_session():
            logger.debug("Invite ignored while in a session", peer=key)
            return InviteDecision.IGNORED

        if self.phase.can_begin_attempt():
            self._begin_attempt(Initiator.REMOTE)
        elif self.phase is not TransitionPhase.AWAITING_PEER:
            return InviteDecision.IGNORED

        self._accept_seq += 1
        seq = self._accept_seq
        self.deferred.defer(
            0,
            lambda: self._accept_invite(peer, seq),
            name="accept invite",
        )

        logger.info("Accepting invite", peer=key, phase=self.phase.value)
        return InviteDecision.ACCEPTED

    def on_joined(self, peer: Optional[str] = None) -> None:
        """
        Handle joining a session.

        Args:
            peer: Session peer, read from the roster when omitted
        """
        key = peer_key(peer) or peer_key(self.roster.current_peer())

        if self.phase is TransitionPhase.CONFIRMED:
            logger.info("Leaving stale session after confirmed hop", peer=key)
            self._leave_session("confirmed")
            return

        entry = self.reputation.lookup(key)
        if entry:
            logger.info(
                "Leaving session with remembered peer",
                peer=key,
                reason=entry.reason.value,
            )
            cross_domain = entry.reason is ReputationReason.CROSS_DOMAIN

            if self.phase is TransitionPhase.SESSION_ACTIVE:
                self.handle_failed_hop(
                    FailureReason.CROSS_DOMAIN_MISMATCH if cross_domain else FailureReason.HOP_TIMEOUT,
                    entry.domain,
                )
                return

            # An attempt still waiting keeps waiting for another peer
            self._leave_session("cross_domain" if cross_domain else "recent")
            return

        if self.phase is not TransitionPhase.AWAITING_PEER:
            return

        self._enter_session(key)

    def on_left(self) -> None:
        """Handle the session ending."""
        if self.phase is TransitionPhase.SESSION_ACTIVE:
            logger.info("Session ended before confirmation", peer=self.state.peer)
            self._evaluate_session()

    def on_message(self, sender: str, text: str) -> None:
        """
        Handle a direct message from a peer.

        Args:
            sender: Sender identity
            text: Message body
        """
        message = self.inbox.record(sender, text)
        if message is None or message.partition is None:
            return

        if not self.phase.is_active():
            return

        state = self.state
        if state.origin_partition is not None and message.partition == state.origin_partition:
            self._restart_same_partition(message.peer)
            return

        state.target_partition = message.partition
        logger.info("Target partition announced", peer=message.peer, target=message.partition)

    def tick(self) -> None:
        """Re-evaluate the active hop and apply timeouts."""
        if self.phase is TransitionPhase.SESSION_ACTIVE:
            self._evaluate_session()

        if self.phase is TransitionPhase.CONFIRMED and self.roster.in_session():
            self._leave_session("confirmed")

        self._track_partition()
        self._apply_timeouts()

        if not self.phase.is_active():
            self._prune()

    def handle_failed_hop(
        self,
        reason: FailureReason,
        other_domain: Optional[str] = None,
    ) -> None:
        """
        Leave the session and retry, or give up.

        Args:
            reason: Why the hop failed
            other_domain: Peer's domain for cross-domain failures
        """
        if not self.phase.is_active():
            return

        cross_domain = reason is FailureReason.CROSS_DOMAIN_MISMATCH
        self._leave_session("cross_domain" if cross_domain else "timeout")

        local = self.probe.local_domain()
        blanket_active = self.reputation.blanket_for(local) is not None
        decision = self.retry.record_failure(reason, blanket_active=blanket_active)

        if decision.action is RetryAction.RETRY:
            self.monitor.record_retry()
            if cross_domain:
                where = other_domain or "another domain"
                message = f"peer is in {where}, retrying ({decision.label()})"
            else:
                message = f"hop not working, retrying ({decision.label()})"
            self._notify(message, NotificationStyle.WARNING)

            self._rewait()
            self.retry.schedule_arm()
            return

        if decision.action is RetryAction.BLOCKED:
            where = other_domain or "another domain"
            self._fail(
                FailureReason.CROSS_DOMAIN_MISMATCH,
                f"can't hop, peers are in {where} (you're in {local})",
            )
            return

        if cross_domain:
            message = f"no same-domain peers found after {decision.max_retries} attempts"
        else:
            message = f"hop failed after {decision.max_retries} attempts"
        self._fail(FailureReason.RETRIES_EXHAUSTED, message)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _set_phase(self, phase: TransitionPhase) -> None:
        state = self.state
        previous = state.phase

        state.phase = phase
        state.entered_at = self.ctx.now()
        self.ctx.generation.advance()

        if phase is not TransitionPhase.AWAITING_PEER:
            self.retry.disarm()

        logger.info(
            "Transition phase changed",
            previous=previous.value,
            phase=phase.value,
            peer=state.peer,
            retry_count=state.retry_count,
        )

    def _reset(self, failure: Optional[FailureReason] = None) -> None:
        self.state.reset()
        self.state.last_failure = failure
        self._set_phase(TransitionPhase.IDLE)
        clear_attempt_context()

    def _begin_attempt(self, initiator: Initiator) -> None:
        state = self.state
        now = self.ctx.now()

        origin = self.oracle.read()
        state.reset()
        state.initiator = initiator
        state.origin_partition = origin if origin and origin > 0 else None
        state.origin_metadata_key = self.probe.read_nearby_fingerprint()
        state.started_at = now
        state.last_failure = None

        self._attempts += 1
        bind_attempt_context(attempt=self._attempts, initiator=initiator.value)

        self._set_phase(TransitionPhase.AWAITING_PEER)
        state.deadline = now + self.config.awaiting_peer_timeout_s
        self.monitor.record_started(initiator)

        logger.info(
            "Hop attempt started",
            initiator=initiator.value,
            origin_partition=state.origin_partition,
            has_fingerprint=state.origin_metadata_key is not None,
        )

    def _rewait(self) -> None:
        """Return to AWAITING_PEER within the same attempt."""
        state = self.state
        state.peer = None
        state.target_partition = None
        state.oracle_cleared_on_disband = False

        self._set_phase(TransitionPhase.AWAITING_PEER)
        state.deadline = self.ctx.now() + self.config.awaiting_peer_timeout_s

    def _enter_session(self, peer: Optional[str]) -> None:
        state = self.state
        now = self.ctx.now()

        self._set_phase(TransitionPhase.SESSION_ACTIVE)
        state.peer = peer
        state.deadline = now + self.config.session_safety_timeout_s
        state.oracle_cleared_on_disband = False

        if state.target_partition is None and peer:
            target = self.inbox.recent_target(peer, self.config.target_message_max_age_s)
            if target is not None and target != state.origin_partition:
                state.target_partition = target

        # Known stale for up to a minute after a session starts
        self._safely("invalidate oracle", self.oracle.invalidate)

        logger.info(
            "Entered hop session",
            peer=peer,
            origin_partition=state.origin_partition,
            target_partition=state.target_partition,
        )

        self.deferred.defer(
            self.config.cross_domain_check_delay_s,
            self._check_cross_domain,
            name="cross-domain check",
        )

    def _evaluate_session(self) -> None:
        state = self.state
        now = self.ctx.now()

        verdict = self.aggregator.assess(state, now)

        if verdict.confirmed:
            self._confirm(verdict)
            return

        if verdict.verdict is Verdict.CONTRADICTS_BASELINE:
            self.handle_failed_hop(FailureReason.HOP_TIMEOUT)
            return

        if not self.roster.in_session() and not state.oracle_cleared_on_disband:
            state.oracle_cleared_on_disband = True
            self._safely("invalidate oracle", self.oracle.invalidate)
            logger.info("Oracle invalidated after disband", peer=state.peer)

    def _confirm(self, verdict: EvidenceVerdict) -> bool:
        state = self.state
        if state.phase is not TransitionPhase.SESSION_ACTIVE:
            return False

        now = self.ctx.now()
        peer = state.peer or peer_key(self.roster.current_peer())

        event = TransitionEvent(
            origin_partition=state.origin_partition,
            partition=verdict.partition,
            peer=peer,
            method=verdict.method,
            initiator=state.initiator,
            retries=state.retry_count,
            duration_s=now - state.started_at,
        )

        self._set_phase(TransitionPhase.CONFIRMED)
        state.peer = peer
        state.retry_count = 0
        state.deadline = now + self.config.confirmed_decay_s

        if verdict.partition is not None:
            self.ctx.last_known_partition = verdict.partition

        if peer:
            self.reputation.remember(peer, ReputationReason.RECENTLY_USED)

        self.monitor.record_confirmed(event, now)
        self._safely("confirm", self.sink.confirm, event)
        self._notify(event.describe(), NotificationStyle.SUCCESS)

        left = self._leave_session("confirmed")
        if left and peer and self.config.acknowledgement_enabled:
            self._whisper(peer, self.config.acknowledgement_text)

        return True

    def _fail(self, reason: FailureReason, message: str) -> None:
        self.monitor.record_failed(self.state, reason, self.ctx.now())
        self._notify(message, NotificationStyle.ERROR)
        self._safely("fail", self.sink.fail, reason, message)
        self._reset(failure=reason)

    def _restart_same_partition(self, peer: str) -> None:
        """Peer is in our own partition: drop it and wait for another."""
        logger.info("Peer is in the origin partition, waiting for another", peer=peer)

        self._leave_session("same_partition")
        self._rewait()
        self.retry.schedule_arm()
        self._notify("same partition, retrying...", NotificationStyle.WARNING)

    def _apply_timeouts(self) -> None:
        state = self.state
        now = self.ctx.now()

        if state.phase is TransitionPhase.CONFIRMED and state.deadline_passed(now):
            self._reset()

        elif state.phase is TransitionPhase.AWAITING_PEER and state.deadline_passed(now):
            if self.roster.in_session():
                self._enter_session(peer_key(self.roster.current_peer()))
            else:
                self.monitor.record_failed(state, FailureReason.NO_RESPONSE, now)
                self._set_phase(TransitionPhase.NO_RESPONSE)
                state.deadline = now + self.config.no_response_decay_s
                state.last_failure = FailureReason.NO_RESPONSE
                self._notify("no response from peers", NotificationStyle.ERROR)
                self._safely("fail", self.sink.fail, FailureReason.NO_RESPONSE, "no response from peers")

        elif state.phase is TransitionPhase.NO_RESPONSE and state.deadline_passed(now):
            self._reset(failure=FailureReason.NO_RESPONSE)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _send_request(self) -> bool:
        if not self._safely("send request", self.requests.send_request):
            return False

        now = self.ctx.now()
        self.ctx.last_broadcast_time = now

        if self.phase.can_begin_attempt():
            self._begin_attempt(Initiator.LOCAL)
        else:
            self.state.deadline = now + self.config.awaiting_peer_timeout_s
            logger.info("Request re-sent", retry_count=self.state.retry_count)

        return True

    def _accept_invite(self, peer: str, seq: int) -> None:
        if seq != self._accept_seq:
            logger.debug("Superseded invite not accepted", peer=peer_key(peer))
            return

        if self.roster.in_session():
            logger.debug("Already in a session, invite not accepted", peer=peer_key(peer))
            return

        self._safely("accept invite", self.roster.accept_invite, peer)

    def _fire_retry(self) -> None:
        if self.phase is TransitionPhase.AWAITING_PEER:
            self._send_request()

    def _check_cross_domain(self) -> None:
        if self.phase is not TransitionPhase.SESSION_ACTIVE:
            return

        is_cross, other_domain = self._detect_cross_domain()
        if not is_cross:
            return

        peer = self.state.peer
        local = self.probe.local_domain()

        logger.warning("Cross-domain peer detected", peer=peer, peer_domain=other_domain, local_domain=local)

        if peer:
            self.reputation.remember(peer, ReputationReason.CROSS_DOMAIN, domain=other_domain)
            if self.reputation.should_notify(peer):
                where = f"I'm in {local}, " if local else ""
                self._whisper(
                    peer,
                    f"{self.config.message_tag} {where}hops don't cross domains. Thanks anyway!",
                )

        if local:
            self.reputation.extend_blanket(local)

        self.handle_failed_hop(FailureReason.CROSS_DOMAIN_MISMATCH, other_domain)

    def _detect_cross_domain(self) -> Tuple[bool, Optional[str]]:
        """
        Locate the session peer.

        Returns:
            (is_cross_domain, peer_domain) where peer_domain may be None
            when the peer cannot be located at all
        """
        local = self.probe.local_domain()
        if local is None:
            return False, None

        peer = self.state.peer or peer_key(self.roster.current_peer())
        if not peer or not self.roster.in_session():
            return False, None

        remote = self.probe.peer_domain(peer)
        if remote is None:
            return True, None

        if remote != local:
            return True, remote

        return False, None

    def _looks_like_hop_invite(self, peer: Optional[str]) -> bool:
        """Recent broadcast, mid-hop, or a recent tagged message from the inviter."""
        if self.ctx.broadcast_recent():
            return True
        if self.phase is TransitionPhase.AWAITING_PEER:
            return True
        return self.inbox.has_recent(peer, self.config.broadcast_window_s)

    def _track_partition(self) -> None:
        current = self.oracle.read()
        if not current or current <= 0:
            return

        last = self.ctx.last_known_partition
        quiet = not self.phase.is_active() and self.phase is not TransitionPhase.CONFIRMED
        if last is not None and current != last and quiet:
            self._notify(f"partition {last} -> {current}", NotificationStyle.INFO)

        self.ctx.last_known_partition = current

    def _leave_session(self, reason: str) -> bool:
        """
        Leave the current session if allowed.

        Returns:
            True only when a session was actually left
        """
        if not self.roster.in_session():
            return False

        if self.roster.in_protected_session():
            logger.info("Not leaving protected session", reason=reason)
            return False

        left = self._safely("leave session", self.roster.leave)

        if reason == "timeout":
            self._safely("invalidate oracle", self.oracle.invalidate)

        if left:
            logger.info("Left session", reason=reason)
        return left

    def _prune(self) -> None:
        """Drop expired reputation entries, notice timestamps and old messages."""
        removed = self.reputation.prune()
        removed += self.inbox.prune(self.config.broadcast_window_s)
        if removed:
            logger.debug("Pruned peer bookkeeping", removed=removed)

    def _notify(self, text: str, style: NotificationStyle) -> None:
        self._safely("notify", self.sink.notify, text, style)

    def _whisper(self, peer: str, text: str) -> None:
        self._safely("whisper", self.sink.whisper, peer, text)

    def _safely(self, action: str, fn, *args) -> bool:
        """Run a collaborator call; log and swallow its failure."""
        try:
            fn(*args)
            return True
        except Exception as e:
            logger.error(
                "Collaborator call failed",
                action=action,
                error=str(e),
            )
            return False
