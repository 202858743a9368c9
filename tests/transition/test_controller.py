"""Tests for the transition controller."""

import asyncio

import pytest

from partitionhop.sim.clock import ManualClock
from partitionhop.sim.world import (
    RecordingSink,
    SimGate,
    SimOracle,
    SimProbe,
    SimRequests,
    SimRoster,
    SimulatedWorld,
)
from partitionhop.transition.controller import InviteDecision, TransitionController
from partitionhop.transition.interfaces import NotificationStyle
from partitionhop.transition.reputation import ReputationReason
from partitionhop.transition.state import (
    ConfirmationMethod,
    FailureReason,
    Initiator,
    TransitionConfig,
    TransitionPhase,
)


def start_session(world, peer="Host"):
    """Request a hop and join the inviting peer's session."""
    assert world.controller.request_transition()
    decision = world.invite(peer)
    assert decision == InviteDecision.ACCEPTED
    assert world.controller.phase == TransitionPhase.SESSION_ACTIVE


def fail_hop(world, peer):
    """Join a session whose oracle keeps reporting the origin partition."""
    assert world.invite(peer) == InviteDecision.ACCEPTED
    world.oracle.rederive(3)
    world.run(10.5)


class TestRequest:
    """Test starting attempts."""

    def test_local_request_starts_attempt(self, world):
        """Test a local request snapshots the baseline."""
        assert world.controller.request_transition()

        state = world.controller.state
        assert state.phase == TransitionPhase.AWAITING_PEER
        assert state.initiator == Initiator.LOCAL
        assert state.origin_partition == 3
        assert state.origin_metadata_key == "zone-1"
        assert len(world.requests.sent) == 1

    def test_request_blocked_in_protected_session(self, world):
        """Test requests are refused inside a protected sub-session."""
        world.roster.protected = True

        assert not world.controller.request_transition()

        assert world.controller.phase == TransitionPhase.IDLE
        assert world.requests.sent == []
        assert world.sink.notifications[-1][1] == NotificationStyle.WARNING

    def test_request_cooldown(self, world):
        """Test requests are rate limited."""
        assert world.controller.request_transition()
        world.controller.cancel()

        assert not world.controller.request_transition()

        world.clock.advance(3.1)
        assert world.controller.request_transition()

    def test_resend_keeps_attempt(self, world):
        """Test re-sending while waiting does not start a new attempt."""
        world.controller.request_transition()
        started = world.controller.state.started_at
        world.oracle.rederive(5)

        world.clock.advance(4.0)
        assert world.controller.request_transition()

        assert world.controller.state.started_at == started
        assert world.controller.state.origin_partition == 3
        assert len(world.requests.sent) == 2

    def test_request_ignored_mid_session(self, world):
        """Test no request while a session is active."""
        start_session(world)
        world.clock.advance(5.0)

        assert not world.controller.request_transition()


class TestInvites:
    """Test invitation handling."""

    def test_remote_invite_starts_attempt(self, world):
        """Test an invite while idle starts a remote attempt."""
        decision = world.invite("Host")

        assert decision == InviteDecision.ACCEPTED
        assert world.roster.accepted == ["Host"]
        assert world.controller.phase == TransitionPhase.SESSION_ACTIVE
        assert world.controller.state.initiator == Initiator.REMOTE
        assert world.controller.state.peer == "Host"

    def test_disabled_ignores_invites(self, world):
        """Test invites are left alone while disabled."""
        world.controller.set_enabled(False)

        decision = world.invite("Host")

        assert decision == InviteDecision.IGNORED
        assert world.roster.accepted == []
        assert world.controller.phase == TransitionPhase.IDLE

    def test_reputation_checked_before_enabled(self, world):
        """Test a remembered peer is declined even while disabled."""
        world.controller.set_enabled(False)
        world.controller.reputation.remember("Bad", ReputationReason.CROSS_DOMAIN)

        decision = world.invite("Bad-Home")

        assert decision == InviteDecision.DECLINED
        assert world.roster.declined == ["Bad-Home"]

    def test_invite_ignored_while_in_session(self, world):
        """Test a second invite during a session is tolerated."""
        start_session(world)

        decision = world.invite("Other")

        assert decision == InviteDecision.IGNORED
        assert world.controller.state.peer == "Host"

    def test_cancel_voids_deferred_accept(self, world):
        """Test a cancel before the deferred accept fires wins."""
        world.controller.request_transition()
        decision = world.controller.on_invite_received("Host")
        assert decision == InviteDecision.ACCEPTED

        world.controller.cancel()
        world.flush()

        assert world.roster.accepted == []
        assert not world.roster.in_session()

    def test_remembered_peer_session_left_while_idle(self, world):
        """Test a session with a remembered peer is left regardless of phase."""
        world.controller.set_enabled(False)
        world.controller.reputation.remember("Bad", ReputationReason.RECENTLY_USED)

        world.roster.join("Bad")
        world.flush()

        assert world.roster.leaves == 1
        assert not world.roster.in_session()
        assert world.controller.phase == TransitionPhase.IDLE


class TestConfirmation:
    """Test confirmation paths."""

    def test_session_entry_invalidates_oracle(self, world):
        """Test the oracle is treated as unknown once the session starts."""
        start_session(world)

        assert world.oracle.invalidations == 1
        assert world.oracle.read() is None

    def test_same_value_does_not_confirm(self, world):
        """Origin 3, no target, oracle reports 3: no confirmation."""
        start_session(world)
        world.oracle.rederive(3)

        world.run(5.0)

        assert world.controller.phase == TransitionPhase.SESSION_ACTIVE
        assert world.sink.confirmations == []

    def test_target_match_confirms_same_tick(self, world):
        """Origin 3, target 7 from a message, oracle reports 7."""
        world.controller.request_transition()
        world.message("Host-Home", "[hop] Inviting you to partition 7...")
        assert world.controller.state.target_partition == 7

        world.invite("Host-Home")
        world.run(1.0)
        assert world.controller.phase == TransitionPhase.SESSION_ACTIVE

        world.oracle.rederive(7)
        world.controller.tick()

        assert world.controller.phase == TransitionPhase.CONFIRMED
        event = world.sink.confirmations[0]
        assert event.method == ConfirmationMethod.TARGET_MATCH
        assert event.origin_partition == 3
        assert event.partition == 7
        assert event.peer == "Host"

    def test_confirmation_leaves_and_acknowledges(self, world):
        """Test confirmation leaves the session and thanks the peer once."""
        start_session(world)
        world.oracle.rederive(8)

        world.run(0.2)
        world.run(1.0)

        assert world.roster.leaves == 1
        assert world.sink.whispers == [("Host", world.controller.config.acknowledgement_text)]

    def test_confirmation_is_idempotent(self, world):
        """Test overlapping methods produce one transition and one notice."""
        world.controller.request_transition()
        world.message("Host", "[hop] partition 7")
        world.invite("Host")
        world.oracle.rederive(7)

        world.controller.tick()
        world.controller.tick()
        world.run(0.5)

        assert len(world.sink.confirmations) == 1
        successes = [t for t, s in world.sink.notifications if s == NotificationStyle.SUCCESS]
        assert successes == ["partition 3 -> 7"]

    def test_any_change_confirms(self, world):
        """Test a different oracle value confirms without a target."""
        start_session(world)
        world.oracle.rederive(5)

        world.controller.tick()

        assert world.sink.confirmations[0].method == ConfirmationMethod.ANY_CHANGE

    def test_metadata_divergence_confirms_without_oracle(self, world):
        """Test the fingerprint confirms while the oracle is invalidated."""
        start_session(world)
        world.probe.set_fingerprint("zone-2")

        world.controller.tick()

        event = world.sink.confirmations[0]
        assert event.method == ConfirmationMethod.METADATA_DIVERGENCE
        assert event.partition is None

    def test_disband_with_changed_value_confirms(self, world):
        """Test looser rules once the session has ended."""
        world.controller.request_transition()
        world.message("Host", "[hop] partition 7")
        world.invite("Host")

        world.roster.disband()
        world.flush()
        assert world.controller.phase == TransitionPhase.SESSION_ACTIVE
        assert world.oracle.invalidations == 2

        world.oracle.rederive(5)
        world.controller.tick()

        event = world.sink.confirmations[0]
        assert event.method == ConfirmationMethod.SESSION_ENDED
        assert event.partition == 5

    def test_safety_timeout_trusts(self, world):
        """Test the 120s safety net confirms unconditionally."""
        start_session(world)

        world.run(119.0)
        assert world.controller.phase == TransitionPhase.SESSION_ACTIVE

        world.run(1.5)
        assert world.sink.confirmations[0].method == ConfirmationMethod.SAFETY_TIMEOUT

    def test_no_baseline_trusts_after_delay(self):
        """Test an attempt without an origin partition is trusted after 15s."""
        world = SimulatedWorld(partition=None)
        start_session(world)

        world.run(15.5)

        assert world.sink.confirmations[0].method == ConfirmationMethod.NO_BASELINE

    def test_confirmed_decays_to_idle(self, world):
        """Test Confirmed returns to Idle after the decay."""
        start_session(world)
        world.oracle.rederive(5)
        world.controller.tick()

        world.run(4.0)

        assert world.controller.phase == TransitionPhase.IDLE
        assert world.controller.state.retry_count == 0

    def test_stale_session_left_after_confirm(self, world):
        """Test a late invite accepted after confirmation is left."""
        start_session(world)
        world.oracle.rederive(5)
        world.controller.tick()

        world.roster.join("Late")
        world.flush()

        assert world.roster.leaves == 2
        assert not world.roster.in_session()

    def test_recent_peer_declined(self, world):
        """Test the peer that just hopped us is declined for a minute."""
        start_session(world)
        world.oracle.rederive(5)
        world.controller.tick()
        world.run(4.0)

        assert world.invite("Host") == InviteDecision.DECLINED

        world.run(57.0)
        assert world.invite("Host") == InviteDecision.ACCEPTED

    def test_no_ack_when_leave_blocked(self, world):
        """Test no acknowledgement when a protected session prevents leaving."""
        start_session(world)
        world.roster.protected = True
        world.oracle.rederive(5)

        world.controller.tick()

        assert world.controller.phase == TransitionPhase.CONFIRMED
        assert world.roster.leaves == 0
        assert world.sink.whispers == []


class TestTimeouts:
    """Test phase timeouts."""

    def test_no_response_then_idle(self, world):
        """AwaitingPeer with no session for 20s goes NoResponse, then Idle."""
        world.controller.request_transition()

        world.run(19.5)
        assert world.controller.phase == TransitionPhase.AWAITING_PEER

        world.run(1.0)
        assert world.controller.phase == TransitionPhase.NO_RESPONSE
        assert world.sink.failures[0][0] == FailureReason.NO_RESPONSE

        world.run(6.0)
        assert world.controller.phase == TransitionPhase.IDLE

    def test_timeout_while_in_session_enters_session(self, world):
        """Test a missed join event is recovered at the deadline."""
        world.controller.request_transition()
        world.roster.peer = "Host"

        world.run(20.5)

        assert world.controller.phase == TransitionPhase.SESSION_ACTIVE
        assert world.controller.state.peer == "Host"

    def test_poll_interval_follows_phase(self, world):
        """Test fast polling only while an attempt is in flight."""
        assert world.controller.poll_interval() == 1.0

        world.controller.request_transition()
        assert world.controller.poll_interval() == 0.1


class TestFailures:
    """Test failed hops and retries."""

    def test_unchanged_oracle_retries(self, world):
        """Test explicit no-change evidence fails the hop into a retry."""
        start_session(world)
        world.oracle.rederive(3)

        world.run(10.5)

        state = world.controller.state
        assert state.phase == TransitionPhase.AWAITING_PEER
        assert state.retry_count == 1
        assert world.roster.leaves == 1
        assert "hop not working, retrying (1/3)" in world.sink.texts()

    def test_retry_fires_on_trusted_input(self, world):
        """Test the retry is armed after a delay and fired by a key press."""
        start_session(world)
        world.oracle.rederive(3)
        world.run(10.5)

        assert not world.gate.is_armed()
        world.run(3.1)
        assert world.gate.is_armed()

        assert world.press_key()

        assert len(world.requests.sent) == 2
        assert world.controller.phase == TransitionPhase.AWAITING_PEER

    def test_armed_retry_dropped_on_state_change(self, world):
        """Test an armed retry does nothing once the attempt moved on."""
        start_session(world)
        world.oracle.rederive(3)
        world.run(10.5)
        world.run(3.1)

        world.controller.cancel()

        assert not world.press_key()
        assert len(world.requests.sent) == 1

    def test_retries_exhausted(self, world):
        """Three failed retries, then the fourth failure is terminal."""
        world.controller.request_transition()

        for attempt in range(1, 4):
            fail_hop(world, f"Host{attempt}")
            assert world.controller.state.retry_count == attempt
            assert world.controller.phase == TransitionPhase.AWAITING_PEER
            world.run(3.1)
            assert world.press_key()

        fail_hop(world, "Host4")

        state = world.controller.state
        assert state.phase == TransitionPhase.IDLE
        assert state.retry_count == 0
        assert state.last_failure == FailureReason.RETRIES_EXHAUSTED
        assert world.sink.failures[-1] == (
            FailureReason.RETRIES_EXHAUSTED,
            "hop failed after 3 attempts",
        )

        world.run(5.0)
        assert not world.gate.is_armed()
        assert len(world.requests.sent) == 4

    def test_same_partition_message_restarts_wait(self, world):
        """Test a peer announcing our own partition is dropped without a retry."""
        start_session(world)

        world.message("Host", "[hop] Inviting you to partition 3")

        state = world.controller.state
        assert state.phase == TransitionPhase.AWAITING_PEER
        assert state.retry_count == 0
        assert world.roster.leaves == 1

        world.run(3.1)
        assert world.gate.is_armed()


class TestCrossDomain:
    """Test cross-domain detection and blanket blocking."""

    @pytest.fixture
    def blocked_world(self, world):
        """World where peer "Far" turned out to be in another domain."""
        world.probe.peer_domains["Far"] = "outland"
        start_session(world, "Far")
        world.run(3.6)
        return world

    def test_cross_domain_not_detected_early(self, world):
        """Test nothing happens before the check delay."""
        world.probe.peer_domains["Far"] = "outland"
        start_session(world, "Far")

        world.run(3.4)

        assert world.controller.phase == TransitionPhase.SESSION_ACTIVE
        assert not world.controller.reputation.is_blocked("Far")

    def test_cross_domain_peer_remembered(self, blocked_world):
        """Test the peer is remembered and the hop fails terminally."""
        world = blocked_world

        entry = world.controller.reputation.lookup("Far")
        assert entry.reason == ReputationReason.CROSS_DOMAIN
        assert entry.domain == "outland"
        assert world.controller.phase == TransitionPhase.IDLE
        assert world.controller.state.last_failure == FailureReason.CROSS_DOMAIN_MISMATCH
        assert world.roster.leaves == 1
        assert world.sink.whispers[0][0] == "Far"

    def test_repeat_invite_rejected_without_join(self, blocked_world):
        """Test a second invite from the same peer is declined."""
        world = blocked_world
        world.run(6.4)

        decision = world.invite("Far")

        assert decision == InviteDecision.DECLINED
        assert world.roster.accepted == ["Far"]
        assert world.roster.declined == ["Far"]

    def test_blanket_declines_other_hop_invites(self, blocked_world):
        """Test other peers are declined while a hop request is recent."""
        world = blocked_world

        decision = world.invite("Another")

        assert decision == InviteDecision.DECLINED
        assert ("Another" in [peer for peer, _ in world.sink.whispers])

    def test_blanket_notice_rate_limited(self, blocked_world):
        """Test one notice per peer per cooldown."""
        world = blocked_world

        world.invite("Another")
        world.run(10.0)
        world.invite("Another")

        whispers = [peer for peer, _ in world.sink.whispers if peer == "Another"]
        assert whispers == ["Another"]

    def test_blanket_allows_manual_invites(self, blocked_world):
        """Test invites unrelated to a hop pass the blanket block."""
        world = blocked_world
        world.run(61.0)

        decision = world.invite("Friend")

        assert decision == InviteDecision.ACCEPTED

    def test_blanket_lifted_on_domain_change(self, blocked_world):
        """Test moving to another domain lifts the block."""
        world = blocked_world
        world.probe.domain = "outland"

        decision = world.invite("Another")

        assert decision == InviteDecision.ACCEPTED
        assert world.controller.reputation.blanket is None

    def test_unlocatable_peer_is_cross_domain(self, world):
        """Test a peer that cannot be located counts as cross-domain."""
        world.probe.peer_domains["Lost"] = None
        start_session(world, "Lost")

        world.run(3.6)

        assert world.controller.reputation.lookup("Lost").reason == ReputationReason.CROSS_DOMAIN
        assert world.controller.phase == TransitionPhase.IDLE


class TestCancelAndStatus:
    """Test cancel, organic changes and status."""

    def test_cancel_leaves_session(self, world):
        """Test cancelling mid-session."""
        start_session(world)

        assert world.controller.cancel()

        assert world.controller.phase == TransitionPhase.IDLE
        assert world.controller.state.last_failure == FailureReason.CANCELLED
        assert world.roster.leaves == 1
        assert not world.controller.cancel()

    def test_organic_partition_change_notice(self, world):
        """Test a partition change outside a hop is reported."""
        world.run(1.0)
        world.oracle.rederive(4)

        world.run(1.0)

        assert "partition 3 -> 4" in world.sink.texts()

    def test_status_countdown(self, world):
        """Test the live status view."""
        world.controller.request_transition()
        world.run(5.0)

        status = world.controller.status()

        assert status["phase"] == "awaiting_peer"
        assert status["countdown"] in ("0:14", "0:15")
        assert status["origin_partition"] == 3

    def test_monitor_records_outcomes(self, world):
        """Test outcomes reach the monitor."""
        start_session(world)
        world.oracle.rederive(5)
        world.controller.tick()
        world.run(4.0)

        summary = world.monitor.get_summary()

        assert summary["started_count"] == 1
        assert summary["confirmed_count"] == 1


class TestSimultaneousInvites:
    """Test invites arriving within one loop turn."""

    def test_latest_invite_wins(self, world):
        """Test only the last queued accept runs and its peer is tracked."""
        world.probe.peer_domains["Far"] = "outland"
        world.controller.request_transition()

        world.controller.on_invite_received("Near")
        world.controller.on_invite_received("Far")
        world.flush()

        assert world.roster.accepted == ["Far"]
        assert world.controller.state.peer == "Far"

        world.run(4.0)

        assert world.controller.reputation.is_blocked("Far")
        assert not world.controller.reputation.is_blocked("Near")

    def test_accept_skipped_when_already_in_session(self, world):
        """Test a queued accept does nothing once a session exists."""
        world.controller.request_transition()
        world.controller.on_invite_received("Host")

        world.roster.join("Other")
        world.flush()

        assert world.roster.accepted == []
        assert world.controller.state.peer == "Other"


class TestAcknowledgement:
    """Test the thank-you whisper follows an actual leave."""

    def test_no_ack_when_leave_fails(self, world):
        """Test a failing leave call sends no acknowledgement."""
        start_session(world)

        def failing_leave():
            raise RuntimeError("leave failed")

        world.roster.leave = failing_leave
        world.oracle.rederive(5)
        world.controller.tick()

        assert world.controller.phase == TransitionPhase.CONFIRMED
        assert world.sink.whispers == []

    def test_no_ack_after_session_ended(self, world):
        """Test no acknowledgement when the peer already ended the session."""
        start_session(world)
        world.roster.disband()
        world.flush()

        world.oracle.rederive(5)
        world.controller.tick()

        assert world.controller.phase == TransitionPhase.CONFIRMED
        assert world.sink.whispers == []


class TestAttemptRecords:
    """Test each finished attempt is recorded once."""

    def test_cancel_after_no_response(self, world):
        """Test cancelling a NoResponse attempt does not record it again."""
        world.controller.request_transition()
        world.run(20.5)
        assert world.controller.phase == TransitionPhase.NO_RESPONSE

        assert world.controller.cancel()

        summary = world.monitor.get_summary()
        assert summary["failed_count"] == 1
        assert summary["cancelled_count"] == 0
        assert world.controller.state.last_failure == FailureReason.CANCELLED

    def test_cancel_while_waiting_recorded(self, world):
        """Test cancelling an in-flight attempt records it as cancelled."""
        world.controller.request_transition()

        world.controller.cancel()

        assert world.monitor.get_summary()["cancelled_count"] == 1

    def test_remembered_peer_join_keeps_waiting(self, world):
        """Test joining a remembered peer while waiting leaves and keeps the attempt."""
        world.controller.request_transition()
        world.controller.reputation.remember("Bad", ReputationReason.CROSS_DOMAIN)

        world.roster.join("Bad")
        world.flush()

        assert world.roster.leaves == 1
        assert world.controller.phase == TransitionPhase.AWAITING_PEER
        assert world.monitor.get_history() == []

        world.run(21.0)
        assert world.monitor.get_summary()["failed_count"] == 1

    def test_remembered_peer_join_mid_session_fails_hop(self, world):
        """Test a session switching to a remembered peer counts as a failed hop."""
        start_session(world)
        world.controller.reputation.remember("Bad", ReputationReason.RECENTLY_USED)

        world.roster.join("Bad")
        world.flush()

        assert world.controller.phase == TransitionPhase.AWAITING_PEER
        assert world.controller.state.retry_count == 1
        assert not world.roster.in_session()


class TestPruning:
    """Test per-peer bookkeeping does not grow without bound."""

    def test_idle_ticks_prune_notices_and_messages(self, world):
        """Test old notice timestamps and messages are dropped while idle."""
        for i in range(50):
            world.controller.reputation.should_notify(f"Peer{i}")
            world.message(f"Peer{i}", "[hop] anyone?")
        assert len(world.controller.inbox) == 50

        world.run(200.0)

        assert world.controller.reputation._notified == {}
        assert len(world.controller.inbox) == 0

    def test_live_entries_kept(self, world):
        """Test pruning keeps entries still inside their TTL."""
        world.controller.reputation.remember("Far", ReputationReason.CROSS_DOMAIN)
        world.message("Near", "[hop] partition 5")

        world.run(10.0)

        assert world.controller.reputation.is_blocked("Far")
        assert len(world.controller.inbox) == 1


class TestPolling:
    """Test the controller's own poll loop."""

    @pytest.mark.asyncio
    async def test_poller_drives_controller_to_no_response(self):
        """Test the poller ticks a real controller until the wait times out."""
        clock = ManualClock()
        sink = RecordingSink()
        config = TransitionConfig(
            poll_idle_s=0.01,
            poll_active_s=0.01,
            awaiting_peer_timeout_s=0.05,
        )
        controller = TransitionController(
            oracle=SimOracle(3),
            roster=SimRoster(clock),
            probe=SimProbe(),
            gate=SimGate(),
            requests=SimRequests(clock),
            sink=sink,
            config=config,
        )

        assert controller.request_transition()
        await controller.start()
        try:
            for _ in range(100):
                if controller.phase is TransitionPhase.NO_RESPONSE:
                    break
                await asyncio.sleep(0.01)
        finally:
            await controller.stop()

        assert controller.phase == TransitionPhase.NO_RESPONSE
        assert controller.poller.ticks > 1
        assert not controller.poller.running
        assert sink.failures[0][0] == FailureReason.NO_RESPONSE

    def test_simulated_run_ticks_through_poller(self, world):
        """Test the simulated world advances through the controller's poller."""
        world.run(3.0)

        assert world.controller.poller.ticks == 3
