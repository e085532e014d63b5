"""Tests for call negotiation in CallCoordinator."""

import asyncio

import pytest
from conftest import FakeTrack

from duo_call.call.session import CallState, Role
from duo_call.exceptions import DeviceUnavailableError, SignalingChannelError
from duo_call.protocol import (
    MessageType,
    SessionDescription,
    create_answer,
    create_ice,
    create_leave,
    create_offer,
    create_ready,
    parse_message,
    serialize_message,
)

OFFER = SessionDescription(type="offer", sdp="v=0 remote offer")
ANSWER = SessionDescription(type="answer", sdp="v=0 remote answer")


def candidate(n):
    return {
        "candidate": f"candidate:{n} 1 udp 2130706431 10.0.0.{n} 5000{n} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


def wire(message):
    """Send a message through its JSON wire form."""
    return parse_message(serialize_message(message))


class TestJoinBarrier:
    """Test that JOIN waits for both media and channel."""

    @pytest.mark.parametrize("media_first", [True, False])
    def test_join_sent_once_after_both_ready(self, make_coordinator, media_first):
        """Test JOIN is sent exactly once, whichever setup step finishes last."""
        coordinator = make_coordinator(Role.A)

        async def scenario():
            coordinator.capture.user_gate = asyncio.Event()
            coordinator.channel.gate = asyncio.Event()
            first, second = (
                (coordinator.capture.user_gate, coordinator.channel.gate)
                if media_first
                else (coordinator.channel.gate, coordinator.capture.user_gate)
            )

            task = asyncio.create_task(coordinator.start())
            await asyncio.sleep(0)
            first.set()
            for _ in range(5):
                await asyncio.sleep(0)

            assert coordinator.channel.sent == []
            assert coordinator.session.call_state is CallState.IDLE

            second.set()
            await task

        asyncio.run(scenario())

        assert coordinator.channel.sent_types() == ["JOIN"]
        join = coordinator.channel.sent[0]
        assert join.call_id == "call1"
        assert join.from_role == "A"
        assert coordinator.session.call_state is CallState.CONNECTING

    def test_tracks_added_before_join(self, make_coordinator):
        """Test local tracks are attached to the engine by the time JOIN goes out."""
        coordinator = make_coordinator(Role.B)

        asyncio.run(coordinator.start())

        capture = coordinator.capture
        assert coordinator.engine.added_tracks == [capture.microphone, capture.camera]
        assert coordinator.local_surface.track is capture.camera
        assert coordinator.channel.connected_role == "B"

    def test_media_failure_aborts_setup(self, make_coordinator):
        """Test device failure raises and never sends JOIN."""
        coordinator = make_coordinator(Role.A)
        coordinator.capture.fail = True

        with pytest.raises(DeviceUnavailableError):
            asyncio.run(coordinator.start())

        assert coordinator.channel.sent == []
        assert coordinator.channel.closed
        assert coordinator.session.call_state is CallState.IDLE

    def test_channel_failure_releases_media(self, make_coordinator):
        """Test relay failure stops the captured tracks."""
        coordinator = make_coordinator(Role.A)
        coordinator.channel.fail_with = SignalingChannelError("refused")

        with pytest.raises(SignalingChannelError):
            asyncio.run(coordinator.start())

        assert coordinator.capture.camera.stop_count == 1
        assert coordinator.capture.microphone.stop_count == 1
        assert coordinator.session.call_state is CallState.IDLE


class TestOfferAnswer:
    """Test description exchange."""

    def test_full_negotiation_between_roles(self, make_coordinator):
        """Test READY -> OFFER -> ANSWER -> connected across two coordinators."""
        a = make_coordinator(Role.A)
        b = make_coordinator(Role.B)

        async def scenario():
            await a.start()
            await b.start()

            await b.handle_message(create_ready("call1"))
            assert b.channel.sent_types() == ["JOIN"]

            await a.handle_message(create_ready("call1"))
            offer = a.channel.sent[-1]
            assert offer.type is MessageType.OFFER
            assert (offer.from_role, offer.to_role) == ("A", "B")
            assert offer.payload == {"type": "offer", "sdp": "v=0 offer"}

            await b.handle_message(wire(offer))
            answer = b.channel.sent[-1]
            assert answer.type is MessageType.ANSWER
            assert (answer.from_role, answer.to_role) == ("B", "A")

            await a.handle_message(wire(answer))
            assert a.remote_description_set
            assert b.remote_description_set

            await a.engine.report_state("connected")
            await b.engine.report_state("connected")
            assert a.session.call_state is CallState.CONNECTED
            assert b.session.call_state is CallState.CONNECTED
            assert a.stats.running

            await a.leave()
            await b.handle_message(wire(a.channel.sent[-1]))

        asyncio.run(scenario())

        assert a.engine.calls[:3] == ["create_offer", "set_local:offer", "set_remote:answer"]
        assert b.engine.calls[:3] == ["set_remote:offer", "create_answer", "set_local:answer"]
        assert a.session.ended and b.session.ended

    def test_duplicate_ready_sends_one_offer(self, make_coordinator):
        """Test a second READY does not produce a second OFFER."""
        a = make_coordinator(Role.A)

        async def scenario():
            await a.start()
            await a.handle_message(create_ready("call1"))
            await a.handle_message(create_ready("call1"))

        asyncio.run(scenario())

        assert a.channel.sent_types() == ["JOIN", "OFFER"]
        assert a.engine.calls.count("create_offer") == 1

    def test_role_b_never_offers(self, make_coordinator):
        """Test READY on B sends nothing."""
        b = make_coordinator(Role.B)

        async def scenario():
            await b.start()
            await b.handle_message(create_ready("call1"))

        asyncio.run(scenario())

        assert b.channel.sent_types() == ["JOIN"]
        assert "create_offer" not in b.engine.calls

    def test_role_a_ignores_offer(self, make_coordinator):
        """Test an OFFER received by A is dropped."""
        a = make_coordinator(Role.A)

        async def scenario():
            await a.start()
            await a.handle_message(create_offer("call1", "B", "A", OFFER))

        asyncio.run(scenario())

        assert "set_remote:offer" not in a.engine.calls
        assert not a.remote_description_set

    def test_answer_without_offer_is_applied(self, make_coordinator):
        """Test an unexpected ANSWER is still handed to the engine."""
        a = make_coordinator(Role.A)

        async def scenario():
            await a.start()
            await a.handle_message(create_answer("call1", "B", "A", ANSWER))

        asyncio.run(scenario())

        assert "set_remote:answer" in a.engine.calls
        assert a.remote_description_set

    def test_rejected_offer_is_not_fatal(self, make_coordinator):
        """Test an engine rejection is logged and the call stays open."""
        b = make_coordinator(Role.B)
        b.engine.reject_remote = True

        async def scenario():
            await b.start()
            await b.handle_message(create_offer("call1", "A", "B", OFFER))

        asyncio.run(scenario())

        assert b.session.call_state is CallState.CONNECTING
        assert b.channel.sent_types() == ["JOIN"]
        assert not b.remote_description_set

    def test_other_call_ignored(self, make_coordinator):
        """Test messages for another call id have no effect."""
        b = make_coordinator(Role.B)

        async def scenario():
            await b.start()
            await b.handle_message(create_offer("call2", "A", "B", OFFER))
            await b.handle_message(create_leave("call2", "A"))

        asyncio.run(scenario())

        assert b.engine.calls == []
        assert b.session.call_state is CallState.CONNECTING

    def test_message_for_other_role_ignored(self, make_coordinator):
        """Test messages addressed to the local party's peer are dropped."""
        b = make_coordinator(Role.B)

        async def scenario():
            await b.start()
            await b.handle_message(create_offer("call1", "B", "A", OFFER))

        asyncio.run(scenario())

        assert b.engine.calls == []


class TestCandidates:
    """Test path candidate exchange."""

    def test_early_candidates_queued_in_order(self, make_coordinator):
        """Test candidates before the remote description wait, then apply FIFO."""
        b = make_coordinator(Role.B)

        async def scenario():
            await b.start()
            await b.handle_message(create_ice("call1", "A", "B", candidate(1)))
            await b.handle_message(create_ice("call1", "A", "B", candidate(2)))

            assert list(b.pending_candidates) == [candidate(1), candidate(2)]
            assert b.engine.applied_candidates == []

            await b.handle_message(create_offer("call1", "A", "B", OFFER))
            assert b.engine.applied_candidates == [candidate(1), candidate(2)]
            assert len(b.pending_candidates) == 0

            await b.handle_message(create_ice("call1", "A", "B", candidate(3)))

        asyncio.run(scenario())

        assert b.engine.applied_candidates == [candidate(1), candidate(2), candidate(3)]
        first_add = b.engine.calls.index("add_candidate")
        assert b.engine.calls.index("set_remote:offer") < first_add

    def test_rejected_candidate_is_not_fatal(self, make_coordinator):
        """Test the remaining queued candidates still apply after a rejection."""
        b = make_coordinator(Role.B)
        b.engine.reject_candidates = True

        async def scenario():
            await b.start()
            await b.handle_message(create_ice("call1", "A", "B", candidate(1)))
            await b.handle_message(create_ice("call1", "A", "B", candidate(2)))
            await b.handle_message(create_offer("call1", "A", "B", OFFER))

        asyncio.run(scenario())

        assert b.engine.calls.count("add_candidate") == 2
        assert b.channel.sent_types() == ["JOIN", "ANSWER"]
        assert b.session.call_state is CallState.CONNECTING

    def test_local_candidates_sent_to_remote(self, make_coordinator):
        """Test locally gathered candidates go out as ICE addressed to the peer."""
        a = make_coordinator(Role.A)

        async def scenario():
            await a.start()
            a.engine.emit_local_candidate(candidate(7))

        asyncio.run(scenario())

        ice = a.channel.sent[-1]
        assert ice.type is MessageType.ICE
        assert (ice.from_role, ice.to_role) == ("A", "B")
        assert ice.payload == candidate(7)

    def test_local_candidate_after_end_dropped(self, make_coordinator):
        """Test no ICE is sent once the call ended."""
        a = make_coordinator(Role.A)

        async def scenario():
            await a.start()
            await a.leave()
            sent = len(a.channel.sent)
            a.engine.emit_local_candidate(candidate(1))
            return sent

        sent = asyncio.run(scenario())

        assert len(a.channel.sent) == sent


class TestTeardown:
    """Test call ending and resource release."""

    def test_remote_leave_releases_everything(self, make_coordinator):
        """Test LEAVE ends the call, stops tracks, clears surfaces and stats."""
        a = make_coordinator(Role.A)
        remote_track = FakeTrack("video", "remote")

        async def scenario():
            await a.start()
            a.engine.remote_track_callback(remote_track)
            assert a.remote_surface.track is remote_track
            await a.engine.report_state("connected")
            assert a.stats.running

            await a.handle_message(create_leave("call1", "B"))
            for _ in range(3):
                await asyncio.sleep(0)

            assert not a.stats.running

        asyncio.run(scenario())

        assert a.session.call_state is CallState.ENDED
        assert a.capture.camera.stop_count == 1
        assert a.capture.microphone.stop_count == 1
        assert a.local_surface.track is None
        assert a.remote_surface.tracks == {}
        assert a.stats.stopped
        assert len(a.pending_candidates) == 0
        assert a.engine.closed
        assert a.channel.closed

    def test_local_leave_notifies_remote(self, make_coordinator):
        """Test leave() sends LEAVE before closing the channel."""
        a = make_coordinator(Role.A)

        async def scenario():
            await a.start()
            await a.leave()
            await a.leave()

        asyncio.run(scenario())

        assert a.channel.sent_types() == ["JOIN", "LEAVE"]
        assert a.engine.calls.count("close") == 1

    @pytest.mark.parametrize("state", ["failed", "disconnected", "closed"])
    def test_terminal_engine_state_ends_call(self, make_coordinator, state):
        """Test a terminal connection state ends the call."""
        b = make_coordinator(Role.B)

        async def scenario():
            await b.start()
            await b.engine.report_state(state)

        asyncio.run(scenario())

        assert b.session.call_state is CallState.ENDED
        assert b.engine.closed

    def test_ended_is_absorbing(self, make_coordinator):
        """Test nothing changes state or touches the engine after ENDED."""
        b = make_coordinator(Role.B)

        async def scenario():
            await b.start()
            await b.handle_message(create_leave("call1", "A"))
            calls = list(b.engine.calls)

            await b.handle_message(create_offer("call1", "A", "B", OFFER))
            await b.handle_message(create_ice("call1", "A", "B", candidate(1)))
            await b.engine.report_state("connected")
            return calls

        calls = asyncio.run(scenario())

        assert b.engine.calls == calls
        assert len(b.pending_candidates) == 0
        assert b.session.call_state is CallState.ENDED
        assert not b.stats.running

    def test_run_returns_after_leave(self, make_coordinator):
        """Test run() processes inbound messages until the call ends."""
        b = make_coordinator(Role.B)
        b.channel.push(create_ready("call1"))
        b.channel.push(create_offer("call1", "A", "B", OFFER))
        b.channel.push(create_leave("call1", "A"))

        asyncio.run(asyncio.wait_for(b.run(), timeout=5))

        assert b.channel.sent_types() == ["JOIN", "ANSWER"]
        assert b.session.call_state is CallState.ENDED

    def test_run_ends_if_channel_closes_before_join(self, make_coordinator):
        """Test a stream ending while IDLE ends the call."""
        a = make_coordinator(Role.A)

        async def scenario():
            a.capture.user_gate = asyncio.Event()
            run = asyncio.create_task(a.run())
            for _ in range(5):
                await asyncio.sleep(0)
            await a.channel.close()
            a.capture.user_gate.set()
            await asyncio.wait_for(run, timeout=5)

        asyncio.run(scenario())

        assert a.session.call_state is CallState.ENDED
        assert a.channel.sent == []

    def test_screen_capture_finishing_after_end_is_discarded(self, make_coordinator):
        """Test a screen capture completing after leave() is stopped unused."""
        a = make_coordinator(Role.A)

        async def scenario():
            await a.start()
            a.capture.display_gate = asyncio.Event()
            share = asyncio.create_task(a.tracks.start_screen_share())
            await asyncio.sleep(0)

            await a.leave()
            a.capture.display_gate.set()
            return await share

        started = asyncio.run(scenario())

        assert started is False
        assert a.capture.screens[0].stop_count == 1
        assert a.engine.video_replacements == []
        assert not a.tracks.is_screen_sharing
