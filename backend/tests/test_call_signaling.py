"""
Tests for the call signaling coordinator state machine.
"""
import asyncio

import pytest

from feedrelay.realtime.errors import ConflictingCall, InvalidPayload, InvalidTransition, RouteUnreachable
from feedrelay.realtime.signaling import CallSession, CallState, MediaKind

OFFER = {"type": "offer", "sdp": "v=0 offer"}
ANSWER = {"type": "answer", "sdp": "v=0 answer"}


@pytest.fixture
def coordinator(hub):
    return hub.coordinator


@pytest.fixture
async def ringing(connect, coordinator):
    """Alice (sid a) calling Bob (sid b); returns (alice, bob, session)."""
    alice = await connect("a", 1)
    bob = await connect("b", 2)
    session = await coordinator.offer(alice, 2, OFFER, "audio")
    return alice, bob, session


class TestOffer:

    @pytest.mark.asyncio
    async def test_unreachable_callee_fails_and_leaves_no_session(self, sio, connect, coordinator):
        alice = await connect("a", 1)

        with pytest.raises(RouteUnreachable):
            await coordinator.offer(alice, 2, OFFER, "audio")

        failed = sio.received("a", "call:failed")
        assert len(failed) == 1
        assert failed[0]["reason"] == "unreachable"
        assert failed[0]["toUserId"] == "2"
        assert coordinator.get_session(1, 2) is None
        assert coordinator.active_session_count() == 0

    @pytest.mark.asyncio
    async def test_offer_rings_every_callee_device(self, sio, connect, coordinator):
        alice = await connect("a", 1)
        await connect("b-phone", 2)
        await connect("b-laptop", 2)

        session = await coordinator.offer(alice, "2", OFFER, "video")

        assert session.state == CallState.ringing
        assert session.media_kind == MediaKind.video
        for sid in ("b-phone", "b-laptop"):
            offer = sio.received(sid, "call:offer")
            assert len(offer) == 1
            assert offer[0]["sessionId"] == session.session_id
            assert offer[0]["fromUserId"] == "1"
            assert offer[0]["offer"] == OFFER
            assert offer[0]["mediaKind"] == "video"
        assert sio.received("a", "call:ringing") == [{"sessionId": session.session_id, "toUserId": "2"}]
        assert sio.received("a", "call:offer") == []

    @pytest.mark.asyncio
    async def test_second_offer_for_same_pair_conflicts(self, sio, ringing, coordinator):
        alice, bob, session = ringing

        with pytest.raises(ConflictingCall):
            await coordinator.offer(alice, 2, OFFER, "audio")

        assert coordinator.get_session(1, 2) is session
        assert session.state == CallState.ringing
        assert sio.received("a", "call:failed")[-1]["reason"] == "call_in_progress"

    @pytest.mark.asyncio
    async def test_reverse_direction_offer_conflicts(self, sio, ringing, coordinator):
        alice, bob, session = ringing

        with pytest.raises(ConflictingCall):
            await coordinator.offer(bob, 1, OFFER, "audio")

        assert coordinator.get_session(2, 1) is session
        assert sio.received("b", "call:failed")[-1]["reason"] == "call_in_progress"

    @pytest.mark.asyncio
    async def test_calling_yourself_is_rejected(self, connect, coordinator):
        alice = await connect("a", 1)
        with pytest.raises(InvalidPayload):
            await coordinator.offer(alice, 1, OFFER, "audio")

    @pytest.mark.asyncio
    async def test_unknown_media_kind_is_rejected(self, connect, coordinator):
        alice = await connect("a", 1)
        await connect("b", 2)
        with pytest.raises(InvalidPayload):
            await coordinator.offer(alice, 2, OFFER, "hologram")
        assert coordinator.get_session(1, 2) is None

    @pytest.mark.asyncio
    async def test_missing_offer_is_rejected(self, connect, coordinator):
        alice = await connect("a", 1)
        await connect("b", 2)
        with pytest.raises(InvalidPayload):
            await coordinator.offer(alice, 2, None, "audio")


class TestAnswerAndIce:

    @pytest.mark.asyncio
    async def test_answer_activates_and_reaches_caller(self, sio, ringing, coordinator):
        alice, bob, session = ringing

        await coordinator.answer(bob, 1, ANSWER)

        assert session.state == CallState.active
        assert session.pending_answer == ANSWER
        answer = sio.received("a", "call:answer")
        assert len(answer) == 1
        assert answer[0]["answer"] == ANSWER
        assert answer[0]["fromUserId"] == "2"

    @pytest.mark.asyncio
    async def test_candidates_before_active_flushed_in_order_once(self, sio, ringing, coordinator):
        alice, bob, session = ringing

        for n in range(3):
            relayed = await coordinator.ice_candidate(alice, 2, {"candidate": f"a{n}"})
            assert relayed is False
        await coordinator.ice_candidate(bob, 1, {"candidate": "b0"})

        assert sio.received("b", "call:ice-candidate") == []

        await coordinator.answer(bob, 1, ANSWER)

        to_bob = [p["candidate"]["candidate"] for p in sio.received("b", "call:ice-candidate")]
        to_alice = [p["candidate"]["candidate"] for p in sio.received("a", "call:ice-candidate")]
        assert to_bob == ["a0", "a1", "a2"]
        assert to_alice == ["b0"]
        assert not session.ice_caller_to_callee
        assert not session.ice_callee_to_caller

    @pytest.mark.asyncio
    async def test_candidates_after_active_relay_immediately(self, sio, ringing, coordinator):
        alice, bob, session = ringing
        await coordinator.answer(bob, 1, ANSWER)

        relayed = await coordinator.ice_candidate(alice, 2, "candidate:1")

        assert relayed is True
        assert [p["candidate"] for p in sio.received("b", "call:ice-candidate")] == ["candidate:1"]

    @pytest.mark.asyncio
    async def test_answer_without_offer_is_invalid(self, connect, coordinator):
        await connect("a", 1)
        bob = await connect("b", 2)
        with pytest.raises(InvalidTransition):
            await coordinator.answer(bob, 1, ANSWER)

    @pytest.mark.asyncio
    async def test_caller_cannot_answer_own_call(self, ringing, coordinator):
        alice, bob, session = ringing
        with pytest.raises(InvalidTransition):
            await coordinator.answer(alice, 2, ANSWER)
        assert session.state == CallState.ringing

    @pytest.mark.asyncio
    async def test_second_answer_is_invalid(self, ringing, coordinator):
        alice, bob, session = ringing
        await coordinator.answer(bob, 1, ANSWER)
        with pytest.raises(InvalidTransition):
            await coordinator.answer(bob, 1, ANSWER)

    @pytest.mark.asyncio
    async def test_answer_pins_device_and_cancels_the_others(self, sio, connect, coordinator):
        alice = await connect("a", 1)
        phone = await connect("b-phone", 2)
        await connect("b-laptop", 2)
        session = await coordinator.offer(alice, 2, OFFER, "audio")

        await coordinator.answer(phone, 1, ANSWER)
        await coordinator.ice_candidate(alice, 2, "c1")

        assert session.callee_connection_id == "b-phone"
        assert sio.received("b-laptop", "call:cancelled") == [
            {"sessionId": session.session_id, "reason": "answered_elsewhere"}
        ]
        assert sio.received("b-laptop", "call:ice-candidate") == []
        assert len(sio.received("b-phone", "call:ice-candidate")) == 1

    @pytest.mark.asyncio
    async def test_stale_session_id_is_discarded(self, ringing, coordinator):
        alice, bob, session = ringing
        with pytest.raises(InvalidTransition):
            await coordinator.answer(bob, 1, ANSWER, session_id="old-session")
        assert session.state == CallState.ringing


class TestTermination:

    @pytest.mark.asyncio
    async def test_reject_notifies_caller_once(self, sio, ringing, coordinator):
        alice, bob, session = ringing

        assert await coordinator.reject(bob, 1) is True
        assert await coordinator.reject(bob, 1) is False

        rejected = sio.received("a", "call:rejected")
        assert len(rejected) == 1
        assert rejected[0]["sessionId"] == session.session_id
        assert coordinator.get_session(1, 2) is None
        assert session.state == CallState.terminated

    @pytest.mark.asyncio
    async def test_only_callee_can_reject(self, ringing, coordinator):
        alice, bob, session = ringing
        with pytest.raises(InvalidTransition):
            await coordinator.reject(alice, 2)

    @pytest.mark.asyncio
    async def test_caller_hangup_while_ringing_reaches_callee(self, sio, ringing, coordinator):
        alice, bob, session = ringing

        assert await coordinator.hangup(alice, 2) is True

        assert len(sio.received("b", "call:hangup")) == 1
        assert coordinator.get_session(1, 2) is None

    @pytest.mark.asyncio
    async def test_hangup_is_idempotent(self, sio, ringing, coordinator):
        alice, bob, session = ringing
        await coordinator.answer(bob, 1, ANSWER)

        assert await coordinator.hangup(bob, 1) is True
        assert await coordinator.hangup(bob, 1) is False
        assert await coordinator.hangup(alice, 2) is False

        assert len(sio.received("a", "call:hangup")) == 1
        assert sio.received("b", "call:hangup") == []

    @pytest.mark.asyncio
    async def test_late_candidate_does_not_resurrect_session(self, ringing, coordinator):
        alice, bob, session = ringing
        await coordinator.hangup(alice, 2)

        with pytest.raises(InvalidTransition):
            await coordinator.ice_candidate(bob, 1, "late")
        assert coordinator.get_session(1, 2) is None

    @pytest.mark.asyncio
    async def test_new_call_possible_after_termination(self, ringing, coordinator):
        alice, bob, session = ringing
        await coordinator.reject(bob, 1)

        second = await coordinator.offer(bob, 1, OFFER, "video")

        assert second.session_id != session.session_id
        assert second.caller_id == "2"

    @pytest.mark.asyncio
    async def test_callee_disconnect_mid_call_hangs_up(self, sio, ringing, coordinator, disconnect):
        alice, bob, session = ringing
        await coordinator.answer(bob, 1, ANSWER)

        await disconnect("b")

        hangup = sio.received("a", "call:hangup")
        assert len(hangup) == 1
        assert hangup[0]["reason"] == "disconnected"
        assert coordinator.get_session(1, 2) is None

    @pytest.mark.asyncio
    async def test_caller_disconnect_while_ringing_hangs_up(self, sio, ringing, coordinator, disconnect):
        await disconnect("a")

        assert len(sio.received("b", "call:hangup")) == 1
        assert coordinator.get_session(1, 2) is None

    @pytest.mark.asyncio
    async def test_ringing_survives_while_callee_has_another_device(self, sio, connect, coordinator, disconnect):
        alice = await connect("a", 1)
        await connect("b-phone", 2)
        await connect("b-laptop", 2)
        session = await coordinator.offer(alice, 2, OFFER, "audio")

        await disconnect("b-laptop")
        assert coordinator.get_session(1, 2) is session

        await disconnect("b-phone")
        assert coordinator.get_session(1, 2) is None
        assert len(sio.received("a", "call:hangup")) == 1

    @pytest.mark.asyncio
    async def test_unpinned_device_disconnect_keeps_active_call(self, connect, coordinator, disconnect):
        alice = await connect("a", 1)
        phone = await connect("b-phone", 2)
        await connect("b-laptop", 2)
        session = await coordinator.offer(alice, 2, OFFER, "audio")
        await coordinator.answer(phone, 1, ANSWER)

        await disconnect("b-laptop")

        assert coordinator.get_session(1, 2) is session
        assert session.state == CallState.active


class TestRingTimeout:

    @pytest.mark.asyncio
    async def test_unanswered_call_times_out(self, sio, connect, coordinator):
        coordinator.ring_timeout = 0.05
        alice = await connect("a", 1)
        await connect("b", 2)
        session = await coordinator.offer(alice, 2, OFFER, "audio")

        await asyncio.sleep(0.2)

        assert coordinator.get_session(1, 2) is None
        assert session.state == CallState.terminated
        assert sio.received("a", "call:timeout")[0]["reason"] == "timeout"
        assert len(sio.received("b", "call:timeout")) == 1

    @pytest.mark.asyncio
    async def test_answer_cancels_the_timer(self, sio, connect, coordinator):
        coordinator.ring_timeout = 0.05
        alice = await connect("a", 1)
        bob = await connect("b", 2)
        session = await coordinator.offer(alice, 2, OFFER, "audio")
        await coordinator.answer(bob, 1, ANSWER)

        await asyncio.sleep(0.2)

        assert coordinator.get_session(1, 2) is session
        assert sio.received("a", "call:timeout") == []

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_timers(self, ringing, coordinator):
        alice, bob, session = ringing
        timer = session.ring_timer

        await coordinator.shutdown()
        await asyncio.sleep(0)

        assert timer.cancelled()
        assert coordinator.active_session_count() == 0


class TestCallSession:

    def make_session(self):
        return CallSession(
            session_id="s1", caller_id="1", callee_id="2", media_kind=MediaKind.audio,
            caller_connection_id="a", pending_offer=OFFER,
        )

    def test_offering_cannot_skip_to_active(self):
        session = self.make_session()
        with pytest.raises(InvalidTransition):
            session.transition(CallState.active)
        assert session.state == CallState.offering

    def test_terminated_is_absorbing(self):
        session = self.make_session()
        session.transition(CallState.terminated)
        for state in CallState:
            with pytest.raises(InvalidTransition):
                session.transition(state)

    def test_pair_is_unordered(self):
        session = self.make_session()
        assert session.pair == frozenset({"2", "1"})
        assert session.peer_of("1") == "2"
        assert session.peer_of("2") == "1"
