"""
Call signaling coordinator.

Brokers the offer / answer / ICE exchange between two users. One
CallSession exists per unordered user pair; a missing session is the idle
state. Transitions:

    offering -> ringing      offer reached at least one callee connection
    offering -> terminated   callee unreachable
    ringing  -> active       callee answered
    ringing  -> terminated   reject, caller hangup, ring timeout, disconnect
    active   -> terminated   hangup or disconnect of a pinned connection

ICE candidates are queued per direction until the session is active, then
flushed in arrival order exactly once. Every handler touching a pair runs
under that pair's lock, so inbound messages for one session never
interleave across an await.
"""
import asyncio
import enum
import uuid
import weakref
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, FrozenSet, Iterable, List, Optional

from feedrelay.core.logging import signaling_logger
from feedrelay.realtime.errors import (
    ConflictingCall,
    InvalidPayload,
    InvalidTransition,
    RouteUnreachable,
)
from feedrelay.realtime.presence import Connection, PresenceRegistry
from feedrelay.realtime.rooms import normalize_user_id
from feedrelay.services.collaborators import display_metadata

# Outbound signaling events
EVENT_OFFER = "call:offer"
EVENT_ANSWER = "call:answer"
EVENT_ICE_CANDIDATE = "call:ice-candidate"
EVENT_HANGUP = "call:hangup"
EVENT_REJECTED = "call:rejected"
EVENT_RINGING = "call:ringing"
EVENT_TIMEOUT = "call:timeout"
EVENT_FAILED = "call:failed"
EVENT_CANCELLED = "call:cancelled"


class CallState(str, enum.Enum):
    offering = "offering"
    ringing = "ringing"
    active = "active"
    terminated = "terminated"


class MediaKind(str, enum.Enum):
    audio = "audio"
    video = "video"


ALLOWED_TRANSITIONS = {
    CallState.offering: {CallState.ringing, CallState.terminated},
    CallState.ringing: {CallState.active, CallState.terminated},
    CallState.active: {CallState.terminated},
    CallState.terminated: set(),
}


def pair_key(user_a: str, user_b: str) -> FrozenSet[str]:
    return frozenset((user_a, user_b))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CallSession:
    session_id: str
    caller_id: str
    callee_id: str
    media_kind: MediaKind
    caller_connection_id: str
    pending_offer: dict
    state: CallState = CallState.offering
    pending_answer: Optional[dict] = None
    # set when the callee answers; that connection carries the call from then on
    callee_connection_id: Optional[str] = None
    ice_caller_to_callee: Deque = field(default_factory=deque)
    ice_callee_to_caller: Deque = field(default_factory=deque)
    created_at: datetime = field(default_factory=_utcnow)
    ring_timer: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def pair(self) -> FrozenSet[str]:
        return pair_key(self.caller_id, self.callee_id)

    def peer_of(self, user_id: str) -> str:
        return self.callee_id if user_id == self.caller_id else self.caller_id

    def outbound_queue(self, sender_id: str) -> Deque:
        if sender_id == self.caller_id:
            return self.ice_caller_to_callee
        return self.ice_callee_to_caller

    def transition(self, new_state: CallState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value} is not allowed")
        self.state = new_state

    def summary(self) -> dict:
        return {
            "sessionId": self.session_id,
            "callerId": self.caller_id,
            "calleeId": self.callee_id,
            "state": self.state.value,
            "mediaKind": self.media_kind.value,
            "createdAt": self.created_at.isoformat(),
        }


def _require_description(value, name: str) -> dict:
    if not isinstance(value, dict) or not value:
        raise InvalidPayload(f"{name} is required")
    return value


class CallCoordinator:
    def __init__(self, sio, presence: PresenceRegistry, ring_timeout: float):
        self.sio = sio
        self.presence = presence
        self.ring_timeout = ring_timeout
        self._sessions: Dict[FrozenSet[str], CallSession] = {}
        self._by_id: Dict[str, CallSession] = {}
        self._locks: "weakref.WeakValueDictionary[FrozenSet[str], asyncio.Lock]" = weakref.WeakValueDictionary()

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    def get_session(self, user_a, user_b) -> Optional[CallSession]:
        return self._sessions.get(pair_key(normalize_user_id(user_a), normalize_user_id(user_b)))

    def get_session_by_id(self, session_id: str) -> Optional[CallSession]:
        return self._by_id.get(session_id)

    def sessions_for(self, user_id) -> List[CallSession]:
        user_id = normalize_user_id(user_id)
        return [s for s in self._sessions.values() if user_id in s.pair]

    def active_session_count(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------
    # Inbound signaling
    # ------------------------------------------------------------

    async def offer(self, connection: Connection, to_user_id, offer, media_kind="audio") -> CallSession:
        caller_id = connection.user_id
        callee_id = normalize_user_id(to_user_id)
        if callee_id == caller_id:
            raise InvalidPayload("cannot call yourself")
        offer = _require_description(offer, "offer")
        try:
            media_kind = MediaKind(media_kind or MediaKind.audio)
        except ValueError:
            raise InvalidPayload(f"unsupported mediaKind: {media_kind!r}")

        key = pair_key(caller_id, callee_id)
        async with self._lock(key):
            if key in self._sessions:
                signaling_logger.info("Offer rejected, call already in progress",
                                      caller_id=caller_id, callee_id=callee_id)
                await self._emit(EVENT_FAILED, {
                    "toUserId": callee_id,
                    "reason": ConflictingCall.code,
                }, [connection.connection_id])
                raise ConflictingCall(caller_id, callee_id)

            session = CallSession(
                session_id=uuid.uuid4().hex,
                caller_id=caller_id,
                callee_id=callee_id,
                media_kind=media_kind,
                caller_connection_id=connection.connection_id,
                pending_offer=offer,
            )
            self._sessions[key] = session
            self._by_id[session.session_id] = session

            callee_sids = self._connection_ids(callee_id)
            if not callee_sids:
                self._destroy(session)
                signaling_logger.info("Callee unreachable", session_id=session.session_id,
                                      caller_id=caller_id, callee_id=callee_id)
                await self._emit(EVENT_FAILED, {
                    "sessionId": session.session_id,
                    "toUserId": callee_id,
                    "reason": RouteUnreachable.code,
                }, [connection.connection_id])
                raise RouteUnreachable(callee_id)

            await self._emit(EVENT_OFFER, {
                "sessionId": session.session_id,
                "fromUserId": caller_id,
                "toUserId": callee_id,
                "offer": offer,
                "mediaKind": media_kind.value,
                "caller": display_metadata(caller_id, connection.profile),
            }, callee_sids)

            session.transition(CallState.ringing)
            session.ring_timer = asyncio.create_task(self._ring_timeout(session.session_id))
            await self._emit(EVENT_RINGING, {
                "sessionId": session.session_id,
                "toUserId": callee_id,
            }, [connection.connection_id])

        signaling_logger.info("Call ringing", session_id=session.session_id, caller_id=caller_id,
                              callee_id=callee_id, media_kind=media_kind.value)
        return session

    async def answer(self, connection: Connection, to_user_id, answer, session_id: Optional[str] = None) -> CallSession:
        callee_id = connection.user_id
        caller_id = normalize_user_id(to_user_id)
        answer = _require_description(answer, "answer")

        async with self._lock(pair_key(caller_id, callee_id)):
            session = self._live_session(caller_id, callee_id, session_id)
            if session is None:
                raise InvalidTransition("no pending offer to answer")
            if session.callee_id != callee_id:
                raise InvalidTransition("only the callee can answer")
            if session.state != CallState.ringing:
                raise InvalidTransition(f"cannot answer a call that is {session.state.value}")

            session.pending_answer = answer
            session.callee_connection_id = connection.connection_id
            self._cancel_ring_timer(session)

            await self._emit(EVENT_ANSWER, {
                "sessionId": session.session_id,
                "fromUserId": callee_id,
                "toUserId": caller_id,
                "answer": answer,
            }, [session.caller_connection_id])
            session.transition(CallState.active)

            others = [sid for sid in self._connection_ids(callee_id) if sid != connection.connection_id]
            await self._emit(EVENT_CANCELLED, {
                "sessionId": session.session_id,
                "reason": "answered_elsewhere",
            }, others)

            await self._flush_ice(session)

        signaling_logger.info("Call active", session_id=session.session_id)
        return session

    async def ice_candidate(self, connection: Connection, to_user_id, candidate, session_id: Optional[str] = None) -> bool:
        """
        Relay or queue a candidate. Returns True if relayed now, False if
        queued until the session becomes active.
        """
        sender_id = connection.user_id
        peer_id = normalize_user_id(to_user_id)
        if candidate is None or candidate == "":
            raise InvalidPayload("candidate is required")

        async with self._lock(pair_key(sender_id, peer_id)):
            session = self._live_session(sender_id, peer_id, session_id)
            if session is None:
                raise InvalidTransition("no call in progress")

            if session.state != CallState.active:
                session.outbound_queue(sender_id).append(candidate)
                signaling_logger.debug("ICE candidate queued", session_id=session.session_id,
                                       sender_id=sender_id)
                return False

            await self._emit(EVENT_ICE_CANDIDATE, {
                "sessionId": session.session_id,
                "fromUserId": sender_id,
                "toUserId": peer_id,
                "candidate": candidate,
            }, self._pinned_connection_ids(session, peer_id))
            return True

    async def hangup(self, connection: Connection, to_user_id, session_id: Optional[str] = None) -> bool:
        """End the call from either side. Returns False if there was nothing to end."""
        user_id = connection.user_id
        peer_id = normalize_user_id(to_user_id)

        async with self._lock(pair_key(user_id, peer_id)):
            session = self._live_session(user_id, peer_id, session_id)
            if session is None:
                signaling_logger.debug("Hangup for a call that is already over",
                                       user_id=user_id, peer_id=peer_id)
                return False

            await self._terminate(session, EVENT_HANGUP, actor_id=user_id, reason="hangup")

        signaling_logger.info("Call hung up", session_id=session.session_id, by=user_id)
        return True

    async def reject(self, connection: Connection, to_user_id, session_id: Optional[str] = None) -> bool:
        """Decline a ringing call. Returns False if there was nothing to reject."""
        user_id = connection.user_id
        caller_id = normalize_user_id(to_user_id)

        async with self._lock(pair_key(user_id, caller_id)):
            session = self._live_session(user_id, caller_id, session_id)
            if session is None:
                signaling_logger.debug("Reject for a call that is already over",
                                       user_id=user_id, peer_id=caller_id)
                return False
            if session.callee_id != user_id:
                raise InvalidTransition("only the callee can reject")
            if session.state != CallState.ringing:
                raise InvalidTransition(f"cannot reject a call that is {session.state.value}")

            await self._terminate(session, EVENT_REJECTED, actor_id=user_id, reason="rejected")
            others = [sid for sid in self._connection_ids(user_id) if sid != connection.connection_id]
            await self._emit(EVENT_CANCELLED, {
                "sessionId": session.session_id,
                "reason": "rejected_elsewhere",
            }, others)

        signaling_logger.info("Call rejected", session_id=session.session_id)
        return True

    async def connection_lost(self, connection: Connection) -> None:
        """
        Implicit hangup for calls carried by a connection that just closed.
        The registry has already dropped the connection.
        """
        for session in self.sessions_for(connection.user_id):
            async with self._lock(session.pair):
                if self._by_id.get(session.session_id) is not session:
                    continue

                pinned = connection.connection_id in (session.caller_connection_id, session.callee_connection_id)
                callee_gone = (
                    session.callee_id == connection.user_id
                    and session.state == CallState.ringing
                    and not self.presence.is_reachable(connection.user_id)
                )
                if not (pinned or callee_gone):
                    continue

                await self._terminate(session, EVENT_HANGUP, actor_id=connection.user_id, reason="disconnected")
                signaling_logger.info("Call ended by disconnect", session_id=session.session_id,
                                      user_id=connection.user_id)

    async def shutdown(self) -> None:
        for session in list(self._sessions.values()):
            self._destroy(session)

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    def _lock(self, key: FrozenSet[str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _live_session(self, user_a: str, user_b: str, session_id: Optional[str]) -> Optional[CallSession]:
        """Current session of the pair; a stale ``session_id`` counts as none."""
        session = self._sessions.get(pair_key(user_a, user_b))
        if session is None:
            return None
        if session_id and session.session_id != session_id:
            signaling_logger.debug("Discarding message for a finished session",
                                   session_id=session_id, live_session_id=session.session_id)
            return None
        return session

    def _connection_ids(self, user_id: str) -> List[str]:
        return sorted(c.connection_id for c in self.presence.route_to(user_id))

    def _pinned_connection_ids(self, session: CallSession, user_id: str) -> List[str]:
        if user_id == session.caller_id:
            return [session.caller_connection_id]
        if session.callee_connection_id:
            return [session.callee_connection_id]
        return self._connection_ids(user_id)

    def _cancel_ring_timer(self, session: CallSession) -> None:
        timer, session.ring_timer = session.ring_timer, None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    def _destroy(self, session: CallSession) -> None:
        self._cancel_ring_timer(session)
        if session.state != CallState.terminated:
            session.transition(CallState.terminated)
        if self._sessions.get(session.pair) is session:
            del self._sessions[session.pair]
        self._by_id.pop(session.session_id, None)
        session.ice_caller_to_callee.clear()
        session.ice_callee_to_caller.clear()

    async def _terminate(self, session: CallSession, event: str, actor_id: str, reason: str) -> None:
        """Destroy first, then notify the other party once."""
        peer_id = session.peer_of(actor_id)
        recipients = self._pinned_connection_ids(session, peer_id)
        self._destroy(session)
        await self._emit(event, {
            "sessionId": session.session_id,
            "fromUserId": actor_id,
            "toUserId": peer_id,
            "reason": reason,
        }, recipients)

    async def _flush_ice(self, session: CallSession) -> None:
        directions = (
            (session.ice_caller_to_callee, session.caller_id, session.callee_id),
            (session.ice_callee_to_caller, session.callee_id, session.caller_id),
        )
        for queue, sender_id, peer_id in directions:
            recipients = self._pinned_connection_ids(session, peer_id)
            while queue:
                candidate = queue.popleft()
                await self._emit(EVENT_ICE_CANDIDATE, {
                    "sessionId": session.session_id,
                    "fromUserId": sender_id,
                    "toUserId": peer_id,
                    "candidate": candidate,
                }, recipients)

    async def _ring_timeout(self, session_id: str) -> None:
        await asyncio.sleep(self.ring_timeout)
        session = self._by_id.get(session_id)
        if session is None:
            return

        async with self._lock(session.pair):
            if self._by_id.get(session_id) is not session or session.state == CallState.active:
                return
            session.ring_timer = None
            caller_sids = [session.caller_connection_id]
            callee_sids = self._connection_ids(session.callee_id)
            self._destroy(session)

            payload = {
                "sessionId": session.session_id,
                "callerId": session.caller_id,
                "calleeId": session.callee_id,
                "reason": "timeout",
            }
            await self._emit(EVENT_TIMEOUT, payload, caller_sids)
            await self._emit(EVENT_TIMEOUT, payload, callee_sids)

        signaling_logger.info("Call timed out", session_id=session_id)

    async def _emit(self, event: str, payload: dict, connection_ids: Iterable[str]) -> None:
        sids = list(connection_ids)
        if not sids:
            return
        await self.sio.emit(event, payload, to=sids[0] if len(sids) == 1 else sids)
