"""
Client session adapter.

One call flow for audio and video: the media kind is a parameter handed to
the negotiator factory, never a separate code path. The adapter owns the
socket side (emit, acks, inbound call events); SDP and ICE objects are
produced and consumed by a ``MediaNegotiator`` the UI supplies per call.
"""
import enum
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import socketio

logger = logging.getLogger(__name__)

RELAY_EVENTS = (
    "post_liked",
    "post_unliked",
    "new_comment",
    "new_post",
    "post_viewed",
    "follow_changed",
    "message_delivered",
    "friend_request_created",
    "friend_request_resolved",
    "friend_removed",
)


class MediaNegotiator(Protocol):
    async def create_offer(self) -> dict:
        ...

    async def create_answer(self, offer: dict) -> dict:
        ...

    async def apply_answer(self, answer: dict) -> None:
        ...

    async def add_ice_candidate(self, candidate: Any) -> None:
        ...

    async def close(self) -> None:
        ...


# (media_kind, send_local_candidate) -> negotiator
NegotiatorFactory = Callable[[str, Callable[[Any], Awaitable[None]]], MediaNegotiator]


class CallEvent(str, enum.Enum):
    incoming = "incoming"
    ringing = "ringing"
    answered = "answered"
    candidate = "candidate"
    ended = "ended"
    failed = "failed"


class CallRole(str, enum.Enum):
    caller = "caller"
    callee = "callee"


class CallError(Exception):
    """Server refused a call operation."""

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code


@dataclass
class LocalCall:
    session_id: str
    peer_id: str
    media_kind: str
    role: CallRole
    negotiator: MediaNegotiator
    status: str = "pending"
    remote_offer: Optional[dict] = None
    # candidates that arrived before the remote description was applied
    early_candidates: List[Any] = field(default_factory=list)
    remote_description_set: bool = False
    ringing_announced: bool = False


class CallClient:
    def __init__(self, negotiator_factory: NegotiatorFactory, sio: Optional[socketio.AsyncClient] = None):
        self.sio = sio or socketio.AsyncClient(reconnection=True)
        self.negotiator_factory = negotiator_factory
        self.calls: Dict[str, LocalCall] = {}
        self.user_id: Optional[str] = None
        self._subscribers: Dict[CallEvent, List[Callable]] = {event: [] for event in CallEvent}

        self.sio.on("connected", self._on_connected)
        self.sio.on("call:offer", self._on_offer)
        self.sio.on("call:ringing", self._on_ringing)
        self.sio.on("call:answer", self._on_answer)
        self.sio.on("call:ice-candidate", self._on_ice_candidate)
        self.sio.on("call:hangup", self._on_terminated)
        self.sio.on("call:rejected", self._on_terminated)
        self.sio.on("call:timeout", self._on_terminated)
        self.sio.on("call:cancelled", self._on_terminated)
        self.sio.on("call:failed", self._on_failed)

    async def connect(self, url: str, token: str, **kwargs) -> None:
        """The token travels in the handshake auth payload."""
        await self.sio.connect(url, auth={"token": token}, transports=["websocket"], **kwargs)

    async def disconnect(self) -> None:
        for call in list(self.calls.values()):
            await self._close(call)
        await self.sio.disconnect()

    # ------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------

    def subscribe(self, event: CallEvent, handler: Callable) -> None:
        self._subscribers[CallEvent(event)].append(handler)

    def on_relay(self, event: str, handler: Callable) -> None:
        if event not in RELAY_EVENTS:
            raise ValueError(f"unknown relay event: {event}")
        self.sio.on(event, handler)

    async def _dispatch(self, event: CallEvent, *args) -> None:
        for handler in list(self._subscribers[event]):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------
    # Outbound operations
    # ------------------------------------------------------------

    async def originate(self, target_user_id, media_kind: str = "audio") -> LocalCall:
        peer_id = str(target_user_id)
        session_id = None
        pending: List[Any] = []

        async def send_candidate(candidate):
            # queued until the offer is acknowledged and older candidates are out
            if session_id is None or pending:
                pending.append(candidate)
                return
            await self.send_ice_candidate(session_id, candidate)

        negotiator = self.negotiator_factory(media_kind, send_candidate)
        offer = await negotiator.create_offer()
        ack = await self.sio.call("call:offer", {
            "toUserId": peer_id,
            "offer": offer,
            "mediaKind": media_kind,
        })
        if not ack or not ack.get("ok"):
            await negotiator.close()
            raise CallError((ack or {}).get("error", "no_ack"), (ack or {}).get("message", ""))

        call = LocalCall(ack["sessionId"], peer_id, media_kind, CallRole.caller, negotiator, status="ringing")
        self.calls[call.session_id] = call
        session_id = call.session_id
        while pending:
            await self.send_ice_candidate(session_id, pending[0])
            pending.pop(0)
        # call:ringing is emitted before the ack, so it usually finds no call yet
        if ack.get("state") == "ringing":
            await self._announce_ringing(call)
        logger.info("Call %s to %s started (%s)", call.session_id, peer_id, media_kind)
        return call

    async def accept(self, session_id: str) -> LocalCall:
        call = self._require(session_id)
        if call.role != CallRole.callee or call.status != "incoming":
            raise CallError("invalid_transition", "only an incoming call can be accepted")

        answer = await call.negotiator.create_answer(call.remote_offer)
        await self._remote_description_applied(call)
        ack = await self.sio.call("call:answer", {
            "toUserId": call.peer_id,
            "sessionId": session_id,
            "answer": answer,
        })
        if not ack or not ack.get("ok"):
            await self._close(call)
            raise CallError((ack or {}).get("error", "no_ack"), (ack or {}).get("message", ""))
        call.status = "active"
        return call

    async def reject(self, session_id: str) -> None:
        call = self._require(session_id)
        await self.sio.emit("call:reject", {"toUserId": call.peer_id, "sessionId": session_id})
        await self._close(call)

    async def hangup(self, session_id: str) -> None:
        call = self.calls.get(session_id)
        if call is None:
            return
        await self.sio.emit("call:hangup", {"toUserId": call.peer_id, "sessionId": session_id})
        await self._close(call)

    async def send_ice_candidate(self, session_id: str, candidate) -> None:
        call = self.calls.get(session_id)
        if call is None:
            return
        await self.sio.emit("call:ice-candidate", {
            "toUserId": call.peer_id,
            "sessionId": session_id,
            "candidate": candidate,
        })

    # ------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------

    async def _on_connected(self, data):
        self.user_id = data.get("userId")

    async def _on_offer(self, data):
        session_id = data["sessionId"]
        peer_id = str(data["fromUserId"])
        media_kind = data.get("mediaKind", "audio")

        async def send_candidate(candidate):
            await self.send_ice_candidate(session_id, candidate)

        negotiator = self.negotiator_factory(media_kind, send_candidate)
        call = LocalCall(session_id, peer_id, media_kind, CallRole.callee, negotiator,
                         status="incoming", remote_offer=data.get("offer"))
        self.calls[session_id] = call
        await self._dispatch(CallEvent.incoming, call, data)

    async def _on_ringing(self, data):
        call = self.calls.get(data.get("sessionId"))
        if call is not None:
            await self._announce_ringing(call)

    async def _on_answer(self, data):
        call = self.calls.get(data.get("sessionId"))
        if call is None:
            return
        await call.negotiator.apply_answer(data["answer"])
        call.status = "active"
        await self._remote_description_applied(call)
        await self._dispatch(CallEvent.answered, call)

    async def _on_ice_candidate(self, data):
        call = self.calls.get(data.get("sessionId"))
        if call is None:
            return
        candidate = data.get("candidate")
        if not call.remote_description_set:
            call.early_candidates.append(candidate)
            return
        await call.negotiator.add_ice_candidate(candidate)
        await self._dispatch(CallEvent.candidate, call, candidate)

    async def _on_terminated(self, data):
        call = self.calls.get(data.get("sessionId"))
        if call is None:
            return
        await self._close(call)
        await self._dispatch(CallEvent.ended, call, data.get("reason"))

    async def _on_failed(self, data):
        call = self.calls.get(data.get("sessionId")) if data.get("sessionId") else None
        if call is not None:
            await self._close(call)
        await self._dispatch(CallEvent.failed, data)

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    def _require(self, session_id: str) -> LocalCall:
        call = self.calls.get(session_id)
        if call is None:
            raise CallError("unknown_session", f"no call {session_id}")
        return call

    async def _announce_ringing(self, call: LocalCall) -> None:
        if call.ringing_announced:
            return
        call.ringing_announced = True
        await self._dispatch(CallEvent.ringing, call)

    async def _remote_description_applied(self, call: LocalCall) -> None:
        call.remote_description_set = True
        early, call.early_candidates = call.early_candidates, []
        for candidate in early:
            await call.negotiator.add_ice_candidate(candidate)
            await self._dispatch(CallEvent.candidate, call, candidate)

    async def _close(self, call: LocalCall) -> None:
        if self.calls.pop(call.session_id, None) is None:
            return
        call.status = "ended"
        await call.negotiator.close()
