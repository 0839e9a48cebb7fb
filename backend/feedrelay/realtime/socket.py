"""
Socket.IO server wiring.

The hub is built once at startup and handed to whoever needs it; there is
no module-level server instance.

Rooms:
- user:{user_id} - private room of every connection
- any other name - ad hoc group rooms joined with room:join

Inbound events:
- call:offer {toUserId, offer, mediaKind}
- call:answer {toUserId, answer, sessionId?}
- call:ice-candidate {toUserId, candidate, sessionId?}
- call:hangup {toUserId, sessionId?}
- call:reject {toUserId, sessionId?}
- message:send {toUserId, content}
- room:join / room:leave {room}

Handlers return an acknowledgement, {"ok": true, ...} or
{"ok": false, "error": code, "message": ...}.
"""
import logging
from functools import wraps
from typing import Optional

import socketio

from feedrelay.core.config import Settings, settings as default_settings
from feedrelay.core.logging import log_operation, set_connection_id, signaling_logger
from feedrelay.core.security import JWTTokenVerifier, TokenVerifier
from feedrelay.realtime.errors import InvalidPayload, RealtimeError
from feedrelay.realtime.gateway import ConnectionGateway
from feedrelay.realtime.presence import PresenceRegistry
from feedrelay.realtime.relay import EventRelay
from feedrelay.realtime.rooms import is_private_room, normalize_user_id
from feedrelay.realtime.signaling import CallCoordinator
from feedrelay.services.collaborators import (
    InMemoryMessageStore,
    InMemoryProfileLookup,
    MessageStore,
    ProfileLookup,
)
from feedrelay.services.feed_events import FeedEventPublisher

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED = {"ok": False, "error": "not_authenticated", "message": "Not authenticated"}
INTERNAL_ERROR = {"ok": False, "error": "internal_error", "message": "Internal error"}


def create_socket_server(settings: Settings) -> socketio.AsyncServer:
    """
    async_mode="asgi" for FastAPI/Starlette compatibility. With REDIS_URL set
    emits are shared across processes through AsyncRedisManager.
    """
    client_manager = None
    if settings.REDIS_URL:
        client_manager = socketio.AsyncRedisManager(settings.REDIS_URL)

    return socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=settings.CORS_ORIGINS,
        client_manager=client_manager,
        logger=False,
        engineio_logger=False,
    )


class RealtimeHub:
    """Owns the presence registry, relay, call coordinator and gateway."""

    def __init__(
        self,
        sio,
        settings: Settings = default_settings,
        verifier: Optional[TokenVerifier] = None,
        profiles: Optional[ProfileLookup] = None,
        message_store: Optional[MessageStore] = None,
    ):
        self.sio = sio
        self.settings = settings
        self.presence = PresenceRegistry()
        self.relay = EventRelay(sio)
        self.coordinator = CallCoordinator(sio, self.presence, settings.RING_TIMEOUT_SECONDS)
        self.profiles = profiles or InMemoryProfileLookup()
        self.gateway = ConnectionGateway(
            sio,
            self.presence,
            self.relay,
            verifier or JWTTokenVerifier(settings.JWT_SECRET, settings.JWT_ALGORITHM),
            self.profiles,
            settings.AUTH_TIMEOUT_SECONDS,
            coordinator=self.coordinator,
        )
        self.feed = FeedEventPublisher(
            self.relay,
            self.profiles,
            message_store or InMemoryMessageStore(),
            fanout=settings.RELAY_FANOUT,
        )

    def stats(self) -> dict:
        return {
            "connectedUsers": len(self.presence.get_online_users()),
            "connections": self.presence.connection_count(),
            "activeCalls": self.coordinator.active_session_count(),
        }

    async def shutdown(self) -> None:
        await self.coordinator.shutdown()

    # ------------------------------------------------------------
    # Handler plumbing
    # ------------------------------------------------------------

    def _authenticated(self, func):
        """
        Resolve the sid to its Connection, shield the server from handler
        failures and turn them into an ack for the sender only.
        """
        @wraps(func)
        async def handler(sid: str, data=None):
            set_connection_id(sid)
            connection = self.presence.get(sid)
            if connection is None:
                await self.sio.emit("error", {"message": "Not authenticated"}, to=sid)
                return NOT_AUTHENTICATED

            if data is None:
                data = {}
            if not isinstance(data, dict):
                return InvalidPayload("payload must be an object").to_ack()

            claimed = data.get("fromUserId")
            if claimed is not None and str(claimed) != connection.user_id:
                signaling_logger.warning("Ignoring mismatched fromUserId",
                                         user_id=connection.user_id, claimed=str(claimed))

            try:
                return await func(connection, data)
            except RealtimeError as e:
                signaling_logger.info(f"{func.__name__} refused", user_id=connection.user_id,
                                      error_code=e.code, reason=e.message)
                return e.to_ack()
            except Exception:
                logger.exception("Unhandled error in socket handler %s (sid=%s)", func.__name__, sid)
                return INTERNAL_ERROR
            finally:
                set_connection_id(None)

        return handler

    def register_handlers(self) -> "RealtimeHub":
        sio = self.sio

        async def connect(sid: str, environ: dict, auth: dict = None):
            set_connection_id(sid)
            try:
                await self.gateway.on_connect_attempt(sid, environ, auth)
            finally:
                set_connection_id(None)
            return True

        async def disconnect(sid: str, reason=None):
            set_connection_id(sid)
            try:
                await self.gateway.on_disconnect(sid, reason)
            finally:
                set_connection_id(None)

        sio.on("connect", connect)
        sio.on("disconnect", disconnect)
        sio.on("call:offer", self._authenticated(self.on_call_offer))
        sio.on("call:answer", self._authenticated(self.on_call_answer))
        sio.on("call:ice-candidate", self._authenticated(self.on_call_ice_candidate))
        sio.on("call:hangup", self._authenticated(self.on_call_hangup))
        sio.on("call:reject", self._authenticated(self.on_call_reject))
        sio.on("message:send", self._authenticated(self.on_message_send))
        sio.on("room:join", self._authenticated(self.on_room_join))
        sio.on("room:leave", self._authenticated(self.on_room_leave))
        return self

    # ------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------

    @log_operation("call:offer", signaling_logger)
    async def on_call_offer(self, connection, data: dict) -> dict:
        session = await self.coordinator.offer(
            connection, data.get("toUserId"), data.get("offer"), data.get("mediaKind"),
        )
        return {"ok": True, "sessionId": session.session_id, "state": session.state.value}

    @log_operation("call:answer", signaling_logger)
    async def on_call_answer(self, connection, data: dict) -> dict:
        session = await self.coordinator.answer(
            connection, data.get("toUserId"), data.get("answer"), data.get("sessionId"),
        )
        return {"ok": True, "sessionId": session.session_id, "state": session.state.value}

    async def on_call_ice_candidate(self, connection, data: dict) -> dict:
        relayed = await self.coordinator.ice_candidate(
            connection, data.get("toUserId"), data.get("candidate"), data.get("sessionId"),
        )
        return {"ok": True, "queued": not relayed}

    async def on_call_hangup(self, connection, data: dict) -> dict:
        ended = await self.coordinator.hangup(connection, data.get("toUserId"), data.get("sessionId"))
        return {"ok": True, "ended": ended}

    async def on_call_reject(self, connection, data: dict) -> dict:
        ended = await self.coordinator.reject(connection, data.get("toUserId"), data.get("sessionId"))
        return {"ok": True, "ended": ended}

    async def on_message_send(self, connection, data: dict) -> dict:
        recipient_id = normalize_user_id(data.get("toUserId"))
        content = data.get("content")
        if not isinstance(content, str) or not content.strip():
            raise InvalidPayload("content is required")
        message = await self.feed.send_message(connection.user_id, recipient_id, content.strip())
        return {"ok": True, "message": message}

    async def on_room_join(self, connection, data: dict) -> dict:
        room = data.get("room")
        if not isinstance(room, str) or not room.strip():
            raise InvalidPayload("room is required")
        if is_private_room(room):
            raise InvalidPayload("private rooms cannot be joined")
        await self.sio.enter_room(connection.connection_id, room)
        await self.sio.emit("room:joined", {"room": room}, to=connection.connection_id)
        logger.info(f"User {connection.user_id} joined room: {room}")
        return {"ok": True, "room": room}

    async def on_room_leave(self, connection, data: dict) -> dict:
        room = data.get("room")
        if not isinstance(room, str) or not room.strip():
            raise InvalidPayload("room is required")
        if is_private_room(room):
            raise InvalidPayload("private rooms cannot be left")
        await self.sio.leave_room(connection.connection_id, room)
        await self.sio.emit("room:left", {"room": room}, to=connection.connection_id)
        logger.info(f"User {connection.user_id} left room: {room}")
        return {"ok": True, "room": room}


def create_realtime(settings: Settings = default_settings, **collaborators) -> RealtimeHub:
    """Build the socket server and its hub, handlers registered."""
    sio = create_socket_server(settings)
    return RealtimeHub(sio, settings, **collaborators).register_handlers()
