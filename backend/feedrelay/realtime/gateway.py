"""
Connection gateway.

Runs the handshake for every new transport: verifies the credential,
creates the Connection, registers it with the presence registry and joins
its private room. Socket.IO does not dispatch events for a sid until its
connect handler returned, but the transport can close while the handler
is still waiting on verification; such a sid is never registered.
"""
from typing import Optional

import socketio

from feedrelay.core.logging import gateway_logger
from feedrelay.core.security import TokenVerifier
from feedrelay.realtime.auth import authenticate_socket
from feedrelay.realtime.errors import AuthError
from feedrelay.realtime.presence import Connection, PresenceRegistry
from feedrelay.realtime.relay import CONNECTION_CLOSED, CONNECTION_ESTABLISHED, DomainEvent, EventRelay
from feedrelay.services.collaborators import ProfileLookup, display_metadata


class ConnectionGateway:
    def __init__(
        self,
        sio,
        presence: PresenceRegistry,
        relay: EventRelay,
        verifier: TokenVerifier,
        profiles: ProfileLookup,
        auth_timeout: float,
        coordinator=None,
    ):
        self.sio = sio
        self.presence = presence
        self.relay = relay
        self.verifier = verifier
        self.profiles = profiles
        self.auth_timeout = auth_timeout
        self.coordinator = coordinator
        # sids whose handshake is in progress, and those of them already gone
        self._handshaking = set()
        self._closed_early = set()

    async def on_connect_attempt(self, sid: str, environ: Optional[dict], auth: Optional[dict]) -> Connection:
        """
        Authenticate and register a new transport.

        Raises ConnectionRefusedError (python-socketio) carrying the auth
        reason; the client receives it as ``connect_error``.
        """
        gateway_logger.info("Socket connect attempt", sid=sid)

        self._handshaking.add(sid)
        try:
            try:
                user_id, claims = await authenticate_socket(auth, environ, self.verifier, self.auth_timeout)
            except AuthError as e:
                await self._publish_refusal(sid, e.reason)
                raise socketio.exceptions.ConnectionRefusedError(e.reason)

            profile = await self._load_profile(user_id, claims)

            if sid in self._closed_early:
                gateway_logger.info("Transport closed during handshake", sid=sid, user_id=user_id)
                await self._publish_refusal(sid, "disconnected")
                raise socketio.exceptions.ConnectionRefusedError("disconnected")

            connection = Connection(connection_id=sid, user_id=user_id, profile=profile)
            self.presence.register(connection)
        finally:
            self._handshaking.discard(sid)
            self._closed_early.discard(sid)

        await self.sio.enter_room(sid, connection.room)

        await self.sio.emit("connected", {
            "status": "ok",
            "userId": user_id,
            "room": connection.room,
            "user": display_metadata(user_id, profile),
        }, to=sid)

        await self.relay.publish_local(DomainEvent(CONNECTION_ESTABLISHED, {
            "connectionId": sid,
            "userId": user_id,
            "connectedAt": connection.connected_at.isoformat(),
        }))
        gateway_logger.info("Socket connected", sid=sid, user_id=user_id,
                            connections=self.presence.get_socket_count(user_id))
        return connection

    async def on_disconnect(self, sid: str, reason: Optional[str] = None) -> None:
        """
        Drop the connection from the registry before anything else so no
        signaling is routed to it, then let the coordinator tear down calls.
        """
        if sid in self._handshaking:
            self._closed_early.add(sid)

        result = self.presence.unregister(sid)
        if result is None:
            gateway_logger.info("Socket disconnected (unauthenticated)", sid=sid)
            return

        connection = result["connection"]
        if self.coordinator is not None:
            await self.coordinator.connection_lost(connection)

        await self.relay.publish_local(DomainEvent(CONNECTION_CLOSED, {
            "connectionId": sid,
            "userId": connection.user_id,
            "reason": reason,
            "wentOffline": result["went_offline"],
        }))
        gateway_logger.info("Socket disconnected", sid=sid, user_id=connection.user_id, reason=reason)

    async def _publish_refusal(self, sid: str, reason: str) -> None:
        gateway_logger.warning("Socket connection rejected", sid=sid, reason=reason)
        await self.relay.publish_local(DomainEvent(CONNECTION_CLOSED, {
            "connectionId": sid,
            "userId": None,
            "reason": reason,
        }))

    async def _load_profile(self, user_id: str, claims: dict) -> dict:
        try:
            profile = await self.profiles.get_profile(user_id) or {}
        except Exception:
            gateway_logger.exception("Profile lookup failed", user_id=user_id)
            profile = {}
        if not profile and claims.get("username"):
            profile = {"username": claims["username"]}
        return profile
