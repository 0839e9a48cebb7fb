import os

import pytest

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("TESTING", "true")

from feedrelay.core.config import Settings, settings
from feedrelay.core.security import create_access_token
from feedrelay.realtime.socket import RealtimeHub
from feedrelay.services.collaborators import InMemoryMessageStore, InMemoryProfileLookup


class FakeSocketServer:
    """
    Stand-in for socketio.AsyncServer: tracks rooms and records what every
    sid receives. Like the real manager, one emit to several rooms reaches
    each participant once.
    """

    def __init__(self):
        self.rooms = {}
        self.handlers = {}
        self.sent = []  # (sid, event, data)

    def on(self, event, handler=None, namespace=None):
        self.handlers[event] = handler
        return handler

    async def enter_room(self, sid, room, namespace=None):
        self.rooms.setdefault(sid, set()).add(sid)
        self.rooms.setdefault(room, set()).add(sid)

    async def leave_room(self, sid, room, namespace=None):
        self.rooms.get(room, set()).discard(sid)

    def drop(self, sid):
        for members in self.rooms.values():
            members.discard(sid)

    def all_sids(self):
        return {sid for members in self.rooms.values() for sid in members}

    async def emit(self, event, data=None, to=None, room=None, skip_sid=None, namespace=None, callback=None):
        target = to if to is not None else room
        if target is None:
            recipients = self.all_sids()
        else:
            targets = target if isinstance(target, list) else [target]
            recipients = set()
            for t in targets:
                recipients |= self.rooms.get(t, set())
        for sid in sorted(recipients):
            if sid != skip_sid:
                self.sent.append((sid, event, data))

    def received(self, sid, event=None):
        return [data for s, e, data in self.sent if s == sid and (event is None or e == event)]

    def events_for(self, sid):
        return [e for s, e, _ in self.sent if s == sid]


@pytest.fixture
def test_settings():
    return Settings(
        JWT_SECRET=settings.JWT_SECRET,
        RING_TIMEOUT_SECONDS=30.0,
        AUTH_TIMEOUT_SECONDS=0.5,
        RELAY_FANOUT="broadcast",
    )


@pytest.fixture
def sio():
    return FakeSocketServer()


@pytest.fixture
def profiles():
    return InMemoryProfileLookup({
        "1": {"username": "alice", "display_name": "Alice"},
        "2": {"username": "bob", "display_name": "Bob"},
    })


@pytest.fixture
def message_store():
    return InMemoryMessageStore()


@pytest.fixture
async def hub(sio, test_settings, profiles, message_store):
    hub = RealtimeHub(sio, test_settings, profiles=profiles, message_store=message_store).register_handlers()
    yield hub
    await hub.shutdown()


@pytest.fixture
def connect(hub, test_settings):
    """Run a real handshake for ``user_id`` on ``sid`` and return the Connection."""
    async def _connect(sid, user_id):
        token = create_access_token(user_id)
        return await hub.gateway.on_connect_attempt(sid, {}, {"token": token})
    return _connect


@pytest.fixture
def disconnect(hub, sio):
    async def _disconnect(sid):
        sio.drop(sid)
        await hub.gateway.on_disconnect(sid, "transport close")
    return _disconnect
