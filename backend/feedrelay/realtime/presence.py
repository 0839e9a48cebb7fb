"""
Presence registry.

Tracks which live connections belong to which user. A user may hold several
connections at once (tabs, devices). Both the relay and the call coordinator
route through ``route_to``; an empty result means "not reachable", never an
error.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from feedrelay.realtime.rooms import normalize_user_id, room_for


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Connection:
    """One authenticated persistent-transport session."""
    connection_id: str
    user_id: str
    connected_at: datetime = field(default_factory=_utcnow, compare=False)
    profile: dict = field(default_factory=dict, compare=False, hash=False)

    @property
    def room(self) -> str:
        return room_for(self.user_id)


class PresenceRegistry:
    """In-memory user -> connections index."""

    def __init__(self):
        # connection_id -> Connection
        self._connections: Dict[str, Connection] = {}
        # user_id -> set of connection_ids
        self._user_connections: Dict[str, Set[str]] = {}

    def register(self, connection: Connection) -> bool:
        """
        Register a connection.
        Returns True if this is the user's first live connection.
        Registering the same connection twice is a no-op.
        """
        if connection.connection_id in self._connections:
            return False

        self._connections[connection.connection_id] = connection
        sids = self._user_connections.setdefault(connection.user_id, set())
        came_online = not sids
        sids.add(connection.connection_id)
        return came_online

    def unregister(self, connection_id: str) -> Optional[dict]:
        """
        Remove a connection.

        Returns None for an unknown connection, otherwise
        {"connection": Connection, "went_offline": bool}.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None

        sids = self._user_connections.get(connection.user_id, set())
        sids.discard(connection_id)
        went_offline = not sids
        if went_offline:
            self._user_connections.pop(connection.user_id, None)

        return {"connection": connection, "went_offline": went_offline}

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def route_to(self, user_id) -> Set[Connection]:
        """Live connections of a user (possibly empty)."""
        user_id = normalize_user_id(user_id)
        return {
            self._connections[sid]
            for sid in self._user_connections.get(user_id, ())
        }

    def is_reachable(self, user_id) -> bool:
        return bool(self._user_connections.get(normalize_user_id(user_id)))

    def get_socket_count(self, user_id) -> int:
        return len(self._user_connections.get(normalize_user_id(user_id), ()))

    def get_online_users(self) -> List[str]:
        return list(self._user_connections.keys())

    def connection_count(self) -> int:
        return len(self._connections)

    def clear(self) -> None:
        self._connections.clear()
        self._user_connections.clear()
