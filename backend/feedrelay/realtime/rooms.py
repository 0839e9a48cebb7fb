"""
Room naming.

Every connection sits in the private room of its owner, ``user:<id>``.
Ids arrive as ints from the token and as strings from clients, so they are
normalized to one canonical string before a room name is built.
"""
from typing import Any, Iterable, List

from feedrelay.realtime.errors import InvalidPayload

USER_ROOM_PREFIX = "user:"


def normalize_user_id(value: Any) -> str:
    """Return the canonical string form of a user id (7 and "7" are the same user)."""
    if value is None or isinstance(value, bool):
        raise InvalidPayload("user id is required")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if cleaned:
            return cleaned
    raise InvalidPayload(f"invalid user id: {value!r}")


def room_for(user_id: Any) -> str:
    """Private room of a user."""
    return f"{USER_ROOM_PREFIX}{normalize_user_id(user_id)}"


def rooms_for(user_ids: Iterable[Any]) -> List[str]:
    """Private rooms for several users, deduplicated, first occurrence wins."""
    rooms: List[str] = []
    for user_id in user_ids:
        room = room_for(user_id)
        if room not in rooms:
            rooms.append(room)
    return rooms


def is_private_room(room: str) -> bool:
    return room.startswith(USER_ROOM_PREFIX)
