"""
External collaborators consumed by the realtime core.

The feed application owns persistence and profiles; the realtime service
only talks to them through these interfaces. The in-memory versions back
local development and the test-suite.
"""
import itertools
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol


class MessageStore(Protocol):
    async def save_message(self, sender_id: str, recipient_id: str, content: str) -> dict:
        """Persist a direct message and return its stored representation."""
        ...


class ProfileLookup(Protocol):
    async def get_profile(self, user_id: str) -> Optional[dict]:
        """Display metadata for a user, or None when unknown."""
        ...


class InMemoryMessageStore:
    def __init__(self):
        self.messages: List[dict] = []
        self._ids = itertools.count(1)

    async def save_message(self, sender_id: str, recipient_id: str, content: str) -> dict:
        message = {
            "id": next(self._ids),
            "senderId": sender_id,
            "recipientId": recipient_id,
            "content": content,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        self.messages.append(message)
        return message


class InMemoryProfileLookup:
    def __init__(self, profiles: Optional[Dict[str, dict]] = None):
        self.profiles: Dict[str, dict] = dict(profiles or {})

    async def get_profile(self, user_id: str) -> Optional[dict]:
        return self.profiles.get(user_id)


def display_metadata(user_id: str, profile: Optional[dict]) -> dict:
    """Shape of the ``actor`` block attached to relay payloads."""
    profile = profile or {}
    return {
        "id": user_id,
        "username": profile.get("username"),
        "displayName": profile.get("display_name") or profile.get("username"),
        "avatarUrl": profile.get("avatar_url"),
    }
