"""
Event relay.

Fans ephemeral domain events out to rooms. Delivery is fire-and-forget and
at-most-once per live connection: no retry, no persistence, no ack. A
connection that belongs to several target rooms still receives the event
once, because the target rooms are handed to the socket manager in a single
emit and the manager deduplicates participants.

Event vocabulary:
- post_liked / post_unliked - {postId, actorId, likeCount}
- new_comment - {postId, comment}
- new_post - {post}
- post_viewed - {postId, viewsCount}
- follow_changed - {followerId, followeeId, isFollowing, followerCount}
- message_delivered - {message}
- friend_request_created / friend_request_resolved - {requestId, ...}
- friend_removed - {userId, friendId}
- connection_established / connection_closed - lifecycle, in-process only
"""
import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from feedrelay.core.logging import relay_logger

POST_LIKED = "post_liked"
POST_UNLIKED = "post_unliked"
NEW_COMMENT = "new_comment"
NEW_POST = "new_post"
POST_VIEWED = "post_viewed"
FOLLOW_CHANGED = "follow_changed"
MESSAGE_DELIVERED = "message_delivered"
FRIEND_REQUEST_CREATED = "friend_request_created"
FRIEND_REQUEST_RESOLVED = "friend_request_resolved"
FRIEND_REMOVED = "friend_removed"

CONNECTION_ESTABLISHED = "connection_established"
CONNECTION_CLOSED = "connection_closed"

Listener = Callable[["DomainEvent"], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class DomainEvent:
    """
    Something that happened upstream.

    ``target_rooms=None`` broadcasts to every connection; an empty tuple
    targets nobody.
    """
    type: str
    payload: dict = field(default_factory=dict)
    target_rooms: Optional[Sequence[str]] = None

    @property
    def is_broadcast(self) -> bool:
        return self.target_rooms is None


class EventRelay:
    def __init__(self, sio):
        self.sio = sio
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        """Observe every published event in-process (diagnostics, tests)."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def publish(self, event: DomainEvent, target_rooms: Optional[Sequence[str]] = None) -> None:
        """
        Deliver ``event`` to its rooms (or to ``target_rooms`` when given).
        Never raises: a failed emit is logged and dropped.
        """
        rooms = target_rooms if target_rooms is not None else event.target_rooms

        try:
            if rooms is None:
                await self.sio.emit(event.type, event.payload)
                relay_logger.debug(f"Broadcast {event.type}")
            else:
                unique_rooms = list(dict.fromkeys(rooms))
                if unique_rooms:
                    to: Any = unique_rooms[0] if len(unique_rooms) == 1 else unique_rooms
                    await self.sio.emit(event.type, event.payload, to=to)
                    relay_logger.debug(f"Emitted {event.type}", rooms=unique_rooms)
        except Exception as e:
            relay_logger.exception(f"Emit of {event.type} failed", error=e)
            return

        await self._notify(event)

    async def publish_local(self, event: DomainEvent) -> None:
        """Hand an event to in-process listeners only (lifecycle events)."""
        await self._notify(event)

    async def emit(self, event_type: str, payload: dict, rooms: Optional[Sequence[str]] = None) -> None:
        await self.publish(DomainEvent(event_type, payload, tuple(rooms) if rooms is not None else None))

    async def _notify(self, event: DomainEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                relay_logger.exception(f"Relay listener failed on {event.type}", error=e)
