"""
Feed event publisher.

Typed emit helpers called by the feed application after its own writes
succeed. Each helper builds the relay payload, decides the fan-out target
(broadcast or the interested users' private rooms, per RELAY_FANOUT) and
attaches display metadata for the acting user.
"""
from typing import Iterable, Optional

from feedrelay.realtime import relay as events
from feedrelay.realtime.relay import DomainEvent, EventRelay
from feedrelay.realtime.rooms import normalize_user_id, rooms_for
from feedrelay.services.collaborators import MessageStore, ProfileLookup, display_metadata

FANOUT_BROADCAST = "broadcast"
FANOUT_TARGETED = "targeted"


class FeedEventPublisher:
    def __init__(
        self,
        relay: EventRelay,
        profiles: ProfileLookup,
        message_store: MessageStore,
        fanout: str = FANOUT_BROADCAST,
    ):
        if fanout not in (FANOUT_BROADCAST, FANOUT_TARGETED):
            raise ValueError(f"unknown fan-out mode: {fanout}")
        self.relay = relay
        self.profiles = profiles
        self.message_store = message_store
        self.fanout = fanout

    @property
    def targeted(self) -> bool:
        return self.fanout == FANOUT_TARGETED

    async def _actor(self, user_id: str) -> dict:
        return display_metadata(user_id, await self.profiles.get_profile(user_id))

    def _feed_rooms(self, *user_ids) -> Optional[list]:
        """Broadcast (None) unless targeted fan-out is enabled."""
        if not self.targeted:
            return None
        return rooms_for(u for u in user_ids if u is not None)

    # ------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------

    async def post_liked(self, post_id, actor_id, like_count: int, post_owner_id=None):
        actor_id = normalize_user_id(actor_id)
        await self.relay.publish(DomainEvent(events.POST_LIKED, {
            "postId": post_id,
            "actorId": actor_id,
            "likeCount": like_count,
            "actor": await self._actor(actor_id),
        }, self._feed_rooms(post_owner_id, actor_id)))

    async def post_unliked(self, post_id, actor_id, like_count: int, post_owner_id=None):
        actor_id = normalize_user_id(actor_id)
        await self.relay.publish(DomainEvent(events.POST_UNLIKED, {
            "postId": post_id,
            "actorId": actor_id,
            "likeCount": like_count,
        }, self._feed_rooms(post_owner_id, actor_id)))

    async def new_comment(self, post_id, comment: dict, post_owner_id=None):
        author_id = comment.get("userId") or comment.get("user_id")
        payload = {"postId": post_id, "comment": comment}
        if author_id is not None:
            payload["actor"] = await self._actor(normalize_user_id(author_id))
        await self.relay.publish(DomainEvent(
            events.NEW_COMMENT, payload, self._feed_rooms(post_owner_id, author_id),
        ))

    async def new_post(self, post: dict, audience: Iterable = ()):
        """``audience`` (e.g. the author's followers) is used only in targeted mode."""
        author_id = post.get("userId") or post.get("user_id")
        rooms = self._feed_rooms(author_id, *audience)
        await self.relay.publish(DomainEvent(events.NEW_POST, {"post": post}, rooms))

    async def post_viewed(self, post_id, views_count: int):
        # view counters are public and cheap, always broadcast
        await self.relay.publish(DomainEvent(events.POST_VIEWED, {
            "postId": post_id,
            "viewsCount": views_count,
        }))

    # ------------------------------------------------------------
    # Social graph
    # ------------------------------------------------------------

    async def follow_changed(self, follower_id, followee_id, is_following: bool, follower_count: int):
        follower_id = normalize_user_id(follower_id)
        followee_id = normalize_user_id(followee_id)
        await self.relay.publish(DomainEvent(events.FOLLOW_CHANGED, {
            "followerId": follower_id,
            "followeeId": followee_id,
            "isFollowing": is_following,
            "followerCount": follower_count,
            "actor": await self._actor(follower_id),
        }, self._feed_rooms(followee_id, follower_id)))

    async def friend_request_created(self, request_id, sender_id, recipient_id, **extra):
        sender_id = normalize_user_id(sender_id)
        await self.relay.publish(DomainEvent(events.FRIEND_REQUEST_CREATED, {
            "requestId": request_id,
            "senderId": sender_id,
            "recipientId": normalize_user_id(recipient_id),
            "sender": await self._actor(sender_id),
            **extra,
        }, rooms_for([recipient_id])))

    async def friend_request_resolved(self, request_id, sender_id, recipient_id, accepted: bool, **extra):
        """Sent to the user who made the request, since they await the outcome."""
        await self.relay.publish(DomainEvent(events.FRIEND_REQUEST_RESOLVED, {
            "requestId": request_id,
            "senderId": normalize_user_id(sender_id),
            "recipientId": normalize_user_id(recipient_id),
            "accepted": accepted,
            **extra,
        }, rooms_for([sender_id])))

    async def friend_removed(self, user_id, friend_id):
        await self.relay.publish(DomainEvent(events.FRIEND_REMOVED, {
            "userId": normalize_user_id(user_id),
            "friendId": normalize_user_id(friend_id),
        }, rooms_for([user_id, friend_id])))

    # ------------------------------------------------------------
    # Direct messages
    # ------------------------------------------------------------

    async def message_delivered(self, message: dict):
        sender_id = message.get("senderId") or message.get("sender_id")
        recipient_id = message.get("recipientId") or message.get("recipient_id")
        await self.relay.publish(DomainEvent(
            events.MESSAGE_DELIVERED, {"message": message}, rooms_for([sender_id, recipient_id]),
        ))

    async def send_message(self, sender_id, recipient_id, content: str) -> dict:
        """
        Persist through the message store, then announce delivery. Nothing
        is published if the store raises.
        """
        message = await self.message_store.save_message(
            normalize_user_id(sender_id), normalize_user_id(recipient_id), content,
        )
        await self.message_delivered(message)
        return message
