from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from .events import (
    ConnectionRemoved,
    InvitationChanged,
    InvitationInserted,
    MemberBanned,
    MessageInserted,
    PushEvent,
    ReactionChanged,
)
from .hub import SubscriptionHub, thread_topic, user_topic
from .models import THREAD_SPOT, Connection, EventRoom, Invitation, Message, Reaction, ThreadKey, UserProfile
from .sqlite_store import SQLiteRowStore
from .store import InMemoryRowStore

logger = logging.getLogger(__name__)

RowStore = Union[InMemoryRowStore, SQLiteRowStore]


class Backend:
    """Asynchronous row store with realtime replication.

    Every durable write is published to the hub once it has been stored, so
    subscribers never see a change the store could still reject.
    """

    def __init__(self, store: RowStore, hub: SubscriptionHub) -> None:
        self.store = store
        self.hub = hub

    def now_ms(self) -> int:
        return self.store.now_ms()

    def _publish(self, topics: Iterable[str], event: PushEvent) -> None:
        for topic in dict.fromkeys(topics):
            self.hub.publish(topic, event)

    # profiles

    async def put_profile(self, profile: UserProfile) -> None:
        self.store.put_profile(profile)

    async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        return self.store.get_profiles(user_ids)

    # invitations

    async def create_invitation(self, sender_id: str, receiver_id: str, activity: str) -> Invitation:
        invitation = self.store.create_invitation(sender_id, receiver_id, activity)
        self._publish(
            (user_topic(invitation.sender_id), user_topic(invitation.receiver_id)),
            InvitationInserted(invitation),
        )
        return invitation

    async def get_invitation(self, invitation_id: str) -> Invitation:
        return self.store.get_invitation(invitation_id)

    async def list_pending_invitations(self, receiver_id: str) -> List[Invitation]:
        return self.store.list_pending_invitations(receiver_id)

    async def accept_invitation(self, invitation_id: str, actor_id: str) -> Invitation:
        invitation = self.store.accept_invitation(invitation_id, actor_id)
        self._publish_change(invitation)
        return invitation

    async def decline_invitation(self, invitation_id: str, actor_id: str) -> Invitation:
        invitation = self.store.decline_invitation(invitation_id, actor_id)
        self._publish_change(invitation)
        return invitation

    def _publish_change(self, invitation: Invitation) -> None:
        logger.debug("invitation %s is now %s", invitation.invitation_id, invitation.status)
        self._publish(
            (user_topic(invitation.sender_id), user_topic(invitation.receiver_id)),
            InvitationChanged(invitation, previous_status="pending"),
        )

    # connections

    async def list_connections(self, user_id: str) -> List[Connection]:
        return self.store.list_connections(user_id)

    async def remove_connection(self, invitation_id: str, actor_id: str) -> Invitation:
        invitation = self.store.remove_connection(invitation_id, actor_id)
        event = ConnectionRemoved(invitation.invitation_id, (invitation.sender_id, invitation.receiver_id))
        self._publish(
            (user_topic(invitation.sender_id), user_topic(invitation.receiver_id), thread_topic(event.thread)),
            event,
        )
        return invitation

    # event rooms

    async def create_event_room(
        self,
        host_id: str,
        title: str,
        category: str,
        *,
        duration_minutes: int = 60,
        starts_at_ms: Optional[int] = None,
        is_private: bool = False,
    ) -> EventRoom:
        return self.store.create_event_room(
            host_id,
            title,
            category,
            duration_minutes=duration_minutes,
            starts_at_ms=starts_at_ms,
            is_private=is_private,
        )

    async def join_event_room(self, event_id: str, user_id: str) -> None:
        self.store.join_event_room(event_id, user_id)

    async def leave_event_room(self, event_id: str, user_id: str) -> None:
        self.store.leave_event_room(event_id, user_id)

    async def list_event_rooms(self, user_id: str, now_ms: Optional[int] = None) -> List[EventRoom]:
        return self.store.list_event_rooms(user_id, now_ms)

    async def ban_user(self, event_id: str, host_id: str, user_id: str) -> None:
        """Ban ``user_id`` from the spot and cut their live subscriptions to it."""

        self.store.ban_user(event_id, host_id, user_id)
        thread = ThreadKey(THREAD_SPOT, event_id)
        topic = thread_topic(thread)
        self._publish((topic, user_topic(user_id)), MemberBanned(event_id, user_id))
        self.hub.revoke(topic, user_id)

    async def unban_user(self, event_id: str, host_id: str, user_id: str) -> bool:
        return self.store.unban_user(event_id, host_id, user_id)

    async def list_bans(self, event_id: str, host_id: str) -> List[str]:
        return self.store.list_bans(event_id, host_id)

    async def is_banned(self, event_id: str, user_id: str) -> bool:
        return self.store.is_banned(event_id, user_id)

    # messages

    async def create_message(
        self, thread: ThreadKey, sender_id: str, content: str, client_token: Optional[str] = None
    ) -> Message:
        message = self.store.create_message(thread, sender_id, content, client_token)
        participants = self.store.thread_participants(thread)
        self._publish(
            [thread_topic(thread)] + [user_topic(user_id) for user_id in participants],
            MessageInserted(message),
        )
        return message

    async def list_messages(self, thread: ThreadKey, viewer_id: str) -> List[Message]:
        return self.store.list_messages(thread, viewer_id)

    async def latest_message(self, thread: ThreadKey) -> Optional[Message]:
        return self.store.latest_message(thread)

    async def thread_participants(self, thread: ThreadKey) -> List[str]:
        return self.store.thread_participants(thread)

    # reactions

    async def toggle_reaction(
        self, thread: ThreadKey, message_id: str, user_id: str, emoji: str
    ) -> Tuple[Reaction, bool]:
        reaction, added = self.store.toggle_reaction(thread, message_id, user_id, emoji)
        self._publish((thread_topic(thread),), ReactionChanged(reaction, added))
        return reaction, added

    async def list_reactions(self, thread: ThreadKey, viewer_id: str) -> List[Reaction]:
        return self.store.list_reactions(thread, viewer_id)

    # read marks

    async def mark_read(self, thread: ThreadKey, user_id: str, at_ms: Optional[int] = None) -> None:
        self.store.mark_read(thread, user_id, at_ms)

    async def unread_message_ids(self, thread: ThreadKey, user_id: str) -> List[str]:
        return self.store.unread_message_ids(thread, user_id)

    async def count_unread(self, thread: ThreadKey, user_id: str) -> int:
        return self.store.count_unread(thread, user_id)

    # mutes

    async def list_mutes(self, user_id: str) -> Set[ThreadKey]:
        return self.store.list_mutes(user_id)

    async def set_mute(self, user_id: str, thread: ThreadKey, muted: bool) -> None:
        self.store.set_mute(user_id, thread, muted)
