"""Unified inbox: pending invites, direct threads and event rooms in one list."""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Set

from .hub import Listeners
from .models import (
    ITEM_DM,
    ITEM_PENDING_INVITE,
    ITEM_SPOT,
    THREAD_DM,
    Connection,
    ConversationItem,
    EventRoom,
    Invitation,
    Message,
    ThreadKey,
    UserProfile,
)
from .mutes import MuteStore
from .unread import UnreadAggregator

UNKNOWN_NAME = "Unknown"


def preview(content: str, length: int = 50) -> str:
    if len(content) <= length:
        return content
    return content[:length] + "..."


class ConversationUnifier:
    """Projects invitations, connections and rooms into ordered inbox items.

    Items are recomputed on every read; ``listeners`` fire whenever a source
    changes, including unread counts and mute flags.
    """

    def __init__(
        self,
        user_id: str,
        unread: UnreadAggregator,
        mutes: MuteStore,
        *,
        preview_length: int = 50,
    ) -> None:
        self.user_id = user_id
        self._unread = unread
        self._mutes = mutes
        self.preview_length = preview_length
        self._pending: List[Invitation] = []
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, EventRoom] = {}
        self._profiles: Dict[str, UserProfile] = {}
        self._last_messages: Dict[ThreadKey, Message] = {}
        self.listeners = Listeners()
        unread.listeners.add(self.listeners.fire)
        mutes.listeners.add(self.listeners.fire)

    # sources

    def set_pending(self, invitations: Iterable[Invitation]) -> None:
        self._pending = [inv for inv in invitations if inv.receiver_id == self.user_id]
        self.listeners.fire()

    def set_connections(self, connections: Iterable[Connection]) -> None:
        self._connections = {c.invitation_id: c for c in connections}
        self.listeners.fire()

    def set_rooms(self, rooms: Iterable[EventRoom]) -> None:
        self._rooms = {room.event_id: room for room in rooms}
        self.listeners.fire()

    def set_profiles(self, profiles: Mapping[str, UserProfile]) -> None:
        self._profiles.update(profiles)
        self.listeners.fire()

    def set_last_messages(self, messages: Mapping[ThreadKey, Optional[Message]]) -> None:
        merged: Dict[ThreadKey, Message] = {}
        for thread, message in messages.items():
            current = self._last_messages.get(thread)
            if current is not None and (message is None or current.created_at_ms > message.created_at_ms):
                message = current
            if message is not None:
                merged[thread] = message
        self._last_messages = merged
        self.listeners.fire()

    def on_message(self, message: Message) -> None:
        current = self._last_messages.get(message.thread)
        if current is not None and current.created_at_ms > message.created_at_ms:
            return
        self._last_messages[message.thread] = message
        self.listeners.fire()

    def forget_thread(self, thread: ThreadKey) -> None:
        self._last_messages.pop(thread, None)
        if thread.thread_type == THREAD_DM:
            self._connections.pop(thread.thread_id, None)
        else:
            self._rooms.pop(thread.thread_id, None)
        self.listeners.fire()

    def display_name(self, user_id: str) -> Optional[str]:
        profile = self._profiles.get(user_id)
        return profile.display_name if profile is not None else None

    def profile_ids(self) -> Set[str]:
        return set(self._profiles)

    def known_user_ids(self) -> List[str]:
        ids = {inv.sender_id for inv in self._pending}
        ids.update(c.peer_id for c in self._connections.values())
        return sorted(ids)

    def threads(self) -> List[ThreadKey]:
        return [c.thread for c in self._connections.values()] + [room.thread for room in self._rooms.values()]

    # projection

    def _subtitle(self, thread: ThreadKey, empty: str) -> str:
        last = self._last_messages.get(thread)
        if last is None:
            return empty
        text = preview(last.content, self.preview_length)
        return f"You: {text}" if last.sender_id == self.user_id else text

    def _badge(self, thread: ThreadKey) -> tuple[int, bool]:
        muted = self._mutes.is_muted(thread)
        return (0 if muted else self._unread.count(thread)), muted

    def _pending_item(self, invitation: Invitation) -> ConversationItem:
        sender = self._profiles.get(invitation.sender_id)
        return ConversationItem(
            item_id=f"invite-{invitation.invitation_id}",
            item_type=ITEM_PENDING_INVITE,
            title=sender.display_name if sender else UNKNOWN_NAME,
            subtitle=f"Wants to connect: {invitation.activity}",
            last_activity_ms=invitation.created_at_ms,
            avatar=sender.avatar if sender else None,
            invitation_id=invitation.invitation_id,
            user_id=invitation.sender_id,
            activity=invitation.activity,
        )

    def _dm_item(self, connection: Connection) -> ConversationItem:
        thread = connection.thread
        peer = self._profiles.get(connection.peer_id)
        last = self._last_messages.get(thread)
        unread, muted = self._badge(thread)
        return ConversationItem(
            item_id=f"dm-{connection.peer_id}",
            item_type=ITEM_DM,
            title=peer.display_name if peer else UNKNOWN_NAME,
            subtitle=self._subtitle(thread, "Start a conversation"),
            last_activity_ms=last.created_at_ms if last else connection.connected_at_ms,
            unread_count=unread,
            muted=muted,
            avatar=peer.avatar if peer else None,
            invitation_id=connection.invitation_id,
            user_id=connection.peer_id,
        )

    def _spot_item(self, room: EventRoom) -> ConversationItem:
        thread = room.thread
        last = self._last_messages.get(thread)
        unread, muted = self._badge(thread)
        return ConversationItem(
            item_id=f"spot-{room.event_id}",
            item_type=ITEM_SPOT,
            title=room.title,
            subtitle=self._subtitle(thread, "No messages yet"),
            last_activity_ms=last.created_at_ms if last else room.created_at_ms,
            unread_count=unread,
            muted=muted,
            event_id=room.event_id,
            activity=room.category,
        )

    def items(self) -> List[ConversationItem]:
        pending = sorted(
            (self._pending_item(inv) for inv in self._pending),
            key=lambda item: (-item.last_activity_ms, item.item_id),
        )
        threads = [self._dm_item(c) for c in self._connections.values()]
        threads.extend(self._spot_item(room) for room in self._rooms.values())
        threads.sort(key=lambda item: (-item.last_activity_ms, item.item_id))
        return pending + threads
