from __future__ import annotations

import threading
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import EngineConfig
from .errors import (
    DuplicateInvitation,
    EmptyMessage,
    InvitationNotFound,
    MessageNotFound,
    MessageTooLong,
    PermissionDenied,
    RoomNotFound,
)
from .limits import FixedWindowRateLimiter
from .models import (
    MESSAGE_ID_PREFIX,
    REACTION_EMOJIS,
    STATUS_ACCEPTED,
    STATUS_DECLINED,
    STATUS_PENDING,
    THREAD_DM,
    Connection,
    EventRoom,
    Invitation,
    Message,
    Reaction,
    ThreadKey,
    UserProfile,
    _now_ms,
    new_id,
    pair_key,
)

INVITATION_ID_PREFIX = "inv_"
EVENT_ID_PREFIX = "evt_"


def validate_content(content: str, max_length: int) -> str:
    """Return ``content`` stripped, or raise before anything touches the network."""

    trimmed = content.strip()
    if not trimmed:
        raise EmptyMessage("message is empty")
    if len(trimmed) > max_length:
        raise MessageTooLong(len(trimmed), max_length)
    return trimmed


def _validate_invitation_request(sender_id: str, receiver_id: str, activity: str) -> None:
    if not sender_id or not receiver_id:
        raise ValueError("sender_id and receiver_id required")
    if sender_id == receiver_id:
        raise ValueError("cannot invite yourself")
    if not activity.strip():
        raise ValueError("activity required")


class InMemoryRowStore:
    """Row store kept in process memory; one lock guards every table."""

    def __init__(self, config: EngineConfig | None = None, *, now_func: Callable[[], int] = _now_ms) -> None:
        self.config = config or EngineConfig()
        self._now = now_func
        self._lock = threading.Lock()
        self._profiles: Dict[str, UserProfile] = {}
        self._invitations: Dict[str, Invitation] = {}
        self._rooms: Dict[str, EventRoom] = {}
        self._room_members: Dict[str, Set[str]] = {}
        self._bans: Dict[str, Dict[str, int]] = {}
        self._messages: Dict[ThreadKey, List[Message]] = {}
        self._by_token: Dict[Tuple[ThreadKey, str], Message] = {}
        self._reactions: Dict[Tuple[str, str, str], Reaction] = {}
        self._read_marks: Dict[Tuple[str, ThreadKey], int] = {}
        self._mutes: Dict[str, Set[ThreadKey]] = {}
        self._accept_limits = FixedWindowRateLimiter(self.config.accepts_per_min)
        self._invite_limits = FixedWindowRateLimiter(self.config.invites_per_min)

    def now_ms(self) -> int:
        return self._now()

    # profiles

    def put_profile(self, profile: UserProfile) -> None:
        with self._lock:
            self._profiles[profile.user_id] = profile

    def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        with self._lock:
            return {uid: self._profiles[uid] for uid in user_ids if uid in self._profiles}

    # invitations

    def create_invitation(self, sender_id: str, receiver_id: str, activity: str) -> Invitation:
        _validate_invitation_request(sender_id, receiver_id, activity)
        now_ms = self._now()
        with self._lock:
            self._invite_limits.check(sender_id, now_ms, "invitation")
            pair = pair_key(sender_id, receiver_id)
            for existing in self._invitations.values():
                if existing.pair_key() == pair and existing.status in (STATUS_PENDING, STATUS_ACCEPTED):
                    raise DuplicateInvitation("a pending or active connection already exists")
            invitation = Invitation(
                invitation_id=new_id(INVITATION_ID_PREFIX),
                sender_id=sender_id,
                receiver_id=receiver_id,
                activity=activity.strip(),
                status=STATUS_PENDING,
                created_at_ms=now_ms,
            )
            self._invitations[invitation.invitation_id] = invitation
            return invitation

    def get_invitation(self, invitation_id: str) -> Invitation:
        with self._lock:
            invitation = self._invitations.get(invitation_id)
        if invitation is None:
            raise InvitationNotFound(invitation_id)
        return invitation

    def list_pending_invitations(self, receiver_id: str) -> List[Invitation]:
        with self._lock:
            pending = [
                inv
                for inv in self._invitations.values()
                if inv.receiver_id == receiver_id and inv.status == STATUS_PENDING
            ]
        return sorted(pending, key=lambda inv: (-inv.created_at_ms, inv.invitation_id))

    def accept_invitation(self, invitation_id: str, actor_id: str) -> Invitation:
        now_ms = self._now()
        with self._lock:
            self._accept_limits.check(actor_id, now_ms, "accept")
            return self._resolve(invitation_id, actor_id, STATUS_ACCEPTED, now_ms)

    def decline_invitation(self, invitation_id: str, actor_id: str) -> Invitation:
        with self._lock:
            return self._resolve(invitation_id, actor_id, STATUS_DECLINED, self._now())

    def _resolve(self, invitation_id: str, actor_id: str, status: str, now_ms: int) -> Invitation:
        invitation = self._invitations.get(invitation_id)
        if invitation is None:
            raise InvitationNotFound(invitation_id)
        if invitation.receiver_id != actor_id:
            raise PermissionDenied("only the receiver can resolve an invitation")
        resolved = invitation.transition(status, now_ms)
        self._invitations[invitation_id] = resolved
        return resolved

    # connections

    def list_connections(self, user_id: str) -> List[Connection]:
        with self._lock:
            accepted = [
                inv for inv in self._invitations.values() if inv.status == STATUS_ACCEPTED and inv.involves(user_id)
            ]
        connections = [Connection.from_invitation(inv, user_id) for inv in accepted]
        return sorted(connections, key=lambda c: c.invitation_id)

    def remove_connection(self, invitation_id: str, actor_id: str) -> Invitation:
        with self._lock:
            invitation = self._invitations.get(invitation_id)
            if invitation is None:
                raise InvitationNotFound(invitation_id)
            if not invitation.involves(actor_id):
                raise PermissionDenied("not a party to this connection")
            del self._invitations[invitation_id]
            return invitation

    # event rooms

    def create_event_room(
        self,
        host_id: str,
        title: str,
        category: str,
        *,
        duration_minutes: int = 60,
        starts_at_ms: Optional[int] = None,
        is_private: bool = False,
    ) -> EventRoom:
        now_ms = self._now()
        room = EventRoom(
            event_id=new_id(EVENT_ID_PREFIX),
            title=title,
            category=category,
            host_id=host_id,
            created_at_ms=now_ms,
            starts_at_ms=now_ms if starts_at_ms is None else starts_at_ms,
            duration_minutes=duration_minutes,
            is_private=is_private,
        )
        with self._lock:
            self._rooms[room.event_id] = room
            self._room_members[room.event_id] = set()
        return room

    def join_event_room(self, event_id: str, user_id: str) -> None:
        with self._lock:
            if event_id not in self._rooms:
                raise RoomNotFound(event_id)
            if user_id in self._bans.get(event_id, {}):
                raise PermissionDenied(f"{user_id} is banned from {event_id}")
            self._room_members[event_id].add(user_id)

    def leave_event_room(self, event_id: str, user_id: str) -> None:
        with self._lock:
            if event_id not in self._rooms:
                raise RoomNotFound(event_id)
            self._room_members[event_id].discard(user_id)

    def _require_host(self, event_id: str, host_id: str) -> EventRoom:
        room = self._rooms.get(event_id)
        if room is None:
            raise RoomNotFound(event_id)
        if room.host_id != host_id:
            raise PermissionDenied("only the host can manage bans")
        return room

    def ban_user(self, event_id: str, host_id: str, user_id: str) -> None:
        """Remove ``user_id`` from the room and keep them out until unbanned."""

        with self._lock:
            room = self._require_host(event_id, host_id)
            if user_id == room.host_id:
                raise ValueError("the host cannot be banned")
            self._room_members[event_id].discard(user_id)
            self._bans.setdefault(event_id, {}).setdefault(user_id, self._now())

    def unban_user(self, event_id: str, host_id: str, user_id: str) -> bool:
        with self._lock:
            self._require_host(event_id, host_id)
            return self._bans.get(event_id, {}).pop(user_id, None) is not None

    def list_bans(self, event_id: str, host_id: str) -> List[str]:
        with self._lock:
            self._require_host(event_id, host_id)
            bans = self._bans.get(event_id, {})
            return sorted(bans, key=lambda uid: (bans[uid], uid))

    def is_banned(self, event_id: str, user_id: str) -> bool:
        with self._lock:
            return user_id in self._bans.get(event_id, {})

    def list_event_rooms(self, user_id: str, now_ms: Optional[int] = None) -> List[EventRoom]:
        now_ms = self._now() if now_ms is None else now_ms
        with self._lock:
            rooms = [
                room
                for room in self._rooms.values()
                if not room.is_private
                and room.is_active(now_ms)
                and (room.host_id == user_id or user_id in self._room_members.get(room.event_id, set()))
            ]
        return sorted(rooms, key=lambda r: r.event_id)

    # messages

    def thread_participants(self, thread: ThreadKey) -> List[str]:
        with self._lock:
            return self._participants(thread)

    def _participants(self, thread: ThreadKey) -> List[str]:
        if thread.thread_type == THREAD_DM:
            invitation = self._invitations.get(thread.thread_id)
            if invitation is None or invitation.status != STATUS_ACCEPTED:
                return []
            return sorted((invitation.sender_id, invitation.receiver_id))
        room = self._rooms.get(thread.thread_id)
        if room is None:
            return []
        banned = self._bans.get(thread.thread_id, {})
        members = {room.host_id} | self._room_members.get(thread.thread_id, set())
        return sorted(uid for uid in members if uid not in banned)

    def _require_access(self, thread: ThreadKey, user_id: str) -> None:
        if user_id not in self._participants(thread):
            raise PermissionDenied(f"no access to thread {thread}")

    def create_message(
        self, thread: ThreadKey, sender_id: str, content: str, client_token: Optional[str] = None
    ) -> Message:
        content = validate_content(content, self.config.max_message_length)
        with self._lock:
            self._require_access(thread, sender_id)
            if client_token is not None:
                existing = self._by_token.get((thread, client_token))
                if existing is not None:
                    return existing
            message = Message(
                thread=thread,
                sender_id=sender_id,
                content=content,
                created_at_ms=self._now(),
                message_id=new_id(MESSAGE_ID_PREFIX),
                client_token=client_token,
            )
            self._messages.setdefault(thread, []).append(message)
            if client_token is not None:
                self._by_token[(thread, client_token)] = message
            return message

    def list_messages(self, thread: ThreadKey, viewer_id: str) -> List[Message]:
        with self._lock:
            self._require_access(thread, viewer_id)
            messages = list(self._messages.get(thread, []))
        return sorted(messages, key=lambda m: (m.created_at_ms, m.message_id or ""))

    def latest_message(self, thread: ThreadKey) -> Optional[Message]:
        with self._lock:
            messages = self._messages.get(thread, [])
            if not messages:
                return None
            return max(messages, key=lambda m: (m.created_at_ms, m.message_id or ""))

    # reactions

    def _find_message(self, thread: ThreadKey, message_id: str) -> Message:
        for message in self._messages.get(thread, []):
            if message.message_id == message_id:
                return message
        raise MessageNotFound(message_id)

    def toggle_reaction(self, thread: ThreadKey, message_id: str, user_id: str, emoji: str) -> Tuple[Reaction, bool]:
        """Add the reaction, or remove it if the user already reacted; returns (reaction, added)."""

        if emoji not in REACTION_EMOJIS:
            raise ValueError(f"unsupported reaction {emoji!r}")
        with self._lock:
            self._require_access(thread, user_id)
            self._find_message(thread, message_id)
            key = (message_id, user_id, emoji)
            existing = self._reactions.pop(key, None)
            if existing is not None:
                return existing, False
            reaction = Reaction(thread, message_id, user_id, emoji, self._now())
            self._reactions[key] = reaction
            return reaction, True

    def list_reactions(self, thread: ThreadKey, viewer_id: str) -> List[Reaction]:
        with self._lock:
            self._require_access(thread, viewer_id)
            reactions = [r for r in self._reactions.values() if r.thread == thread]
        return sorted(reactions, key=lambda r: (r.created_at_ms, r.message_id, r.user_id, r.emoji))

    # read marks

    def mark_read(self, thread: ThreadKey, user_id: str, at_ms: Optional[int] = None) -> None:
        at_ms = self._now() if at_ms is None else at_ms
        with self._lock:
            key = (user_id, thread)
            self._read_marks[key] = max(self._read_marks.get(key, 0), at_ms)

    def unread_message_ids(self, thread: ThreadKey, user_id: str) -> List[str]:
        with self._lock:
            cutoff = self._read_marks.get((user_id, thread), 0)
            unread = [
                m for m in self._messages.get(thread, []) if m.sender_id != user_id and m.created_at_ms > cutoff
            ]
        return [m.message_id or "" for m in sorted(unread, key=lambda m: (m.created_at_ms, m.message_id or ""))]

    def count_unread(self, thread: ThreadKey, user_id: str) -> int:
        return len(self.unread_message_ids(thread, user_id))

    # mutes

    def list_mutes(self, user_id: str) -> Set[ThreadKey]:
        with self._lock:
            return set(self._mutes.get(user_id, set()))

    def set_mute(self, user_id: str, thread: ThreadKey, muted: bool) -> None:
        with self._lock:
            mutes = self._mutes.setdefault(user_id, set())
            if muted:
                mutes.add(thread)
            else:
                mutes.discard(thread)
