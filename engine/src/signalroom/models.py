from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from .errors import AlreadyResolved

STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_DECLINED = "declined"
INVITATION_STATUSES = (STATUS_PENDING, STATUS_ACCEPTED, STATUS_DECLINED)

_TRANSITIONS = {
    STATUS_PENDING: {STATUS_ACCEPTED, STATUS_DECLINED},
    STATUS_ACCEPTED: set(),
    STATUS_DECLINED: set(),
}

THREAD_DM = "dm"
THREAD_SPOT = "spot"
THREAD_TYPES = (THREAD_DM, THREAD_SPOT)

ITEM_PENDING_INVITE = "pending_invite"
ITEM_DM = THREAD_DM
ITEM_SPOT = THREAD_SPOT

TEMP_ID_PREFIX = "tmp_"
MESSAGE_ID_PREFIX = "m_"
CLIENT_TOKEN_PREFIX = "ct_"

REACTION_EMOJIS = ("\u2764\ufe0f", "\U0001f44d", "\U0001f602")


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}{secrets.token_urlsafe(12)}"


def is_temp_id(value: str) -> bool:
    return value.startswith(TEMP_ID_PREFIX)


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    display_name: str
    avatar: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Invitation:
    invitation_id: str
    sender_id: str
    receiver_id: str
    activity: str
    status: str
    created_at_ms: int
    resolved_at_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.status]

    def involves(self, user_id: str) -> bool:
        return user_id in (self.sender_id, self.receiver_id)

    def peer_of(self, user_id: str) -> str:
        return self.receiver_id if user_id == self.sender_id else self.sender_id

    def pair_key(self) -> tuple[str, str]:
        return pair_key(self.sender_id, self.receiver_id)

    def transition(self, status: str, now_ms: int) -> "Invitation":
        """Return the invitation moved to ``status``.

        Accepted and declined invitations are terminal; any further transition
        raises :class:`AlreadyResolved` so callers can refresh.
        """

        if status not in _TRANSITIONS:
            raise ValueError(f"unknown invitation status: {status}")
        if status not in _TRANSITIONS[self.status]:
            raise AlreadyResolved(self.invitation_id, self.status)
        return replace(self, status=status, resolved_at_ms=now_ms)


def pair_key(user_a: str, user_b: str) -> tuple[str, str]:
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


@dataclass(frozen=True)
class Connection:
    invitation_id: str
    user_id: str
    peer_id: str
    connected_at_ms: int

    @property
    def thread(self) -> "ThreadKey":
        return ThreadKey(THREAD_DM, self.invitation_id)

    @classmethod
    def from_invitation(cls, invitation: Invitation, user_id: str) -> "Connection":
        return cls(
            invitation_id=invitation.invitation_id,
            user_id=user_id,
            peer_id=invitation.peer_of(user_id),
            connected_at_ms=invitation.resolved_at_ms or invitation.created_at_ms,
        )


@dataclass(frozen=True)
class EventRoom:
    event_id: str
    title: str
    category: str
    host_id: str
    created_at_ms: int
    starts_at_ms: int
    duration_minutes: int
    is_private: bool = False

    @property
    def ends_at_ms(self) -> int:
        return self.starts_at_ms + self.duration_minutes * 60_000

    @property
    def thread(self) -> "ThreadKey":
        return ThreadKey(THREAD_SPOT, self.event_id)

    def is_active(self, now_ms: int) -> bool:
        return self.ends_at_ms > now_ms


@dataclass(frozen=True, order=True)
class ThreadKey:
    thread_type: str
    thread_id: str

    def __post_init__(self) -> None:
        if self.thread_type not in THREAD_TYPES:
            raise ValueError(f"unknown thread type: {self.thread_type}")
        if not self.thread_id:
            raise ValueError("thread_id required")

    def __str__(self) -> str:
        return f"{self.thread_type}:{self.thread_id}"


@dataclass(frozen=True)
class Message:
    thread: ThreadKey
    sender_id: str
    content: str
    created_at_ms: int
    message_id: Optional[str] = None
    temp_id: Optional[str] = None
    client_token: Optional[str] = None
    optimistic: bool = False

    @property
    def key(self) -> str:
        """Server id once confirmed, otherwise the client-local temp id."""

        return self.message_id or self.temp_id or ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_type": self.thread.thread_type,
            "thread_id": self.thread.thread_id,
            "message_id": self.message_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "created_at_ms": self.created_at_ms,
            "client_token": self.client_token,
        }


@dataclass(frozen=True)
class Reaction:
    thread: ThreadKey
    message_id: str
    user_id: str
    emoji: str
    created_at_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_type": self.thread.thread_type,
            "thread_id": self.thread.thread_id,
            "message_id": self.message_id,
            "user_id": self.user_id,
            "emoji": self.emoji,
            "created_at_ms": self.created_at_ms,
        }


@dataclass(frozen=True)
class ReactionSummary:
    emoji: str
    count: int
    has_reacted: bool


@dataclass(frozen=True)
class ConversationItem:
    item_id: str
    item_type: str
    title: str
    subtitle: str
    last_activity_ms: int
    unread_count: int = 0
    muted: bool = False
    avatar: Optional[Dict[str, Any]] = None
    invitation_id: Optional[str] = None
    user_id: Optional[str] = None
    event_id: Optional[str] = None
    activity: Optional[str] = None

    @property
    def thread(self) -> Optional[ThreadKey]:
        if self.item_type == ITEM_DM and self.invitation_id:
            return ThreadKey(THREAD_DM, self.invitation_id)
        if self.item_type == ITEM_SPOT and self.event_id:
            return ThreadKey(THREAD_SPOT, self.event_id)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.item_id,
            "type": self.item_type,
            "title": self.title,
            "subtitle": self.subtitle,
            "last_activity_ms": self.last_activity_ms,
            "unread_count": self.unread_count,
            "muted": self.muted,
            "invitation_id": self.invitation_id,
            "user_id": self.user_id,
            "event_id": self.event_id,
            "activity": self.activity,
        }
