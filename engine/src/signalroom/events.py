"""Push event payloads, validated into a tagged union at the boundary.

Frames on the wire look like ``{"v": 1, "t": "message.inserted", "body": {...}}``.
Nothing past :func:`parse_event` sees a raw dict.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Union

from .errors import InvalidEvent
from .models import (
    INVITATION_STATUSES,
    THREAD_DM,
    THREAD_SPOT,
    Connection,
    EventRoom,
    Invitation,
    Message,
    Reaction,
    ThreadKey,
    UserProfile,
)

T_MESSAGE_INSERTED = "message.inserted"
T_INVITATION_INSERTED = "invitation.inserted"
T_INVITATION_CHANGED = "invitation.changed"
T_CONNECTION_REMOVED = "connection.removed"
T_TYPING = "typing"
T_MEMBER_BANNED = "member.banned"
T_REACTION_CHANGED = "reaction.changed"


@dataclass(frozen=True)
class MessageInserted:
    message: Message

    @property
    def thread(self) -> ThreadKey:
        return self.message.thread


@dataclass(frozen=True)
class InvitationInserted:
    invitation: Invitation


@dataclass(frozen=True)
class InvitationChanged:
    invitation: Invitation
    previous_status: Optional[str] = None


@dataclass(frozen=True)
class ConnectionRemoved:
    invitation_id: str
    user_ids: tuple[str, str]

    @property
    def thread(self) -> ThreadKey:
        return ThreadKey(THREAD_DM, self.invitation_id)


@dataclass(frozen=True)
class TypingChanged:
    thread: ThreadKey
    user_id: str
    is_typing: bool


@dataclass(frozen=True)
class MemberBanned:
    event_id: str
    user_id: str

    @property
    def thread(self) -> ThreadKey:
        return ThreadKey(THREAD_SPOT, self.event_id)


@dataclass(frozen=True)
class ReactionChanged:
    reaction: Reaction
    added: bool

    @property
    def thread(self) -> ThreadKey:
        return self.reaction.thread


PushEvent = Union[
    MessageInserted,
    InvitationInserted,
    InvitationChanged,
    ConnectionRemoved,
    TypingChanged,
    MemberBanned,
    ReactionChanged,
]


class Subscriber(Protocol):
    def on_event(self, topic: str, event: PushEvent) -> None: ...


def _require_str(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidEvent(f"{key} must be a non-empty string")
    return value


def _require_int(body: Dict[str, Any], key: str) -> int:
    value = body.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidEvent(f"{key} must be an integer")
    return value


def _optional_str(body: Dict[str, Any], key: str) -> Optional[str]:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidEvent(f"{key} must be a string if provided")
    return value


def _optional_int(body: Dict[str, Any], key: str) -> Optional[int]:
    if body.get(key) is None:
        return None
    return _require_int(body, key)


def _thread(body: Dict[str, Any]) -> ThreadKey:
    thread_type = _require_str(body, "thread_type")
    thread_id = _require_str(body, "thread_id")
    try:
        return ThreadKey(thread_type, thread_id)
    except ValueError as exc:
        raise InvalidEvent(str(exc)) from exc


def _status(body: Dict[str, Any], key: str) -> str:
    status = _require_str(body, key)
    if status not in INVITATION_STATUSES:
        raise InvalidEvent(f"{key} must be one of {', '.join(INVITATION_STATUSES)}")
    return status


def parse_message(body: Dict[str, Any]) -> Message:
    content = body.get("content")
    if not isinstance(content, str):
        raise InvalidEvent("content must be a string")
    return Message(
        thread=_thread(body),
        sender_id=_require_str(body, "sender_id"),
        content=content,
        created_at_ms=_require_int(body, "created_at_ms"),
        message_id=_require_str(body, "message_id"),
        client_token=_optional_str(body, "client_token"),
    )


def parse_invitation(body: Dict[str, Any]) -> Invitation:
    activity = body.get("activity")
    if not isinstance(activity, str):
        raise InvalidEvent("activity must be a string")
    return Invitation(
        invitation_id=_require_str(body, "invitation_id"),
        sender_id=_require_str(body, "sender_id"),
        receiver_id=_require_str(body, "receiver_id"),
        activity=activity,
        status=_status(body, "status"),
        created_at_ms=_require_int(body, "created_at_ms"),
        resolved_at_ms=_optional_int(body, "resolved_at_ms"),
    )


def invitation_body(invitation: Invitation) -> Dict[str, Any]:
    return {
        "invitation_id": invitation.invitation_id,
        "sender_id": invitation.sender_id,
        "receiver_id": invitation.receiver_id,
        "activity": invitation.activity,
        "status": invitation.status,
        "created_at_ms": invitation.created_at_ms,
        "resolved_at_ms": invitation.resolved_at_ms,
    }


def connection_body(connection: Connection) -> Dict[str, Any]:
    return {
        "invitation_id": connection.invitation_id,
        "user_id": connection.user_id,
        "peer_id": connection.peer_id,
        "connected_at_ms": connection.connected_at_ms,
    }


def parse_connection(body: Dict[str, Any]) -> Connection:
    return Connection(
        invitation_id=_require_str(body, "invitation_id"),
        user_id=_require_str(body, "user_id"),
        peer_id=_require_str(body, "peer_id"),
        connected_at_ms=_require_int(body, "connected_at_ms"),
    )


def room_body(room: EventRoom) -> Dict[str, Any]:
    return {
        "event_id": room.event_id,
        "title": room.title,
        "category": room.category,
        "host_id": room.host_id,
        "created_at_ms": room.created_at_ms,
        "starts_at_ms": room.starts_at_ms,
        "duration_minutes": room.duration_minutes,
        "is_private": room.is_private,
    }


def parse_room(body: Dict[str, Any]) -> EventRoom:
    return EventRoom(
        event_id=_require_str(body, "event_id"),
        title=_require_str(body, "title"),
        category=_require_str(body, "category"),
        host_id=_require_str(body, "host_id"),
        created_at_ms=_require_int(body, "created_at_ms"),
        starts_at_ms=_require_int(body, "starts_at_ms"),
        duration_minutes=_require_int(body, "duration_minutes"),
        is_private=bool(body.get("is_private", False)),
    )


def profile_body(profile: UserProfile) -> Dict[str, Any]:
    return {"user_id": profile.user_id, "display_name": profile.display_name, "avatar": profile.avatar}


def parse_profile(body: Dict[str, Any]) -> UserProfile:
    avatar = body.get("avatar")
    if avatar is not None and not isinstance(avatar, dict):
        raise InvalidEvent("avatar must be an object if provided")
    display_name = body.get("display_name")
    if not isinstance(display_name, str):
        raise InvalidEvent("display_name must be a string")
    return UserProfile(user_id=_require_str(body, "user_id"), display_name=display_name, avatar=avatar)


def parse_reaction(body: Dict[str, Any]) -> Reaction:
    return Reaction(
        thread=_thread(body),
        message_id=_require_str(body, "message_id"),
        user_id=_require_str(body, "user_id"),
        emoji=_require_str(body, "emoji"),
        created_at_ms=_require_int(body, "created_at_ms"),
    )


def parse_event(frame: Any) -> PushEvent:
    if not isinstance(frame, dict):
        raise InvalidEvent("frame must be an object")
    if frame.get("v") != 1:
        raise InvalidEvent("unsupported version")
    body = frame.get("body")
    if not isinstance(body, dict):
        raise InvalidEvent("body must be an object")
    frame_type = frame.get("t")

    if frame_type == T_MESSAGE_INSERTED:
        return MessageInserted(parse_message(body))
    if frame_type == T_INVITATION_INSERTED:
        return InvitationInserted(parse_invitation(body))
    if frame_type == T_INVITATION_CHANGED:
        previous = body.get("previous_status")
        if previous is not None and previous not in INVITATION_STATUSES:
            raise InvalidEvent("previous_status is not a known status")
        return InvitationChanged(parse_invitation(body), previous)
    if frame_type == T_CONNECTION_REMOVED:
        user_ids = body.get("user_ids")
        if (
            not isinstance(user_ids, list)
            or len(user_ids) != 2
            or any(not isinstance(u, str) or not u for u in user_ids)
        ):
            raise InvalidEvent("user_ids must list both parties")
        return ConnectionRemoved(_require_str(body, "invitation_id"), (user_ids[0], user_ids[1]))
    if frame_type == T_TYPING:
        is_typing = body.get("is_typing")
        if not isinstance(is_typing, bool):
            raise InvalidEvent("is_typing must be a boolean")
        return TypingChanged(_thread(body), _require_str(body, "user_id"), is_typing)
    if frame_type == T_MEMBER_BANNED:
        return MemberBanned(_require_str(body, "event_id"), _require_str(body, "user_id"))
    if frame_type == T_REACTION_CHANGED:
        added = body.get("added")
        if not isinstance(added, bool):
            raise InvalidEvent("added must be a boolean")
        return ReactionChanged(parse_reaction(body), added)
    raise InvalidEvent(f"unknown event type: {frame_type}")


def event_frame(event: PushEvent) -> Dict[str, Any]:
    if isinstance(event, MessageInserted):
        return {"v": 1, "t": T_MESSAGE_INSERTED, "body": event.message.to_dict()}
    if isinstance(event, InvitationInserted):
        return {"v": 1, "t": T_INVITATION_INSERTED, "body": invitation_body(event.invitation)}
    if isinstance(event, InvitationChanged):
        body = invitation_body(event.invitation)
        body["previous_status"] = event.previous_status
        return {"v": 1, "t": T_INVITATION_CHANGED, "body": body}
    if isinstance(event, ConnectionRemoved):
        return {
            "v": 1,
            "t": T_CONNECTION_REMOVED,
            "body": {"invitation_id": event.invitation_id, "user_ids": list(event.user_ids)},
        }
    if isinstance(event, TypingChanged):
        return {
            "v": 1,
            "t": T_TYPING,
            "body": {
                "thread_type": event.thread.thread_type,
                "thread_id": event.thread.thread_id,
                "user_id": event.user_id,
                "is_typing": event.is_typing,
            },
        }
    if isinstance(event, MemberBanned):
        return {"v": 1, "t": T_MEMBER_BANNED, "body": {"event_id": event.event_id, "user_id": event.user_id}}
    if isinstance(event, ReactionChanged):
        body = event.reaction.to_dict()
        body["added"] = event.added
        return {"v": 1, "t": T_REACTION_CHANGED, "body": body}
    raise TypeError(f"not a push event: {event!r}")
