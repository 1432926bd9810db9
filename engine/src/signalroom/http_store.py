from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import aiohttp

from .errors import (
    AlreadyResolved,
    DuplicateInvitation,
    EmptyMessage,
    InvitationNotFound,
    MessageNotFound,
    MessageTooLong,
    NetworkFailure,
    PermissionDenied,
    RateLimitExceeded,
    RoomNotFound,
)
from .events import (
    parse_connection,
    parse_invitation,
    parse_message,
    parse_profile,
    parse_reaction,
    parse_room,
    profile_body,
)
from .models import Connection, EventRoom, Invitation, Message, Reaction, ThreadKey, UserProfile


def _raise_for_error(status: int, body: Dict[str, Any]) -> None:
    code = body.get("code")
    message = str(body.get("message", ""))
    if code == "duplicate":
        raise DuplicateInvitation(message)
    if code == "already_resolved":
        raise AlreadyResolved(str(body.get("invitation_id", "")), str(body.get("status", "")))
    if code == "not_found":
        raise InvitationNotFound(message)
    if code == "room_not_found":
        raise RoomNotFound(message)
    if code == "message_not_found":
        raise MessageNotFound(message)
    if code in ("forbidden", "unauthorized"):
        raise PermissionDenied(message)
    if code == "rate_limited":
        raise RateLimitExceeded(message)
    if code == "empty_message":
        raise EmptyMessage(message)
    if code == "message_too_long":
        raise MessageTooLong(int(body.get("length", 0)), int(body.get("limit", 0)))
    if code == "invalid_request":
        raise ValueError(message)
    raise NetworkFailure(f"unexpected response {status}: {message or code}")


class HttpRowStore:
    """Row store client for the REST surface of :func:`signalroom.ws_transport.create_app`.

    Actor arguments are accepted for interface parity; the server acts as the
    bearer of the session token.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        user_id: str,
        *,
        timeout_s: float | None = None,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self.user_id = user_id
        self._timeout = aiohttp.ClientTimeout(total=timeout_s) if timeout_s is not None else None

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.user_id}"}
        if self._timeout is not None:
            kwargs["timeout"] = self._timeout
        try:
            async with self._session.request(
                method, self._base_url + path, json=payload, headers=headers, **kwargs
            ) as resp:
                try:
                    body = await resp.json()
                except (aiohttp.ContentTypeError, ValueError):
                    body = {}
                if resp.status >= 500:
                    raise NetworkFailure(f"server error {resp.status}")
                if resp.status >= 400:
                    _raise_for_error(resp.status, body if isinstance(body, dict) else {})
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NetworkFailure(str(exc) or type(exc).__name__) from exc

    @staticmethod
    def _thread_path(thread: ThreadKey) -> str:
        return f"/v1/threads/{thread.thread_type}/{thread.thread_id}"

    # profiles

    async def put_profile(self, profile: UserProfile) -> None:
        body = profile_body(profile)
        await self._request("PUT", "/v1/profile", {"display_name": body["display_name"], "avatar": body["avatar"]})

    async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        body = await self._request("POST", "/v1/profiles/lookup", {"user_ids": list(user_ids)})
        profiles = [parse_profile(item) for item in body.get("profiles", [])]
        return {profile.user_id: profile for profile in profiles}

    # invitations

    async def create_invitation(self, sender_id: str, receiver_id: str, activity: str) -> Invitation:
        body = await self._request("POST", "/v1/invitations", {"receiver_id": receiver_id, "activity": activity})
        return parse_invitation(body["invitation"])

    async def get_invitation(self, invitation_id: str) -> Invitation:
        body = await self._request("GET", f"/v1/invitations/{invitation_id}")
        return parse_invitation(body["invitation"])

    async def list_pending_invitations(self, receiver_id: str) -> List[Invitation]:
        body = await self._request("GET", "/v1/invitations/pending")
        return [parse_invitation(item) for item in body.get("invitations", [])]

    async def accept_invitation(self, invitation_id: str, actor_id: str) -> Invitation:
        body = await self._request("POST", f"/v1/invitations/{invitation_id}/accept")
        return parse_invitation(body["invitation"])

    async def decline_invitation(self, invitation_id: str, actor_id: str) -> Invitation:
        body = await self._request("POST", f"/v1/invitations/{invitation_id}/decline")
        return parse_invitation(body["invitation"])

    # connections

    async def list_connections(self, user_id: str) -> List[Connection]:
        body = await self._request("GET", "/v1/connections")
        return [parse_connection(item) for item in body.get("connections", [])]

    async def remove_connection(self, invitation_id: str, actor_id: str) -> Invitation:
        body = await self._request("DELETE", f"/v1/connections/{invitation_id}")
        return parse_invitation(body["invitation"])

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
        payload: Dict[str, Any] = {
            "title": title,
            "category": category,
            "duration_minutes": duration_minutes,
            "is_private": is_private,
        }
        if starts_at_ms is not None:
            payload["starts_at_ms"] = starts_at_ms
        body = await self._request("POST", "/v1/rooms", payload)
        return parse_room(body["room"])

    async def join_event_room(self, event_id: str, user_id: str) -> None:
        await self._request("POST", f"/v1/rooms/{event_id}/join")

    async def leave_event_room(self, event_id: str, user_id: str) -> None:
        await self._request("POST", f"/v1/rooms/{event_id}/leave")

    async def list_event_rooms(self, user_id: str, now_ms: Optional[int] = None) -> List[EventRoom]:
        params = {"now_ms": str(now_ms)} if now_ms is not None else None
        body = await self._request("GET", "/v1/rooms", params=params)
        return [parse_room(item) for item in body.get("rooms", [])]

    async def ban_user(self, event_id: str, host_id: str, user_id: str) -> None:
        await self._request("POST", f"/v1/rooms/{event_id}/bans", {"user_id": user_id})

    async def unban_user(self, event_id: str, host_id: str, user_id: str) -> bool:
        body = await self._request("DELETE", f"/v1/rooms/{event_id}/bans/{user_id}")
        return bool(body.get("removed"))

    async def list_bans(self, event_id: str, host_id: str) -> List[str]:
        body = await self._request("GET", f"/v1/rooms/{event_id}/bans")
        return list(body.get("user_ids", []))

    # messages

    async def create_message(
        self, thread: ThreadKey, sender_id: str, content: str, client_token: Optional[str] = None
    ) -> Message:
        body = await self._request(
            "POST",
            self._thread_path(thread) + "/messages",
            {"content": content, "client_token": client_token},
        )
        return parse_message(body["message"])

    async def list_messages(self, thread: ThreadKey, viewer_id: str) -> List[Message]:
        body = await self._request("GET", self._thread_path(thread) + "/messages")
        return [parse_message(item) for item in body.get("messages", [])]

    async def latest_message(self, thread: ThreadKey) -> Optional[Message]:
        body = await self._request("GET", self._thread_path(thread) + "/latest")
        message = body.get("message")
        return parse_message(message) if message else None

    # reactions

    async def toggle_reaction(
        self, thread: ThreadKey, message_id: str, user_id: str, emoji: str
    ) -> Tuple[Reaction, bool]:
        body = await self._request(
            "POST", self._thread_path(thread) + f"/messages/{message_id}/reactions", {"emoji": emoji}
        )
        return parse_reaction(body["reaction"]), bool(body.get("added"))

    async def list_reactions(self, thread: ThreadKey, viewer_id: str) -> List[Reaction]:
        body = await self._request("GET", self._thread_path(thread) + "/reactions")
        return [parse_reaction(item) for item in body.get("reactions", [])]

    # read marks

    async def mark_read(self, thread: ThreadKey, user_id: str, at_ms: Optional[int] = None) -> None:
        payload = {"at_ms": at_ms} if at_ms is not None else {}
        await self._request("POST", self._thread_path(thread) + "/read", payload)

    async def unread_message_ids(self, thread: ThreadKey, user_id: str) -> List[str]:
        body = await self._request("GET", self._thread_path(thread) + "/unread")
        return list(body.get("message_ids", []))

    async def count_unread(self, thread: ThreadKey, user_id: str) -> int:
        body = await self._request("GET", self._thread_path(thread) + "/unread")
        return int(body.get("count", 0))

    # mutes

    async def list_mutes(self, user_id: str) -> Set[ThreadKey]:
        body = await self._request("GET", "/v1/mutes")
        return {ThreadKey(item["thread_type"], item["thread_id"]) for item in body.get("mutes", [])}

    async def set_mute(self, user_id: str, thread: ThreadKey, muted: bool) -> None:
        await self._request("PUT", f"/v1/mutes/{thread.thread_type}/{thread.thread_id}", {"muted": muted})
