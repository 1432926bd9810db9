from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import WSMsgType, web

from .backend import Backend
from .config import EngineConfig
from .errors import (
    AlreadyResolved,
    DuplicateInvitation,
    EmptyMessage,
    InvalidEvent,
    InvitationNotFound,
    MessageNotFound,
    MessageTooLong,
    PermissionDenied,
    RateLimitExceeded,
    RoomNotFound,
)
from .events import (
    PushEvent,
    TypingChanged,
    connection_body,
    event_frame,
    invitation_body,
    parse_event,
    profile_body,
    room_body,
)
from .hub import Subscription, SubscriptionHub, thread_topic, user_topic
from .models import ThreadKey, UserProfile, _now_ms
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteRowStore
from .store import InMemoryRowStore

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request, str], Awaitable[web.StreamResponse]]


class Runtime:
    def __init__(self, *, backend: Backend, hub: SubscriptionHub, sqlite: SQLiteBackend | None = None) -> None:
        self.backend = backend
        self.hub = hub
        self.sqlite = sqlite


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error(code: str, message: str, status: int, /, **extra: Any) -> web.Response:
    body: Dict[str, Any] = {"code": code, "message": message}
    body.update(extra)
    return web.json_response(body, status=status)


def _unauthorized() -> web.Response:
    return _error("unauthorized", "missing bearer token", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _error_response(exc: Exception) -> web.Response:
    if isinstance(exc, DuplicateInvitation):
        return _error("duplicate", str(exc), 409)
    if isinstance(exc, AlreadyResolved):
        return _error("already_resolved", str(exc), 409, invitation_id=exc.invitation_id, status=exc.status)
    if isinstance(exc, InvitationNotFound):
        return _error("not_found", f"unknown invitation {exc}", 404)
    if isinstance(exc, RoomNotFound):
        return _error("room_not_found", f"unknown room {exc}", 404)
    if isinstance(exc, MessageNotFound):
        return _error("message_not_found", f"unknown message {exc}", 404)
    if isinstance(exc, PermissionDenied):
        return _error("forbidden", str(exc), 403)
    if isinstance(exc, RateLimitExceeded):
        return _error("rate_limited", str(exc), 429)
    if isinstance(exc, EmptyMessage):
        return _error("empty_message", str(exc), 400)
    if isinstance(exc, MessageTooLong):
        return _error("message_too_long", str(exc), 400, length=exc.length, limit=exc.limit)
    if isinstance(exc, ValueError):
        return _invalid_request(str(exc))
    raise exc


_HANDLED = (
    DuplicateInvitation,
    AlreadyResolved,
    InvitationNotFound,
    RoomNotFound,
    MessageNotFound,
    PermissionDenied,
    RateLimitExceeded,
    ValueError,
)


def _authenticate_request(request: web.Request) -> str | None:
    """Bearer tokens are the opaque user ids handed out by the identity provider."""

    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header[len("Bearer ") :].strip()
    return token or None


def authenticated(handler: Handler) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
    async def wrapper(request: web.Request) -> web.StreamResponse:
        user_id = _authenticate_request(request)
        if user_id is None:
            return _unauthorized()
        try:
            return await handler(request, user_id)
        except _HANDLED as exc:
            return _error_response(exc)

    return wrapper


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception as exc:
        raise ValueError("malformed json") from exc
    if not isinstance(body, dict):
        raise ValueError("body must be an object")
    return body


def _thread_from_path(request: web.Request) -> ThreadKey:
    return ThreadKey(request.match_info["thread_type"], request.match_info["thread_id"])


def _runtime(request: web.Request) -> Runtime:
    return request.app["runtime"]


# profiles


@authenticated
async def handle_profile_put(request: web.Request, user_id: str) -> web.Response:
    body = await _json_body(request)
    display_name = body.get("display_name")
    avatar = body.get("avatar")
    if not isinstance(display_name, str) or not display_name.strip():
        raise ValueError("display_name required")
    if avatar is not None and not isinstance(avatar, dict):
        raise ValueError("avatar must be an object if provided")
    profile = UserProfile(user_id=user_id, display_name=display_name.strip(), avatar=avatar)
    await _runtime(request).backend.put_profile(profile)
    return web.json_response({"profile": profile_body(profile)})


@authenticated
async def handle_profiles_lookup(request: web.Request, user_id: str) -> web.Response:
    body = await _json_body(request)
    user_ids = body.get("user_ids")
    if not isinstance(user_ids, list) or any(not isinstance(u, str) for u in user_ids):
        raise ValueError("user_ids must be a list of strings")
    profiles = await _runtime(request).backend.get_profiles(user_ids)
    return web.json_response({"profiles": [profile_body(p) for p in profiles.values()]})


# invitations


@authenticated
async def handle_invitation_create(request: web.Request, user_id: str) -> web.Response:
    body = await _json_body(request)
    receiver_id = body.get("receiver_id")
    activity = body.get("activity")
    if not isinstance(receiver_id, str) or not isinstance(activity, str):
        raise ValueError("receiver_id and activity required")
    invitation = await _runtime(request).backend.create_invitation(user_id, receiver_id, activity)
    return web.json_response({"invitation": invitation_body(invitation)}, status=201)


@authenticated
async def handle_invitations_pending(request: web.Request, user_id: str) -> web.Response:
    invitations = await _runtime(request).backend.list_pending_invitations(user_id)
    return web.json_response({"invitations": [invitation_body(inv) for inv in invitations]})


@authenticated
async def handle_invitation_get(request: web.Request, user_id: str) -> web.Response:
    invitation = await _runtime(request).backend.get_invitation(request.match_info["invitation_id"])
    if not invitation.involves(user_id):
        raise PermissionDenied("not a party to this invitation")
    return web.json_response({"invitation": invitation_body(invitation)})


@authenticated
async def handle_invitation_accept(request: web.Request, user_id: str) -> web.Response:
    invitation = await _runtime(request).backend.accept_invitation(request.match_info["invitation_id"], user_id)
    return web.json_response({"invitation": invitation_body(invitation)})


@authenticated
async def handle_invitation_decline(request: web.Request, user_id: str) -> web.Response:
    invitation = await _runtime(request).backend.decline_invitation(request.match_info["invitation_id"], user_id)
    return web.json_response({"invitation": invitation_body(invitation)})


# connections


@authenticated
async def handle_connections_list(request: web.Request, user_id: str) -> web.Response:
    connections = await _runtime(request).backend.list_connections(user_id)
    return web.json_response({"connections": [connection_body(c) for c in connections]})


@authenticated
async def handle_connection_remove(request: web.Request, user_id: str) -> web.Response:
    invitation = await _runtime(request).backend.remove_connection(request.match_info["invitation_id"], user_id)
    return web.json_response({"invitation": invitation_body(invitation)})


# event rooms


@authenticated
async def handle_room_create(request: web.Request, user_id: str) -> web.Response:
    body = await _json_body(request)
    title = body.get("title")
    category = body.get("category")
    duration_minutes = body.get("duration_minutes", 60)
    starts_at_ms = body.get("starts_at_ms")
    is_private = body.get("is_private", False)
    if not isinstance(title, str) or not title.strip() or not isinstance(category, str):
        raise ValueError("title and category required")
    if not isinstance(duration_minutes, int) or duration_minutes <= 0:
        raise ValueError("duration_minutes must be a positive integer")
    if starts_at_ms is not None and not isinstance(starts_at_ms, int):
        raise ValueError("starts_at_ms must be an integer if provided")
    if not isinstance(is_private, bool):
        raise ValueError("is_private must be a boolean")
    room = await _runtime(request).backend.create_event_room(
        user_id,
        title.strip(),
        category,
        duration_minutes=duration_minutes,
        starts_at_ms=starts_at_ms,
        is_private=is_private,
    )
    return web.json_response({"room": room_body(room)}, status=201)


@authenticated
async def handle_rooms_list(request: web.Request, user_id: str) -> web.Response:
    raw_now = request.query.get("now_ms")
    now_ms: Optional[int] = None
    if raw_now is not None:
        try:
            now_ms = int(raw_now)
        except ValueError as exc:
            raise ValueError("now_ms must be an integer") from exc
    rooms = await _runtime(request).backend.list_event_rooms(user_id, now_ms)
    return web.json_response({"rooms": [room_body(room) for room in rooms]})


@authenticated
async def handle_room_join(request: web.Request, user_id: str) -> web.Response:
    await _runtime(request).backend.join_event_room(request.match_info["event_id"], user_id)
    return web.json_response({"status": "ok"})


@authenticated
async def handle_room_leave(request: web.Request, user_id: str) -> web.Response:
    await _runtime(request).backend.leave_event_room(request.match_info["event_id"], user_id)
    return web.json_response({"status": "ok"})


@authenticated
async def handle_ban_create(request: web.Request, user_id: str) -> web.Response:
    body = await _json_body(request)
    banned_id = body.get("user_id")
    if not isinstance(banned_id, str) or not banned_id:
        raise ValueError("user_id required")
    await _runtime(request).backend.ban_user(request.match_info["event_id"], user_id, banned_id)
    return web.json_response({"status": "ok"}, status=201)


@authenticated
async def handle_ban_delete(request: web.Request, user_id: str) -> web.Response:
    removed = await _runtime(request).backend.unban_user(
        request.match_info["event_id"], user_id, request.match_info["user_id"]
    )
    return web.json_response({"removed": removed})


@authenticated
async def handle_bans_list(request: web.Request, user_id: str) -> web.Response:
    bans = await _runtime(request).backend.list_bans(request.match_info["event_id"], user_id)
    return web.json_response({"user_ids": bans})


# messages


@authenticated
async def handle_message_create(request: web.Request, user_id: str) -> web.Response:
    thread = _thread_from_path(request)
    body = await _json_body(request)
    content = body.get("content")
    client_token = body.get("client_token")
    if not isinstance(content, str):
        raise ValueError("content required")
    if client_token is not None and not isinstance(client_token, str):
        raise ValueError("client_token must be a string if provided")
    message = await _runtime(request).backend.create_message(thread, user_id, content, client_token)
    return web.json_response({"message": message.to_dict()}, status=201)


@authenticated
async def handle_messages_list(request: web.Request, user_id: str) -> web.Response:
    messages = await _runtime(request).backend.list_messages(_thread_from_path(request), user_id)
    return web.json_response({"messages": [m.to_dict() for m in messages]})


@authenticated
async def handle_message_latest(request: web.Request, user_id: str) -> web.Response:
    thread = _thread_from_path(request)
    backend = _runtime(request).backend
    if user_id not in await backend.thread_participants(thread):
        raise PermissionDenied(f"no access to thread {thread}")
    message = await backend.latest_message(thread)
    return web.json_response({"message": message.to_dict() if message else None})


@authenticated
async def handle_reaction_toggle(request: web.Request, user_id: str) -> web.Response:
    thread = _thread_from_path(request)
    body = await _json_body(request)
    emoji = body.get("emoji")
    if not isinstance(emoji, str) or not emoji:
        raise ValueError("emoji required")
    reaction, added = await _runtime(request).backend.toggle_reaction(
        thread, request.match_info["message_id"], user_id, emoji
    )
    return web.json_response({"reaction": reaction.to_dict(), "added": added})


@authenticated
async def handle_reactions_list(request: web.Request, user_id: str) -> web.Response:
    reactions = await _runtime(request).backend.list_reactions(_thread_from_path(request), user_id)
    return web.json_response({"reactions": [r.to_dict() for r in reactions]})


@authenticated
async def handle_mark_read(request: web.Request, user_id: str) -> web.Response:
    thread = _thread_from_path(request)
    body = await _json_body(request) if request.can_read_body else {}
    at_ms = body.get("at_ms")
    if at_ms is not None and (isinstance(at_ms, bool) or not isinstance(at_ms, int)):
        raise ValueError("at_ms must be an integer if provided")
    await _runtime(request).backend.mark_read(thread, user_id, at_ms)
    return web.json_response({"status": "ok"})


@authenticated
async def handle_unread_count(request: web.Request, user_id: str) -> web.Response:
    thread = _thread_from_path(request)
    backend = _runtime(request).backend
    if user_id not in await backend.thread_participants(thread):
        raise PermissionDenied(f"no access to thread {thread}")
    message_ids = await backend.unread_message_ids(thread, user_id)
    return web.json_response({"count": len(message_ids), "message_ids": message_ids})


# mutes


@authenticated
async def handle_mutes_list(request: web.Request, user_id: str) -> web.Response:
    mutes = await _runtime(request).backend.list_mutes(user_id)
    return web.json_response(
        {"mutes": [{"thread_type": t.thread_type, "thread_id": t.thread_id} for t in sorted(mutes)]}
    )


@authenticated
async def handle_mute_set(request: web.Request, user_id: str) -> web.Response:
    thread = _thread_from_path(request)
    body = await _json_body(request)
    muted = body.get("muted")
    if not isinstance(muted, bool):
        raise ValueError("muted must be a boolean")
    await _runtime(request).backend.set_mute(user_id, thread, muted)
    return web.json_response({"muted": muted})


def create_app(
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    db_path: str | None = None,
    config: EngineConfig | None = None,
    now_func: Callable[[], int] = _now_ms,
) -> web.Application:
    sqlite: SQLiteBackend | None = None
    if db_path is not None:
        sqlite = SQLiteBackend(db_path)
        store: Any = SQLiteRowStore(sqlite, config, now_func=now_func)
    else:
        store = InMemoryRowStore(config, now_func=now_func)

    hub = SubscriptionHub()
    runtime = Runtime(backend=Backend(store, hub), hub=hub, sqlite=sqlite)
    app = web.Application()
    app["runtime"] = runtime
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    thread_path = "/v1/threads/{thread_type}/{thread_id}"
    app.router.add_get("/healthz", handle_health)
    app.router.add_put("/v1/profile", handle_profile_put)
    app.router.add_post("/v1/profiles/lookup", handle_profiles_lookup)
    app.router.add_post("/v1/invitations", handle_invitation_create)
    app.router.add_get("/v1/invitations/pending", handle_invitations_pending)
    app.router.add_get("/v1/invitations/{invitation_id}", handle_invitation_get)
    app.router.add_post("/v1/invitations/{invitation_id}/accept", handle_invitation_accept)
    app.router.add_post("/v1/invitations/{invitation_id}/decline", handle_invitation_decline)
    app.router.add_get("/v1/connections", handle_connections_list)
    app.router.add_delete("/v1/connections/{invitation_id}", handle_connection_remove)
    app.router.add_post("/v1/rooms", handle_room_create)
    app.router.add_get("/v1/rooms", handle_rooms_list)
    app.router.add_post("/v1/rooms/{event_id}/join", handle_room_join)
    app.router.add_post("/v1/rooms/{event_id}/leave", handle_room_leave)
    app.router.add_post("/v1/rooms/{event_id}/bans", handle_ban_create)
    app.router.add_get("/v1/rooms/{event_id}/bans", handle_bans_list)
    app.router.add_delete("/v1/rooms/{event_id}/bans/{user_id}", handle_ban_delete)
    app.router.add_post(thread_path + "/messages", handle_message_create)
    app.router.add_get(thread_path + "/messages", handle_messages_list)
    app.router.add_get(thread_path + "/latest", handle_message_latest)
    app.router.add_post(thread_path + "/messages/{message_id}/reactions", handle_reaction_toggle)
    app.router.add_get(thread_path + "/reactions", handle_reactions_list)
    app.router.add_post(thread_path + "/read", handle_mark_read)
    app.router.add_get(thread_path + "/unread", handle_unread_count)
    app.router.add_get("/v1/mutes", handle_mutes_list)
    app.router.add_put("/v1/mutes/{thread_type}/{thread_id}", handle_mute_set)
    app.router.add_get("/v1/ws", websocket_handler)
    if sqlite is not None:
        async def close_db(_: web.Application) -> None:
            sqlite.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


class _QueueSubscriber:
    """Hub subscriber that hands events to a websocket writer queue."""

    def __init__(self, enqueue: Callable[[dict], None]) -> None:
        self._enqueue = enqueue

    def on_event(self, topic: str, event: PushEvent) -> None:
        self._enqueue({"v": 1, "t": "event", "body": {"topic": topic, "event": event_frame(event)}})


async def _may_subscribe(backend: Backend, user_id: str, topic: str) -> bool:
    if topic == user_topic(user_id):
        return True
    parts = topic.split(":", 2)
    if len(parts) != 3 or parts[0] != "thread":
        return False
    try:
        thread = ThreadKey(parts[1], parts[2])
    except ValueError:
        return False
    return user_id in await backend.thread_participants(thread)


async def websocket_handler(request: web.Request) -> web.StreamResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    user_id = _authenticate_request(request)
    if user_id is None:
        return _unauthorized()

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    # Hub owners are per connection so a second device does not replace the first.
    owner_id = f"{user_id}/{secrets.token_urlsafe(8)}"
    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=1000)
    subscriptions: Dict[str, Subscription] = {}
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue_frame(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    subscriber = _QueueSubscriber(enqueue_frame)

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        enqueue_frame({"v": 1, "t": "session.ready", "body": {"user_id": user_id}})
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue_frame(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    enqueue_frame(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                request_id = frame.get("id")
                body = frame.get("body") or {}

                if frame_type == "ping":
                    enqueue_frame({"v": 1, "t": "pong", "id": request_id})
                elif frame_type == "pong":
                    continue
                elif frame_type == "subscribe":
                    topic = body.get("topic")
                    if not isinstance(topic, str) or not topic:
                        enqueue_frame(_error_frame("invalid_request", "topic required", request_id=request_id))
                        continue
                    if not await _may_subscribe(runtime.backend, user_id, topic):
                        logger.info("rejected subscription of %s to %s", user_id, topic)
                        enqueue_frame(_error_frame("forbidden", f"cannot subscribe to {topic}", request_id=request_id))
                        continue
                    subscriptions[topic] = runtime.hub.subscribe(owner_id, topic, subscriber)
                    enqueue_frame({"v": 1, "t": "subscribed", "id": request_id, "body": {"topic": topic}})
                elif frame_type == "unsubscribe":
                    topic = body.get("topic")
                    subscription = subscriptions.pop(topic, None) if isinstance(topic, str) else None
                    if subscription is not None:
                        runtime.hub.unsubscribe(subscription)
                    enqueue_frame({"v": 1, "t": "unsubscribed", "id": request_id, "body": {"topic": topic}})
                elif frame_type == "publish":
                    try:
                        event = parse_event(body.get("event"))
                    except InvalidEvent as exc:
                        enqueue_frame(_error_frame("invalid_request", str(exc), request_id=request_id))
                        continue
                    if not isinstance(event, TypingChanged) or event.user_id != user_id:
                        enqueue_frame(
                            _error_frame("forbidden", "only own typing events may be published", request_id=request_id)
                        )
                        continue
                    if user_id not in await runtime.backend.thread_participants(event.thread):
                        enqueue_frame(_error_frame("forbidden", "not a thread participant", request_id=request_id))
                        continue
                    runtime.hub.publish(thread_topic(event.thread), event)
                else:
                    enqueue_frame(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        for subscription in subscriptions.values():
            runtime.hub.unsubscribe(subscription)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
