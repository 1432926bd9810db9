import asyncio
import importlib
import importlib.util
import os
import tempfile
import unittest

_aiohttp_spec = importlib.util.find_spec("aiohttp")
if _aiohttp_spec is None:
    raise RuntimeError("aiohttp must be installed for signalroom transport tests")

import aiohttp
from aiohttp.test_utils import TestClient, TestServer

from signalroom.engine import ConversationEngine
from signalroom.errors import (
    AlreadyResolved,
    DuplicateInvitation,
    InvitationNotFound,
    MessageNotFound,
    MessageTooLong,
    NetworkFailure,
    PermissionDenied,
    RateLimitExceeded,
    RoomNotFound,
)
from signalroom.config import EngineConfig
from signalroom.hub import thread_topic, user_topic
from signalroom.http_store import HttpRowStore
from signalroom.models import REACTION_EMOJIS, ThreadKey, UserProfile
from signalroom.notify import CollectingNotifier
from signalroom.ws_push import WsPushChannel
from signalroom.ws_transport import create_app


def _auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {user_id}"}


async def _eventually(predicate, timeout_s: float = 3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


async def _receive_until(ws, frame_type: str, timeout_s: float = 2.0) -> dict:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise asyncio.TimeoutError(f"Timed out waiting for {frame_type}")
        frame = await ws.receive_json(timeout=remaining)
        if frame.get("t") == frame_type:
            return frame


class TransportCase(unittest.IsolatedAsyncioTestCase):
    config = None

    async def asyncSetUp(self):
        self.app = create_app(ping_interval_s=3600, config=self.config)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        self._closers = []

    async def asyncTearDown(self):
        for closer in reversed(self._closers):
            await closer()
        await self.client.close()
        await self.server.close()

    async def _invite(self, sender: str, receiver: str, activity: str = "Coffee") -> dict:
        resp = await self.client.post(
            "/v1/invitations", json={"receiver_id": receiver, "activity": activity}, headers=_auth(sender)
        )
        self.assertEqual(resp.status, 201)
        return (await resp.json())["invitation"]

    async def _connect(self, sender: str = "alice", receiver: str = "bob") -> ThreadKey:
        invitation = await self._invite(sender, receiver)
        resp = await self.client.post(f"/v1/invitations/{invitation['invitation_id']}/accept", headers=_auth(receiver))
        self.assertEqual(resp.status, 200)
        return ThreadKey("dm", invitation["invitation_id"])

    async def _ws(self, user_id: str):
        ws = await self.client.ws_connect("/v1/ws", headers=_auth(user_id))
        ready = await ws.receive_json()
        self.assertEqual(ready["t"], "session.ready")
        self.assertEqual(ready["body"]["user_id"], user_id)
        return ws


class RestSurfaceTests(TransportCase):
    async def test_healthz(self):
        resp = await self.client.get("/healthz")

        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_missing_bearer_token(self):
        resp = await self.client.get("/v1/connections")

        self.assertEqual(resp.status, 401)
        self.assertEqual((await resp.json())["code"], "unauthorized")

    async def test_invitation_flow_and_errors(self):
        invitation = await self._invite("alice", "bob")
        invitation_id = invitation["invitation_id"]
        self.assertEqual(invitation["status"], "pending")

        dup = await self.client.post(
            "/v1/invitations", json={"receiver_id": "alice", "activity": "Tea"}, headers=_auth("bob")
        )
        self.assertEqual(dup.status, 409)
        self.assertEqual((await dup.json())["code"], "duplicate")

        pending = await self.client.get("/v1/invitations/pending", headers=_auth("bob"))
        self.assertEqual([inv["invitation_id"] for inv in (await pending.json())["invitations"]], [invitation_id])

        wrong = await self.client.post(f"/v1/invitations/{invitation_id}/accept", headers=_auth("alice"))
        self.assertEqual(wrong.status, 403)

        ok = await self.client.post(f"/v1/invitations/{invitation_id}/accept", headers=_auth("bob"))
        self.assertEqual((await ok.json())["invitation"]["status"], "accepted")

        again = await self.client.post(f"/v1/invitations/{invitation_id}/decline", headers=_auth("bob"))
        body = await again.json()
        self.assertEqual(again.status, 409)
        self.assertEqual(body["code"], "already_resolved")
        self.assertEqual(body["status"], "accepted")

        outsider = await self.client.get(f"/v1/invitations/{invitation_id}", headers=_auth("mallory"))
        self.assertEqual(outsider.status, 403)
        missing = await self.client.get("/v1/invitations/inv_missing", headers=_auth("bob"))
        self.assertEqual(missing.status, 404)

    async def test_self_invite_is_invalid(self):
        resp = await self.client.post(
            "/v1/invitations", json={"receiver_id": "alice", "activity": "Solo"}, headers=_auth("alice")
        )

        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["code"], "invalid_request")

    async def test_messages_validation_and_access(self):
        thread = await self._connect()
        path = f"/v1/threads/{thread.thread_type}/{thread.thread_id}"

        too_long = await self.client.post(path + "/messages", json={"content": "x" * 2001}, headers=_auth("alice"))
        body = await too_long.json()
        self.assertEqual(too_long.status, 400)
        self.assertEqual((body["code"], body["length"], body["limit"]), ("message_too_long", 2001, 2000))

        empty = await self.client.post(path + "/messages", json={"content": "  "}, headers=_auth("alice"))
        self.assertEqual((await empty.json())["code"], "empty_message")

        created = await self.client.post(
            path + "/messages", json={"content": "hi", "client_token": "ct_1"}, headers=_auth("alice")
        )
        self.assertEqual(created.status, 201)

        unread = await self.client.get(path + "/unread", headers=_auth("bob"))
        unread_body = await unread.json()
        self.assertEqual(unread_body["count"], 1)
        self.assertEqual(unread_body["message_ids"], [(await created.json())["message"]["message_id"]])
        outsider_unread = await self.client.get(path + "/unread", headers=_auth("mallory"))
        self.assertEqual(outsider_unread.status, 403)

        latest = await self.client.get(path + "/latest", headers=_auth("bob"))
        self.assertEqual((await latest.json())["message"]["content"], "hi")

        forbidden = await self.client.get(path + "/messages", headers=_auth("mallory"))
        self.assertEqual(forbidden.status, 403)

    async def test_rooms_and_mutes(self):
        created = await self.client.post(
            "/v1/rooms", json={"title": "Run club", "category": "sports", "duration_minutes": 30}, headers=_auth("alice")
        )
        self.assertEqual(created.status, 201)
        event_id = (await created.json())["room"]["event_id"]

        missing = await self.client.post("/v1/rooms/evt_missing/join", headers=_auth("bob"))
        self.assertEqual(missing.status, 404)
        self.assertEqual((await missing.json())["code"], "room_not_found")

        await self.client.post(f"/v1/rooms/{event_id}/join", headers=_auth("bob"))
        rooms = await self.client.get("/v1/rooms", headers=_auth("bob"))
        self.assertEqual([room["event_id"] for room in (await rooms.json())["rooms"]], [event_id])

        muted = await self.client.put(f"/v1/mutes/spot/{event_id}", json={"muted": True}, headers=_auth("bob"))
        self.assertEqual((await muted.json())["muted"], True)
        listed = await self.client.get("/v1/mutes", headers=_auth("bob"))
        self.assertEqual((await listed.json())["mutes"], [{"thread_type": "spot", "thread_id": event_id}])

        bad = await self.client.put(f"/v1/mutes/spot/{event_id}", json={"muted": "yes"}, headers=_auth("bob"))
        self.assertEqual(bad.status, 400)


    async def _room(self, host: str, *members: str) -> str:
        created = await self.client.post(
            "/v1/rooms", json={"title": "Run club", "category": "sports"}, headers=_auth(host)
        )
        event_id = (await created.json())["room"]["event_id"]
        for member in members:
            joined = await self.client.post(f"/v1/rooms/{event_id}/join", headers=_auth(member))
            self.assertEqual(joined.status, 200)
        return event_id

    async def test_bans_are_host_only(self):
        event_id = await self._room("alice", "bob", "carol")

        denied = await self.client.post(f"/v1/rooms/{event_id}/bans", json={"user_id": "carol"}, headers=_auth("bob"))
        self.assertEqual(denied.status, 403)

        banned = await self.client.post(f"/v1/rooms/{event_id}/bans", json={"user_id": "bob"}, headers=_auth("alice"))
        self.assertEqual(banned.status, 201)
        listed = await self.client.get(f"/v1/rooms/{event_id}/bans", headers=_auth("alice"))
        self.assertEqual((await listed.json())["user_ids"], ["bob"])

        rejoin = await self.client.post(f"/v1/rooms/{event_id}/join", headers=_auth("bob"))
        self.assertEqual(rejoin.status, 403)
        post = await self.client.post(
            f"/v1/threads/spot/{event_id}/messages", json={"content": "hi"}, headers=_auth("bob")
        )
        self.assertEqual(post.status, 403)

        lifted = await self.client.delete(f"/v1/rooms/{event_id}/bans/bob", headers=_auth("alice"))
        self.assertEqual((await lifted.json())["removed"], True)
        missing = await self.client.post("/v1/rooms/evt_missing/bans", json={"user_id": "bob"}, headers=_auth("alice"))
        self.assertEqual((await missing.json())["code"], "room_not_found")

    async def test_reactions(self):
        thread = await self._connect()
        path = f"/v1/threads/{thread.thread_type}/{thread.thread_id}"
        created = await self.client.post(path + "/messages", json={"content": "hi"}, headers=_auth("alice"))
        message_id = (await created.json())["message"]["message_id"]

        toggled = await self.client.post(
            path + f"/messages/{message_id}/reactions", json={"emoji": REACTION_EMOJIS[0]}, headers=_auth("bob")
        )
        body = await toggled.json()
        self.assertEqual(body["added"], True)
        self.assertEqual(body["reaction"]["user_id"], "bob")

        listed = await self.client.get(path + "/reactions", headers=_auth("alice"))
        self.assertEqual([r["emoji"] for r in (await listed.json())["reactions"]], [REACTION_EMOJIS[0]])

        missing = await self.client.post(
            path + "/messages/m_missing/reactions", json={"emoji": REACTION_EMOJIS[0]}, headers=_auth("bob")
        )
        self.assertEqual(missing.status, 404)
        self.assertEqual((await missing.json())["code"], "message_not_found")
        unsupported = await self.client.post(
            path + f"/messages/{message_id}/reactions", json={"emoji": "party"}, headers=_auth("bob")
        )
        self.assertEqual(unsupported.status, 400)
        outsider = await self.client.get(path + "/reactions", headers=_auth("mallory"))
        self.assertEqual(outsider.status, 403)


class WebSocketTests(TransportCase):
    async def test_user_topic_receives_invitation_events(self):
        ws = await self._ws("bob")
        await ws.send_json({"v": 1, "t": "subscribe", "id": "s1", "body": {"topic": "user:bob"}})
        subscribed = await _receive_until(ws, "subscribed")
        self.assertEqual(subscribed["id"], "s1")

        invitation = await self._invite("alice", "bob")
        frame = await _receive_until(ws, "event")
        await ws.close()

        self.assertEqual(frame["body"]["topic"], "user:bob")
        self.assertEqual(frame["body"]["event"]["t"], "invitation.inserted")
        self.assertEqual(frame["body"]["event"]["body"]["invitation_id"], invitation["invitation_id"])

    async def test_foreign_topics_are_rejected(self):
        ws = await self._ws("mallory")
        await ws.send_json({"v": 1, "t": "subscribe", "id": "s1", "body": {"topic": "user:bob"}})
        error = await _receive_until(ws, "error")
        thread = await self._connect()
        await ws.send_json({"v": 1, "t": "subscribe", "id": "s2", "body": {"topic": thread_topic(thread)}})
        second = await _receive_until(ws, "error")
        await ws.close()

        self.assertEqual(error["body"]["code"], "forbidden")
        self.assertEqual(second["id"], "s2")

    async def test_typing_is_relayed_between_participants(self):
        thread = await self._connect()
        topic = thread_topic(thread)
        alice = await self._ws("alice")
        bob = await self._ws("bob")
        await bob.send_json({"v": 1, "t": "subscribe", "id": "s", "body": {"topic": topic}})
        await _receive_until(bob, "subscribed")

        typing = {
            "v": 1,
            "t": "typing",
            "body": {"thread_type": "dm", "thread_id": thread.thread_id, "user_id": "alice", "is_typing": True},
        }
        await alice.send_json({"v": 1, "t": "publish", "id": "p1", "body": {"topic": topic, "event": typing}})
        relayed = await _receive_until(bob, "event")

        spoofed = dict(typing, body=dict(typing["body"], user_id="bob"))
        await alice.send_json({"v": 1, "t": "publish", "id": "p2", "body": {"topic": topic, "event": spoofed}})
        rejected = await _receive_until(alice, "error")
        await alice.close()
        await bob.close()

        self.assertEqual(relayed["body"]["event"], typing)
        self.assertEqual(rejected["body"]["code"], "forbidden")

    async def test_ban_is_pushed_and_revokes_thread_subscription(self):
        created = await self.client.post(
            "/v1/rooms", json={"title": "Run club", "category": "sports"}, headers=_auth("alice")
        )
        event_id = (await created.json())["room"]["event_id"]
        await self.client.post(f"/v1/rooms/{event_id}/join", headers=_auth("bob"))
        topic = thread_topic(ThreadKey("spot", event_id))
        bob = await self._ws("bob")
        await bob.send_json({"v": 1, "t": "subscribe", "id": "s", "body": {"topic": topic}})
        await _receive_until(bob, "subscribed")

        await self.client.post(f"/v1/rooms/{event_id}/bans", json={"user_id": "bob"}, headers=_auth("alice"))
        frame = await _receive_until(bob, "event")
        await bob.close()

        self.assertEqual(frame["body"]["topic"], topic)
        self.assertEqual(frame["body"]["event"]["t"], "member.banned")
        self.assertEqual(self.app["runtime"].hub.subscriber_count(topic), 0)

    async def test_malformed_frames_get_errors(self):
        ws = await self._ws("alice")
        await ws.send_str("not json")
        malformed = await _receive_until(ws, "error")
        await ws.send_json({"v": 2, "t": "subscribe", "id": "x", "body": {}})
        version = await _receive_until(ws, "error")
        await ws.close()

        self.assertEqual(malformed["body"]["message"], "malformed json")
        self.assertEqual(version["id"], "x")

    async def test_websocket_requires_token(self):
        resp = await self.client.get("/v1/ws")

        self.assertEqual(resp.status, 401)


class HttpRowStoreTests(TransportCase):
    config = EngineConfig(accepts_per_min=1)

    def _store(self, user_id: str) -> HttpRowStore:
        return HttpRowStore(self.client.session, str(self.server.make_url("/")), user_id)

    async def test_typed_errors_cross_the_wire(self):
        alice, bob = self._store("alice"), self._store("bob")

        invitation = await alice.create_invitation("alice", "bob", "Coffee")
        with self.assertRaises(DuplicateInvitation):
            await bob.create_invitation("bob", "alice", "Tea")
        with self.assertRaises(PermissionDenied):
            await alice.accept_invitation(invitation.invitation_id, "alice")

        accepted = await bob.accept_invitation(invitation.invitation_id, "bob")
        self.assertEqual(accepted.status, "accepted")
        with self.assertRaises(AlreadyResolved) as ctx:
            await bob.decline_invitation(invitation.invitation_id, "bob")
        self.assertEqual(ctx.exception.status, "accepted")

        second = await self._store("carol").create_invitation("carol", "bob", "Chess")
        with self.assertRaises(RateLimitExceeded):
            await bob.accept_invitation(second.invitation_id, "bob")

        thread = ThreadKey("dm", invitation.invitation_id)
        with self.assertRaises(MessageTooLong) as too_long:
            await alice.create_message(thread, "alice", "x" * 2001)
        self.assertEqual(too_long.exception.limit, 2000)

    async def test_round_trips_rows(self):
        alice, bob = self._store("alice"), self._store("bob")
        await alice.put_profile(UserProfile("alice", "Alice", {"emoji": "A"}))
        invitation = await alice.create_invitation("alice", "bob", "Coffee")
        await bob.accept_invitation(invitation.invitation_id, "bob")
        thread = ThreadKey("dm", invitation.invitation_id)

        sent = await alice.create_message(thread, "alice", "hi", "ct_1")
        again = await alice.create_message(thread, "alice", "hi", "ct_1")

        self.assertEqual(sent.message_id, again.message_id)
        self.assertEqual([m.content for m in await bob.list_messages(thread, "bob")], ["hi"])
        self.assertEqual((await bob.latest_message(thread)).message_id, sent.message_id)
        self.assertEqual(await bob.count_unread(thread, "bob"), 1)
        await bob.mark_read(thread, "bob")
        self.assertEqual(await bob.count_unread(thread, "bob"), 0)
        self.assertEqual([c.peer_id for c in await bob.list_connections("bob")], ["alice"])
        profiles = await bob.get_profiles(["alice", "ghost"])
        self.assertEqual(profiles["alice"].avatar, {"emoji": "A"})

        await bob.set_mute("bob", thread, True)
        self.assertEqual(await bob.list_mutes("bob"), {thread})

        await alice.remove_connection(invitation.invitation_id, "alice")
        with self.assertRaises(PermissionDenied):
            await bob.list_messages(thread, "bob")

    async def test_room_and_reaction_errors_are_typed(self):
        alice, bob = self._store("alice"), self._store("bob")

        with self.assertRaises(RoomNotFound):
            await bob.join_event_room("evt_missing", "bob")
        with self.assertRaises(InvitationNotFound):
            await bob.get_invitation("inv_missing")

        room = await alice.create_event_room("alice", "Run club", "sports")
        await bob.join_event_room(room.event_id, "bob")
        message = await bob.create_message(room.thread, "bob", "hi")
        with self.assertRaises(MessageNotFound):
            await alice.toggle_reaction(room.thread, "m_missing", "alice", REACTION_EMOJIS[0])

        reaction, added = await alice.toggle_reaction(room.thread, message.message_id, "alice", REACTION_EMOJIS[1])
        self.assertTrue(added)
        self.assertEqual(await bob.list_reactions(room.thread, "bob"), [reaction])
        self.assertEqual(await alice.unread_message_ids(room.thread, "alice"), [message.message_id])

        await alice.ban_user(room.event_id, "alice", "bob")
        self.assertEqual(await alice.list_bans(room.event_id, "alice"), ["bob"])
        with self.assertRaises(PermissionDenied):
            await bob.join_event_room(room.event_id, "bob")
        self.assertTrue(await alice.unban_user(room.event_id, "alice", "bob"))
        self.assertFalse(await alice.unban_user(room.event_id, "alice", "bob"))

    async def test_unreachable_server_is_a_network_failure(self):
        async with aiohttp.ClientSession() as session:
            store = HttpRowStore(session, "http://127.0.0.1:1", "alice", timeout_s=1.0)
            with self.assertRaises(NetworkFailure):
                await store.list_connections("alice")


class RemoteEngineTests(TransportCase):
    async def _engine(self, user_id: str, display_name: str) -> ConversationEngine:
        session = self.client.session
        store = HttpRowStore(session, str(self.server.make_url("/")), user_id)
        await store.put_profile(UserProfile(user_id, display_name))
        push = WsPushChannel(session, str(self.server.make_url("/v1/ws")), user_id)
        await push.connect()
        self._closers.append(push.close)
        engine = ConversationEngine(user_id, store, push, CollectingNotifier())
        await engine.start()
        self._closers.append(engine.stop)
        await push.wait_subscribed(user_topic(user_id))
        return engine

    async def test_invite_accept_and_chat_over_the_network(self):
        alice = await self._engine("alice", "Alice")
        bob = await self._engine("bob", "Bob")

        invitation = await alice.send_invitation("bob", "Coffee")
        await _eventually(lambda: bob.invitations.pending_count == 1)
        await bob.accept_invitation(invitation.invitation_id)
        await _eventually(lambda: [item.item_id for item in alice.conversations()] == ["dm-bob"])
        await _eventually(lambda: [item.item_id for item in bob.conversations()] == ["dm-alice"])

        thread = ThreadKey("dm", invitation.invitation_id)
        bob_channel = await bob.open_thread(thread)
        await bob.push.wait_subscribed(thread_topic(thread))
        alice_channel = await alice.open_thread(thread)
        await alice.push.wait_subscribed(thread_topic(thread))

        sent = await alice.send_message("hello over the wire")
        await _eventually(lambda: [m.message_id for m in bob_channel.messages] == [sent.message_id])
        await _eventually(lambda: not alice_channel.optimistic_messages())

        self.assertEqual([m.message_id for m in alice_channel.messages], [sent.message_id])
        self.assertIn("Connected!", alice.notifier.titles())


class SQLiteTransportTests(unittest.IsolatedAsyncioTestCase):
    async def test_rows_persist_across_app_restarts(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = os.path.join(tmpdir, "signalroom.db")

            server = TestServer(create_app(ping_interval_s=3600, db_path=db_path))
            client = TestClient(server)
            await client.start_server()
            resp = await client.post(
                "/v1/invitations", json={"receiver_id": "bob", "activity": "Coffee"}, headers=_auth("alice")
            )
            invitation_id = (await resp.json())["invitation"]["invitation_id"]
            await client.close()

            server = TestServer(create_app(ping_interval_s=3600, db_path=db_path))
            client = TestClient(server)
            await client.start_server()
            pending = await client.get("/v1/invitations/pending", headers=_auth("bob"))
            body = await pending.json()
            await client.close()

        self.assertEqual([inv["invitation_id"] for inv in body["invitations"]], [invitation_id])


if __name__ == "__main__":
    unittest.main()
