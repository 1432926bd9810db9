import logging
import unittest

from signalroom.backend import Backend
from signalroom.errors import DuplicateInvitation, PermissionDenied
from signalroom.events import (
    ConnectionRemoved,
    InvitationChanged,
    InvitationInserted,
    MemberBanned,
    MessageInserted,
    ReactionChanged,
)
from signalroom.hub import SubscriptionHub, thread_topic, user_topic
from signalroom.models import REACTION_EMOJIS, ThreadKey
from signalroom.store import InMemoryRowStore


class Recorder:
    def __init__(self):
        self.events = []

    def on_event(self, topic, event):
        self.events.append((topic, event))

    def types(self):
        return [type(event).__name__ for _, event in self.events]


class Exploding:
    def on_event(self, topic, event):
        raise RuntimeError("subscriber bug")


class SubscriptionHubTests(unittest.TestCase):
    def test_resubscribing_replaces_previous_subscription(self):
        hub = SubscriptionHub()
        first, second = Recorder(), Recorder()

        hub.subscribe("alice", "user:alice", first)
        hub.subscribe("alice", "user:alice", second)
        hub.publish("user:alice", ConnectionRemoved("inv_1", ("alice", "bob")))

        self.assertEqual(first.events, [])
        self.assertEqual(len(second.events), 1)
        self.assertEqual(hub.subscriber_count("user:alice"), 1)

    def test_unsubscribe_removes_topic(self):
        hub = SubscriptionHub()
        subscription = hub.subscribe("alice", "user:alice", Recorder())

        hub.unsubscribe(subscription)
        hub.unsubscribe(subscription)

        self.assertEqual(hub.subscriber_count("user:alice"), 0)

    def test_failing_subscriber_does_not_block_others(self):
        hub = SubscriptionHub()
        recorder = Recorder()
        hub.subscribe("a", "user:bob", Exploding())
        hub.subscribe("b", "user:bob", recorder)

        with self.assertLogs("signalroom.hub", level=logging.ERROR):
            hub.publish("user:bob", ConnectionRemoved("inv_1", ("alice", "bob")))

        self.assertEqual(len(recorder.events), 1)

    def test_revoke_drops_every_connection_of_a_user(self):
        hub = SubscriptionHub()
        hub.subscribe("bob", "thread:spot:evt_1", Recorder())
        hub.subscribe("bob/dev1", "thread:spot:evt_1", Recorder())
        hub.subscribe("bobby", "thread:spot:evt_1", Recorder())
        hub.subscribe("bob", "user:bob", Recorder())

        self.assertEqual(hub.revoke("thread:spot:evt_1", "bob"), 2)

        self.assertEqual(hub.subscriber_count("thread:spot:evt_1"), 1)
        self.assertEqual(hub.subscriber_count("user:bob"), 1)

    def test_topics(self):
        self.assertEqual(thread_topic(ThreadKey("dm", "inv_1")), "thread:dm:inv_1")
        self.assertEqual(user_topic("bob"), "user:bob")


class BackendPublishTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.hub = SubscriptionHub()
        self.backend = Backend(InMemoryRowStore(), self.hub)
        self.alice, self.bob = Recorder(), Recorder()
        self.hub.subscribe("alice", user_topic("alice"), self.alice)
        self.hub.subscribe("bob", user_topic("bob"), self.bob)

    async def test_invitation_lifecycle_reaches_both_users(self):
        invitation = await self.backend.create_invitation("alice", "bob", "Coffee")
        await self.backend.accept_invitation(invitation.invitation_id, "bob")

        for recorder in (self.alice, self.bob):
            self.assertEqual(recorder.types(), ["InvitationInserted", "InvitationChanged"])
        changed = self.bob.events[1][1]
        self.assertIsInstance(changed, InvitationChanged)
        self.assertEqual(changed.previous_status, "pending")
        self.assertEqual(changed.invitation.status, "accepted")

    async def test_rejected_write_publishes_nothing(self):
        await self.backend.create_invitation("alice", "bob", "Coffee")

        with self.assertRaises(DuplicateInvitation):
            await self.backend.create_invitation("bob", "alice", "Coffee")

        self.assertEqual(self.alice.types(), ["InvitationInserted"])

    async def test_message_reaches_thread_and_participants(self):
        invitation = await self.backend.create_invitation("alice", "bob", "Coffee")
        await self.backend.accept_invitation(invitation.invitation_id, "bob")
        thread = ThreadKey("dm", invitation.invitation_id)
        watcher = Recorder()
        self.hub.subscribe("alice", thread_topic(thread), watcher)

        message = await self.backend.create_message(thread, "alice", "hi", "ct_1")

        self.assertEqual(watcher.events, [(thread_topic(thread), MessageInserted(message))])
        self.assertEqual(self.bob.types()[-1], "MessageInserted")
        self.assertEqual(self.alice.types()[-1], "MessageInserted")

    async def test_denied_message_publishes_nothing(self):
        thread = ThreadKey("dm", "inv_missing")

        with self.assertRaises(PermissionDenied):
            await self.backend.create_message(thread, "alice", "hi")

        self.assertEqual(self.alice.events, [])

    async def test_removal_notifies_users_and_thread(self):
        invitation = await self.backend.create_invitation("alice", "bob", "Coffee")
        await self.backend.accept_invitation(invitation.invitation_id, "bob")
        thread = ThreadKey("dm", invitation.invitation_id)
        watcher = Recorder()
        self.hub.subscribe("bob", thread_topic(thread), watcher)

        await self.backend.remove_connection(invitation.invitation_id, "alice")

        expected = ConnectionRemoved(invitation.invitation_id, ("alice", "bob"))
        self.assertEqual(watcher.events, [(thread_topic(thread), expected)])
        self.assertEqual(self.alice.events[-1][1], expected)
        self.assertEqual(self.bob.events[-1][1], expected)
        self.assertIsInstance(self.bob.events[0][1], InvitationInserted)

    async def test_ban_notifies_then_revokes(self):
        room = await self.backend.create_event_room("alice", "Run club", "sports")
        await self.backend.join_event_room(room.event_id, "bob")
        alice_watch, bob_watch = Recorder(), Recorder()
        self.hub.subscribe("alice", thread_topic(room.thread), alice_watch)
        self.hub.subscribe("bob", thread_topic(room.thread), bob_watch)

        await self.backend.ban_user(room.event_id, "alice", "bob")

        expected = MemberBanned(room.event_id, "bob")
        self.assertEqual(bob_watch.events, [(thread_topic(room.thread), expected)])
        self.assertEqual(self.bob.events, [(user_topic("bob"), expected)])
        self.assertEqual(alice_watch.events, [(thread_topic(room.thread), expected)])
        self.assertEqual(self.hub.subscriber_count(thread_topic(room.thread)), 1)
        self.assertEqual(self.alice.events, [])
        self.assertTrue(await self.backend.is_banned(room.event_id, "bob"))

    async def test_denied_ban_publishes_nothing(self):
        room = await self.backend.create_event_room("alice", "Run club", "sports")

        with self.assertRaises(PermissionDenied):
            await self.backend.ban_user(room.event_id, "bob", "carol")

        self.assertEqual(self.bob.events, [])

    async def test_reaction_reaches_thread_only(self):
        invitation = await self.backend.create_invitation("alice", "bob", "Coffee")
        await self.backend.accept_invitation(invitation.invitation_id, "bob")
        thread = ThreadKey("dm", invitation.invitation_id)
        message = await self.backend.create_message(thread, "alice", "hi")
        watcher = Recorder()
        self.hub.subscribe("alice", thread_topic(thread), watcher)
        before = len(self.alice.events)

        reaction, added = await self.backend.toggle_reaction(thread, message.message_id, "bob", REACTION_EMOJIS[0])

        self.assertTrue(added)
        self.assertEqual(watcher.events, [(thread_topic(thread), ReactionChanged(reaction, True))])
        self.assertEqual(len(self.alice.events), before)
        self.assertEqual(await self.backend.list_reactions(thread, "alice"), [reaction])

if __name__ == "__main__":
    unittest.main()
