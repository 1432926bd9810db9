import unittest

from signalroom.inbox import ConversationUnifier, preview
from signalroom.models import Connection, EventRoom, Invitation, Message, ThreadKey, UserProfile
from signalroom.mutes import MuteStore
from signalroom.unread import UnreadAggregator


class NullMuteBackend:
    async def list_mutes(self, user_id):
        return set()

    async def set_mute(self, user_id, thread, muted):
        return None


def _pending(invitation_id, sender, created_at_ms, activity="Coffee"):
    return Invitation(invitation_id, sender, "alice", activity, "pending", created_at_ms)


class PreviewTests(unittest.TestCase):
    def test_truncates_after_limit(self):
        self.assertEqual(preview("x" * 50), "x" * 50)
        self.assertEqual(preview("x" * 51), "x" * 50 + "...")
        self.assertEqual(preview("hello world", length=5), "hello...")


class ConversationUnifierTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.mutes = MuteStore("alice", NullMuteBackend())
        self.unread = UnreadAggregator("alice", self.mutes)
        self.inbox = ConversationUnifier("alice", self.unread, self.mutes)
        self.inbox.set_profiles(
            {
                "bob": UserProfile("bob", "Bob"),
                "carol": UserProfile("carol", "Carol", {"emoji": "C"}),
            }
        )

    def test_pending_items_come_first_newest_first(self):
        self.inbox.set_connections([Connection("inv_dm", "alice", "bob", 9_000)])
        self.inbox.set_pending([_pending("inv_a", "carol", 100), _pending("inv_b", "dave", 200, "Run")])

        items = self.inbox.items()

        self.assertEqual([item.item_id for item in items], ["invite-inv_b", "invite-inv_a", "dm-bob"])
        self.assertEqual(items[0].title, "Unknown")
        self.assertEqual(items[0].subtitle, "Wants to connect: Run")
        self.assertEqual(items[1].title, "Carol")
        self.assertEqual(items[1].avatar, {"emoji": "C"})

    def test_pending_list_ignores_invitations_sent_by_viewer(self):
        outgoing = Invitation("inv_out", "alice", "bob", "Coffee", "pending", 1)

        self.inbox.set_pending([outgoing])

        self.assertEqual(self.inbox.items(), [])

    def test_threads_sorted_by_last_activity(self):
        dm = Connection("inv_dm", "alice", "bob", 1_000)
        room = EventRoom("evt_1", "Run club", "sports", "carol", 2_000, 2_000, 60)
        self.inbox.set_connections([dm])
        self.inbox.set_rooms([room])

        items = self.inbox.items()
        self.assertEqual([item.item_id for item in items], ["spot-evt_1", "dm-bob"])
        self.assertEqual(items[0].subtitle, "No messages yet")
        self.assertEqual(items[0].activity, "sports")
        self.assertEqual(items[1].subtitle, "Start a conversation")
        self.assertEqual(items[1].last_activity_ms, 1_000)

        self.inbox.on_message(Message(dm.thread, "bob", "See you there", 3_000, message_id="m_1"))

        items = self.inbox.items()
        self.assertEqual([item.item_id for item in items], ["dm-bob", "spot-evt_1"])
        self.assertEqual(items[0].subtitle, "See you there")
        self.assertEqual(items[0].last_activity_ms, 3_000)

    def test_ties_break_on_item_id(self):
        self.inbox.set_connections(
            [Connection("inv_1", "alice", "carol", 500), Connection("inv_2", "alice", "bob", 500)]
        )

        self.assertEqual([item.item_id for item in self.inbox.items()], ["dm-bob", "dm-carol"])

    def test_own_last_message_is_prefixed_and_truncated(self):
        dm = Connection("inv_dm", "alice", "bob", 1_000)
        self.inbox.set_connections([dm])
        self.inbox.set_last_messages({dm.thread: Message(dm.thread, "alice", "y" * 60, 2_000, message_id="m_1")})

        [item] = self.inbox.items()

        self.assertEqual(item.subtitle, "You: " + "y" * 50 + "...")

    def test_older_push_does_not_replace_last_message(self):
        dm = Connection("inv_dm", "alice", "bob", 1_000)
        self.inbox.set_connections([dm])
        self.inbox.on_message(Message(dm.thread, "bob", "newer", 5_000, message_id="m_2"))
        self.inbox.on_message(Message(dm.thread, "bob", "older", 4_000, message_id="m_1"))

        self.assertEqual(self.inbox.items()[0].subtitle, "newer")

    def test_refresh_keeps_a_newer_pushed_last_message(self):
        dm = Connection("inv_dm", "alice", "bob", 1_000)
        self.inbox.set_connections([dm])
        self.inbox.on_message(Message(dm.thread, "bob", "pushed", 5_000, message_id="m_2"))

        self.inbox.set_last_messages({dm.thread: Message(dm.thread, "bob", "stored", 4_000, message_id="m_1")})
        self.assertEqual(self.inbox.items()[0].subtitle, "pushed")

        self.inbox.set_last_messages({dm.thread: Message(dm.thread, "bob", "later", 6_000, message_id="m_3")})
        self.assertEqual(self.inbox.items()[0].subtitle, "later")

    async def test_muted_item_hides_badge(self):
        dm = Connection("inv_dm", "alice", "bob", 1_000)
        self.inbox.set_connections([dm])
        self.unread.load({dm.thread: ["m_1", "m_2", "m_3", "m_4"]})
        self.assertEqual(self.inbox.items()[0].unread_count, 4)

        await self.mutes.set_muted(dm.thread, True)

        [item] = self.inbox.items()
        self.assertTrue(item.muted)
        self.assertEqual(item.unread_count, 0)

    def test_listeners_fire_on_unread_changes(self):
        fired = []
        self.inbox.listeners.add(lambda: fired.append(True))
        thread = ThreadKey("dm", "inv_dm")

        self.unread.on_message(Message(thread, "bob", "hi", 1, message_id="m_1"))

        self.assertEqual(fired, [True])

    def test_forget_thread_removes_item(self):
        dm = Connection("inv_dm", "alice", "bob", 1_000)
        room = EventRoom("evt_1", "Run club", "sports", "carol", 2_000, 2_000, 60)
        self.inbox.set_connections([dm])
        self.inbox.set_rooms([room])

        self.inbox.forget_thread(dm.thread)
        self.inbox.forget_thread(room.thread)

        self.assertEqual(self.inbox.items(), [])

    def test_known_user_ids_and_threads(self):
        self.inbox.set_pending([_pending("inv_a", "dave", 1)])
        self.inbox.set_connections([Connection("inv_dm", "alice", "bob", 1_000)])

        self.assertEqual(self.inbox.known_user_ids(), ["bob", "dave"])
        self.assertEqual(self.inbox.threads(), [ThreadKey("dm", "inv_dm")])
        self.assertEqual(self.inbox.display_name("bob"), "Bob")
        self.assertIsNone(self.inbox.display_name("dave"))


if __name__ == "__main__":
    unittest.main()
