import unittest

from signalroom.errors import AlreadyResolved, DuplicateInvitation
from signalroom.events import ConnectionRemoved, InvitationChanged, InvitationInserted
from signalroom.invitations import InvitationLifecycle
from signalroom.models import Invitation
from signalroom.notify import CollectingNotifier


def _invitation(invitation_id="inv_1", sender="bob", receiver="alice", status="pending", created_at_ms=100):
    return Invitation(invitation_id, sender, receiver, "Coffee", status, created_at_ms)


class FakeInvitationStore:
    def __init__(self):
        self.pending = []
        self.create_error = None
        self.resolve_error = None
        self.resolved = []

    async def list_pending_invitations(self, receiver_id):
        return list(self.pending)

    async def create_invitation(self, sender_id, receiver_id, activity):
        if self.create_error is not None:
            raise self.create_error
        return Invitation("inv_new", sender_id, receiver_id, activity, "pending", 1)

    async def accept_invitation(self, invitation_id, actor_id):
        return self._resolve(invitation_id, "accepted")

    async def decline_invitation(self, invitation_id, actor_id):
        return self._resolve(invitation_id, "declined")

    def _resolve(self, invitation_id, status):
        if self.resolve_error is not None:
            raise self.resolve_error
        self.resolved.append((invitation_id, status))
        self.pending = [inv for inv in self.pending if inv.invitation_id != invitation_id]
        return Invitation(invitation_id, "bob", "alice", "Coffee", status, 100, 200)


NAMES = {"bob": "Bob", "alice": "Alice"}


class InvitationLifecycleTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = FakeInvitationStore()
        self.notifier = CollectingNotifier()
        self.lifecycle = InvitationLifecycle("alice", self.store, self.notifier, display_name=NAMES.get)
        self.connection_changes = 0

        def bump():
            self.connection_changes += 1

        self.lifecycle.connections_changed.add(bump)

    async def test_refresh_orders_pending_newest_first(self):
        self.store.pending = [_invitation("inv_1", created_at_ms=100), _invitation("inv_2", "carol", created_at_ms=300)]

        await self.lifecycle.refresh()

        self.assertEqual([inv.invitation_id for inv in self.lifecycle.pending], ["inv_2", "inv_1"])
        self.assertEqual(self.lifecycle.pending_count, 2)
        self.assertEqual(self.notifier.notices, [])

    async def test_pushed_invitation_is_announced_once(self):
        event = InvitationInserted(_invitation())

        self.lifecycle.on_event("user:alice", event)
        self.lifecycle.on_event("user:alice", event)

        self.assertEqual(self.notifier.titles(), ["Connection Request!"])
        self.assertEqual(self.notifier.notices[0].description, "Bob wants to connect with you.")
        self.assertEqual(self.lifecycle.pending_count, 1)

    async def test_loaded_invitation_is_not_announced_on_push(self):
        self.store.pending = [_invitation()]
        await self.lifecycle.refresh()
        self.lifecycle._pending.clear()

        self.lifecycle.on_event("user:alice", InvitationInserted(_invitation()))

        self.assertEqual(self.notifier.notices, [])
        self.assertEqual(self.lifecycle.pending_count, 1)

    async def test_outgoing_insert_is_ignored(self):
        self.lifecycle.on_event("user:alice", InvitationInserted(_invitation(sender="alice", receiver="bob")))

        self.assertEqual(self.lifecycle.pending_count, 0)
        self.assertEqual(self.notifier.notices, [])

    async def test_send_and_duplicate(self):
        invitation = await self.lifecycle.send("bob", "Coffee")
        self.assertEqual(invitation.receiver_id, "bob")

        self.store.create_error = DuplicateInvitation("exists")
        self.assertIsNone(await self.lifecycle.send("bob", "Coffee"))

        self.assertEqual(self.notifier.titles(), ["Connection Request Sent!", "Already Connected"])
        self.assertIn("Bob", self.notifier.notices[1].description)

    async def test_accept_drops_pending_and_signals_connections(self):
        self.store.pending = [_invitation()]
        await self.lifecycle.refresh()

        accepted = await self.lifecycle.accept("inv_1")

        self.assertEqual(accepted.status, "accepted")
        self.assertEqual(self.lifecycle.pending, [])
        self.assertEqual(self.connection_changes, 1)

    async def test_decline_does_not_signal_connections(self):
        self.store.pending = [_invitation()]
        await self.lifecycle.refresh()

        await self.lifecycle.decline("inv_1")

        self.assertEqual(self.lifecycle.pending, [])
        self.assertEqual(self.connection_changes, 0)

    async def test_already_resolved_refreshes_and_reraises(self):
        self.lifecycle.on_event("user:alice", InvitationInserted(_invitation()))
        self.store.pending = []
        self.store.resolve_error = AlreadyResolved("inv_1", "declined")

        with self.assertRaises(AlreadyResolved):
            await self.lifecycle.accept("inv_1")

        self.assertEqual(self.lifecycle.pending, [])

    async def test_resolution_elsewhere_drops_pending(self):
        self.lifecycle.on_event("user:alice", InvitationInserted(_invitation()))
        declined = _invitation(status="declined")

        self.lifecycle.on_event("user:alice", InvitationChanged(declined, previous_status="pending"))

        self.assertEqual(self.lifecycle.pending, [])
        self.assertEqual(self.connection_changes, 0)

    async def test_sender_hears_acceptance_once(self):
        accepted = _invitation(sender="alice", receiver="bob", status="accepted")
        event = InvitationChanged(accepted, previous_status="pending")

        self.lifecycle.on_event("user:alice", event)
        self.lifecycle.on_event("user:alice", event)

        self.assertEqual(self.notifier.titles(), ["Connected!"])
        self.assertIn("Bob accepted", self.notifier.notices[0].description)
        self.assertEqual(self.connection_changes, 2)

    async def test_acceptance_without_transition_is_not_announced(self):
        accepted = _invitation(sender="alice", receiver="bob", status="accepted")

        self.lifecycle.on_event("user:alice", InvitationChanged(accepted))
        self.lifecycle.on_event("user:alice", InvitationChanged(accepted, previous_status="accepted"))

        self.assertEqual(self.notifier.notices, [])

    async def test_receiver_is_not_told_of_own_acceptance(self):
        self.lifecycle.on_event("user:alice", InvitationChanged(_invitation(status="accepted"), "pending"))

        self.assertEqual(self.notifier.notices, [])
        self.assertEqual(self.connection_changes, 1)

    async def test_connection_removed_signals_connections(self):
        self.lifecycle.on_event("user:alice", ConnectionRemoved("inv_1", ("alice", "bob")))
        self.lifecycle.on_event("user:alice", ConnectionRemoved("inv_9", ("carol", "bob")))

        self.assertEqual(self.connection_changes, 1)


if __name__ == "__main__":
    unittest.main()
