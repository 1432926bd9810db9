from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import AlreadyResolved, DuplicateInvitation
from .events import ConnectionRemoved, InvitationChanged, InvitationInserted, PushEvent
from .hub import Listeners
from .models import STATUS_ACCEPTED, STATUS_PENDING, Invitation
from .notify import VARIANT_DEFAULT, Notice, Notifier

logger = logging.getLogger(__name__)

NameLookup = Callable[[str], Optional[str]]


def _no_names(user_id: str) -> Optional[str]:
    return None


class InvitationLifecycle:
    """Pending connection requests addressed to one user.

    ``listeners`` fire when the pending list changes; ``connections_changed``
    fires when an accept or a removal means the connection list is stale.
    """

    def __init__(
        self,
        user_id: str,
        store: Any,
        notifier: Notifier,
        *,
        display_name: NameLookup = _no_names,
    ) -> None:
        self.user_id = user_id
        self._store = store
        self._notifier = notifier
        self._display_name = display_name
        self._pending: Dict[str, Invitation] = {}
        self._announced: Set[str] = set()
        self._accept_announced: Set[str] = set()
        self.listeners = Listeners()
        self.connections_changed = Listeners()

    @property
    def pending(self) -> List[Invitation]:
        return sorted(self._pending.values(), key=lambda inv: (-inv.created_at_ms, inv.invitation_id))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _name(self, user_id: str) -> str:
        return self._display_name(user_id) or "Someone"

    async def refresh(self) -> None:
        invitations = await self._store.list_pending_invitations(self.user_id)
        self._pending = {inv.invitation_id: inv for inv in invitations if inv.status == STATUS_PENDING}
        # Invitations seen through a load are never announced later.
        self._announced.update(self._pending)
        self.listeners.fire()

    async def send(self, receiver_id: str, activity: str) -> Optional[Invitation]:
        try:
            invitation = await self._store.create_invitation(self.user_id, receiver_id, activity)
        except DuplicateInvitation:
            name = self._display_name(receiver_id) or "this user"
            self._notifier.notify(
                Notice(
                    "Already Connected",
                    f"You already have a pending or active connection with {name}.",
                    VARIANT_DEFAULT,
                )
            )
            return None
        self._notifier.notify(Notice("Connection Request Sent!", f"Waiting for {self._name(receiver_id)} to respond."))
        return invitation

    async def accept(self, invitation_id: str) -> Invitation:
        try:
            invitation = await self._store.accept_invitation(invitation_id, self.user_id)
        except AlreadyResolved:
            await self.refresh()
            raise
        self._drop(invitation_id)
        self.connections_changed.fire()
        return invitation

    async def decline(self, invitation_id: str) -> Invitation:
        try:
            invitation = await self._store.decline_invitation(invitation_id, self.user_id)
        except AlreadyResolved:
            await self.refresh()
            raise
        self._drop(invitation_id)
        return invitation

    def _drop(self, invitation_id: str) -> None:
        if self._pending.pop(invitation_id, None) is not None:
            self.listeners.fire()

    def on_event(self, topic: str, event: PushEvent) -> None:
        if isinstance(event, InvitationInserted):
            self._on_inserted(event.invitation)
        elif isinstance(event, InvitationChanged):
            self._on_changed(event)
        elif isinstance(event, ConnectionRemoved):
            if self.user_id in event.user_ids:
                self.connections_changed.fire()

    def _on_inserted(self, invitation: Invitation) -> None:
        if invitation.receiver_id != self.user_id or invitation.status != STATUS_PENDING:
            return
        if invitation.invitation_id in self._pending:
            return
        self._pending[invitation.invitation_id] = invitation
        if invitation.invitation_id not in self._announced:
            self._announced.add(invitation.invitation_id)
            self._notifier.notify(
                Notice("Connection Request!", f"{self._name(invitation.sender_id)} wants to connect with you.")
            )
        self.listeners.fire()

    def _on_changed(self, event: InvitationChanged) -> None:
        invitation = event.invitation
        if invitation.status != STATUS_PENDING:
            self._drop(invitation.invitation_id)
        if invitation.status != STATUS_ACCEPTED or not invitation.involves(self.user_id):
            return
        self.connections_changed.fire()
        # Only a real transition is announced; changes without a previous status are not.
        if invitation.sender_id != self.user_id or event.previous_status in (None, STATUS_ACCEPTED):
            return
        if invitation.invitation_id in self._accept_announced:
            logger.debug("acceptance of %s already announced", invitation.invitation_id)
            return
        self._accept_announced.add(invitation.invitation_id)
        self._notifier.notify(
            Notice("Connected!", f"{self._name(invitation.receiver_id)} accepted your request. Check your chats!")
        )
