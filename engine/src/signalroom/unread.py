from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Set

from .hub import Listeners
from .models import Message, ThreadKey
from .mutes import MuteStore


class UnreadRefresh:
    """Pushes and read marks seen while a store snapshot is being read."""

    def __init__(self) -> None:
        self.pushed: Dict[ThreadKey, Set[str]] = {}
        self.read: Set[ThreadKey] = set()


class UnreadAggregator:
    """Per-thread unread message ids plus the currently open ("active") thread.

    Counts only grow from inbound messages and only drop to zero through
    :meth:`mark_as_read`. Messages for the active thread or a muted thread
    never increment. Unread state is kept as message ids so a message that
    arrives both by push and in a store snapshot is counted once.
    """

    def __init__(self, user_id: str, mutes: MuteStore) -> None:
        self.user_id = user_id
        self._mutes = mutes
        self._unread: Dict[ThreadKey, Set[str]] = {}
        self._active: Optional[ThreadKey] = None
        self._refreshes: List[UnreadRefresh] = []
        self.listeners = Listeners()

    @property
    def active_thread(self) -> Optional[ThreadKey]:
        return self._active

    def begin_refresh(self) -> UnreadRefresh:
        refresh = UnreadRefresh()
        self._refreshes.append(refresh)
        return refresh

    def end_refresh(self, refresh: UnreadRefresh) -> None:
        try:
            self._refreshes.remove(refresh)
        except ValueError:
            return

    def on_message(self, message: Message) -> bool:
        thread = message.thread
        if message.sender_id == self.user_id:
            return False
        if thread == self._active or self._mutes.is_muted(thread):
            return False
        message_id = message.key
        for refresh in self._refreshes:
            refresh.pushed.setdefault(thread, set()).add(message_id)
        ids = self._unread.setdefault(thread, set())
        if message_id in ids:
            return False
        ids.add(message_id)
        self.listeners.fire()
        return True

    def set_active(self, thread: Optional[ThreadKey]) -> None:
        self._active = thread
        if thread is not None:
            self.mark_as_read(thread)

    def mark_as_read(self, thread: ThreadKey) -> None:
        for refresh in self._refreshes:
            refresh.read.add(thread)
            refresh.pushed.pop(thread, None)
        if not self._unread.get(thread):
            self._unread[thread] = set()
            return
        self._unread[thread] = set()
        self.listeners.fire()

    def load(self, snapshot: Mapping[ThreadKey, Iterable[str]], refresh: Optional[UnreadRefresh] = None) -> None:
        """Replace unread state with a store snapshot.

        With ``refresh``, messages pushed while the snapshot was read are
        merged in by id, and threads marked read meanwhile start empty.
        """

        unread: Dict[ThreadKey, Set[str]] = {}
        for thread, message_ids in snapshot.items():
            if thread == self._active:
                unread[thread] = set()
            elif refresh is not None and thread in refresh.read:
                unread[thread] = set()
            else:
                unread[thread] = set(message_ids)
        if refresh is not None:
            for thread, pushed in refresh.pushed.items():
                if thread != self._active:
                    unread.setdefault(thread, set()).update(pushed)
        self._unread = unread
        self.listeners.fire()

    def count(self, thread: ThreadKey) -> int:
        return len(self._unread.get(thread, ()))

    def counts(self) -> Dict[ThreadKey, int]:
        return {thread: len(ids) for thread, ids in self._unread.items()}

    def total_unread(self, pending_invites: int = 0) -> int:
        total = sum(len(ids) for thread, ids in self._unread.items() if not self._mutes.is_muted(thread))
        return pending_invites + total

    def forget(self, thread: ThreadKey) -> None:
        for refresh in self._refreshes:
            refresh.pushed.pop(thread, None)
        if self._active == thread:
            self._active = None
        if self._unread.pop(thread, None):
            self.listeners.fire()
