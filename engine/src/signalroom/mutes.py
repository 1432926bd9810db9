from __future__ import annotations

from typing import Any, Iterable, Set

from .hub import Listeners
from .models import ThreadKey


class MuteStore:
    """Per-thread mute flags for the viewing user.

    The flag only flips after the row store accepted the write, so a failed
    toggle leaves local state untouched.
    """

    def __init__(self, user_id: str, store: Any) -> None:
        self.user_id = user_id
        self._store = store
        self._muted: Set[ThreadKey] = set()
        self.listeners = Listeners()

    async def load(self) -> None:
        self.replace(await self._store.list_mutes(self.user_id))

    def replace(self, threads: Iterable[ThreadKey]) -> None:
        muted = set(threads)
        if muted != self._muted:
            self._muted = muted
            self.listeners.fire()

    def is_muted(self, thread: ThreadKey) -> bool:
        return thread in self._muted

    def muted_threads(self) -> Set[ThreadKey]:
        return set(self._muted)

    async def set_muted(self, thread: ThreadKey, muted: bool) -> None:
        if muted == self.is_muted(thread):
            return
        await self._store.set_mute(self.user_id, thread, muted)
        if muted:
            self._muted.add(thread)
        else:
            self._muted.discard(thread)
        self.listeners.fire()

    async def toggle(self, thread: ThreadKey) -> bool:
        muted = not self.is_muted(thread)
        await self.set_muted(thread, muted)
        return muted

    def forget(self, thread: ThreadKey) -> None:
        if thread in self._muted:
            self._muted.discard(thread)
            self.listeners.fire()
