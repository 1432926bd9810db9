from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List

from .events import TypingChanged
from .hub import Listeners
from .models import ThreadKey, _now_ms

logger = logging.getLogger(__name__)

Publish = Callable[[TypingChanged], None]


class TypingPresence:
    """Ephemeral "who is typing" state per thread.

    Own keystrokes are broadcast at most once per ``throttle_ms``; remote flags
    decay after ``idle_ms`` without a refresh. A confirmed message from a user
    clears that user's flag immediately.
    """

    def __init__(
        self,
        user_id: str,
        publish: Publish,
        *,
        idle_ms: int = 3000,
        throttle_ms: int = 500,
        now_func: Callable[[], int] = _now_ms,
        sweeper_interval_seconds: float = 0.5,
    ) -> None:
        self.user_id = user_id
        self._publish = publish
        self.idle_ms = idle_ms
        self.throttle_ms = throttle_ms
        self._now = now_func
        self.sweeper_interval_seconds = sweeper_interval_seconds
        self._last_keystroke: Dict[ThreadKey, int] = {}
        self._last_broadcast: Dict[ThreadKey, int] = {}
        self._remote: Dict[ThreadKey, Dict[str, int]] = {}
        self._sweeper_task: asyncio.Task | None = None
        self.listeners = Listeners()

    def start_sweeper(self) -> None:
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweeper_interval_seconds)
                self.expire()
        except asyncio.CancelledError:
            return

    # own state

    def keystroke(self, thread: ThreadKey) -> None:
        now_ms = self._now()
        self._last_keystroke[thread] = now_ms
        last = self._last_broadcast.get(thread)
        if last is not None and now_ms - last < self.throttle_ms:
            return
        self._last_broadcast[thread] = now_ms
        self._publish(TypingChanged(thread, self.user_id, True))

    def stop(self, thread: ThreadKey) -> None:
        if self._last_keystroke.pop(thread, None) is None:
            return
        self._last_broadcast.pop(thread, None)
        self._publish(TypingChanged(thread, self.user_id, False))

    def is_self_typing(self, thread: ThreadKey) -> bool:
        return thread in self._last_keystroke

    # remote state

    def on_typing(self, event: TypingChanged) -> None:
        if event.user_id == self.user_id:
            return
        if event.is_typing:
            self._remote.setdefault(event.thread, {})[event.user_id] = self._now() + self.idle_ms
            self.listeners.fire()
        elif self._clear(event.thread, event.user_id):
            self.listeners.fire()

    def on_message(self, thread: ThreadKey, sender_id: str) -> None:
        if sender_id == self.user_id:
            return
        if self._clear(thread, sender_id):
            self.listeners.fire()

    def _clear(self, thread: ThreadKey, user_id: str) -> bool:
        users = self._remote.get(thread)
        if not users or user_id not in users:
            return False
        del users[user_id]
        if not users:
            del self._remote[thread]
        return True

    def is_typing(self, thread: ThreadKey, user_id: str) -> bool:
        expires_at_ms = self._remote.get(thread, {}).get(user_id)
        return expires_at_ms is not None and expires_at_ms > self._now()

    def typing_users(self, thread: ThreadKey) -> List[str]:
        now_ms = self._now()
        return sorted(user_id for user_id, expires in self._remote.get(thread, {}).items() if expires > now_ms)

    def drop_thread(self, thread: ThreadKey) -> None:
        self.stop(thread)
        if self._remote.pop(thread, None):
            self.listeners.fire()

    def expire(self) -> None:
        now_ms = self._now()
        for thread, last in list(self._last_keystroke.items()):
            if now_ms - last >= self.idle_ms:
                self.stop(thread)

        changed = False
        for thread, users in list(self._remote.items()):
            for user_id, expires_at_ms in list(users.items()):
                if expires_at_ms <= now_ms:
                    del users[user_id]
                    changed = True
            if not users:
                del self._remote[thread]
        if changed:
            logger.debug("typing flags expired for user %s", self.user_id)
            self.listeners.fire()
