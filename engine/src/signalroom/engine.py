from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from .channel import MessageChannel
from .config import EngineConfig
from .errors import (
    AlreadyResolved,
    ConnectionTerminated,
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
    ConnectionRemoved,
    InvitationChanged,
    InvitationInserted,
    MemberBanned,
    MessageInserted,
    PushEvent,
    TypingChanged,
)
from .hub import PushChannel, Subscription, thread_topic, user_topic
from .inbox import ConversationUnifier
from .invitations import InvitationLifecycle
from .models import THREAD_DM, THREAD_SPOT, ConversationItem, EventRoom, Invitation, Message, ThreadKey, _now_ms
from .mutes import MuteStore
from .notify import VARIANT_DESTRUCTIVE, LoggingNotifier, Notice, Notifier
from .typing_presence import TypingPresence
from .unread import UnreadAggregator

logger = logging.getLogger(__name__)


def _removed_from_spot() -> Notice:
    return Notice("Removed from spot", "You can no longer take part in this spot.", VARIANT_DESTRUCTIVE)


class ConversationEngine:
    """Wires the conversation services for one signed-in user.

    Every collaborator is passed in; nothing is shared through module state.
    Typed failures end up as notices and never escape as fatal errors.
    """

    def __init__(
        self,
        user_id: str,
        store: Any,
        push: PushChannel,
        notifier: Notifier | None = None,
        config: EngineConfig | None = None,
        *,
        now_func=_now_ms,
    ) -> None:
        self.user_id = user_id
        self.store = store
        self.push = push
        self.notifier = notifier or LoggingNotifier()
        self.config = config or EngineConfig()
        self._now = now_func

        self.mutes = MuteStore(user_id, store)
        self.unread = UnreadAggregator(user_id, self.mutes)
        self.typing = TypingPresence(
            user_id,
            self._publish_typing,
            idle_ms=self.config.typing_idle_ms,
            throttle_ms=self.config.typing_throttle_ms,
            now_func=now_func,
        )
        self.inbox = ConversationUnifier(user_id, self.unread, self.mutes, preview_length=self.config.preview_length)
        self.invitations = InvitationLifecycle(
            user_id, store, self.notifier, display_name=self.inbox.display_name
        )
        self.invitations.listeners.add(self._on_pending_changed)
        self.invitations.connections_changed.add(self._schedule_connection_refresh)

        self._channels: Dict[ThreadKey, MessageChannel] = {}
        self._leaving: Set[ThreadKey] = set()
        self._subscription: Subscription | None = None
        self._tasks: Set[asyncio.Task] = set()
        self._refresh_task: asyncio.Task | None = None
        self._refresh_again = False
        self._poll_task: asyncio.Task | None = None

    # lifecycle

    async def start(self) -> None:
        if self._subscription is None:
            self._subscription = self.push.subscribe(self.user_id, user_topic(self.user_id), self)
        await self.refresh()
        self.typing.start_sweeper()

    async def stop(self) -> None:
        if self._subscription is not None:
            self.push.unsubscribe(self._subscription)
            self._subscription = None
        for thread in list(self._channels):
            self._channels.pop(thread).close()
        await self.stop_polling()
        await self.typing.stop_sweeper()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def refresh(self) -> None:
        await self.invitations.refresh()
        await self.mutes.load()
        await self.refresh_connections()

    async def refresh_connections(self) -> None:
        connections = await self.store.list_connections(self.user_id)
        rooms = await self.store.list_event_rooms(self.user_id)
        self.inbox.set_connections(connections)
        self.inbox.set_rooms(rooms)

        threads = self.inbox.threads()
        refresh = self.unread.begin_refresh()
        try:
            snapshot = {thread: await self.store.unread_message_ids(thread, self.user_id) for thread in threads}
            self.unread.load(snapshot, refresh)
        finally:
            self.unread.end_refresh(refresh)
        latest = {thread: await self.store.latest_message(thread) for thread in threads}
        self.inbox.set_last_messages(latest)

        user_ids = self.inbox.known_user_ids()
        if user_ids:
            self.inbox.set_profiles(await self.store.get_profiles(user_ids))

    async def wait_idle(self) -> None:
        """Wait for scheduled background refreshes to settle."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_connection_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            # A change landed mid-refresh; run once more when it finishes.
            self._refresh_again = True
            return
        self._refresh_task = self._spawn(self._refresh_connections_quietly())

    async def _refresh_connections_quietly(self) -> None:
        while True:
            self._refresh_again = False
            try:
                await self.refresh_connections()
            except NetworkFailure:
                logger.warning("connection refresh for %s failed", self.user_id)
            if not self._refresh_again:
                return

    def start_polling(self, interval_s: float | None = None) -> None:
        if self._poll_task is None:
            interval = self.config.poll_interval_s if interval_s is None else interval_s
            self._poll_task = asyncio.create_task(self._poll(interval))

    async def stop_polling(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None

    async def _poll(self, interval_s: float) -> None:
        try:
            while True:
                await asyncio.sleep(interval_s)
                try:
                    await self.invitations.refresh()
                    self.inbox.set_rooms(await self.store.list_event_rooms(self.user_id))
                except NetworkFailure:
                    logger.warning("poll for %s failed", self.user_id)
        except asyncio.CancelledError:
            return

    # push

    def on_event(self, topic: str, event: PushEvent) -> None:
        if isinstance(event, (InvitationInserted, InvitationChanged)):
            self.invitations.on_event(topic, event)
        elif isinstance(event, ConnectionRemoved):
            channel = self._channels.get(event.thread)
            if channel is not None and not channel.terminated:
                channel.on_event(topic, event)
            self._drop_thread(event.thread)
            self.invitations.on_event(topic, event)
        elif isinstance(event, MessageInserted):
            self.inbox.on_message(event.message)
            self.unread.on_message(event.message)
        elif isinstance(event, TypingChanged):
            self.typing.on_typing(event)
        elif isinstance(event, MemberBanned):
            if event.user_id == self.user_id:
                self._on_banned(event.thread)

    def _on_banned(self, thread: ThreadKey) -> None:
        channel = self._channels.get(thread)
        if channel is not None and not channel.terminated:
            # The channel reports through _on_terminated.
            channel.on_event(thread_topic(thread), MemberBanned(thread.thread_id, self.user_id))
            return
        if thread not in self.inbox.threads():
            return
        self.notifier.notify(_removed_from_spot())
        self._drop_thread(thread)

    def _on_pending_changed(self) -> None:
        pending = self.invitations.pending
        self.inbox.set_pending(pending)
        missing = sorted({inv.sender_id for inv in pending} - self.inbox.profile_ids())
        if missing:
            self._spawn(self._load_profiles(missing))

    async def _load_profiles(self, user_ids: List[str]) -> None:
        try:
            self.inbox.set_profiles(await self.store.get_profiles(user_ids))
        except NetworkFailure:
            logger.warning("profile lookup for %s failed", self.user_id)

    def _publish_typing(self, event: TypingChanged) -> None:
        self.push.publish(thread_topic(event.thread), event)

    # threads

    @property
    def active_thread(self) -> Optional[ThreadKey]:
        return self.unread.active_thread

    def channel(self, thread: Optional[ThreadKey] = None) -> Optional[MessageChannel]:
        thread = thread or self.active_thread
        if thread is None:
            return None
        return self._channels.get(thread)

    async def open_thread(self, thread: ThreadKey) -> Optional[MessageChannel]:
        current = self.active_thread
        if current is not None and current != thread:
            await self.close_thread(current)
        channel = self._channels.get(thread)
        if channel is None:
            channel = MessageChannel(
                thread,
                self.user_id,
                self.store,
                self.push,
                self.config,
                typing=self.typing,
                on_terminated=self._on_terminated,
                now_func=self._now,
            )
            self._channels[thread] = channel
        self.unread.set_active(thread)
        try:
            await self.store.mark_read(thread, self.user_id)
        except NetworkFailure:
            logger.warning("could not persist read mark for %s", thread)
        try:
            await channel.open()
        except ConnectionTerminated:
            return None
        except NetworkFailure as exc:
            self.notifier.notify(Notice("Failed to load messages", str(exc), VARIANT_DESTRUCTIVE))
            if self._channels.get(thread) is channel:
                self._channels.pop(thread).close()
            if self.active_thread == thread:
                self.unread.set_active(None)
            return None
        return channel

    async def close_thread(self, thread: Optional[ThreadKey] = None) -> None:
        thread = thread or self.active_thread
        if thread is None:
            return
        channel = self._channels.pop(thread, None)
        if channel is not None:
            channel.close()
        if self.active_thread == thread:
            self.unread.set_active(None)
        self.unread.mark_as_read(thread)
        try:
            await self.store.mark_read(thread, self.user_id)
        except NetworkFailure:
            logger.warning("could not persist read mark for %s", thread)

    def set_compose(self, text: str, thread: Optional[ThreadKey] = None) -> None:
        channel = self.channel(thread)
        if channel is None:
            return
        channel.set_compose(text)
        if text:
            self.typing.keystroke(channel.thread)
        else:
            self.typing.stop(channel.thread)

    def keystroke(self, thread: Optional[ThreadKey] = None) -> None:
        thread = thread or self.active_thread
        if thread is not None:
            self.typing.keystroke(thread)

    def blur(self, thread: Optional[ThreadKey] = None) -> None:
        thread = thread or self.active_thread
        if thread is not None:
            self.typing.stop(thread)

    async def send_message(self, content: Optional[str] = None, thread: Optional[ThreadKey] = None) -> Optional[Message]:
        channel = self.channel(thread)
        if channel is None:
            logger.warning("send without an open thread for %s", self.user_id)
            return None
        try:
            return await channel.send(content)
        except EmptyMessage:
            return None
        except MessageTooLong as exc:
            self.notifier.notify(
                Notice(
                    "Message too long",
                    f"Messages must be {exc.limit} characters or less.",
                    VARIANT_DESTRUCTIVE,
                )
            )
            return None
        except ConnectionTerminated:
            return None
        except (NetworkFailure, ValueError) as exc:
            self.notifier.notify(Notice("Failed to send message", str(exc), VARIANT_DESTRUCTIVE))
            return None

    def _on_terminated(self, thread: ThreadKey) -> None:
        if thread in self._leaving:
            return
        if thread.thread_type == THREAD_SPOT:
            notice = _removed_from_spot()
        else:
            notice = Notice(
                "Connection Terminated",
                "This connection has ended. Send a new signal to reconnect.",
                VARIANT_DESTRUCTIVE,
            )
        self.notifier.notify(notice)
        self._drop_thread(thread)
        self._schedule_connection_refresh()

    def _drop_thread(self, thread: ThreadKey) -> None:
        channel = self._channels.pop(thread, None)
        if channel is not None:
            channel.close()
        self.inbox.forget_thread(thread)
        self.unread.forget(thread)

    # invitations

    async def send_invitation(self, receiver_id: str, activity: str) -> Optional[Invitation]:
        try:
            return await self.invitations.send(receiver_id, activity)
        except (RateLimitExceeded, NetworkFailure, ValueError) as exc:
            self.notifier.notify(Notice("Failed to send request", str(exc), VARIANT_DESTRUCTIVE))
            return None

    async def accept_invitation(self, invitation_id: str) -> Optional[Invitation]:
        try:
            invitation = await self.invitations.accept(invitation_id)
        except (AlreadyResolved, InvitationNotFound, PermissionDenied, RateLimitExceeded, NetworkFailure) as exc:
            self.notifier.notify(Notice("Failed to accept signal", str(exc), VARIANT_DESTRUCTIVE))
            return None
        self.notifier.notify(Notice("Signal Accepted!", "You are now connected."))
        return invitation

    async def decline_invitation(self, invitation_id: str) -> Optional[Invitation]:
        try:
            invitation = await self.invitations.decline(invitation_id)
        except (AlreadyResolved, InvitationNotFound, PermissionDenied, NetworkFailure) as exc:
            self.notifier.notify(Notice("Failed to decline signal", str(exc), VARIANT_DESTRUCTIVE))
            return None
        self.notifier.notify(Notice("Invitation rejected"))
        return invitation

    async def disconnect(self, invitation_id: str) -> bool:
        thread = ThreadKey(THREAD_DM, invitation_id)
        # Our own channel sees the removal too; it must not report it as a remote termination.
        self._leaving.add(thread)
        try:
            await self.store.remove_connection(invitation_id, self.user_id)
        except (InvitationNotFound, PermissionDenied, NetworkFailure) as exc:
            self.notifier.notify(Notice("Failed to disconnect", str(exc), VARIANT_DESTRUCTIVE))
            return False
        finally:
            self._leaving.discard(thread)
        self._drop_thread(thread)
        self.notifier.notify(Notice("Connection terminated. You can send a new signal to reconnect."))
        return True

    # rooms

    async def create_room(self, title: str, category: str, *, duration_minutes: int = 60) -> Optional[EventRoom]:
        try:
            room = await self.store.create_event_room(
                self.user_id, title, category, duration_minutes=duration_minutes
            )
        except (NetworkFailure, ValueError) as exc:
            self.notifier.notify(Notice("Failed to create spot", str(exc), VARIANT_DESTRUCTIVE))
            return None
        self._schedule_connection_refresh()
        return room

    async def join_room(self, event_id: str) -> bool:
        try:
            await self.store.join_event_room(event_id, self.user_id)
        except (RoomNotFound, PermissionDenied, NetworkFailure) as exc:
            self.notifier.notify(Notice("Failed to join spot", str(exc), VARIANT_DESTRUCTIVE))
            return False
        self._schedule_connection_refresh()
        return True

    async def leave_room(self, event_id: str) -> bool:
        thread = ThreadKey(THREAD_SPOT, event_id)
        try:
            await self.store.leave_event_room(event_id, self.user_id)
        except (RoomNotFound, PermissionDenied, NetworkFailure) as exc:
            self.notifier.notify(Notice("Failed to leave spot", str(exc), VARIANT_DESTRUCTIVE))
            return False
        if self.active_thread == thread:
            await self.close_thread(thread)
        self.inbox.forget_thread(thread)
        self.unread.forget(thread)
        return True

    async def ban_user(self, event_id: str, user_id: str) -> bool:
        try:
            await self.store.ban_user(event_id, self.user_id, user_id)
        except (RoomNotFound, PermissionDenied, NetworkFailure, ValueError) as exc:
            self.notifier.notify(Notice("Failed to ban user", str(exc), VARIANT_DESTRUCTIVE))
            return False
        self.notifier.notify(Notice("User removed and banned", "They can no longer join this spot."))
        return True

    async def unban_user(self, event_id: str, user_id: str) -> bool:
        try:
            removed = await self.store.unban_user(event_id, self.user_id, user_id)
        except (RoomNotFound, PermissionDenied, NetworkFailure) as exc:
            self.notifier.notify(Notice("Failed to unban user", str(exc), VARIANT_DESTRUCTIVE))
            return False
        if removed:
            self.notifier.notify(Notice("User unbanned"))
        return removed

    async def list_bans(self, event_id: str) -> List[str]:
        try:
            return await self.store.list_bans(event_id, self.user_id)
        except (RoomNotFound, PermissionDenied, NetworkFailure) as exc:
            self.notifier.notify(Notice("Failed to load bans", str(exc), VARIANT_DESTRUCTIVE))
            return []

    # reactions

    async def toggle_reaction(self, message_id: str, emoji: str, thread: Optional[ThreadKey] = None) -> Optional[bool]:
        channel = self.channel(thread)
        if channel is None:
            logger.warning("reaction without an open thread for %s", self.user_id)
            return None
        try:
            return await channel.toggle_reaction(message_id, emoji)
        except ConnectionTerminated:
            return None
        except (MessageNotFound, NetworkFailure, ValueError) as exc:
            self.notifier.notify(Notice("Failed to react", str(exc), VARIANT_DESTRUCTIVE))
            return None

    # mutes

    async def toggle_mute(self, thread: ThreadKey) -> Optional[bool]:
        try:
            return await self.mutes.toggle(thread)
        except NetworkFailure as exc:
            self.notifier.notify(Notice("Failed to update mute", str(exc), VARIANT_DESTRUCTIVE))
            return None

    # views

    def total_unread(self) -> int:
        return self.unread.total_unread(self.invitations.pending_count)

    def conversations(self) -> List[ConversationItem]:
        return self.inbox.items()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_unread": self.total_unread(),
            "items": [item.to_dict() for item in self.conversations()],
        }
