from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Set

from .config import EngineConfig
from .errors import ConnectionTerminated, PermissionDenied
from .events import ConnectionRemoved, MemberBanned, MessageInserted, PushEvent, ReactionChanged, TypingChanged
from .hub import Listeners, PushChannel, Subscription, thread_topic
from .models import (
    CLIENT_TOKEN_PREFIX,
    REACTION_EMOJIS,
    TEMP_ID_PREFIX,
    Message,
    Reaction,
    ReactionSummary,
    ThreadKey,
    _now_ms,
    is_temp_id,
    new_id,
)
from .store import validate_content
from .typing_presence import TypingPresence

logger = logging.getLogger(__name__)

TerminatedCallback = Callable[[ThreadKey], None]


class MessageChannel:
    """Send path and timeline for one open thread.

    Outgoing messages render at once as optimistic entries and are reconciled
    against the write response and against push events, whichever lands
    first. For any logical message exactly one entry survives, and the
    timeline stays sorted ascending by creation time.
    """

    def __init__(
        self,
        thread: ThreadKey,
        user_id: str,
        store: Any,
        push: PushChannel,
        config: EngineConfig | None = None,
        *,
        typing: Optional[TypingPresence] = None,
        on_terminated: Optional[TerminatedCallback] = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.thread = thread
        self.user_id = user_id
        self._store = store
        self._push = push
        self.config = config or EngineConfig()
        self._typing = typing
        self._on_terminated = on_terminated
        self._now = now_func
        self._messages: List[Message] = []
        self._confirmed_ids: Set[str] = set()
        # message id -> emoji -> reacting user ids
        self._reactions: Dict[str, Dict[str, Set[str]]] = {}
        self._subscription: Subscription | None = None
        # Bumped on close so late write results from an earlier session are not applied.
        self._generation = 0
        self.compose = ""
        self.terminated = False
        self.listeners = Listeners()

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    def optimistic_messages(self) -> List[Message]:
        return [m for m in self._messages if m.optimistic]

    async def open(self) -> None:
        if self._subscription is None:
            self._subscription = self._push.subscribe(self.user_id, thread_topic(self.thread), self)
        self.terminated = False
        generation = self._generation
        try:
            history = await self._store.list_messages(self.thread, self.user_id)
            reactions = await self._store.list_reactions(self.thread, self.user_id)
        except PermissionDenied as exc:
            self._terminate()
            raise ConnectionTerminated(self.thread) from exc
        if generation != self._generation:
            return
        changed = False
        for message in history:
            changed = self._merge(message) or changed
        self._reactions = {}
        for reaction in reactions:
            self._set_reaction(reaction, True)
        changed = changed or bool(reactions)
        if changed:
            self.listeners.fire()

    def close(self) -> None:
        if self._subscription is not None:
            self._push.unsubscribe(self._subscription)
            self._subscription = None
        self._generation += 1
        dropped = [m for m in self._messages if m.optimistic]
        if dropped:
            self._messages = [m for m in self._messages if not m.optimistic]
            logger.debug("discarded %d unconfirmed messages on close of %s", len(dropped), self.thread)
        if self._typing is not None:
            self._typing.drop_thread(self.thread)

    def set_compose(self, text: str) -> None:
        self.compose = text

    async def send(self, content: Optional[str] = None) -> Message:
        raw = self.compose if content is None else content
        text = validate_content(raw, self.config.max_message_length)

        optimistic = Message(
            thread=self.thread,
            sender_id=self.user_id,
            content=text,
            created_at_ms=self._now(),
            temp_id=new_id(TEMP_ID_PREFIX),
            client_token=new_id(CLIENT_TOKEN_PREFIX),
            optimistic=True,
        )
        self._insert(optimistic)
        self.compose = ""
        if self._typing is not None:
            self._typing.stop(self.thread)
        self.listeners.fire()

        generation = self._generation
        try:
            confirmed = await self._store.create_message(self.thread, self.user_id, text, optimistic.client_token)
        except PermissionDenied as exc:
            self._terminate()
            raise ConnectionTerminated(self.thread) from exc
        except Exception:
            if generation == self._generation:
                self._remove_temp(optimistic.temp_id)
                self.compose = raw
                self.listeners.fire()
            raise

        if generation != self._generation:
            logger.debug("write for %s confirmed after close; not applied locally", self.thread)
            return confirmed
        self._confirm(optimistic.temp_id, confirmed)
        return confirmed

    def _confirm(self, temp_id: Optional[str], confirmed: Message) -> None:
        if confirmed.message_id in self._confirmed_ids:
            # Push delivery won the race and already rendered it.
            self._remove_temp(temp_id)
            self.listeners.fire()
            return
        index = self._index_of_temp(temp_id)
        if index is None:
            self._insert(confirmed)
        else:
            self._messages[index] = confirmed
            self._sort()
        self._confirmed_ids.add(confirmed.message_id or "")
        self.listeners.fire()

    def on_event(self, topic: str, event: PushEvent) -> None:
        if isinstance(event, MessageInserted):
            if event.thread != self.thread:
                return
            if self._typing is not None:
                self._typing.on_message(self.thread, event.message.sender_id)
            self.apply_confirmed(event.message)
        elif isinstance(event, TypingChanged):
            if event.thread == self.thread and self._typing is not None:
                self._typing.on_typing(event)
        elif isinstance(event, ConnectionRemoved):
            if event.thread == self.thread:
                self._terminate()
        elif isinstance(event, MemberBanned):
            if event.thread == self.thread and event.user_id == self.user_id and not self.terminated:
                self._terminate()
        elif isinstance(event, ReactionChanged):
            if event.thread == self.thread and self._set_reaction(event.reaction, event.added):
                self.listeners.fire()

    # reactions

    def reactions(self, message_id: str) -> List[ReactionSummary]:
        by_emoji = self._reactions.get(message_id, {})
        return [
            ReactionSummary(emoji, len(by_emoji[emoji]), self.user_id in by_emoji[emoji])
            for emoji in REACTION_EMOJIS
            if by_emoji.get(emoji)
        ]

    def has_reacted(self, message_id: str, emoji: str) -> bool:
        return self.user_id in self._reactions.get(message_id, {}).get(emoji, set())

    async def toggle_reaction(self, message_id: str, emoji: str) -> bool:
        """Flip our reaction locally, then confirm with the store.

        Returns True when the reaction is now present. A failed write puts
        the previous state back.
        """

        if emoji not in REACTION_EMOJIS:
            raise ValueError(f"unsupported reaction: {emoji}")
        if is_temp_id(message_id) or message_id not in self._confirmed_ids:
            raise ValueError(f"message {message_id} is not confirmed")
        before = self.has_reacted(message_id, emoji)
        self._set_user_reaction(message_id, emoji, not before)
        self.listeners.fire()

        generation = self._generation
        try:
            reaction, added = await self._store.toggle_reaction(self.thread, message_id, self.user_id, emoji)
        except PermissionDenied as exc:
            self._terminate()
            raise ConnectionTerminated(self.thread) from exc
        except Exception:
            if generation == self._generation:
                self._set_user_reaction(message_id, emoji, before)
                self.listeners.fire()
            raise
        if generation == self._generation and self._set_reaction(reaction, added):
            self.listeners.fire()
        return added

    def _set_reaction(self, reaction: Reaction, present: bool) -> bool:
        if reaction.thread != self.thread:
            return False
        return self._set_user_reaction(reaction.message_id, reaction.emoji, present, reaction.user_id)

    def _set_user_reaction(self, message_id: str, emoji: str, present: bool, user_id: Optional[str] = None) -> bool:
        user_id = user_id or self.user_id
        users = self._reactions.setdefault(message_id, {}).setdefault(emoji, set())
        if present == (user_id in users):
            return False
        if present:
            users.add(user_id)
        else:
            users.discard(user_id)
        return True

    def apply_confirmed(self, message: Message) -> bool:
        """Merge a confirmed message into the timeline; False if it was already there."""

        if self._merge(message):
            self.listeners.fire()
            return True
        return False

    def _merge(self, message: Message) -> bool:
        if message.thread != self.thread or not message.message_id:
            return False
        if message.message_id in self._confirmed_ids:
            return False

        index = None
        if message.client_token is not None:
            index = self._index_of_token(message.client_token)
        else:
            index = self._heuristic_match(message)

        confirmed = Message(
            thread=message.thread,
            sender_id=message.sender_id,
            content=message.content,
            created_at_ms=message.created_at_ms,
            message_id=message.message_id,
            client_token=message.client_token,
        )
        if index is None:
            self._insert(confirmed)
        else:
            self._messages[index] = confirmed
            self._sort()
        self._confirmed_ids.add(message.message_id)
        return True

    def _heuristic_match(self, message: Message) -> Optional[int]:
        """Oldest optimistic entry with the same sender and content inside the match window."""

        best: Optional[int] = None
        for index, candidate in enumerate(self._messages):
            if not candidate.optimistic:
                continue
            if candidate.sender_id != message.sender_id or candidate.content != message.content:
                continue
            if abs(candidate.created_at_ms - message.created_at_ms) > self.config.match_window_ms:
                continue
            if best is None or candidate.created_at_ms < self._messages[best].created_at_ms:
                best = index
        return best

    def _index_of_token(self, client_token: str) -> Optional[int]:
        for index, candidate in enumerate(self._messages):
            if candidate.optimistic and candidate.client_token == client_token:
                return index
        return None

    def _index_of_temp(self, temp_id: Optional[str]) -> Optional[int]:
        if temp_id is None:
            return None
        for index, candidate in enumerate(self._messages):
            if candidate.optimistic and candidate.temp_id == temp_id:
                return index
        return None

    def _remove_temp(self, temp_id: Optional[str]) -> None:
        index = self._index_of_temp(temp_id)
        if index is not None:
            del self._messages[index]

    def _insert(self, message: Message) -> None:
        self._messages.append(message)
        self._sort()

    def _sort(self) -> None:
        self._messages.sort(key=lambda m: m.created_at_ms)

    def _terminate(self) -> None:
        logger.info("thread %s terminated for user %s", self.thread, self.user_id)
        self._messages = []
        self._confirmed_ids.clear()
        self._reactions = {}
        self.compose = ""
        self.terminated = True
        if self._typing is not None:
            self._typing.drop_thread(self.thread)
        self.listeners.fire()
        if self._on_terminated is not None:
            self._on_terminated(self.thread)
