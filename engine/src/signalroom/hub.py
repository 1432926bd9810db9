from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Protocol, Tuple

from .events import PushEvent, Subscriber
from .models import ThreadKey

logger = logging.getLogger(__name__)


def thread_topic(thread: ThreadKey) -> str:
    return f"thread:{thread.thread_type}:{thread.thread_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


@dataclass(eq=False)
class Subscription:
    owner_id: str
    topic: str
    subscriber: Subscriber

    def deliver(self, event: PushEvent) -> None:
        self.subscriber.on_event(self.topic, event)


class PushChannel(Protocol):
    def subscribe(self, owner_id: str, topic: str, subscriber: Subscriber) -> Subscription: ...

    def unsubscribe(self, subscription: Subscription) -> None: ...

    def publish(self, topic: str, event: PushEvent) -> None: ...


class SubscriptionHub:
    """Registers subscriptions per topic and broadcasts events to all listeners.

    A topic holds at most one subscription per owner; subscribing again
    replaces the earlier one.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._by_owner: Dict[Tuple[str, str], Subscription] = {}

    def subscribe(self, owner_id: str, topic: str, subscriber: Subscriber) -> Subscription:
        previous = self._by_owner.get((owner_id, topic))
        if previous is not None:
            self.unsubscribe(previous)
        subscription = Subscription(owner_id=owner_id, topic=topic, subscriber=subscriber)
        self._subscriptions.setdefault(topic, []).append(subscription)
        self._by_owner[(owner_id, topic)] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._by_owner.get((subscription.owner_id, subscription.topic)) is subscription:
            self._by_owner.pop((subscription.owner_id, subscription.topic), None)
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def publish(self, topic: str, event: PushEvent) -> None:
        for subscription in list(self._subscriptions.get(topic, [])):
            try:
                subscription.deliver(event)
            except Exception:
                logger.exception("subscriber for %s failed on %s", topic, type(event).__name__)

    def revoke(self, topic: str, user_id: str) -> int:
        """Drop every subscription a user holds on ``topic``.

        Owners are either the bare user id or ``<user_id>/<connection>``.
        """

        revoked = [
            sub
            for sub in self._subscriptions.get(topic, [])
            if sub.owner_id == user_id or sub.owner_id.startswith(user_id + "/")
        ]
        for subscription in revoked:
            self.unsubscribe(subscription)
        if revoked:
            logger.info("revoked %d subscriptions of %s on %s", len(revoked), user_id, topic)
        return len(revoked)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))


class Listeners:
    """Zero-argument change callbacks fired after a state holder mutates."""

    def __init__(self) -> None:
        self._callbacks: List[Callable[[], None]] = []

    def add(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def remove(self, callback: Callable[[], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            return

    def fire(self) -> None:
        for callback in list(self._callbacks):
            callback()
